from __future__ import annotations

import csv
from pathlib import Path
from typing import Any, Dict, Iterable, List

from ..normalize.schema import CSV_REPORT_FIELDS, CanonicalEntity


def report_row(entity: CanonicalEntity) -> Dict[str, Any]:
    return {
        "id": entity.id,
        "displayName": entity.display_name,
        "entityType": entity.entity_type.value,
        "sourceKind": ";".join(entity.provenance()),
        "assignmentCount": len(entity.assignments),
        "settingCount": len(entity.settings),
        "scopeTags": ";".join(entity.scope_tags),
    }


def write_csv(entities: Iterable[CanonicalEntity], path: Path) -> None:
    """
    Write a CSV file with report fields only, in input order.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(CSV_REPORT_FIELDS)
        for entity in entities:
            row_map = report_row(entity)
            row: List[str] = []
            for field in CSV_REPORT_FIELDS:
                val = row_map.get(field)
                row.append("" if val is None else str(val))
            writer.writerow(row)
