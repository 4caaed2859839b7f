from __future__ import annotations

from pathlib import Path
from typing import Iterable

from ..normalize.schema import CanonicalEntity
from ..normalize.transform import canonicalize_record
from ..util.serialization import sanitize_for_json, stable_json_dumps


def write_jsonl(entities: Iterable[CanonicalEntity], path: Path, *, include_raw: bool = True) -> None:
    """
    Write entities to a JSONL file with stable key ordering. Line order is the
    input order; pass ReportDocument.entities for the report's sort.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        for entity in entities:
            obj = canonicalize_record(sanitize_for_json(entity.to_dict(include_raw=include_raw)))
            f.write(stable_json_dumps(obj))
            f.write("\n")
