from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import Any, Dict, List

from ..logging import get_logger
from ..normalize.schema import CanonicalEntity, ReportDocument
from ..normalize.transform import canonicalize_record
from ..util.errors import ExportError
from ..util.serialization import sanitize_for_json, stable_json_dumps

LOG = get_logger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
MAX_NAME_LEN = 80


def _short_hash(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()[:8]


def item_file_name(entity: CanonicalEntity) -> str:
    """
    "<sanitized displayName>_<sanitized id>.json"; the id keeps names unique.
    When sanitizing changes the id, a short hash of the raw id is appended so
    that ids such as "a:b" and "a;b" do not share a file.
    """
    name = _UNSAFE_CHARS.sub("_", entity.display_name or "").strip("._")[:MAX_NAME_LEN] or "unnamed"
    ident = _UNSAFE_CHARS.sub("_", entity.id).strip("._") or "noid"
    if ident != entity.id:
        ident = f"{ident}_{_short_hash(entity.id)}"
    return f"{name}_{ident}.json"


def entity_summary(entity: CanonicalEntity, file_name: str) -> Dict[str, Any]:
    return {
        "id": entity.id,
        "displayName": entity.display_name,
        "entityType": entity.entity_type.value,
        "sourceKinds": entity.provenance(),
        "assignmentCount": len(entity.assignments),
        "settingCount": len(entity.settings),
        "document": f"items/{file_name}",
    }


def write_documents(document: ReportDocument, outdir: Path) -> Path:
    """
    Write one JSON document per entity under items/ and an index.json that
    lists them in report order together with metadata and failures.
    Returns the index path.
    """
    items_dir = outdir / "items"
    try:
        items_dir.mkdir(parents=True, exist_ok=True)
        summaries: List[Dict[str, Any]] = []
        for entity in document.entities:
            file_name = item_file_name(entity)
            payload = canonicalize_record(sanitize_for_json(entity.to_dict()))
            (items_dir / file_name).write_text(stable_json_dumps(payload, indent=2) + "\n", encoding="utf-8")
            summaries.append(entity_summary(entity, file_name))

        index = {
            "metadata": document.metadata.to_dict(),
            "summary": document.summary(),
            "entities": summaries,
            "errors": [err.to_dict() for err in document.errors],
        }
        index_path = outdir / "index.json"
        index_path.write_text(stable_json_dumps(index, indent=2) + "\n", encoding="utf-8")
    except OSError as e:
        raise ExportError(f"Failed to write documents under {outdir}: {e}") from e

    LOG.info(
        "Documents written",
        extra={"step": "export", "phase": "complete", "artifact": "documents", "count": len(document.entities)},
    )
    return index_path
