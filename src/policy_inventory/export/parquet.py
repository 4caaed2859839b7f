from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..logging import get_logger
from ..normalize.schema import CanonicalEntity
from ..normalize.transform import canonicalize_record
from ..util.serialization import sanitize_for_json, stable_json_dumps

LOG = get_logger(__name__)

# Nested values are stored as JSON text so every batch shares one flat schema.
NESTED_COLUMNS = ("assignments", "settings", "scopeTags", "sourceKinds")


class ParquetNotAvailable(RuntimeError):
    pass


def _require_pyarrow():
    try:
        import pyarrow as pa  # type: ignore
        import pyarrow.parquet as pq  # type: ignore
    except Exception as e:  # pragma: no cover
        raise ParquetNotAvailable(
            "pyarrow is required for Parquet export. Install with: pip install .[parquet]"
        ) from e
    return pa, pq


def parquet_row(entity: CanonicalEntity) -> Dict[str, Any]:
    data = sanitize_for_json(entity.to_dict(include_raw=False))
    row: Dict[str, Any] = {}
    for key, value in canonicalize_record(data).items():
        if key in NESTED_COLUMNS:
            row[key] = stable_json_dumps(value)
        else:
            row[key] = None if value in ("", None) else str(value)
    return row


def _schema(pa, columns: List[str]) -> Any:
    return pa.schema([pa.field(name, pa.string(), nullable=True) for name in columns])


def write_parquet(
    entities: Iterable[CanonicalEntity],
    path: Path,
    *,
    batch_size: int = 1000,
) -> None:
    """
    Write a Parquet file from canonical entities in input order, streaming
    in batches. Raises ParquetNotAvailable when pyarrow is not installed.
    """
    pa, pq = _require_pyarrow()
    path.parent.mkdir(parents=True, exist_ok=True)
    if batch_size < 1:
        batch_size = 1000

    writer: Optional[Any] = None
    columns: List[str] = []
    rows: List[Dict[str, Any]] = []
    row_meta: List[Tuple[int, str]] = []

    def _flush_rows() -> None:
        nonlocal writer, rows, row_meta
        if not rows:
            return
        try:
            table = pa.Table.from_pylist(rows, schema=_schema(pa, columns))
        except Exception as exc:
            idx, label = row_meta[0]
            LOG.error(
                "Parquet batch write failed",
                extra={
                    "step": "export",
                    "phase": "error",
                    "artifact": "parquet",
                    "record_index": idx,
                    "record_hint": label,
                    "error": str(exc),
                },
            )
            raise
        if writer is None:
            writer = pq.ParquetWriter(path, table.schema)
        writer.write_table(table)
        rows = []
        row_meta = []

    for index, entity in enumerate(entities, start=1):
        row = parquet_row(entity)
        if not columns:
            columns = list(row.keys())
        rows.append(row)
        row_meta.append((index, f"{entity.entity_type.value} id={entity.id}"))
        if len(rows) >= batch_size:
            _flush_rows()

    if rows:
        _flush_rows()
    elif writer is None:
        pq.write_table(pa.Table.from_pylist([]), path)

    if writer is not None:
        writer.close()
