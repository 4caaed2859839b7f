from __future__ import annotations

import csv
import hashlib
import json
from pathlib import Path

import pytest

from policy_inventory.export.csv import write_csv
from policy_inventory.export.documents import item_file_name, write_documents
from policy_inventory.export.jsonl import write_jsonl
from policy_inventory.normalize.schema import (
    CSV_REPORT_FIELDS,
    AssignmentRef,
    CanonicalEntity,
    EntityType,
    FailureRecord,
    ReportDocument,
    ReportMetadata,
    SourceKind,
    TargetType,
)
from policy_inventory.util.errors import ExportError


def _document() -> ReportDocument:
    gpo = CanonicalEntity(
        id="AAAAAAAA-0000-0000-0000-000000000001",
        display_name="Baseline / Workstations",
        entity_type=EntityType.GROUP_POLICY_OBJECT,
        source_kind=SourceKind.RSOP_COMPUTER,
        assignments=(AssignmentRef(target_type=TargetType.OU_LINK, target_id="contoso.com/WS", resolved_name="WS"),),
        raw_payload={"Name": "Baseline / Workstations", "adminPassword": "hunter2"},
        source_kinds=frozenset({SourceKind.RSOP_COMPUTER, SourceKind.RSOP_USER}),
    )
    app = CanonicalEntity(
        id="app-1",
        display_name="Company Portal",
        entity_type=EntityType.STORE_APP,
        source_kind=SourceKind.GRAPH_MOBILE_APP,
        scope_tags=("Default", "Europe"),
    )
    return ReportDocument(
        metadata=ReportMetadata(collected_at="2024-05-01T00:00:00+00:00", tool="policy-inv", source_scope="rsop"),
        entities=(gpo, app),
        errors=(FailureRecord(stage="resolution", item_identifier="group:g-9", message="not found"),),
    )


def test_item_file_name_is_sanitized_and_unique_by_id() -> None:
    entity = _document().entities[0]

    assert item_file_name(entity) == "Baseline_Workstations_AAAAAAAA-0000-0000-0000-000000000001.json"
    nameless = CanonicalEntity(id="x/1", display_name="", entity_type=EntityType.UNKNOWN, source_kind=SourceKind.GPO_REPORT)
    digest = hashlib.sha1(b"x/1").hexdigest()[:8]
    assert item_file_name(nameless) == f"unnamed_x_1_{digest}.json"


def test_write_documents_writes_index_and_items(tmp_path: Path) -> None:
    index_path = write_documents(_document(), tmp_path)

    index = json.loads(index_path.read_text(encoding="utf-8"))
    assert index["metadata"]["sourceScope"] == "rsop"
    assert index["summary"]["total_entities"] == 2
    assert index["summary"]["errors_by_stage"] == {"resolution": 1}
    assert [e["id"] for e in index["entities"]] == ["AAAAAAAA-0000-0000-0000-000000000001", "app-1"]
    assert index["errors"] == [{"itemIdentifier": "group:g-9", "message": "not found", "stage": "resolution"}]

    item = json.loads((tmp_path / index["entities"][0]["document"]).read_text(encoding="utf-8"))
    assert item["sourceKinds"] == ["rsop.computer", "rsop.user"]
    assert item["rawPayload"]["adminPassword"] == "<redacted>"
    assert len(list((tmp_path / "items").iterdir())) == 2


def test_ids_that_sanitize_alike_get_separate_documents(tmp_path: Path) -> None:
    entities = tuple(
        CanonicalEntity(id=ident, display_name="Kiosk", entity_type=EntityType.UNKNOWN, source_kind=SourceKind.GPO_REPORT)
        for ident in ("a:b", "a;b")
    )
    document = ReportDocument(metadata=ReportMetadata(collected_at="now", tool="policy-inv"), entities=entities, errors=())

    index = json.loads(write_documents(document, tmp_path).read_text(encoding="utf-8"))

    files = [e["document"] for e in index["entities"]]
    assert len(set(files)) == 2
    assert len(list((tmp_path / "items").iterdir())) == 2
    ids = {json.loads((tmp_path / f).read_text(encoding="utf-8"))["id"] for f in files}
    assert ids == {"a:b", "a;b"}


def test_write_documents_wraps_os_errors(tmp_path: Path) -> None:
    blocker = tmp_path / "blocked"
    blocker.write_text("not a directory", encoding="utf-8")

    with pytest.raises(ExportError):
        write_documents(_document(), blocker)


def test_write_jsonl_keeps_input_order(tmp_path: Path) -> None:
    path = tmp_path / "entities.jsonl"

    write_jsonl(_document().entities, path, include_raw=False)

    lines = path.read_text(encoding="utf-8").splitlines()
    rows = [json.loads(line) for line in lines]
    assert [r["id"] for r in rows] == ["AAAAAAAA-0000-0000-0000-000000000001", "app-1"]
    assert "rawPayload" not in rows[0]
    assert list(rows[1].keys()) == sorted(rows[1].keys())


def test_write_csv_report_fields_only(tmp_path: Path) -> None:
    path = tmp_path / "entities.csv"

    write_csv(_document().entities, path)

    with path.open(encoding="utf-8", newline="") as f:
        rows = list(csv.DictReader(f))
    assert list(rows[0].keys()) == CSV_REPORT_FIELDS
    assert rows[0]["sourceKind"] == "rsop.computer;rsop.user"
    assert rows[0]["assignmentCount"] == "1"
    assert rows[1]["scopeTags"] == "Default;Europe"
    assert rows[1]["entityType"] == "Store App"
