from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from policy_inventory.details import DetailRegistry
from policy_inventory.details.base import with_fields
from policy_inventory.normalize.schema import ReportMetadata, SourceKind, SourceRecord
from policy_inventory.normalize.transform import SchemaNormalizer
from policy_inventory.pipeline.failures import FailureCollector
from policy_inventory.pipeline.run import ExportPipeline
from policy_inventory.pipeline.selection import NameSelector
from policy_inventory.resolve.cache import IdKind, ReferenceResolverCache
from policy_inventory.resolve.lookups import MappingIdLookup
from policy_inventory.sources.local import RsopReportSource
from policy_inventory.util.errors import FetchError, RunAborted
from policy_inventory.util.pagination import Page, PagedFetcher, PageRequest

METADATA = ReportMetadata(collected_at="2024-05-01T00:00:00+00:00", tool="policy-inv")

RSOP_XML = """<Rsop xmlns="http://www.microsoft.com/GroupPolicy/Rsop"
      xmlns:types="http://www.microsoft.com/GroupPolicy/Types">
  <ComputerResults>
    <GPO>
      <Name>GPO-1</Name>
      <Path><types:Identifier>{AAAAAAAA-0000-0000-0000-000000000001}</types:Identifier></Path>
    </GPO>
    <GPO>
      <Name>GPO-2</Name>
      <Path><types:Identifier>{AAAAAAAA-0000-0000-0000-000000000002}</types:Identifier></Path>
    </GPO>
  </ComputerResults>
  <UserResults>
    <GPO>
      <Name>GPO-1</Name>
      <Path><types:Identifier>{AAAAAAAA-0000-0000-0000-000000000001}</types:Identifier></Path>
    </GPO>
  </UserResults>
</Rsop>
"""


class _DictPageSource:
    """
    pages[(endpoint, token)] -> (items, next_token); an Exception value is raised.
    """

    def __init__(self, pages: Dict[Tuple[str, Optional[str]], Any]) -> None:
        self.pages = pages
        self.calls: List[Tuple[str, Optional[str]]] = []

    def get_page(self, request: PageRequest, continuation: Optional[str]) -> Page:
        self.calls.append((request.endpoint, continuation))
        value = self.pages[(request.endpoint, continuation)]
        if isinstance(value, Exception):
            raise value
        items, next_token = value
        return Page(items=list(items), next_token=next_token)


def _item(i: int, name: Optional[str] = None) -> Dict[str, Any]:
    return {"@odata.type": "#microsoft.graph.win32LobApp", "id": f"app-{i}", "displayName": name or f"App {i}"}


def _pipeline(source, failures: FailureCollector, **kwargs) -> ExportPipeline:
    resolver = ReferenceResolverCache(kwargs.pop("lookup", None) or MappingIdLookup(), failures=failures)
    abort = kwargs.pop("abort", None)
    return ExportPipeline(
        PagedFetcher(source, abort=abort),
        SchemaNormalizer(resolver, failures=failures),
        failures,
        abort=abort,
        **kwargs,
    )


def _request(endpoint: str = "deviceAppManagement/mobileApps") -> PageRequest:
    return PageRequest(source_kind=SourceKind.GRAPH_MOBILE_APP, endpoint=endpoint)


def test_rsop_scopes_merge_into_one_entity_per_gpo(tmp_path: Path) -> None:
    (tmp_path / "rsop.xml").write_text(RSOP_XML, encoding="utf-8")
    failures = FailureCollector()
    pipeline = _pipeline(RsopReportSource(tmp_path), failures)
    requests = [
        PageRequest(source_kind=SourceKind.RSOP_COMPUTER, endpoint="*.xml"),
        PageRequest(source_kind=SourceKind.RSOP_USER, endpoint="*.xml"),
    ]

    document = pipeline.run(requests, METADATA)

    assert [e.display_name for e in document.entities] == ["GPO-1", "GPO-2"]
    gpo1, gpo2 = document.entities
    assert gpo1.id == "AAAAAAAA-0000-0000-0000-000000000001"
    assert gpo1.provenance() == ["rsop.computer", "rsop.user"]
    assert gpo2.provenance() == ["rsop.computer"]
    assert document.errors == ()
    assert pipeline.stats.as_dict() == {"fetched": 3, "selected": 3, "normalized": 3, "entities": 2, "failures": 0}


def test_duplicate_gpo_records_merge_name_and_settings() -> None:
    items = [
        {"GUID": "GPO-1", "Name": "Security Baseline"},
        {"Guid": "GPO-1", "Computer": {"Enabled": "true"}},
        {"ID": "GPO-2", "Name": "Workstation Lockdown"},
    ]
    source = _DictPageSource({("*.xml", None): (items, None)})
    failures = FailureCollector()
    request = PageRequest(source_kind=SourceKind.GPO_REPORT, endpoint="*.xml")

    document = _pipeline(source, failures).run([request], METADATA)

    assert [e.id for e in document.entities] == ["GPO-1", "GPO-2"]
    gpo1 = document.entities[0]
    assert gpo1.display_name == "Security Baseline"
    assert [s.name for s in gpo1.settings] == ["Computer configuration enabled"]
    # the nameless copy is looked up by GUID and has no index to resolve against
    assert [(r.stage, r.item_identifier) for r in document.errors] == [("resolution", "gpo:GPO-1")]


def test_first_page_failure_is_fatal() -> None:
    source = _DictPageSource({("apps", None): RuntimeError("HTTP 503")})
    failures = FailureCollector()

    with pytest.raises(FetchError) as excinfo:
        _pipeline(source, failures).run([_request("apps")], METADATA)

    assert excinfo.value.items_fetched == 0
    assert len(failures) == 0


def test_later_page_failure_keeps_partial_results() -> None:
    source = _DictPageSource(
        {
            ("apps", None): ([_item(1), _item(2)], "page-2"),
            ("apps", "page-2"): RuntimeError("connection reset"),
        }
    )
    failures = FailureCollector()

    document = _pipeline(source, failures).run([_request("apps")], METADATA)

    assert [e.id for e in document.entities] == ["app-1", "app-2"]
    assert [(r.stage, r.item_identifier) for r in document.errors] == [("paging", "graph.mobileApp:apps")]
    assert "connection reset" in document.errors[0].message


def test_failure_on_second_request_is_recorded_once_data_exists() -> None:
    source = _DictPageSource(
        {
            ("apps", None): ([_item(1)], None),
            ("more", None): RuntimeError("HTTP 500"),
        }
    )
    failures = FailureCollector()

    document = _pipeline(source, failures).run([_request("apps"), _request("more")], METADATA)

    assert [e.id for e in document.entities] == ["app-1"]
    assert [r.item_identifier for r in document.errors] == ["graph.mobileApp:more"]


class _FlakyDetails:
    name = "assignments"

    def fetch(self, record: SourceRecord) -> SourceRecord:
        if record.data["id"] == "app-2":
            raise RuntimeError("HTTP 404")
        return with_fields(record, description="detailed")


def test_detail_failure_is_recorded_and_record_kept() -> None:
    source = _DictPageSource({("apps", None): ([_item(1), _item(2), _item(3)], None)})
    registry = DetailRegistry()
    registry.register(SourceKind.GRAPH_MOBILE_APP, _FlakyDetails)
    failures = FailureCollector()

    document = _pipeline(source, failures, details=registry, workers_detail=3).run([_request("apps")], METADATA)

    by_id = {e.id: e for e in document.entities}
    assert sorted(by_id) == ["app-1", "app-2", "app-3"]
    assert by_id["app-1"].description == "detailed"
    assert by_id["app-2"].description == ""
    assert [(r.stage, r.item_identifier) for r in document.errors] == [("detail", "graph.mobileApp:app-2")]
    assert document.errors[0].message == "assignments: HTTP 404"


def test_one_malformed_record_in_five() -> None:
    items = [_item(1), _item(2), {"displayName": "No Id"}, _item(4), _item(5)]
    source = _DictPageSource({("apps", None): (items, None)})
    failures = FailureCollector()

    document = _pipeline(source, failures, workers_normalize=2).run([_request("apps")], METADATA)

    assert len(document.entities) == 4
    assert [(r.stage, r.item_identifier) for r in document.errors] == [("normalization", "graph.mobileApp:No Id")]


def test_selector_skips_unmatched_names_before_details() -> None:
    source = _DictPageSource({("apps", None): ([_item(1, "Chrome"), _item(2, "Zoom"), _item(3, "Chromium")], None)})
    seen: List[str] = []

    class _Recording:
        name = "recording"

        def fetch(self, record: SourceRecord) -> SourceRecord:
            seen.append(record.data["id"])
            return record

    registry = DetailRegistry()
    registry.register(SourceKind.GRAPH_MOBILE_APP, _Recording)
    failures = FailureCollector()
    pipeline = _pipeline(source, failures, details=registry, selector=NameSelector(["chrom*"]))

    document = pipeline.run([_request("apps")], METADATA)

    assert [e.display_name for e in document.entities] == ["Chrome", "Chromium"]
    assert sorted(seen) == ["app-1", "app-3"]
    assert pipeline.stats.fetched == 3
    assert pipeline.stats.selected == 2


def test_selector_matches_gpo_names_resolved_by_guid() -> None:
    items = [
        {"GUID": "{AAAAAAAA-0000-0000-0000-000000000001}"},
        {"GUID": "{AAAAAAAA-0000-0000-0000-000000000002}", "Name": "Workstation Lockdown"},
        {"GUID": "{AAAAAAAA-0000-0000-0000-000000000003}"},
    ]
    source = _DictPageSource({("*.xml", None): (items, None)})
    lookup = MappingIdLookup({IdKind.GPO: {"AAAAAAAA-0000-0000-0000-000000000001": "Security Baseline"}})
    failures = FailureCollector()
    pipeline = _pipeline(source, failures, lookup=lookup, selector=NameSelector(["security*"]))
    request = PageRequest(source_kind=SourceKind.RSOP_COMPUTER, endpoint="*.xml")

    document = pipeline.run([request], METADATA)

    assert [(e.id, e.display_name) for e in document.entities] == [
        ("AAAAAAAA-0000-0000-0000-000000000001", "Security Baseline")
    ]
    assert pipeline.stats.selected == 1
    # the third GPO has no name anywhere and cannot match
    assert [r.item_identifier for r in document.errors] == ["gpo:AAAAAAAA-0000-0000-0000-000000000003"]


def test_abort_before_run_stops_without_fetching() -> None:
    source = _DictPageSource({("apps", None): ([_item(1)], None)})
    abort = threading.Event()
    abort.set()

    with pytest.raises(RunAborted):
        _pipeline(source, FailureCollector(), abort=abort).run([_request("apps")], METADATA)

    assert source.calls == []


def test_abort_during_details_stops_the_run() -> None:
    source = _DictPageSource({("apps", None): ([_item(i) for i in range(10)], None)})
    abort = threading.Event()

    class _Aborting:
        name = "aborting"

        def fetch(self, record: SourceRecord) -> SourceRecord:
            abort.set()
            return record

    registry = DetailRegistry()
    registry.register(SourceKind.GRAPH_MOBILE_APP, _Aborting)

    with pytest.raises(RunAborted):
        _pipeline(source, FailureCollector(), details=registry, abort=abort).run([_request("apps")], METADATA)
