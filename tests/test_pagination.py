from __future__ import annotations

import threading
from typing import Dict, List, Optional

import pytest

from policy_inventory.normalize.schema import SourceKind
from policy_inventory.util.errors import FetchError, RunAborted
from policy_inventory.util.pagination import Page, PagedFetcher, PageRequest, paginate


class _FakePages:
    def __init__(self, pages: Dict[Optional[str], Page], fail_on: Optional[str] = "never") -> None:
        self.pages = pages
        self.fail_on = fail_on
        self.calls: List[Optional[str]] = []

    def get_page(self, request: PageRequest, continuation: Optional[str]) -> Page:
        self.calls.append(continuation)
        if continuation == self.fail_on:
            raise ConnectionError("boom")
        return self.pages[continuation]


def _request() -> PageRequest:
    return PageRequest(source_kind=SourceKind.GRAPH_DEVICE_CONFIGURATION, endpoint="deviceManagement/deviceConfigurations")


def test_paginate_yields_all_items_and_pages_in_order() -> None:
    calls = []
    pages = {
        None: (["a", "b"], "next"),
        "next": (["c"], None),
    }

    def fetch(page):
        calls.append(page)
        return pages[page]

    items = list(paginate(fetch))
    assert items == ["a", "b", "c"]
    assert calls == [None, "next"]


def test_fetcher_walks_three_pages_in_order() -> None:
    source = _FakePages(
        {
            None: Page(items=[{"id": "1"}, {"id": "2"}], next_token="p2"),
            "p2": Page(items=[{"id": "3"}, {"id": "4"}], next_token="p3"),
            "p3": Page(items=[{"id": "5"}], next_token=None),
        }
    )

    records = list(PagedFetcher(source).fetch(_request()))

    assert [r.data["id"] for r in records] == ["1", "2", "3", "4", "5"]
    assert all(r.source_kind == SourceKind.GRAPH_DEVICE_CONFIGURATION for r in records)
    assert source.calls == [None, "p2", "p3"]


def test_fetcher_empty_first_page_yields_nothing() -> None:
    source = _FakePages({None: Page(items=[], next_token=None)})

    assert list(PagedFetcher(source).fetch(_request())) == []


def test_fetcher_resumes_from_continuation() -> None:
    source = _FakePages(
        {
            None: Page(items=[{"id": "1"}], next_token="p2"),
            "p2": Page(items=[{"id": "2"}], next_token=None),
        }
    )
    request = PageRequest(source_kind=SourceKind.GRAPH_MOBILE_APP, endpoint="x", continuation="p2")

    assert [r.data["id"] for r in PagedFetcher(source).fetch(request)] == ["2"]


def test_fetcher_first_page_failure_raises_with_zero_items() -> None:
    source = _FakePages({}, fail_on=None)

    with pytest.raises(FetchError) as excinfo:
        list(PagedFetcher(source).fetch(_request()))

    assert excinfo.value.items_fetched == 0
    assert excinfo.value.stage == "paging"
    assert isinstance(excinfo.value.cause, ConnectionError)


def test_fetcher_later_page_failure_reports_items_fetched() -> None:
    source = _FakePages(
        {
            None: Page(items=[{"id": "1"}, {"id": "2"}], next_token="p2"),
        },
        fail_on="p2",
    )
    seen = []

    with pytest.raises(FetchError) as excinfo:
        for record in PagedFetcher(source).fetch(_request()):
            seen.append(record.data["id"])

    assert seen == ["1", "2"]
    assert excinfo.value.items_fetched == 2


def test_fetcher_stops_when_abort_is_set() -> None:
    abort = threading.Event()
    abort.set()
    source = _FakePages({None: Page(items=[{"id": "1"}])})

    with pytest.raises(RunAborted):
        list(PagedFetcher(source, abort=abort).fetch(_request()))
    assert source.calls == []
