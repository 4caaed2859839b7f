from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generator, Iterator, List, Mapping, Optional, Protocol, Sequence, Tuple, TypeVar

from ..logging import get_logger
from ..normalize.schema import SourceKind, SourceRecord
from .errors import FetchError, RunAborted

LOG = get_logger(__name__)

T = TypeVar("T")


def paginate(
    fetch: Callable[[str | None], Tuple[Sequence[T], str | None]],
    *,
    start: str | None = None,
) -> Generator[T, None, None]:
    """
    Generic paginator yielding items from a fetch(page_token) function.
    The fetch function must return (items, next_page_token). If next_page_token
    is falsy, pagination stops.
    """
    page: str | None = start
    while True:
        items, next_page = fetch(page)
        for it in items:
            yield it
        if not next_page:
            break
        page = next_page


@dataclass(frozen=True)
class PageRequest:
    """
    Request descriptor for a paged source. continuation resumes a walk from a
    token recovered from a prior partial page.
    """

    source_kind: SourceKind
    endpoint: str
    params: Mapping[str, Any] = field(default_factory=dict)
    continuation: Optional[str] = None

    def describe(self) -> str:
        return f"{self.source_kind.value}:{self.endpoint}"


@dataclass(frozen=True)
class Page:
    items: List[Dict[str, Any]]
    next_token: Optional[str] = None


class PageSource(Protocol):
    """Returns one page for a request; continuation selects which page."""

    def get_page(self, request: PageRequest, continuation: Optional[str]) -> Page:
        ...


class PagedFetcher:
    """
    Walks a paged source to exhaustion. Every fetch() call starts a fresh walk;
    no state is shared between calls.
    """

    def __init__(self, source: PageSource, *, abort: Optional[threading.Event] = None) -> None:
        self._source = source
        self._abort = abort

    def fetch(self, request: PageRequest) -> Iterator[SourceRecord]:
        yielded = 0
        pages = 0

        def _fetch(token: Optional[str]) -> Tuple[List[Dict[str, Any]], Optional[str]]:
            nonlocal pages
            if self._abort is not None and self._abort.is_set():
                raise RunAborted(f"Aborted while paging {request.describe()}")
            try:
                page = self._source.get_page(request, token)
            except (RunAborted, KeyboardInterrupt):
                raise
            except Exception as e:
                raise FetchError(e, items_fetched=yielded, endpoint=request.describe()) from e
            pages += 1
            LOG.debug(
                "Fetched page",
                extra={
                    "step": "fetch",
                    "phase": "page",
                    "endpoint": request.describe(),
                    "page": pages,
                    "items": len(page.items),
                    "has_next": bool(page.next_token),
                },
            )
            return page.items, page.next_token

        for item in paginate(_fetch, start=request.continuation):
            yielded += 1
            yield SourceRecord(data=item, source_kind=request.source_kind)
