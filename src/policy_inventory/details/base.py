from __future__ import annotations

from typing import Any, Dict, Protocol, runtime_checkable

from ..normalize.schema import SourceRecord


@runtime_checkable
class DetailFetcher(Protocol):
    """
    Per-item detail fetch for one source kind (assignments, settings, ...).
    Implementations return a new SourceRecord and must not mutate the input.
    Errors propagate; the pipeline records them and keeps the original record.
    """

    name: str

    def fetch(self, record: SourceRecord) -> SourceRecord:
        ...


class PassThroughFetcher:
    """Used for any source kind without a registered fetcher."""

    name: str = "none"

    def fetch(self, record: SourceRecord) -> SourceRecord:
        return record


class ChainedFetcher:
    """Runs several fetchers in order, each seeing the previous output."""

    def __init__(self, *fetchers: DetailFetcher) -> None:
        self._fetchers = fetchers
        self.name = "+".join(f.name for f in fetchers)

    def fetch(self, record: SourceRecord) -> SourceRecord:
        for fetcher in self._fetchers:
            record = fetcher.fetch(record)
        return record


def with_fields(record: SourceRecord, **fields: Any) -> SourceRecord:
    data: Dict[str, Any] = dict(record.data)
    data.update(fields)
    return SourceRecord(data=data, source_kind=record.source_kind)
