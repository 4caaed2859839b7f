from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from ..details import DetailRegistry
from ..details.base import DetailFetcher
from ..logging import get_logger
from ..normalize.schema import ReportDocument, ReportMetadata, SourceKind, SourceRecord
from ..normalize.transform import SchemaNormalizer, describe_record
from ..util.concurrency import parallel_map_ordered
from ..util.errors import FetchError, RunAborted
from ..util.pagination import PagedFetcher, PageRequest
from .assemble import ReportAssembler
from .dedup import Deduplicator
from .events import OUTCOME_COMPLETE, OUTCOME_OK, OUTCOME_SKIPPED, OUTCOME_START, NullObserver, Observer, PipelineEvent
from .failures import STAGE_DETAIL, STAGE_NORMALIZATION, STAGE_PAGING, FailureCollector
from .selection import NameSelector

LOG = get_logger(__name__)

STAGE_FETCH = "fetch"
STAGE_SELECT = "select"
STAGE_MERGE = "merge"
STAGE_ASSEMBLE = "assemble"


@dataclass
class RunStats:
    fetched: int = 0
    selected: int = 0
    normalized: int = 0
    entities: int = 0
    failures: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "fetched": self.fetched,
            "selected": self.selected,
            "normalized": self.normalized,
            "entities": self.entities,
            "failures": self.failures,
        }


class ExportPipeline:
    """
    fetch -> select -> detail fan-out -> normalize (+resolve) -> merge -> assemble.

    Only a paging failure before any record has been fetched aborts the run;
    every other failure is recorded and the run continues with what it has.
    Setting the abort event stops the run at the next page, item or stage
    boundary with RunAborted.
    """

    def __init__(
        self,
        fetcher: PagedFetcher,
        normalizer: SchemaNormalizer,
        failures: FailureCollector,
        *,
        deduplicator: Optional[Deduplicator] = None,
        assembler: Optional[ReportAssembler] = None,
        details: Optional[DetailRegistry] = None,
        selector: Optional[NameSelector] = None,
        observer: Optional[Observer] = None,
        abort: Optional[threading.Event] = None,
        workers_detail: int = 1,
        workers_normalize: int = 1,
    ) -> None:
        self._fetcher = fetcher
        self._normalizer = normalizer
        self._failures = failures
        self._dedup = deduplicator or Deduplicator()
        self._assembler = assembler or ReportAssembler()
        self._details = details
        self._selector = selector or NameSelector()
        self._observer: Observer = observer or NullObserver()
        self._abort = abort
        self._workers_detail = max(1, int(workers_detail))
        self._workers_normalize = max(1, int(workers_normalize))
        self.stats = RunStats()

    def _check_abort(self, where: str) -> None:
        if self._abort is not None and self._abort.is_set():
            raise RunAborted(f"Run aborted during {where}")

    def _emit(self, stage: str, outcome: str, item: str = "", *, count: Optional[int] = None, detail: str = "") -> None:
        self._observer.on_event(PipelineEvent(stage=stage, item=item, outcome=outcome, count=count, detail=detail))

    # -- stages ------------------------------------------------------------

    def collect(self, request: PageRequest, *, have_data: bool = False) -> List[SourceRecord]:
        """
        Fetch every page of one request. A failure after some data was
        fetched (in this request or earlier in the run) is recorded and the
        partial result is kept; otherwise FetchError propagates.
        """
        records: List[SourceRecord] = []
        self._emit(STAGE_FETCH, OUTCOME_START, request.describe())
        try:
            for record in self._fetcher.fetch(request):
                records.append(record)
        except FetchError as e:
            if not records and not have_data:
                raise
            self._failures.record(STAGE_PAGING, request.describe(), str(e.cause))
        self._emit(STAGE_FETCH, OUTCOME_COMPLETE, request.describe(), count=len(records))
        return records

    def select(self, records: Iterable[SourceRecord]) -> List[SourceRecord]:
        if self._selector.selects_all:
            return list(records)
        out: List[SourceRecord] = []
        for record in records:
            name = self._normalizer.display_name_of(record)
            if self._selector.matches(name):
                out.append(record)
            else:
                if not name:
                    LOG.debug(
                        "Record without a display name skipped by name filter",
                        extra={"step": STAGE_SELECT, "phase": "skipped", "record": describe_record(record)},
                    )
                self._emit(STAGE_SELECT, OUTCOME_SKIPPED, name)
        return out

    def fetch_details(self, records: List[SourceRecord]) -> List[SourceRecord]:
        if self._details is None:
            return records
        fetchers: Dict[SourceKind, DetailFetcher] = {}
        lock = threading.Lock()

        def _fetcher_for(kind: SourceKind) -> DetailFetcher:
            with lock:
                if kind not in fetchers:
                    fetchers[kind] = self._details.get(kind)
                return fetchers[kind]

        def _one(record: SourceRecord) -> SourceRecord:
            self._check_abort(STAGE_DETAIL)
            fetcher = _fetcher_for(record.source_kind)
            try:
                detailed = fetcher.fetch(record)
            except (RunAborted, KeyboardInterrupt):
                raise
            except Exception as e:
                self._failures.record(STAGE_DETAIL, describe_record(record), f"{fetcher.name}: {e}")
                return record
            self._emit(STAGE_DETAIL, OUTCOME_OK, describe_record(record))
            return detailed

        self._emit(STAGE_DETAIL, OUTCOME_START, count=len(records))
        out = parallel_map_ordered(_one, records, max_workers=self._workers_detail, abort=self._abort)
        self._emit(STAGE_DETAIL, OUTCOME_COMPLETE, count=len(out))
        return out

    # -- entry point -------------------------------------------------------

    def run(self, requests: Iterable[PageRequest], metadata: ReportMetadata) -> ReportDocument:
        self.stats = RunStats()
        raw: List[SourceRecord] = []
        for request in requests:
            self._check_abort(STAGE_FETCH)
            raw.extend(self.collect(request, have_data=bool(raw)))
        self.stats.fetched = len(raw)

        self._check_abort(STAGE_SELECT)
        selected = self.select(raw)
        self.stats.selected = len(selected)
        LOG.info(
            "Records selected",
            extra={"step": STAGE_SELECT, "phase": "complete", "fetched": len(raw), "selected": len(selected)},
        )

        detailed = self.fetch_details(selected)

        self._check_abort(STAGE_NORMALIZATION)
        self._emit(STAGE_NORMALIZATION, OUTCOME_START, count=len(detailed))
        entities = self._normalizer.normalize_all(detailed, max_workers=self._workers_normalize, abort=self._abort)
        self.stats.normalized = len(entities)
        self._emit(STAGE_NORMALIZATION, OUTCOME_COMPLETE, count=len(entities))

        self._check_abort(STAGE_MERGE)
        merged = self._dedup.merge(entities)
        self.stats.entities = len(merged)
        self._emit(STAGE_MERGE, OUTCOME_COMPLETE, count=len(merged))

        self._check_abort(STAGE_ASSEMBLE)
        document = self._assembler.assemble(merged, self._failures.drain(), metadata)
        self.stats.failures = len(document.errors)
        self._emit(STAGE_ASSEMBLE, OUTCOME_COMPLETE, count=len(document.entities))
        return document
