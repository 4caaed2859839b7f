from __future__ import annotations

import threading
from typing import List, Optional, Tuple

from ..normalize.schema import FailureRecord
from .events import OUTCOME_FAILED, Observer, PipelineEvent

STAGE_PAGING = "paging"
STAGE_DETAIL = "detail"
STAGE_RESOLUTION = "resolution"
STAGE_NORMALIZATION = "normalization"


class FailureCollector:
    """
    Append-only, thread-safe accumulator of soft failures. drain() returns a
    snapshot and never clears.
    """

    def __init__(self, observer: Optional[Observer] = None) -> None:
        self._lock = threading.Lock()
        self._records: List[FailureRecord] = []
        self._observer = observer

    def record(self, stage: str, item_identifier: str, message: str) -> FailureRecord:
        rec = FailureRecord(stage=stage, item_identifier=str(item_identifier or ""), message=str(message))
        with self._lock:
            self._records.append(rec)
        if self._observer is not None:
            self._observer.on_event(
                PipelineEvent(stage=stage, item=rec.item_identifier, outcome=OUTCOME_FAILED, detail=rec.message)
            )
        return rec

    def drain(self) -> Tuple[FailureRecord, ...]:
        with self._lock:
            return tuple(self._records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
