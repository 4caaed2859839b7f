from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol

from ..logging import get_logger

LOG = get_logger(__name__)

# Outcomes emitted by pipeline components.
OUTCOME_START = "start"
OUTCOME_OK = "ok"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"
OUTCOME_COMPLETE = "complete"


@dataclass(frozen=True)
class PipelineEvent:
    stage: str
    item: str
    outcome: str
    detail: str = ""
    count: Optional[int] = None


class Observer(Protocol):
    def on_event(self, event: PipelineEvent) -> None:
        ...


class NullObserver:
    def on_event(self, event: PipelineEvent) -> None:
        return None


class LoggingObserver:
    """
    Writes pipeline events as structured log records. Per-item successes are
    DEBUG; failures are WARNING; stage boundaries are INFO.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or LOG

    def on_event(self, event: PipelineEvent) -> None:
        if event.outcome == OUTCOME_FAILED:
            level = logging.WARNING
        elif event.outcome in (OUTCOME_START, OUTCOME_COMPLETE):
            level = logging.INFO
        else:
            level = logging.DEBUG
        message = f"{event.stage} {event.outcome}"
        if event.item:
            message = f"{message}: {event.item}"
        extra = {"step": event.stage, "phase": event.outcome, "item": event.item or None, "detail": event.detail or None}
        if event.count is not None:
            extra["count"] = event.count
        self._logger.log(level, message, extra=extra)


class CompositeObserver:
    def __init__(self, observers: Iterable[Observer]) -> None:
        self._observers: List[Observer] = list(observers)

    def on_event(self, event: PipelineEvent) -> None:
        for obs in self._observers:
            obs.on_event(event)
