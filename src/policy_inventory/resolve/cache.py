from __future__ import annotations

import threading
from enum import Enum
from typing import Dict, Optional, Protocol, Tuple

from ..logging import get_logger
from ..pipeline.events import OUTCOME_OK, Observer, PipelineEvent
from ..pipeline.failures import STAGE_RESOLUTION, FailureCollector

LOG = get_logger(__name__)

DEFAULT_SCOPE_TAG_NAME = "Default"
UNRESOLVED = "(unresolved)"


class IdKind(str, Enum):
    GROUP = "group"
    ASSIGNMENT_FILTER = "assignmentFilter"
    SCOPE_TAG = "scopeTag"
    GPO = "gpo"
    WMI_FILTER = "wmiFilter"

    @property
    def is_scope_tag(self) -> bool:
        return self in SCOPE_TAG_KINDS


SCOPE_TAG_KINDS = frozenset({IdKind.SCOPE_TAG})


class IdLookup(Protocol):
    """Returns a display name for (kind, raw_id) or raises."""

    def lookup(self, kind: IdKind, raw_id: str) -> Optional[str]:
        ...


class _Slot:
    __slots__ = ("done", "value")

    def __init__(self) -> None:
        self.done = threading.Event()
        self.value = UNRESOLVED


class ReferenceResolverCache:
    """
    Per-run memo of (IdKind, raw_id) -> display name.

    At most one lookup is performed per key for the lifetime of the cache,
    including under concurrent callers: the first caller to miss owns the
    lookup and later callers wait for its result. Failed lookups are cached as
    UNRESOLVED and never retried. Entries are never evicted.
    """

    def __init__(
        self,
        lookup: IdLookup,
        *,
        failures: Optional[FailureCollector] = None,
        observer: Optional[Observer] = None,
    ) -> None:
        self._lookup = lookup
        self._failures = failures
        self._observer = observer
        self._lock = threading.Lock()
        self._slots: Dict[IdKind, Dict[str, _Slot]] = {}
        self._lookups = 0
        self._hits = 0

    @property
    def lookup_count(self) -> int:
        return self._lookups

    @property
    def hit_count(self) -> int:
        return self._hits

    def resolve(self, kind: IdKind, raw_id: Optional[str]) -> str:
        if raw_id is None:
            return ""
        key = str(raw_id).strip()
        if not key:
            return ""
        if kind.is_scope_tag and key == "0":
            return DEFAULT_SCOPE_TAG_NAME

        with self._lock:
            by_kind = self._slots.setdefault(kind, {})
            slot = by_kind.get(key)
            owner = slot is None
            if owner:
                slot = _Slot()
                by_kind[key] = slot
                self._lookups += 1
            else:
                self._hits += 1

        if not owner:
            slot.done.wait()
            return slot.value

        try:
            slot.value = self._perform(kind, key)
        finally:
            slot.done.set()
        return slot.value

    def _perform(self, kind: IdKind, key: str) -> str:
        try:
            name = self._lookup.lookup(kind, key)
        except Exception as e:
            self._fail(kind, key, str(e) or e.__class__.__name__)
            return UNRESOLVED
        if name is None or not str(name).strip():
            self._fail(kind, key, "lookup returned no display name")
            return UNRESOLVED
        if self._observer is not None:
            self._observer.on_event(PipelineEvent(stage=STAGE_RESOLUTION, item=f"{kind.value}:{key}", outcome=OUTCOME_OK))
        return str(name)

    def _fail(self, kind: IdKind, key: str, message: str) -> None:
        LOG.debug("Reference lookup failed", extra={"step": "resolve", "phase": "error", "kind": kind.value, "id": key})
        if self._failures is not None:
            self._failures.record(STAGE_RESOLUTION, f"{kind.value}:{key}", message)

    def contains(self, kind: IdKind, raw_id: str) -> bool:
        with self._lock:
            return raw_id in self._slots.get(kind, {})

    def snapshot(self) -> Dict[str, Dict[str, str]]:
        """
        Completed entries per kind, for debug output.
        """
        out: Dict[str, Dict[str, str]] = {}
        with self._lock:
            items: Tuple[Tuple[IdKind, Dict[str, _Slot]], ...] = tuple(self._slots.items())
            for kind, slots in items:
                out[kind.value] = {k: s.value for k, s in sorted(slots.items()) if s.done.is_set()}
        return dict(sorted(out.items()))
