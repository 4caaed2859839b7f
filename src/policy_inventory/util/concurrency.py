from __future__ import annotations

import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

from .errors import RunAborted

T = TypeVar("T")
R = TypeVar("R")


def parallel_map_ordered(
    func: Callable[[T], R],
    items: Sequence[T] | Iterable[T],
    max_workers: int,
    *,
    abort: Optional[threading.Event] = None,
) -> List[R]:
    """
    Execute func over items in a thread pool and return results preserving the
    input order. Exceptions from workers are propagated; callers that want
    per-item failures to leave sibling work running must catch inside func.

    Uses a sliding window of futures so large iterables are not materialized.
    When abort is set, no further items are submitted and RunAborted is raised
    once in-flight work has been cancelled or drained.
    """
    if max_workers <= 1:
        out: List[R] = []
        for item in items:
            if abort is not None and abort.is_set():
                raise RunAborted("Aborted during parallel map")
            out.append(func(item))
        return out

    results: List[R] = []
    iterator = iter(items)
    inflight: Dict[Future[R], int] = {}
    pending: Dict[int, R] = {}
    next_index = 0
    submitted = 0

    def _submit_next() -> bool:
        nonlocal submitted
        if abort is not None and abort.is_set():
            return False
        try:
            item = next(iterator)
        except StopIteration:
            return False
        inflight[executor.submit(func, item)] = submitted
        submitted += 1
        return True

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        for _ in range(max_workers):
            if not _submit_next():
                break

        while inflight:
            done, _ = wait(inflight.keys(), return_when=FIRST_COMPLETED)
            for fut in done:
                idx = inflight.pop(fut)
                try:
                    pending[idx] = fut.result()
                except BaseException:
                    for pending_fut in inflight:
                        pending_fut.cancel()
                    raise
            for _ in range(len(done)):
                if not _submit_next():
                    break
            while next_index in pending:
                results.append(pending.pop(next_index))
                next_index += 1

    if abort is not None and abort.is_set():
        raise RunAborted("Aborted during parallel map")
    return results
