from __future__ import annotations

import threading
import time

import pytest

from policy_inventory.util.concurrency import parallel_map_ordered
from policy_inventory.util.errors import RunAborted


def test_parallel_map_ordered_preserves_order() -> None:
    def slow_double(x: int) -> int:
        time.sleep(0.001 * (10 - x))
        return x * 2

    assert parallel_map_ordered(slow_double, range(10), max_workers=4) == [x * 2 for x in range(10)]


def test_parallel_map_ordered_sequential_path_consumes_generator() -> None:
    consumed: list[int] = []

    def gen():
        for i in range(5):
            consumed.append(i)
            yield i

    assert parallel_map_ordered(lambda x: x + 1, gen(), max_workers=1) == [1, 2, 3, 4, 5]
    assert consumed == [0, 1, 2, 3, 4]


def test_parallel_map_ordered_propagates_worker_errors() -> None:
    def boom(x: int) -> int:
        if x == 3:
            raise KeyError("bad item")
        return x

    with pytest.raises(KeyError):
        parallel_map_ordered(boom, range(6), max_workers=2)


def test_parallel_map_ordered_stops_submitting_on_abort() -> None:
    abort = threading.Event()
    started: list[int] = []
    lock = threading.Lock()

    def work(x: int) -> int:
        with lock:
            started.append(x)
        if x == 1:
            abort.set()
        return x

    with pytest.raises(RunAborted):
        parallel_map_ordered(work, range(100), max_workers=2, abort=abort)

    assert len(started) < 100


def test_parallel_map_ordered_abort_before_start() -> None:
    abort = threading.Event()
    abort.set()
    calls: list[int] = []

    with pytest.raises(RunAborted):
        parallel_map_ordered(calls.append, [1, 2], max_workers=1, abort=abort)

    assert calls == []
