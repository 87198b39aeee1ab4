"""Worker pool partitioning, completion barrier and failure isolation."""
from __future__ import annotations

import threading
import time

import pytest

from worker_pool import partition, run_parallel


@pytest.mark.parametrize("count,threads", [(10, 3), (7, 7), (3, 8), (0, 4), (100, 1)])
def test_partition_is_disjoint_and_complete(count, threads):
    items = list(range(count))
    slots = [partition(items, s, threads) for s in range(1, threads + 1)]
    flat = [i for slot in slots for i in slot]
    assert sorted(flat) == items
    assert len(flat) == len(set(flat))


def test_partition_round_robin():
    assert partition(list("abcdefg"), 1, 3) == ["a", "d", "g"]
    assert partition(list("abcdefg"), 3, 3) == ["c", "f"]


def test_partition_slot_range():
    with pytest.raises(ValueError):
        partition([1, 2], 0, 2)
    with pytest.raises(ValueError):
        partition([1, 2], 3, 2)


def test_every_item_processed_exactly_once():
    seen = []
    lock = threading.Lock()

    def work(item):
        with lock:
            seen.append(item)

    run_parallel(work, range(50), 4)
    assert sorted(seen) == list(range(50))


def test_waits_for_slowest_slot():
    done = []

    def work(item):
        if item == 0:
            time.sleep(0.3)
        done.append(item)

    run_parallel(work, [0, 1, 2, 3], 4)
    assert sorted(done) == [0, 1, 2, 3]


def test_failing_item_does_not_stop_others():
    done = []

    def work(item):
        if item % 3 == 0:
            raise RuntimeError(f"boom {item}")
        done.append(item)

    run_parallel(work, range(9), 2)
    assert sorted(done) == [1, 2, 4, 5, 7, 8]


def test_more_threads_than_items_and_empty_input():
    done = []
    run_parallel(done.append, ["only"], 16)
    assert done == ["only"]
    run_parallel(done.append, [], 4)
    assert done == ["only"]
