"""Fixed-size pool for CPU-bound post-processing of staged files.

Items are not pulled from a shared queue: slot s (1-based) of N owns
every item whose index i satisfies i % N == s - 1.  Slots share no
mutable state, so no locking is needed, and a failing item is logged
and skipped without affecting other items or the caller.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable, List, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def default_threads():
    return os.cpu_count() or 1


def partition(items: Sequence[T], slot: int, thread_count: int) -> List[T]:
    """Items owned by *slot* (1-based) out of *thread_count* slots."""
    if not 1 <= slot <= thread_count:
        raise ValueError(f"slot {slot} out of range 1..{thread_count}")
    return list(items[slot - 1::thread_count])


def _run_slot(fn, items, slot):
    for item in items:
        try:
            fn(item)
        except Exception as e:  # per-item failures never abort the run
            logger.debug("slot %d: %r failed: %s", slot, item, e)


def run_parallel(fn: Callable[[T], object], items: Sequence[T], thread_count: int) -> None:
    """Apply *fn* to every item across *thread_count* slots.

    Returns only once every slot has finished.
    """
    items = list(items)
    if not items:
        return
    thread_count = max(1, min(thread_count, len(items)))
    with ThreadPoolExecutor(max_workers=thread_count) as executor:
        futures = [
            executor.submit(_run_slot, fn, partition(items, slot, thread_count), slot)
            for slot in range(1, thread_count + 1)
        ]
        wait(futures)
