"""
cfacheck.scheduling
===================

Bounded worker pool and global deadline.

Every parallel phase of the analyzer has the same shape: a list of work
items, one private result *slot* per item, each slot written exactly once
by the worker that handled the item.  :meth:`WorkerPool.map_slots` returns
only after every submitted task has finished, which is the barrier that
separates propagation rounds.

A :class:`Deadline` is checked by each task before it starts; tasks that
find it expired leave their slot empty, and the caller decides what an
empty slot means (always "unverifiable", never "safe").
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, Generic, List, Optional, Sequence, TypeVar

__all__ = ["Deadline", "SlotResults", "WorkerPool"]

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class Deadline:
    """A point in monotonic time after which the run must stop."""

    __slots__ = ("_expires_at",)

    def __init__(self, seconds: Optional[float] = None) -> None:
        self._expires_at: Optional[float] = (
            None if seconds is None else time.monotonic() + seconds
        )

    @classmethod
    def never(cls) -> "Deadline":
        return cls(None)

    def expired(self) -> bool:
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    def __repr__(self) -> str:
        remaining = self.remaining()
        if remaining is None:
            return "Deadline(never)"
        return f"Deadline(remaining={remaining:.3f}s)"


@dataclass
class SlotResults(Generic[R]):
    """Outcome of one :meth:`WorkerPool.map_slots` call.

    Attributes
    ----------
    values : list
        One slot per item; ``None`` where the task was skipped or failed.
    failures : dict[int, BaseException]
        Item index -> exception raised by the task.
    skipped : list[int]
        Indices whose task found the deadline expired.
    """

    values: List[Optional[R]]
    failures: Dict[int, BaseException] = field(default_factory=dict)
    skipped: List[int] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failures and not self.skipped


class WorkerPool:
    """A bounded pool of worker threads.

    Use as a context manager so the threads are released at the end of the
    run::

        with WorkerPool(4) as pool:
            results = pool.map_slots(analyse, symbols, deadline)
    """

    def __init__(self, workers: int = 4) -> None:
        if workers < 1:
            raise ValueError(f"workers must be >= 1, got {workers}")
        self.workers = workers
        self._executor: Optional[ThreadPoolExecutor] = None

    def __enter__(self) -> "WorkerPool":
        self._executor = ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix="cfacheck"
        )
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def map_slots(
        self,
        fn: Callable[[T], R],
        items: Sequence[T],
        deadline: Optional[Deadline] = None,
    ) -> SlotResults[R]:
        """Apply *fn* to every item, one private result slot per item.

        Returns once every task has finished.
        """
        deadline = deadline or Deadline.never()
        values: List[Optional[R]] = [None] * len(items)
        skipped: List[bool] = [False] * len(items)

        def _task(index: int, item: T) -> None:
            if deadline.expired():
                skipped[index] = True
                return
            values[index] = fn(item)

        executor = self._executor
        owned = executor is None
        if owned:
            executor = ThreadPoolExecutor(max_workers=self.workers)
        try:
            futures: List[Future] = [
                executor.submit(_task, index, item) for index, item in enumerate(items)
            ]
            failures: Dict[int, BaseException] = {}
            for index, future in enumerate(futures):
                exc = future.exception()
                if exc is not None:
                    logger.warning("worker failed on item %d: %s", index, exc)
                    failures[index] = exc
        finally:
            if owned:
                executor.shutdown(wait=True)

        return SlotResults(
            values=values,
            failures=failures,
            skipped=[i for i, flag in enumerate(skipped) if flag],
        )
