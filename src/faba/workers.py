"""Bounded thread pool and cooperative cancellation for the sifting passes.

A :class:`WorkerPool` is built once per run and handed to each
:class:`~faba.sifter.Sifter`; there is no process-wide pool. Work items are
submitted lazily with a bounded number in flight so that queuing millions of
single-position fetches does not materialise millions of futures.
"""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Iterable, Iterator, Optional, TypeVar

from tqdm import tqdm

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def resolve_threads(requested: Optional[int] = None) -> int:
    """Available hardware parallelism, capped by ``requested`` when given."""
    available = os.cpu_count() or 1
    if requested is None:
        return available
    if requested <= 0:
        raise ValueError(f"threads must be > 0, got {requested}")
    return min(available, requested)


class CancellationToken:
    """Set once to ask running passes to stop between work items."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class TaskOutcome(Generic[T, R]):
    """Result of one work item: exactly one of ``result``/``error`` is meaningful
    unless ``skipped`` is set (the item never ran because of cancellation)."""

    item: T
    result: Optional[R] = None
    error: Optional[BaseException] = None
    skipped: bool = False


class WorkerPool:
    """Fixed-size thread pool shared by the passes of one run."""

    def __init__(
        self,
        threads: Optional[int] = None,
        *,
        progress: bool = False,
        max_in_flight: Optional[int] = None,
    ) -> None:
        self.size = resolve_threads(threads)
        self.progress = progress
        self.max_in_flight = max_in_flight or self.size * 4
        self._executor = ThreadPoolExecutor(max_workers=self.size, thread_name_prefix="faba")
        logger.debug("Worker pool with %d threads", self.size)

    def run(
        self,
        fn: Callable[[T], R],
        items: Iterable[T],
        *,
        cancel: Optional[CancellationToken] = None,
        desc: Optional[str] = None,
        total: Optional[int] = None,
        unit: str = "block",
    ) -> Iterator[TaskOutcome[T, R]]:
        """Apply ``fn`` to every item, yielding outcomes in completion order.

        Exceptions raised by ``fn`` are captured in the outcome, never raised.
        Once ``cancel`` is set, items not yet started come back as skipped.
        """

        def _guarded(item: T) -> TaskOutcome[T, R]:
            if cancel is not None and cancel.cancelled:
                return TaskOutcome(item=item, skipped=True)
            try:
                return TaskOutcome(item=item, result=fn(item))
            except Exception as e:
                return TaskOutcome(item=item, error=e)

        pbar = tqdm(total=total, desc=desc, unit=unit, disable=not self.progress, leave=False)
        pending: Dict[Future, T] = {}
        it = iter(items)
        exhausted = False
        try:
            while True:
                while not exhausted and len(pending) < self.max_in_flight:
                    try:
                        item = next(it)
                    except StopIteration:
                        exhausted = True
                        break
                    if cancel is not None and cancel.cancelled:
                        pending[self._skip(item)] = item
                    else:
                        pending[self._executor.submit(_guarded, item)] = item
                if not pending:
                    break
                done, _ = wait(pending, return_when=FIRST_COMPLETED)
                for fut in done:
                    pending.pop(fut)
                    pbar.update(1)
                    yield fut.result()
        finally:
            for fut in pending:
                fut.cancel()
            pbar.close()

    @staticmethod
    def _skip(item: T) -> Future:
        fut: Future = Future()
        fut.set_result(TaskOutcome(item=item, skipped=True))
        return fut

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
