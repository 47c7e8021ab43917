from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from typing import Callable, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class PipelineCancelled(RuntimeError):
    pass


class TileExecutor:
    """Map work over tiles on a thread pool, then wait for all of them.

    The kernels handed to :meth:`map` release the GIL and write disjoint
    regions of a shared output, so tiles need no locking. ``map`` is the
    only suspension point: it returns once every tile has finished.
    """

    def __init__(self, max_workers: Optional[int] = None):
        self._max_workers = max_workers
        self._pool: Optional[ThreadPoolExecutor] = None

    def __enter__(self) -> "TileExecutor":
        self._ensure_pool()
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()

    def _ensure_pool(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=self._max_workers, thread_name_prefix="siftscale"
            )
        return self._pool

    def shutdown(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None

    def map(
        self,
        fn: Callable[[T], R],
        items: Sequence[T],
        *,
        cancel: Optional[threading.Event] = None,
        on_done: Optional[Callable[[T, R], None]] = None,
    ) -> list[R]:
        """Run ``fn`` on every item and return results in item order.

        ``cancel`` is checked before each item starts; if it is set the
        remaining items are skipped and :class:`PipelineCancelled` is raised
        once the running ones have drained. ``on_done`` is called on the
        calling thread, in completion order.
        """
        pool = self._ensure_pool()

        def run(item: T) -> R:
            if cancel is not None and cancel.is_set():
                raise PipelineCancelled("cancelled before tile started")
            return fn(item)

        futures: dict[Future, int] = {
            pool.submit(run, item): i for i, item in enumerate(items)
        }
        results: list = [None] * len(futures)
        pending = set(futures)
        while pending:
            done, pending = wait(pending, return_when=FIRST_EXCEPTION)
            for fut in done:
                exc = fut.exception()
                if exc is not None:
                    if isinstance(exc, PipelineCancelled):
                        logger.debug("cancelled with %d tiles pending", len(pending))
                    for other in pending:
                        other.cancel()
                    wait(pending)
                    raise exc
                i = futures[fut]
                results[i] = fut.result()
                if on_done is not None:
                    on_done(items[i], results[i])
        return results


def check_cancelled(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise PipelineCancelled("cancelled between stages")


@contextmanager
def borrowed(executor: Optional[TileExecutor], max_workers: Optional[int] = None):
    """Yield ``executor``, or a short-lived one when the caller passed none."""
    if executor is not None:
        yield executor
        return
    own = TileExecutor(max_workers)
    try:
        yield own
    finally:
        own.shutdown()
