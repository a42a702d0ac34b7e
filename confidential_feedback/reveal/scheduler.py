"""Delayed dispatch of oracle callbacks.

A background daemon thread sleeps until the next callback is due and hands
it to a shared :class:`~concurrent.futures.ThreadPoolExecutor`, so the
thread that requested a reveal never blocks on it.

• schedule() – run a callable after a delay and return a task id.
• cancel() – drop a task that has not been dispatched yet.
• shutdown() – stop the dispatcher and drop tasks that have not run.
"""
from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Tuple

logger = logging.getLogger(__name__)


class _PendingCallback:
    """Heap entry for a scheduled callback."""

    __slots__ = ("run_at", "task_id", "callback", "args", "kwargs", "cancelled")

    def __init__(
        self,
        run_at: float,
        task_id: int,
        callback: Callable[..., Any],
        args: Tuple[Any, ...],
        kwargs: Dict[str, Any],
    ) -> None:
        self.run_at = run_at
        self.task_id = task_id
        self.callback = callback
        self.args = args
        self.kwargs = kwargs
        self.cancelled = False

    # Heap ordering by run_at then task_id keeps FIFO for equal deadlines.
    def __lt__(self, other: "_PendingCallback") -> bool:
        return (self.run_at, self.task_id) < (other.run_at, other.task_id)


class CallbackScheduler:
    """Thread-safe scheduler for delayed callbacks."""

    def __init__(self, executor: ThreadPoolExecutor) -> None:
        self._executor = executor
        self._cond = threading.Condition()
        self._queue: list[_PendingCallback] = []
        self._by_id: Dict[int, _PendingCallback] = {}
        self._task_ids = itertools.count(1)
        self._running = True
        self._thread = threading.Thread(
            target=self._run, daemon=True, name="callback-scheduler"
        )
        self._thread.start()
        logger.info("Callback scheduler started.")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def schedule(
        self,
        delay_seconds: float,
        callback: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> int:
        """Run *callback* after *delay_seconds*; returns a task id."""
        if delay_seconds < 0:
            raise ValueError("delay_seconds must be non-negative")
        with self._cond:
            if not self._running:
                raise RuntimeError("Scheduler has been shut down.")
            task_id = next(self._task_ids)
            item = _PendingCallback(time.monotonic() + delay_seconds, task_id, callback, args, kwargs)
            heapq.heappush(self._queue, item)
            self._by_id[task_id] = item
            self._cond.notify()
        return task_id

    def cancel(self, task_id: int) -> bool:
        """Cancel *task_id*; returns *False* if it already ran or is unknown."""
        with self._cond:
            item = self._by_id.pop(task_id, None)
            if item is None:
                return False
            item.cancelled = True
            self._cond.notify()
            return True

    def pending_count(self) -> int:
        with self._cond:
            return len(self._by_id)

    def shutdown(self) -> None:
        """Stop the dispatcher thread; tasks that have not run are dropped."""
        with self._cond:
            self._running = False
            dropped = len(self._by_id)
            self._by_id.clear()
            self._queue.clear()
            self._cond.notify()
        self._thread.join()
        logger.info("Callback scheduler shut down (%d dropped).", dropped)

    # ------------------------------------------------------------------
    # Internal loop
    # ------------------------------------------------------------------
    def _run(self) -> None:
        while True:
            with self._cond:
                while self._running and not self._queue:
                    self._cond.wait()
                if not self._running:
                    break
                head = self._queue[0]
                if head.cancelled:
                    heapq.heappop(self._queue)
                    continue
                delay = head.run_at - time.monotonic()
                if delay > 0:
                    self._cond.wait(timeout=delay)
                    continue
                heapq.heappop(self._queue)
                self._by_id.pop(head.task_id, None)
            # Submit outside the lock to avoid deadlocks.
            self._dispatch(head)

    def _dispatch(self, item: _PendingCallback) -> None:
        try:
            self._executor.submit(item.callback, *item.args, **item.kwargs)
        except Exception:  # pragma: no cover – log and keep going
            logger.exception("Error submitting scheduled callback %s", item.task_id)
