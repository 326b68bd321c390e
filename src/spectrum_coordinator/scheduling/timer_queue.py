"""
Timer Queue - Delayed, retried and periodic tasks on one heap.

Retries are explicit: a bounded-attempt task returns True when finished or
False to be re-enqueued after a computed backoff delay, until its attempt
budget runs out and its exhaustion callback fires. Cancelling a key removes
its tasks from the heap; a task that is mid-run when cancelled finishes its
current call but is never re-enqueued.
"""

import heapq
import itertools
import logging
import time
from concurrent.futures import Executor
from dataclasses import dataclass, field
from threading import Condition, Event
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

TaskFn = Callable[[int], bool]


def exponential_backoff(base_s: float, max_s: float) -> Callable[[int], float]:
    """Delay before attempt n+1 after attempt n failed: base * 2^(n-1), capped."""
    def delay(attempt: int) -> float:
        return min(max_s, base_s * (2 ** max(0, attempt - 1)))
    return delay


@dataclass(order=True)
class ScheduledTask:
    due: float
    seq: int
    key: str = field(compare=False)
    fn: TaskFn = field(compare=False, repr=False)
    attempt: int = field(default=1, compare=False)
    max_attempts: Optional[int] = field(default=None, compare=False)
    backoff: Optional[Callable[[int], float]] = field(default=None, compare=False, repr=False)
    on_exhausted: Optional[Callable[[], None]] = field(default=None, compare=False, repr=False)
    interval: Optional[float] = field(default=None, compare=False)
    cancelled: bool = field(default=False, compare=False)


class TimerQueue:
    """
    Heap of scheduled tasks keyed by name.

    Tests drive it with run_due(); the coordinator runs run() on a worker
    thread, optionally handing task bodies to an executor.
    """

    def __init__(self, clock: Callable[[], float] = time.time, executor: Optional[Executor] = None):
        self._clock = clock
        self._executor = executor
        self._cond = Condition()
        self._heap: List[ScheduledTask] = []
        self._running: Dict[int, ScheduledTask] = {}
        self._seq = itertools.count()

    def use_executor(self, executor: Optional[Executor]) -> None:
        """Run task bodies on executor from now on (None runs them inline)."""
        self._executor = executor

    def _push(self, task: ScheduledTask) -> None:
        with self._cond:
            heapq.heappush(self._heap, task)
            self._cond.notify()

    def schedule(self, key: str, fn: Callable[[], None], delay: float = 0.0) -> ScheduledTask:
        """Run fn once after delay seconds."""
        def once(_attempt: int) -> bool:
            fn()
            return True

        task = ScheduledTask(due=self._clock() + delay, seq=next(self._seq), key=key, fn=once)
        self._push(task)
        return task

    def schedule_retry(
        self,
        key: str,
        fn: TaskFn,
        max_attempts: int,
        backoff: Callable[[int], float],
        on_exhausted: Optional[Callable[[], None]] = None,
        delay: float = 0.0,
    ) -> ScheduledTask:
        """
        Run fn(attempt) until it returns True, at most max_attempts times.

        After a failed attempt n the task is re-enqueued backoff(n) seconds
        later; once the budget is spent on_exhausted is called.
        """
        task = ScheduledTask(
            due=self._clock() + delay,
            seq=next(self._seq),
            key=key,
            fn=fn,
            max_attempts=max_attempts,
            backoff=backoff,
            on_exhausted=on_exhausted,
        )
        self._push(task)
        return task

    def schedule_periodic(self, key: str, fn: Callable[[], None], interval: float,
                          delay: Optional[float] = None) -> ScheduledTask:
        """Run fn every interval seconds until cancelled."""
        def tick(_attempt: int) -> bool:
            fn()
            return True

        task = ScheduledTask(
            due=self._clock() + (interval if delay is None else delay),
            seq=next(self._seq),
            key=key,
            fn=tick,
            interval=interval,
        )
        self._push(task)
        return task

    def cancel(self, key: str) -> int:
        """
        Remove every task with this key.

        Returns:
            Number of queued tasks removed
        """
        with self._cond:
            before = len(self._heap)
            for task in self._heap:
                if task.key == key:
                    task.cancelled = True
            self._heap = [t for t in self._heap if t.key != key]
            heapq.heapify(self._heap)
            for task in self._running.values():
                if task.key == key:
                    task.cancelled = True
            removed = before - len(self._heap)
        if removed:
            logger.debug(f"Cancelled {removed} queued task(s) for {key}")
        return removed

    def pending(self, key: str) -> bool:
        """True if a task with this key is queued or running."""
        with self._cond:
            return (any(t.key == key for t in self._heap)
                    or any(t.key == key and not t.cancelled for t in self._running.values()))

    def next_due(self) -> Optional[float]:
        with self._cond:
            return self._heap[0].due if self._heap else None

    def __len__(self) -> int:
        with self._cond:
            return len(self._heap)

    def run_due(self, now: Optional[float] = None) -> int:
        """
        Run every task due at or before now.

        Tasks re-enqueued during this call with a due time <= now run too.

        Returns:
            Number of task executions
        """
        now = self._clock() if now is None else now
        executed = 0
        while True:
            with self._cond:
                if not self._heap or self._heap[0].due > now:
                    return executed
                task = heapq.heappop(self._heap)
                self._running[id(task)] = task
            if self._executor is not None:
                self._executor.submit(self._execute, task)
            else:
                self._execute(task)
            executed += 1

    def _execute(self, task: ScheduledTask) -> None:
        try:
            try:
                done = task.fn(task.attempt)
            except Exception:
                logger.exception(f"Task {task.key} failed on attempt {task.attempt}")
                done = False

            if task.cancelled:
                return
            if task.interval is not None:
                task.due = self._clock() + task.interval
                task.seq = next(self._seq)
                self._push(task)
            elif done:
                return
            elif task.max_attempts is not None and task.attempt >= task.max_attempts:
                logger.warning(f"Task {task.key} exhausted {task.max_attempts} attempts")
                if task.on_exhausted is not None:
                    try:
                        task.on_exhausted()
                    except Exception:
                        logger.exception(f"Exhaustion handler for {task.key} failed")
            elif task.max_attempts is not None:
                delay = task.backoff(task.attempt) if task.backoff else 0.0
                task.attempt += 1
                task.due = self._clock() + delay
                task.seq = next(self._seq)
                logger.debug(f"Task {task.key}: attempt {task.attempt} in {delay:.1f}s")
                self._push(task)
        finally:
            with self._cond:
                self._running.pop(id(task), None)

    def wake(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def run(self, stop: Event, max_wait_s: float = 1.0) -> None:
        """Worker loop: sleep until the next due task (or wake()), run it."""
        logger.info("Timer queue worker started")
        while not stop.is_set():
            with self._cond:
                due = self.next_due()
                wait = max_wait_s if due is None else min(max_wait_s, max(0.0, due - self._clock()))
                if wait > 0:
                    self._cond.wait(timeout=wait)
            if stop.is_set():
                break
            self.run_due()
        logger.info("Timer queue worker stopped")
