"""
Deferred execution capabilities.

Queries and stores never call listeners or observers directly; they hand
each unit of work to an Executor chosen by the host application. The only
contract is "run later, in submission order".
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Deque, Optional

Task = Callable[[], None]


class Executor(ABC):
    """Runs submitted callables in the order they were submitted."""

    @abstractmethod
    def submit(self, task: Task) -> None:
        """
        Schedule a task.

        Args:
            task: Zero-argument callable
        """
        pass

    def shutdown(self) -> None:
        """Release any resources. The default does nothing."""
        pass


class ImmediateExecutor(Executor):
    """
    Runs every task inline on the submitting thread.

    Exceptions raised by a task propagate to the submitter.
    """

    def submit(self, task: Task) -> None:
        task()


class ThreadExecutor(Executor):
    """
    Runs tasks on a single background worker thread.

    One worker keeps tasks strictly ordered. Exceptions raised by a task
    are logged and do not stop later tasks.
    """

    def __init__(self, name: str = "geotrack", logger: Optional[logging.Logger] = None):
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)
        self._logger = logger if logger is not None else logging.getLogger(__name__)

    def submit(self, task: Task) -> None:
        future = self._pool.submit(task)
        future.add_done_callback(self._report_failure)

    def _report_failure(self, future: Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            self._logger.error("Task raised an exception", exc_info=error)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()
        return False


class QueuedExecutor(Executor):
    """
    Collects tasks until the host drains them.

    Suited to event loops that marshal work onto one thread (call
    run_pending() from the loop) and to tests that need to control exactly
    when deferred work happens.
    """

    def __init__(self):
        self._tasks: Deque[Task] = deque()
        self._lock = threading.Lock()

    def submit(self, task: Task) -> None:
        with self._lock:
            self._tasks.append(task)

    def pending(self) -> int:
        """Number of tasks waiting to run."""
        with self._lock:
            return len(self._tasks)

    def run_next(self) -> bool:
        """
        Run the oldest waiting task.

        Returns:
            True if a task ran, False if the queue was empty
        """
        with self._lock:
            if not self._tasks:
                return False
            task = self._tasks.popleft()
        task()
        return True

    def run_pending(self) -> int:
        """
        Run tasks until the queue is empty, including tasks submitted while
        draining.

        Returns:
            Number of tasks run
        """
        count = 0
        while self.run_next():
            count += 1
        return count


class Outbox:
    """
    FIFO hand-off from a critical section to an Executor.

    Producers put() tasks while holding their own lock, then call flush()
    after releasing it. Only one thread drains at a time; a task that
    produces more work (directly or through a re-entrant call) has it
    drained by the same loop, so submission order always matches put()
    order.
    """

    def __init__(self, executor: Executor):
        self._executor = executor
        self._tasks: Deque[Task] = deque()
        self._lock = threading.Lock()
        self._draining = False

    def put(self, task: Task) -> None:
        with self._lock:
            self._tasks.append(task)

    def flush(self) -> None:
        """Submit every queued task to the executor, in order."""
        with self._lock:
            if self._draining:
                return
            self._draining = True

        try:
            while True:
                with self._lock:
                    if not self._tasks:
                        self._draining = False
                        return
                    task = self._tasks.popleft()
                self._executor.submit(task)
        except BaseException:
            with self._lock:
                self._draining = False
            raise
