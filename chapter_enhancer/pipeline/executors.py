"""
Job execution strategies.

Separates "what a job does" from "where it runs". The pipeline hands each
job run to an executor:

    ThreadedJobExecutor  one pool thread per running job (production)
    InlineJobExecutor    runs the job on the caller's thread (tests, CLI)

Both return a Future, so callers never need to know which one is in use.
Swapping the inline executor in makes tests deterministic: submit() only
returns once the job has completed or paused.
"""

import os
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable


class JobExecutor(ABC):
    """
    Abstract strategy for running job functions.

    Attributes:
        max_workers: Number of jobs that can run at the same time.
    """

    max_workers: int

    @abstractmethod
    def submit(self, fn: Callable, *args) -> Future:
        """Run fn(*args) and return a Future for its result."""

    @abstractmethod
    def shutdown(self, wait: bool = True, cancel_futures: bool = False) -> None:
        """Release resources; optionally wait for running jobs."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown(wait=True)
        return False


class ThreadedJobExecutor(JobExecutor):
    """
    Thread pool backed executor.

    Jobs spend nearly all their time waiting on HTTP responses or rate-limit
    sleeps, so threads are enough to keep several chapters in flight.

    Args:
        max_workers: Concurrent jobs. Defaults to min(cpu_count, 4).
    """

    def __init__(self, max_workers: int | None = None):
        if max_workers is None:
            max_workers = min(os.cpu_count() or 4, 4)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="enhancer-job")
        self.max_workers = max_workers

    def submit(self, fn: Callable, *args) -> Future:
        return self._executor.submit(fn, *args)

    def shutdown(self, wait: bool = True, cancel_futures: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=cancel_futures)


class InlineJobExecutor(JobExecutor):
    """
    Runs each job synchronously inside submit().

    Exceptions are captured in the returned Future, as a thread pool would.
    """

    def __init__(self):
        self.max_workers = 1

    def submit(self, fn: Callable, *args) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args))
        except Exception as e:
            future.set_exception(e)
        return future

    def shutdown(self, wait: bool = True, cancel_futures: bool = False) -> None:
        """Nothing to release."""
