"""
Fixed-size task pool with bounded admission and typed results
"""

import logging
import threading
import concurrent.futures
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class TaskResult:
    """Outcome of one unit of work: a value or the exception it raised"""
    key: str
    value: Any = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class TaskPool:
    """
    Runs at most ``size`` tasks at once

    ``submit`` blocks while ``size + queue_size`` tasks are admitted but not
    finished. Exceptions raised by a task are captured in its TaskResult and
    never affect sibling tasks. ``results`` waits for every submitted task
    and returns their results in submission order.
    """

    def __init__(self, size: int = 10, queue_size: Optional[int] = None, name: str = 'harvester'):
        if size < 1:
            raise ValueError('pool size must be at least 1')
        self.size = size
        self.queue_size = size if queue_size is None else queue_size
        self._admission = threading.BoundedSemaphore(self.size + self.queue_size)
        self._executor = ThreadPoolExecutor(max_workers=size, thread_name_prefix=name)
        self._futures: List[Future] = []

    def submit(self, key: str, fn: Callable[..., Any], *args, **kwargs) -> Future:
        """
        Admit a unit of work, blocking while the admission queue is full

        Args:
            key: Identifier reported back in the TaskResult
            fn: Callable to run
            *args, **kwargs: Arguments for fn

        Returns:
            Future resolving to a TaskResult
        """
        self._admission.acquire()
        try:
            future = self._executor.submit(self._run, key, fn, args, kwargs)
        except BaseException:
            self._admission.release()
            raise
        self._futures.append(future)
        return future

    def _run(self, key: str, fn: Callable[..., Any], args, kwargs) -> TaskResult:
        try:
            return TaskResult(key=key, value=fn(*args, **kwargs))
        except Exception as e:
            logger.debug('task %s failed: %s', key, e)
            return TaskResult(key=key, error=e)
        finally:
            self._admission.release()

    def results(self) -> List[TaskResult]:
        """Wait for all submitted tasks and return their results"""
        concurrent.futures.wait(self._futures)
        return [future.result() for future in self._futures]

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> 'TaskPool':
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown(wait=True)
        return False
