"""
Per-operation deadlines
"""

import time
from typing import Optional

from .errors import OperationTimeoutError


class Deadline:
    """A fixed point in time after which an operation must give up"""

    def __init__(self, seconds: float, operation: str = 'operation'):
        self.seconds = seconds
        self.operation = operation
        self._expires_at = time.monotonic() + seconds

    def remaining(self) -> float:
        """Seconds left, never negative"""
        return max(self._expires_at - time.monotonic(), 0.0)

    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def check(self, target: Optional[str] = None):
        """Raise OperationTimeoutError once the deadline has passed"""
        if self.expired():
            raise OperationTimeoutError(
                f'{self.operation} exceeded its {self.seconds:g}s deadline'
                + (f' ({target})' if target else ''),
                target=target,
            )

    def timeout(self, cap: float, target: Optional[str] = None) -> float:
        """
        Timeout for a single blocking call

        Args:
            cap: Upper bound for the call (e.g. the request timeout)
            target: Name used in the error if the deadline already passed

        Returns:
            min(cap, remaining seconds)
        """
        self.check(target)
        return min(cap, self.remaining())
