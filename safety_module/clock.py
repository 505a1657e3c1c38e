"""
Block timestamp source shared by all engines.
"""
import time
from typing import Optional


class BlockClock:
    """
    Monotonic block timestamp.

    Engines read `now()` at the top of each call; a call never observes
    two different timestamps.
    """

    def __init__(self, timestamp: Optional[int] = None):
        self._timestamp = int(time.time()) if timestamp is None else int(timestamp)

    def now(self) -> int:
        return self._timestamp

    def advance(self, seconds: int) -> int:
        """Move the clock forward and return the new timestamp."""
        if seconds < 0:
            raise ValueError("Block time cannot move backwards")
        self._timestamp += int(seconds)
        return self._timestamp

    def set_time(self, timestamp: int) -> int:
        if timestamp < self._timestamp:
            raise ValueError(
                f"Block time cannot move backwards: {timestamp} < {self._timestamp}"
            )
        self._timestamp = int(timestamp)
        return self._timestamp

    def __repr__(self) -> str:
        return f"BlockClock(timestamp={self._timestamp})"
