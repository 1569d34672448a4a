"""
Server side ordering of committed messages.

The sequencer hands out the next sequence number and commit timestamp but only
moves forward once the caller confirms that the row was committed, so an
aborted insert never burns a number.
"""

import logging
import time
from typing import Callable, Tuple

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Current wall clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000


class Sequencer:
    """
    Assigns strictly increasing sequence numbers and non-decreasing timestamps.

    Not thread safe on its own: callers hold the single writer lock across
    peek() and advance().
    """

    def __init__(self, last_sequence: int = 0, last_timestamp_ms: int = 0, clock: Callable[[], int] = now_ms):
        self._last_sequence = last_sequence
        self._last_timestamp_ms = last_timestamp_ms
        self._clock = clock

    @property
    def last_sequence(self) -> int:
        return self._last_sequence

    def peek(self) -> Tuple[int, int]:
        """
        Values the next commit would receive.

        Returns:
            Tuple of (sequence, timestamp_ms). The timestamp never goes below the
            previous one even if the wall clock steps backwards.
        """
        timestamp_ms = max(self._clock(), self._last_timestamp_ms)
        return self._last_sequence + 1, timestamp_ms

    def advance(self, sequence: int, timestamp_ms: int) -> None:
        """Record that `sequence` has been durably committed."""
        if sequence != self._last_sequence + 1:
            raise ValueError(
                f"sequence {sequence} does not follow {self._last_sequence}"
            )
        self._last_sequence = sequence
        self._last_timestamp_ms = timestamp_ms

    def assign(self, message) -> int:
        """Stamp `message` with the next sequence and timestamp and advance."""
        sequence, timestamp_ms = self.peek()
        message.sequence = sequence
        message.created_at = timestamp_ms
        self.advance(sequence, timestamp_ms)
        return sequence

    @classmethod
    def resume(cls, last_sequence: int, last_timestamp_ms: int) -> "Sequencer":
        """Continue numbering after the newest row found in the store."""
        logger.info(f"Sequencer resuming after sequence {last_sequence}")
        return cls(last_sequence=last_sequence, last_timestamp_ms=last_timestamp_ms)
