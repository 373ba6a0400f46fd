"""Session deadline shared by every blocking operation of the client."""

import logging
import time
from collections.abc import Callable

from ndstream.shared.exceptions import StreamError

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class Deadline:
    """An optional absolute point in wall-clock time after which the session stops.

    The deadline is expressed in epoch seconds so callers can derive it from
    ``time.time()``. ``None`` means the session may run forever.
    """

    def __init__(self, at: float | None = None, clock: Clock = time.time) -> None:
        self._at = at
        self._clock = clock

    @property
    def at(self) -> float | None:
        return self._at

    @property
    def is_set(self) -> bool:
        return self._at is not None

    def set(self, at: float | None) -> None:
        self._at = at

    def now(self) -> float:
        return self._clock()

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None when no deadline is set."""
        if self._at is None:
            return None
        return self._at - self._clock()

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def remaining_timeout(self, requested: float) -> float:
        """Bound a requested timeout (seconds) by the time left in the session.

        Raises:
            StreamError: with kind DEADLINE_EXCEEDED when the deadline is now or past.
        """
        remaining = self.remaining()
        if remaining is None:
            return requested
        if remaining <= 0:
            logger.debug("max runtime reached")
            raise StreamError.deadline_exceeded()
        return min(remaining, requested)
