"""Short-lived queue of errors reported to the presentation layer."""

import logging
import time
from collections import deque
from typing import Callable

from storyvoice.config import ERROR_TTL, MAX_ERRORS
from storyvoice.events.types import AppError

logger = logging.getLogger(__name__)


class ErrorQueue:
    """Keeps at most *maxlen* recent errors, each visible for *ttl* seconds.

    Expiry is applied whenever the queue is read, against *clock*
    (monotonic seconds).
    """

    def __init__(
        self,
        ttl: float = ERROR_TTL,
        maxlen: int = MAX_ERRORS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: deque[tuple[float, AppError]] = deque(maxlen=maxlen)

    def add(self, error: AppError) -> None:
        if len(self._entries) == self._entries.maxlen:
            logger.debug("Error queue full — dropping oldest error")
        self._entries.append((self._clock(), error))

    def errors(self) -> list[AppError]:
        """Return the live errors, oldest first."""
        now = self._clock()
        while self._entries and now - self._entries[0][0] >= self._ttl:
            self._entries.popleft()
        return [error for _, error in self._entries]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self.errors())
