"""Most-recent-request-wins guard for async work at the edges.

Capture a token before starting async work; when the work finishes, apply
its result only if no newer request has started since. Nothing is
cancelled: stale results are dropped silently.
"""

import logging
from collections.abc import Awaitable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GenerationToken:
    """A monotonically increasing counter of requests."""

    def __init__(self) -> None:
        self._current = 0

    @property
    def current(self) -> int:
        return self._current

    def next(self) -> int:
        """Start a new request; every earlier token becomes stale."""
        self._current += 1
        return self._current

    def is_current(self, token: int) -> bool:
        return token == self._current

    async def guard(self, work: Awaitable[T]) -> tuple[bool, T | None]:
        """Await work under a fresh token. Returns (applied, result).

        applied is False, and result None, when a newer request started
        while work was pending.
        """
        token = self.next()
        result = await work
        if not self.is_current(token):
            logger.debug("discarding stale result for token %d (current %d)", token, self._current)
            return False, None
        return True, result
