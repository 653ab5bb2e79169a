"""Boundaries between the conversation core and its collaborators.

The core never renders, never talks to the network, and never decides how
conversations are stored. It only calls these interfaces.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Literal

from marginalia.models import ConversationSnapshot, HighlightRange, MessageNode, ThreadAnnotation

logger = logging.getLogger(__name__)

TextAccessor = Callable[[MessageNode], str]
NotificationLevel = Literal["info", "warning", "error"]


class RangeContainer(ABC):
    """Something whose text can be wrapped range by range."""

    @abstractmethod
    def wrap(self, start: int, end: int, annotation: ThreadAnnotation) -> bool:
        """Wrap [start, end) for annotation. False if the range cannot be resolved."""
        ...


class Renderer(ABC):
    """Displays a chain of messages along with their highlight ranges."""

    @abstractmethod
    def render_chain(
        self,
        chain: list[MessageNode],
        ranges_by_node: dict[str, list[HighlightRange]],
    ) -> None:
        ...


class PersistenceStore(ABC):
    """Durable storage for whole conversations."""

    @abstractmethod
    async def save(self, snapshot: ConversationSnapshot) -> None:
        ...

    @abstractmethod
    async def load(self, conversation_id: str) -> ConversationSnapshot | None:
        ...


class Notifier(ABC):
    """Surfaces user-facing failures such as a thread that no longer exists."""

    @abstractmethod
    def notify(self, message: str, level: NotificationLevel = "warning") -> None:
        ...


class LoggingNotifier(Notifier):
    """Default notifier: writes notifications to the log."""

    _LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}

    def notify(self, message: str, level: NotificationLevel = "warning") -> None:
        logger.log(self._LEVELS.get(level, logging.WARNING), message)
