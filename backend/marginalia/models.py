"""Canonical data structures for Marginalia.

Defined once here, referenced everywhere else. The conversation tree owns
MessageNode records; ThreadAnnotation records live inside the node whose
text they anchor to. Snapshots are what the persistence layer round-trips.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

Role = Literal["user", "assistant", "system"]


def new_message_id() -> str:
    return f"msg_{uuid4().hex}"


def new_thread_id() -> str:
    return f"thread_{uuid4().hex}"


def utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Tree records
# ---------------------------------------------------------------------------


class ThreadAnnotation(BaseModel):
    """A selection thread anchored to the Nth occurrence of a substring."""

    id: str = Field(default_factory=new_thread_id)
    anchor_message_id: str
    selection_text: str
    match_index: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    root_message_id: str | None = None
    last_message_id: str | None = None

    @property
    def is_draft(self) -> bool:
        """True until the first message is sent in the thread."""
        return self.root_message_id is None


class MessageNode(BaseModel):
    id: str = Field(default_factory=new_message_id)
    role: Role
    content: str | list[dict[str, Any]]  # plain text or multimodal parts
    parent_id: str | None = None
    children: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)
    thread_annotations: list[ThreadAnnotation] = Field(default_factory=list)

    # Thread membership (null for main-conversation messages)
    thread_id: str | None = None
    thread_anchor_id: str | None = None
    thread_root_id: str | None = None
    thread_selection_text: str | None = None
    thread_match_index: int | None = None
    thread_hidden_selection: bool = False

    @property
    def is_thread_message(self) -> bool:
        return bool(
            self.thread_id
            or self.thread_hidden_selection
            or self.thread_root_id
            or self.thread_anchor_id
        )


class ConversationSnapshot(BaseModel):
    """Everything needed to rebuild a ConversationTree after a restart."""

    conversation_id: str
    title: str | None = None
    nodes: list[MessageNode] = Field(default_factory=list)
    root: str | None = None
    current_node: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Thread engine state and results
# ---------------------------------------------------------------------------


class PendingSelection(BaseModel):
    """A captured selection the user has not yet turned into a thread."""

    message_id: str
    selection_text: str
    match_index: int = 0


class ThreadState(BaseModel):
    """UI-facing thread state. One instance per engine, never shared."""

    active_thread_id: str | None = None
    active_anchor_message_id: str | None = None
    active_selection_text: str = ""
    pending_selection: PendingSelection | None = None

    @property
    def thread_mode_active(self) -> bool:
        return self.active_thread_id is not None


@dataclass
class ThreadLookup:
    """Where a thread lives. Holds the live annotation, not a copy."""

    anchor_message_id: str
    annotation: ThreadAnnotation


class HighlightRange(BaseModel):
    annotation: ThreadAnnotation
    start_pos: int
    end_pos: int


class ConversationStats(BaseModel):
    total_count: int = 0
    main_message_count: int = 0
    thread_message_count: int = 0
    thread_count: int = 0
