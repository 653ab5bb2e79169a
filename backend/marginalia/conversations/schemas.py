"""Request and response schemas for conversation and thread endpoints."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from marginalia.models import Role

# -- Requests --


class CreateConversationRequest(BaseModel):
    title: str | None = None
    system_prompt: str | None = None


class CreateMessageRequest(BaseModel):
    content: str | list[dict[str, Any]]
    role: Role = "user"
    parent_id: str | None = None


class InsertAfterRequest(BaseModel):
    """Request body for POST /api/conversations/{id}/messages/{node_id}/insert-after."""

    content: str | list[dict[str, Any]] = ""
    role: Role = "user"
    next_id: str | None = None


class SetCurrentRequest(BaseModel):
    node_id: str


class CaptureSelectionRequest(BaseModel):
    message_id: str
    selection_text: str
    approximate_offset: int = Field(default=0, ge=0)


class CreateThreadRequest(BaseModel):
    """Either match_index or approximate_offset locates the occurrence.

    approximate_offset wins when both are given.
    """

    message_id: str
    selection_text: str
    match_index: int | None = Field(default=None, ge=0)
    approximate_offset: int | None = Field(default=None, ge=0)


class ThreadMessageRequest(BaseModel):
    content: str | list[dict[str, Any]]
    role: Role = "user"


# -- Responses --


class ThreadAnnotationResponse(BaseModel):
    id: str
    anchor_message_id: str
    selection_text: str
    match_index: int
    created_at: datetime
    root_message_id: str | None = None
    last_message_id: str | None = None
    is_draft: bool


class MessageResponse(BaseModel):
    id: str
    role: str
    content: str | list[dict[str, Any]]
    parent_id: str | None = None
    children: list[str] = Field(default_factory=list)
    timestamp: datetime
    thread_annotations: list[ThreadAnnotationResponse] = Field(default_factory=list)
    thread_id: str | None = None
    thread_anchor_id: str | None = None
    thread_root_id: str | None = None
    thread_hidden_selection: bool = False


class ConversationSummary(BaseModel):
    conversation_id: str
    title: str | None = None
    message_count: int = 0
    thread_count: int = 0
    created_at: str
    updated_at: str


class ConversationDetailResponse(BaseModel):
    conversation_id: str
    title: str | None = None
    root: str | None = None
    current_node: str | None = None
    nodes: list[MessageResponse]
    detached_node_ids: list[str] = Field(default_factory=list)
    active_thread_id: str | None = None


class PendingSelectionResponse(BaseModel):
    message_id: str
    selection_text: str
    match_index: int
    existing_thread_id: str | None = None


class ThreadDetailResponse(BaseModel):
    thread: ThreadAnnotationResponse
    messages: list[MessageResponse]


class ExitThreadResponse(BaseModel):
    thread_id: str | None = None
    draft_removed: bool = False


class ThreadPreviewResponse(BaseModel):
    thread_id: str
    lines: list[str]


class HighlightRangeResponse(BaseModel):
    thread_id: str
    selection_text: str
    match_index: int
    start_pos: int
    end_pos: int


class HighlightsResponse(BaseModel):
    node_id: str
    ranges: list[HighlightRangeResponse]
    markup: str


class ConversationStatsResponse(BaseModel):
    total_count: int
    main_message_count: int
    thread_message_count: int
    thread_count: int
