"""FastAPI routes for conversations, messages, and selection threads."""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from marginalia.conversations.schemas import (
    CaptureSelectionRequest,
    ConversationDetailResponse,
    ConversationStatsResponse,
    ConversationSummary,
    CreateConversationRequest,
    CreateMessageRequest,
    CreateThreadRequest,
    ExitThreadResponse,
    HighlightsResponse,
    InsertAfterRequest,
    MessageResponse,
    PendingSelectionResponse,
    SetCurrentRequest,
    ThreadDetailResponse,
    ThreadMessageRequest,
    ThreadPreviewResponse,
)
from marginalia.conversations.service import (
    ConversationNotFoundError,
    ConversationService,
    InvalidParentError,
    InvalidSelectionError,
    MessageNotFoundError,
    ThreadNotFoundError,
)

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


def get_conversation_service() -> ConversationService:
    """Dependency placeholder, replaced at app startup."""
    raise RuntimeError("ConversationService not initialized")


def _not_found(exc: Exception) -> HTTPException:
    return HTTPException(status_code=404, detail=str(exc))


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_conversation(
    request: CreateConversationRequest,
    service: ConversationService = Depends(get_conversation_service),
) -> ConversationDetailResponse:
    return await service.create_conversation(request)


@router.get("")
async def list_conversations(
    service: ConversationService = Depends(get_conversation_service),
) -> list[ConversationSummary]:
    return await service.list_conversations()


@router.get("/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    service: ConversationService = Depends(get_conversation_service),
) -> ConversationDetailResponse:
    conversation = await service.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    return conversation


@router.post("/{conversation_id}/open")
async def open_conversation(
    conversation_id: str,
    service: ConversationService = Depends(get_conversation_service),
) -> ConversationDetailResponse:
    try:
        conversation = await service.open_conversation(conversation_id)
    except ConversationNotFoundError as e:
        raise _not_found(e)
    if conversation is None:
        raise HTTPException(status_code=409, detail="Superseded by a newer open request")
    return conversation


@router.delete("/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_conversation(
    conversation_id: str,
    service: ConversationService = Depends(get_conversation_service),
) -> None:
    if not await service.delete_conversation(conversation_id):
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")


# -- Messages --


@router.post("/{conversation_id}/messages", status_code=status.HTTP_201_CREATED)
async def add_message(
    conversation_id: str,
    request: CreateMessageRequest,
    service: ConversationService = Depends(get_conversation_service),
) -> MessageResponse:
    try:
        return await service.add_message(conversation_id, request)
    except ConversationNotFoundError as e:
        raise _not_found(e)
    except InvalidParentError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post(
    "/{conversation_id}/messages/{node_id}/insert-after",
    status_code=status.HTTP_201_CREATED,
)
async def insert_after(
    conversation_id: str,
    node_id: str,
    request: InsertAfterRequest,
    service: ConversationService = Depends(get_conversation_service),
) -> MessageResponse:
    try:
        return await service.insert_after(conversation_id, node_id, request)
    except (ConversationNotFoundError, MessageNotFoundError) as e:
        raise _not_found(e)


@router.delete(
    "/{conversation_id}/messages/{node_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def delete_message(
    conversation_id: str,
    node_id: str,
    service: ConversationService = Depends(get_conversation_service),
) -> None:
    try:
        await service.delete_message(conversation_id, node_id)
    except (ConversationNotFoundError, MessageNotFoundError) as e:
        raise _not_found(e)


@router.get("/{conversation_id}/chain")
async def get_chain(
    conversation_id: str,
    service: ConversationService = Depends(get_conversation_service),
) -> list[MessageResponse]:
    try:
        return await service.get_chain(conversation_id)
    except ConversationNotFoundError as e:
        raise _not_found(e)


@router.put("/{conversation_id}/current")
async def set_current(
    conversation_id: str,
    request: SetCurrentRequest,
    service: ConversationService = Depends(get_conversation_service),
) -> list[MessageResponse]:
    try:
        return await service.set_current(conversation_id, request.node_id)
    except (ConversationNotFoundError, MessageNotFoundError) as e:
        raise _not_found(e)


@router.get("/{conversation_id}/messages/{node_id}/highlights")
async def get_highlights(
    conversation_id: str,
    node_id: str,
    service: ConversationService = Depends(get_conversation_service),
) -> HighlightsResponse:
    try:
        return await service.get_highlights(conversation_id, node_id)
    except (ConversationNotFoundError, MessageNotFoundError) as e:
        raise _not_found(e)


@router.get("/{conversation_id}/stats")
async def get_stats(
    conversation_id: str,
    service: ConversationService = Depends(get_conversation_service),
) -> ConversationStatsResponse:
    try:
        return await service.get_stats(conversation_id)
    except ConversationNotFoundError as e:
        raise _not_found(e)


# -- Threads --


@router.post("/{conversation_id}/selections")
async def capture_selection(
    conversation_id: str,
    request: CaptureSelectionRequest,
    service: ConversationService = Depends(get_conversation_service),
) -> PendingSelectionResponse:
    try:
        return await service.capture_selection(conversation_id, request)
    except (ConversationNotFoundError, MessageNotFoundError) as e:
        raise _not_found(e)
    except InvalidSelectionError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/{conversation_id}/threads", status_code=status.HTTP_201_CREATED)
async def create_thread(
    conversation_id: str,
    request: CreateThreadRequest,
    service: ConversationService = Depends(get_conversation_service),
) -> ThreadDetailResponse:
    try:
        return await service.create_thread(conversation_id, request)
    except (ConversationNotFoundError, MessageNotFoundError) as e:
        raise _not_found(e)
    except InvalidSelectionError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/{conversation_id}/threads/exit")
async def exit_thread(
    conversation_id: str,
    service: ConversationService = Depends(get_conversation_service),
) -> ExitThreadResponse:
    try:
        return await service.exit_thread(conversation_id)
    except ConversationNotFoundError as e:
        raise _not_found(e)


@router.post("/{conversation_id}/threads/{thread_id}/enter")
async def enter_thread(
    conversation_id: str,
    thread_id: str,
    service: ConversationService = Depends(get_conversation_service),
) -> ThreadDetailResponse:
    try:
        return await service.enter_thread(conversation_id, thread_id)
    except (ConversationNotFoundError, ThreadNotFoundError) as e:
        raise _not_found(e)


@router.post(
    "/{conversation_id}/threads/{thread_id}/messages",
    status_code=status.HTTP_201_CREATED,
)
async def post_thread_message(
    conversation_id: str,
    thread_id: str,
    request: ThreadMessageRequest,
    service: ConversationService = Depends(get_conversation_service),
) -> MessageResponse:
    try:
        return await service.post_thread_message(conversation_id, thread_id, request)
    except (ConversationNotFoundError, ThreadNotFoundError) as e:
        raise _not_found(e)


@router.get("/{conversation_id}/threads/{thread_id}/context")
async def get_thread_context(
    conversation_id: str,
    thread_id: str,
    service: ConversationService = Depends(get_conversation_service),
) -> list[MessageResponse]:
    try:
        return await service.get_thread_context(conversation_id, thread_id)
    except (ConversationNotFoundError, ThreadNotFoundError) as e:
        raise _not_found(e)


@router.get("/{conversation_id}/threads/{thread_id}/preview")
async def get_thread_preview(
    conversation_id: str,
    thread_id: str,
    max_items: int = Query(3, ge=1, le=20),
    service: ConversationService = Depends(get_conversation_service),
) -> ThreadPreviewResponse:
    try:
        return await service.get_thread_preview(conversation_id, thread_id, max_items)
    except (ConversationNotFoundError, ThreadNotFoundError) as e:
        raise _not_found(e)


@router.delete(
    "/{conversation_id}/threads/{thread_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def delete_thread(
    conversation_id: str,
    thread_id: str,
    service: ConversationService = Depends(get_conversation_service),
) -> None:
    try:
        await service.delete_thread(conversation_id, thread_id)
    except (ConversationNotFoundError, ThreadNotFoundError) as e:
        raise _not_found(e)
