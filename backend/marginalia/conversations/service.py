"""Conversation service: live trees and thread engines, persisted after mutations."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from uuid import uuid4

from marginalia.conversations.schemas import (
    CaptureSelectionRequest,
    ConversationDetailResponse,
    ConversationStatsResponse,
    ConversationSummary,
    CreateConversationRequest,
    CreateMessageRequest,
    CreateThreadRequest,
    ExitThreadResponse,
    HighlightRangeResponse,
    HighlightsResponse,
    InsertAfterRequest,
    MessageResponse,
    PendingSelectionResponse,
    ThreadAnnotationResponse,
    ThreadDetailResponse,
    ThreadMessageRequest,
    ThreadPreviewResponse,
)
from marginalia.generation_guard import GenerationToken
from marginalia.interfaces import Notifier
from marginalia.models import (
    ConversationSnapshot,
    HighlightRange,
    MessageNode,
    ThreadAnnotation,
    utcnow,
)
from marginalia.store.sqlite import SqliteConversationStore
from marginalia.threads.anchors import resolve_occurrence
from marginalia.threads.engine import ThreadAnnotationEngine
from marginalia.trees.tree import ConversationTree

logger = logging.getLogger(__name__)


@dataclass
class ConversationSession:
    """One open conversation: its tree, its engine, and unsaved-change state."""

    conversation_id: str
    title: str | None
    tree: ConversationTree
    engine: ThreadAnnotationEngine = field(init=False)
    created_at: datetime = field(default_factory=utcnow)
    dirty: bool = False

    def mark_dirty(self) -> None:
        self.dirty = True

    @property
    def has_unsaved_state(self) -> bool:
        """Unsaved changes, an active thread, or drafts that live only in memory."""
        if self.dirty or self.engine.state.thread_mode_active:
            return True
        return any(
            annotation.is_draft
            for node in self.tree.nodes.values()
            for annotation in node.thread_annotations
        )

    def snapshot(self) -> ConversationSnapshot:
        snapshot = self.tree.to_snapshot(self.conversation_id, self.title)
        snapshot.created_at = self.created_at
        return snapshot


class ConversationService:
    """Coordinates conversation trees, thread engines and the persistence store."""

    def __init__(self, store: SqliteConversationStore, notifier: Notifier | None = None) -> None:
        self._store = store
        self._notifier = notifier
        self._sessions: dict[str, ConversationSession] = {}
        self._open_token = GenerationToken()
        self.active_conversation_id: str | None = None

    # -- Sessions --

    def _new_session(
        self,
        conversation_id: str,
        title: str | None,
        tree: ConversationTree,
        created_at: datetime | None = None,
    ) -> ConversationSession:
        session = ConversationSession(
            conversation_id=conversation_id,
            title=title,
            tree=tree,
            created_at=created_at or utcnow(),
        )
        session.engine = ThreadAnnotationEngine(
            tree, notifier=self._notifier, on_change=session.mark_dirty,
        )
        self._evict_idle(keep=conversation_id)
        self._sessions[conversation_id] = session
        return session

    def _evict_idle(self, keep: str) -> None:
        """Drop cached sessions that the store can rebuild exactly.

        The active conversation and sessions holding in-memory thread state
        stay cached.
        """
        for conversation_id, session in list(self._sessions.items()):
            if conversation_id in (keep, self.active_conversation_id):
                continue
            if session.has_unsaved_state:
                continue
            del self._sessions[conversation_id]
            logger.debug("evicted idle conversation %s", conversation_id)

    @property
    def cached_conversation_ids(self) -> list[str]:
        return list(self._sessions)

    async def _session(self, conversation_id: str) -> ConversationSession:
        session = self._sessions.get(conversation_id)
        if session is not None:
            return session
        snapshot = await self._store.load(conversation_id)
        if snapshot is None:
            raise ConversationNotFoundError(conversation_id)
        # Another request may have loaded it while we awaited the store.
        session = self._sessions.get(conversation_id)
        if session is not None:
            return session
        return self._new_session(
            snapshot.conversation_id,
            snapshot.title,
            ConversationTree.from_snapshot(snapshot),
            snapshot.created_at,
        )

    async def _commit(self, session: ConversationSession) -> None:
        if not session.dirty:
            return
        await self._store.save(session.snapshot())
        session.dirty = False

    # -- Conversations --

    async def create_conversation(
        self, request: CreateConversationRequest
    ) -> ConversationDetailResponse:
        session = self._new_session(str(uuid4()), request.title, ConversationTree())
        if request.system_prompt:
            session.tree.insert("system", request.system_prompt)
        session.mark_dirty()
        await self._commit(session)
        return self._detail(session)

    async def list_conversations(self) -> list[ConversationSummary]:
        rows = await self._store.list_conversations()
        return [ConversationSummary(**row) for row in rows]

    async def get_conversation(self, conversation_id: str) -> ConversationDetailResponse | None:
        try:
            session = await self._session(conversation_id)
        except ConversationNotFoundError:
            return None
        return self._detail(session)

    async def open_conversation(self, conversation_id: str) -> ConversationDetailResponse | None:
        """Switch the displayed conversation. Only the latest switch takes effect.

        Returns None when a newer open_conversation call started while this
        one was loading.
        """
        applied, session = await self._open_token.guard(self._session(conversation_id))
        if not applied or session is None:
            return None
        self.active_conversation_id = conversation_id
        return self._detail(session)

    async def delete_conversation(self, conversation_id: str) -> bool:
        self._sessions.pop(conversation_id, None)
        if self.active_conversation_id == conversation_id:
            self.active_conversation_id = None
        return await self._store.delete(conversation_id)

    # -- Messages --

    async def add_message(
        self, conversation_id: str, request: CreateMessageRequest
    ) -> MessageResponse:
        session = await self._session(conversation_id)
        tree = session.tree
        if request.parent_id is not None and request.parent_id not in tree:
            raise InvalidParentError(request.parent_id)
        if request.parent_id is None and tree.root is not None:
            raise InvalidParentError(None)

        node = tree.insert(request.role, request.content, request.parent_id)
        session.mark_dirty()
        await self._commit(session)
        return self._message(node)

    async def insert_after(
        self, conversation_id: str, node_id: str, request: InsertAfterRequest
    ) -> MessageResponse:
        session = await self._session(conversation_id)
        node = session.tree.insert_after(
            node_id, request.role, request.content, next_id=request.next_id,
        )
        if node is None:
            raise MessageNotFoundError(node_id)
        session.mark_dirty()
        await self._commit(session)
        return self._message(node)

    async def delete_message(self, conversation_id: str, node_id: str) -> None:
        session = await self._session(conversation_id)
        if not session.engine.delete_message(node_id):
            raise MessageNotFoundError(node_id)
        await self._commit(session)

    async def get_chain(self, conversation_id: str) -> list[MessageResponse]:
        session = await self._session(conversation_id)
        return [self._message(n) for n in session.tree.get_chain()]

    async def set_current(self, conversation_id: str, node_id: str) -> list[MessageResponse]:
        session = await self._session(conversation_id)
        if not session.tree.set_current(node_id):
            raise MessageNotFoundError(node_id)
        session.mark_dirty()
        await self._commit(session)
        return [self._message(n) for n in session.tree.get_chain()]

    # -- Threads --

    async def capture_selection(
        self, conversation_id: str, request: CaptureSelectionRequest
    ) -> PendingSelectionResponse:
        session = await self._session(conversation_id)
        if request.message_id not in session.tree:
            raise MessageNotFoundError(request.message_id)
        pending = session.engine.capture_selection(
            request.message_id, request.selection_text, request.approximate_offset,
        )
        if pending is None:
            raise InvalidSelectionError(request.selection_text)
        existing = session.engine.find_thread_by_selection(
            pending.message_id, pending.selection_text, pending.match_index,
        )
        return PendingSelectionResponse(
            **pending.model_dump(),
            existing_thread_id=existing.id if existing else None,
        )

    async def create_thread(
        self, conversation_id: str, request: CreateThreadRequest
    ) -> ThreadDetailResponse:
        """Create (or reuse) a draft thread and enter it. Drafts are not saved."""
        session = await self._session(conversation_id)
        engine = session.engine
        anchor = session.tree.get(request.message_id)
        if anchor is None:
            raise MessageNotFoundError(request.message_id)

        match_index = request.match_index or 0
        if request.approximate_offset is not None:
            text = engine.text_of(anchor)
            match_index = resolve_occurrence(
                text, request.selection_text.strip(), request.approximate_offset,
            )
        annotation = engine.create_annotation(
            anchor.id, request.selection_text.strip(), match_index,
        )
        if annotation is None:
            raise InvalidSelectionError(request.selection_text)

        chain = engine.enter_thread(annotation.id) or []
        await self._commit(session)
        return ThreadDetailResponse(
            thread=self._annotation(annotation),
            messages=[self._message(n) for n in chain],
        )

    async def enter_thread(self, conversation_id: str, thread_id: str) -> ThreadDetailResponse:
        session = await self._session(conversation_id)
        chain = session.engine.enter_thread(thread_id)
        # Entering may have cleaned up a previously active draft.
        await self._commit(session)
        if chain is None:
            raise ThreadNotFoundError(thread_id)
        found = session.engine.find_thread(thread_id)
        assert found is not None
        return ThreadDetailResponse(
            thread=self._annotation(found.annotation),
            messages=[self._message(n) for n in chain],
        )

    async def exit_thread(self, conversation_id: str) -> ExitThreadResponse:
        session = await self._session(conversation_id)
        thread_id = session.engine.state.active_thread_id
        removed = session.engine.exit_thread()
        await self._commit(session)
        return ExitThreadResponse(thread_id=thread_id, draft_removed=removed)

    async def post_thread_message(
        self, conversation_id: str, thread_id: str, request: ThreadMessageRequest
    ) -> MessageResponse:
        session = await self._session(conversation_id)
        node = session.engine.append_thread_message(thread_id, request.role, request.content)
        if node is None:
            raise ThreadNotFoundError(thread_id)
        await self._commit(session)
        return self._message(node)

    async def delete_thread(self, conversation_id: str, thread_id: str) -> None:
        session = await self._session(conversation_id)
        if not session.engine.delete_thread(thread_id):
            raise ThreadNotFoundError(thread_id)
        await self._commit(session)

    async def get_thread_context(
        self, conversation_id: str, thread_id: str
    ) -> list[MessageResponse]:
        session = await self._session(conversation_id)
        if session.engine.find_thread(thread_id) is None:
            raise ThreadNotFoundError(thread_id)
        return [self._message(n) for n in session.engine.build_thread_context(thread_id)]

    async def get_thread_preview(
        self, conversation_id: str, thread_id: str, max_items: int = 3
    ) -> ThreadPreviewResponse:
        session = await self._session(conversation_id)
        if session.engine.find_thread(thread_id) is None:
            raise ThreadNotFoundError(thread_id)
        return ThreadPreviewResponse(
            thread_id=thread_id,
            lines=session.engine.thread_preview_lines(thread_id, max_items),
        )

    async def get_highlights(self, conversation_id: str, node_id: str) -> HighlightsResponse:
        session = await self._session(conversation_id)
        markup = session.engine.render_highlighted(node_id)
        if markup is None:
            raise MessageNotFoundError(node_id)
        ranges = sorted(session.engine.highlight_ranges(node_id), key=lambda r: r.start_pos)
        return HighlightsResponse(
            node_id=node_id,
            ranges=[self._range(r) for r in ranges],
            markup=markup,
        )

    async def get_stats(self, conversation_id: str) -> ConversationStatsResponse:
        session = await self._session(conversation_id)
        return ConversationStatsResponse(**session.engine.conversation_stats().model_dump())

    # -- Mapping --

    def _detail(self, session: ConversationSession) -> ConversationDetailResponse:
        tree = session.tree
        return ConversationDetailResponse(
            conversation_id=session.conversation_id,
            title=session.title,
            root=tree.root,
            current_node=tree.current_node,
            nodes=[self._message(n) for n in tree.nodes.values()],
            detached_node_ids=[n.id for n in tree.detached_nodes()],
            active_thread_id=session.engine.state.active_thread_id,
        )

    @staticmethod
    def _annotation(annotation: ThreadAnnotation) -> ThreadAnnotationResponse:
        return ThreadAnnotationResponse(
            **annotation.model_dump(),
            is_draft=annotation.is_draft,
        )

    @classmethod
    def _message(cls, node: MessageNode) -> MessageResponse:
        return MessageResponse(
            id=node.id,
            role=node.role,
            content=node.content,
            parent_id=node.parent_id,
            children=list(node.children),
            timestamp=node.timestamp,
            thread_annotations=[cls._annotation(a) for a in node.thread_annotations],
            thread_id=node.thread_id,
            thread_anchor_id=node.thread_anchor_id,
            thread_root_id=node.thread_root_id,
            thread_hidden_selection=node.thread_hidden_selection,
        )

    @staticmethod
    def _range(r: HighlightRange) -> HighlightRangeResponse:
        return HighlightRangeResponse(
            thread_id=r.annotation.id,
            selection_text=r.annotation.selection_text,
            match_index=r.annotation.match_index,
            start_pos=r.start_pos,
            end_pos=r.end_pos,
        )


class ConversationNotFoundError(Exception):
    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")


class MessageNotFoundError(Exception):
    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Message not found: {node_id}")


class ThreadNotFoundError(Exception):
    def __init__(self, thread_id: str) -> None:
        self.thread_id = thread_id
        super().__init__(f"Thread not found: {thread_id}")


class InvalidParentError(Exception):
    def __init__(self, parent_id: str | None) -> None:
        self.parent_id = parent_id
        if parent_id is None:
            super().__init__("Conversation already has a root; parent_id is required")
        else:
            super().__init__(f"Parent message not found: {parent_id}")


class InvalidSelectionError(Exception):
    def __init__(self, selection_text: str) -> None:
        self.selection_text = selection_text
        super().__init__(f"Selection cannot anchor a thread: {selection_text!r}")
