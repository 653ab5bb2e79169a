"""Thread annotation engine: selection anchors and thread lifecycle.

A thread starts as a draft annotation on the message the user selected text
in. Sending the first message promotes it: a hidden "> selection" node is
inserted under the anchor and becomes the thread root, and every later
thread message hangs off the thread's last message. Threads therefore live
in the same ConversationTree as the main conversation; the annotation only
records where their chain starts and ends.

The engine owns its ThreadState. Nothing here is module-global, so several
engines (one per open conversation) can coexist.
"""

import logging
from collections.abc import Callable
from typing import Any

from marginalia.interfaces import LoggingNotifier, Notifier, Renderer, TextAccessor
from marginalia.models import (
    ConversationStats,
    HighlightRange,
    MessageNode,
    PendingSelection,
    Role,
    ThreadAnnotation,
    ThreadLookup,
    ThreadState,
)
from marginalia.threads.anchors import resolve_occurrence
from marginalia.threads.highlights import HighlightedText, apply_ranges, build_ranges
from marginalia.threads.text import content_text, plain_text, strip_html, summarize_preview_text
from marginalia.trees.tree import ConversationTree

logger = logging.getLogger(__name__)


class ThreadAnnotationEngine:
    """Creates, resolves, renders and deletes selection threads on one tree."""

    def __init__(
        self,
        tree: ConversationTree,
        *,
        renderer: Renderer | None = None,
        notifier: Notifier | None = None,
        text_accessor: TextAccessor = plain_text,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self.tree = tree
        self.state = ThreadState()
        self._renderer = renderer
        self._notifier = notifier or LoggingNotifier()
        self._text_of = text_accessor
        self._on_change = on_change
        self._index: dict[str, str] = {}
        self.rebuild_index()

    def rebuild_index(self) -> None:
        """Recompute the thread id -> anchor id index from the tree."""
        self._index = {
            annotation.id: node.id
            for node in self.tree.nodes.values()
            for annotation in node.thread_annotations
        }

    def text_of(self, node: MessageNode) -> str:
        """Plain text of a node, as anchoring and highlighting see it."""
        return self._text_of(node)

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    # -- Anchors --

    def capture_selection(
        self, message_id: str, selection_text: str, approximate_offset: int
    ) -> PendingSelection | None:
        """Turn a raw selection into a pending (selection_text, match_index) pair."""
        node = self.tree.get(message_id)
        text = (selection_text or "").strip()
        if node is None or not text or node.is_thread_message:
            self.state.pending_selection = None
            return None

        match_index = resolve_occurrence(self._text_of(node), text, approximate_offset)
        pending = PendingSelection(
            message_id=node.id, selection_text=text, match_index=match_index,
        )
        self.state.pending_selection = pending
        return pending

    def create_annotation(
        self, anchor_node_id: str, selection_text: str, match_index: int = 0
    ) -> ThreadAnnotation | None:
        """Add a draft annotation, or return the one already on this occurrence.

        Thread messages cannot anchor threads.
        """
        anchor = self.tree.get(anchor_node_id)
        text = (selection_text or "").strip()
        if anchor is None or not text or anchor.is_thread_message:
            return None
        match_index = max(0, match_index)

        existing = self.find_thread_by_selection(anchor.id, text, match_index)
        if existing is not None:
            return existing

        annotation = ThreadAnnotation(
            anchor_message_id=anchor.id,
            selection_text=text,
            match_index=match_index,
        )
        anchor.thread_annotations.append(annotation)
        self._index[annotation.id] = anchor.id
        return annotation

    def open_pending_selection(self) -> list[MessageNode] | None:
        """Create (or reuse) the thread for the pending selection and enter it."""
        pending = self.state.pending_selection
        if pending is None:
            return None
        annotation = self.create_annotation(
            pending.message_id, pending.selection_text, pending.match_index,
        )
        self.state.pending_selection = None
        if annotation is None:
            self._notifier.notify("Could not create a selection thread")
            return None
        return self.enter_thread(annotation.id)

    def find_thread(self, thread_id: str) -> ThreadLookup | None:
        if not thread_id:
            return None

        anchor = self.tree.get(self._index.get(thread_id))
        if anchor is not None:
            for annotation in anchor.thread_annotations:
                if annotation.id == thread_id:
                    return ThreadLookup(anchor_message_id=anchor.id, annotation=annotation)

        # Index miss or stale entry: fall back to a scan and repair.
        self._index.pop(thread_id, None)
        for node in self.tree.nodes.values():
            for annotation in node.thread_annotations:
                if annotation.id == thread_id:
                    self._index[thread_id] = node.id
                    return ThreadLookup(anchor_message_id=node.id, annotation=annotation)
        return None

    def find_thread_by_selection(
        self, anchor_node_id: str, selection_text: str, match_index: int | None = None
    ) -> ThreadAnnotation | None:
        anchor = self.tree.get(anchor_node_id)
        text = (selection_text or "").strip()
        if anchor is None or not text:
            return None
        for annotation in anchor.thread_annotations:
            if annotation.selection_text != text:
                continue
            if match_index is None or annotation.match_index == match_index:
                return annotation
        return None

    # -- Chains --

    def collect_thread_chain(self, annotation: ThreadAnnotation) -> list[MessageNode]:
        """Thread messages from the thread root to its last message."""
        if annotation.root_message_id is None:
            return []
        root_id = annotation.root_message_id
        chain: list[MessageNode] = []
        current_id: str | None = annotation.last_message_id or root_id
        while current_id is not None:
            node = self.tree.get(current_id)
            if node is None:
                break
            chain.append(node)
            if current_id == root_id:
                break
            current_id = node.parent_id
        chain.reverse()

        if chain and chain[0].id != root_id:
            root = self.tree.get(root_id)
            if root is not None:
                chain.insert(0, root)
        return chain

    def visible_thread_chain(self, annotation: ThreadAnnotation) -> list[MessageNode]:
        """The thread chain without its hidden "> selection" root."""
        return [n for n in self.collect_thread_chain(annotation) if not n.thread_hidden_selection]

    def build_thread_context(self, thread_id: str) -> list[MessageNode]:
        """Main chain up to the anchor, then the thread chain.

        This is the message sequence a reply inside the thread is generated
        from. Outside thread mode it is just the current main chain.
        """
        found = self.find_thread(thread_id)
        if found is None:
            return self.tree.get_chain()
        main_chain = self.tree.chain_to(found.anchor_message_id)
        return main_chain + self.collect_thread_chain(found.annotation)

    def thread_preview_lines(self, thread_id: str, max_items: int = 3) -> list[str]:
        found = self.find_thread(thread_id)
        if found is None:
            return []
        chain = self.visible_thread_chain(found.annotation)
        lines: list[str] = []
        for node in chain[-max(1, max_items):]:
            label = "AI" if node.role == "assistant" else "User"
            text = summarize_preview_text(strip_html(content_text(node.content)))
            lines.append(f"{label}: {text}" if text else f"{label}: (empty)")
        return lines

    # -- Lifecycle --

    def enter_thread(self, thread_id: str) -> list[MessageNode] | None:
        """Make a thread active and hand its chain to the renderer."""
        found = self.find_thread(thread_id)
        if found is None:
            self._notifier.notify("Selection thread not found")
            return None

        if self.state.active_thread_id not in (None, thread_id):
            self.exit_thread()

        self.state.active_thread_id = found.annotation.id
        self.state.active_anchor_message_id = found.anchor_message_id
        self.state.active_selection_text = found.annotation.selection_text

        chain = self.visible_thread_chain(found.annotation)
        if self._renderer is not None:
            self._renderer.render_chain(
                chain, {n.id: self.highlight_ranges(n.id) for n in chain},
            )
        return chain

    def exit_thread(self, *, cleanup_draft: bool = True) -> bool:
        """Leave thread mode. Returns True if an unused draft was removed."""
        thread_id = self.state.active_thread_id
        self.state.active_thread_id = None
        self.state.active_anchor_message_id = None
        self.state.active_selection_text = ""

        if not cleanup_draft or thread_id is None:
            return False
        found = self.find_thread(thread_id)
        if found is None or not found.annotation.is_draft:
            return False

        self._remove_annotation(found)
        logger.debug("removed unused draft thread %s", thread_id)
        self._changed()
        return True

    def append_thread_message(
        self, thread_id: str, role: Role, content: str | list[dict[str, Any]]
    ) -> MessageNode | None:
        """Add a message to a thread, promoting a draft on its first message."""
        found = self.find_thread(thread_id)
        if found is None:
            self._notifier.notify("Selection thread not found; message not added")
            return None
        anchor = self.tree.get(found.anchor_message_id)
        if anchor is None:
            self._notifier.notify("Selection thread anchor is gone; left thread mode")
            if self.state.active_thread_id == thread_id:
                self.exit_thread(cleanup_draft=False)
            return None

        annotation = found.annotation
        markers = {
            "thread_id": annotation.id,
            "thread_anchor_id": anchor.id,
            "thread_selection_text": annotation.selection_text,
        }
        if annotation.root_message_id is None or annotation.root_message_id not in self.tree:
            root = self.tree.insert(
                "user",
                f"> {annotation.selection_text}",
                anchor.id,
                preserve_current_node=True,
                thread_hidden_selection=True,
                thread_match_index=annotation.match_index,
                **markers,
            )
            annotation.root_message_id = root.id
            annotation.last_message_id = root.id

        parent_id = annotation.last_message_id or annotation.root_message_id
        node = self.tree.insert(
            role,
            content,
            parent_id,
            preserve_current_node=True,
            thread_root_id=annotation.root_message_id,
            **markers,
        )
        annotation.last_message_id = node.id
        self._changed()
        return node

    def delete_thread(self, thread_id: str) -> bool:
        """Delete a thread's messages, tail first, then its annotation."""
        found = self.find_thread(thread_id)
        if found is None:
            self._notifier.notify("Selection thread not found")
            return False

        chain = self.collect_thread_chain(found.annotation)
        for node in reversed(chain):
            self._delete_node(node.id)

        self._remove_annotation(found)

        if self.state.active_thread_id == thread_id:
            self.exit_thread(cleanup_draft=False)

        logger.info("deleted thread %s (%d messages)", thread_id, len(chain))
        self._changed()
        return True

    def delete_message(self, node_id: str) -> bool:
        """Delete one message, keeping any thread it belongs to consistent."""
        node = self.tree.get(node_id)
        if node is None:
            self._notifier.notify("Message not found")
            return False

        if node.thread_hidden_selection and node.thread_id:
            return self.delete_thread(node.thread_id)

        owner = self.find_thread(node.thread_id) if node.thread_id else None
        if owner is not None and owner.annotation.last_message_id == node.id:
            owner.annotation.last_message_id = node.parent_id

        self._delete_node(node_id)
        self._changed()
        return True

    def _delete_node(self, node_id: str) -> None:
        node = self.tree.get(node_id)
        if node is None:
            return
        for annotation in node.thread_annotations:
            self._index.pop(annotation.id, None)
            if self.state.active_thread_id == annotation.id:
                self.exit_thread(cleanup_draft=False)
        self.tree.delete_by_id(node_id)

    def _remove_annotation(self, found: ThreadLookup) -> None:
        anchor = self.tree.get(found.anchor_message_id)
        if anchor is not None:
            anchor.thread_annotations = [
                a for a in anchor.thread_annotations if a.id != found.annotation.id
            ]
        self._index.pop(found.annotation.id, None)

    # -- Highlights --

    def highlight_ranges(self, node_id: str) -> list[HighlightRange]:
        node = self.tree.get(node_id)
        if node is None or not node.thread_annotations:
            return []
        return build_ranges(self._text_of(node), node.thread_annotations)

    def render_highlighted(self, node_id: str) -> str | None:
        """The node's plain text as escaped markup with thread highlights."""
        node = self.tree.get(node_id)
        if node is None:
            return None
        container = HighlightedText(self._text_of(node))
        apply_ranges(container, self.highlight_ranges(node_id))
        return container.render()

    # -- Stats --

    def conversation_stats(self) -> ConversationStats:
        stats = ConversationStats()
        thread_keys: set[str] = set()
        for node in self.tree.nodes.values():
            stats.total_count += 1
            if not node.is_thread_message:
                stats.main_message_count += 1
                continue
            stats.thread_message_count += 1
            if node.thread_id:
                thread_keys.add(node.thread_id)
            elif node.thread_root_id:
                thread_keys.add(f"root:{node.thread_root_id}")
            elif node.thread_anchor_id:
                thread_keys.add(f"anchor:{node.thread_anchor_id}")
        stats.thread_count = len(thread_keys)
        return stats
