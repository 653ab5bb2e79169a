"""Tests for ThreadAnnotationEngine: selection threads inside one conversation tree.

Sections:
1. Capturing selections and creating annotations
2. Entering and exiting threads (draft cleanup, renderer, notifier)
3. Thread messages, context and previews
4. Deleting threads and thread messages
5. Highlights and stats
"""

from marginalia.models import ThreadAnnotation
from marginalia.threads.engine import ThreadAnnotationEngine
from tests.fixtures import all_parent_refs_resolve, build_line

ANCHOR_TEXT = "The cat sat on the mat next to another cat."


def _conversation(tree):
    """root(user) -> anchor(assistant) -> tail(user); current = tail."""
    return build_line(tree, "Tell me about cats", ANCHOR_TEXT, "Interesting")


def _thread_with_messages(engine, anchor, *contents):
    annotation = engine.create_annotation(anchor.id, "cat", 1)
    nodes = []
    for i, content in enumerate(contents):
        role = "user" if i % 2 == 0 else "assistant"
        nodes.append(engine.append_thread_message(annotation.id, role, content))
    return annotation, nodes


# ---------------------------------------------------------------------------
# Selections and annotations
# ---------------------------------------------------------------------------


class TestCaptureSelection:
    def test_resolves_match_index_from_offset(self, tree, engine):
        """Selecting the second "cat" records match_index 1."""
        _, anchor, _ = _conversation(tree)
        pending = engine.capture_selection(anchor.id, "  cat ", ANCHOR_TEXT.rindex("cat"))
        assert pending is not None
        assert pending.selection_text == "cat"
        assert pending.match_index == 1
        assert engine.state.pending_selection == pending

    def test_blank_selection_rejected(self, tree, engine):
        _, anchor, _ = _conversation(tree)
        assert engine.capture_selection(anchor.id, "   ", 0) is None
        assert engine.state.pending_selection is None

    def test_unknown_message_rejected(self, tree, engine):
        _conversation(tree)
        assert engine.capture_selection("missing", "cat", 0) is None

    def test_selection_inside_thread_message_rejected(self, tree, engine):
        """Threads cannot be anchored to text inside a thread."""
        _, anchor, _ = _conversation(tree)
        _, (reply,) = _thread_with_messages(engine, anchor, "What about dogs?")
        assert engine.capture_selection(reply.id, "dogs", 0) is None

    def test_open_pending_selection_enters_thread(self, tree, engine):
        _, anchor, _ = _conversation(tree)
        engine.capture_selection(anchor.id, "mat", 0)

        chain = engine.open_pending_selection()

        assert chain == []
        assert engine.state.thread_mode_active
        assert engine.state.active_anchor_message_id == anchor.id
        assert engine.state.active_selection_text == "mat"
        assert engine.state.pending_selection is None


class TestCreateAnnotation:
    def test_creates_draft_on_anchor(self, tree, engine):
        _, anchor, _ = _conversation(tree)
        annotation = engine.create_annotation(anchor.id, "cat", 1)

        assert annotation.is_draft
        assert annotation.anchor_message_id == anchor.id
        assert anchor.thread_annotations == [annotation]

    def test_same_occurrence_reuses_annotation(self, tree, engine):
        """The same (selection_text, match_index) pair maps to one thread."""
        _, anchor, _ = _conversation(tree)
        first = engine.create_annotation(anchor.id, "cat", 1)
        again = engine.create_annotation(anchor.id, "cat", 1)
        other = engine.create_annotation(anchor.id, "cat", 0)

        assert again is first
        assert other.id != first.id
        assert len(anchor.thread_annotations) == 2

    def test_negative_match_index_reuses_first_occurrence(self, tree, engine):
        """A negative index is clamped before the reuse check, so no duplicate appears."""
        _, anchor, _ = _conversation(tree)
        first = engine.create_annotation(anchor.id, "cat", 0)
        clamped = engine.create_annotation(anchor.id, "cat", -1)

        assert clamped is first
        assert [(a.selection_text, a.match_index) for a in anchor.thread_annotations] == [("cat", 0)]

    def test_selection_text_is_trimmed(self, tree, engine):
        _, anchor, _ = _conversation(tree)
        padded = engine.create_annotation(anchor.id, "  cat ", 1)

        assert padded.selection_text == "cat"
        assert engine.create_annotation(anchor.id, "cat", 1) is padded
        assert engine.find_thread_by_selection(anchor.id, " cat", 1) is padded

    def test_thread_message_cannot_anchor(self, tree, engine):
        _, anchor, _ = _conversation(tree)
        _, (reply,) = _thread_with_messages(engine, anchor, "What about dogs?")
        assert engine.create_annotation(reply.id, "dogs") is None
        assert reply.thread_annotations == []

    def test_invalid_inputs_return_none(self, tree, engine):
        _, anchor, _ = _conversation(tree)
        assert engine.create_annotation("missing", "cat") is None
        assert engine.create_annotation(anchor.id, "") is None
        assert engine.create_annotation(anchor.id, "  ") is None
        assert anchor.thread_annotations == []

    def test_find_thread_by_selection(self, tree, engine):
        _, anchor, _ = _conversation(tree)
        annotation = engine.create_annotation(anchor.id, "cat", 1)
        assert engine.find_thread_by_selection(anchor.id, "cat", 1) is annotation
        assert engine.find_thread_by_selection(anchor.id, "cat") is annotation
        assert engine.find_thread_by_selection(anchor.id, "cat", 0) is None

    def test_find_thread_repairs_missing_index_entry(self, tree, notifier):
        """Annotations added behind the engine's back are still found."""
        _, anchor, _ = _conversation(tree)
        engine = ThreadAnnotationEngine(tree, notifier=notifier)
        annotation = ThreadAnnotation(anchor_message_id=anchor.id, selection_text="mat")
        anchor.thread_annotations.append(annotation)

        found = engine.find_thread(annotation.id)

        assert found is not None
        assert found.anchor_message_id == anchor.id
        assert found.annotation is annotation

    def test_index_rebuilt_from_loaded_tree(self, tree, notifier):
        _, anchor, _ = _conversation(tree)
        ThreadAnnotationEngine(tree).create_annotation(anchor.id, "mat")
        fresh = ThreadAnnotationEngine(tree, notifier=notifier)
        thread_id = anchor.thread_annotations[0].id
        assert fresh.find_thread(thread_id).anchor_message_id == anchor.id


# ---------------------------------------------------------------------------
# Entering and exiting
# ---------------------------------------------------------------------------


class TestEnterExit:
    def test_unknown_thread_notifies(self, tree, engine, notifier, renderer):
        _conversation(tree)
        assert engine.enter_thread("thread_missing") is None
        assert notifier.messages == [("warning", "Selection thread not found")]
        assert renderer.calls == []
        assert not engine.state.thread_mode_active

    def test_enter_renders_visible_chain(self, tree, engine, renderer):
        """The renderer gets the thread chain without the hidden root."""
        _, anchor, _ = _conversation(tree)
        annotation, (m1, m2) = _thread_with_messages(engine, anchor, "Q", "A")

        chain = engine.enter_thread(annotation.id)

        assert [n.id for n in chain] == [m1.id, m2.id]
        ids, ranges_by_node = renderer.calls[-1]
        assert ids == [m1.id, m2.id]
        assert set(ranges_by_node) == {m1.id, m2.id}

    def test_exit_removes_unused_draft(self, tree, engine, changes):
        """Entering and leaving a thread without sending anything leaves no trace."""
        _, anchor, _ = _conversation(tree)
        annotation = engine.create_annotation(anchor.id, "mat")
        engine.enter_thread(annotation.id)

        assert engine.exit_thread() is True
        assert anchor.thread_annotations == []
        assert engine.find_thread(annotation.id) is None
        assert not engine.state.thread_mode_active
        assert changes == [1]

    def test_exit_keeps_promoted_thread(self, tree, engine):
        _, anchor, _ = _conversation(tree)
        annotation, _ = _thread_with_messages(engine, anchor, "Q")
        engine.enter_thread(annotation.id)

        assert engine.exit_thread() is False
        assert anchor.thread_annotations == [annotation]

    def test_exit_without_cleanup_keeps_draft(self, tree, engine):
        _, anchor, _ = _conversation(tree)
        annotation = engine.create_annotation(anchor.id, "mat")
        engine.enter_thread(annotation.id)
        assert engine.exit_thread(cleanup_draft=False) is False
        assert anchor.thread_annotations == [annotation]

    def test_entering_another_thread_cleans_previous_draft(self, tree, engine):
        _, anchor, _ = _conversation(tree)
        draft = engine.create_annotation(anchor.id, "mat")
        other, _ = _thread_with_messages(engine, anchor, "Q")
        engine.enter_thread(draft.id)

        engine.enter_thread(other.id)

        assert engine.state.active_thread_id == other.id
        assert draft not in anchor.thread_annotations

    def test_reentering_same_draft_keeps_it(self, tree, engine):
        _, anchor, _ = _conversation(tree)
        draft = engine.create_annotation(anchor.id, "mat")
        engine.enter_thread(draft.id)
        engine.enter_thread(draft.id)
        assert anchor.thread_annotations == [draft]


# ---------------------------------------------------------------------------
# Thread messages
# ---------------------------------------------------------------------------


class TestThreadMessages:
    def test_first_message_promotes_draft(self, tree, engine, changes):
        """The first message inserts a hidden "> selection" root under the anchor."""
        _, anchor, tail = _conversation(tree)
        annotation = engine.create_annotation(anchor.id, "cat", 1)

        message = engine.append_thread_message(annotation.id, "user", "Why a cat?")

        root = tree.get(annotation.root_message_id)
        assert not annotation.is_draft
        assert root.content == "> cat"
        assert root.thread_hidden_selection
        assert root.parent_id == anchor.id
        assert root.thread_match_index == 1
        assert message.parent_id == root.id
        assert message.thread_id == annotation.id
        assert message.thread_root_id == root.id
        assert annotation.last_message_id == message.id
        assert changes == [1]

    def test_thread_messages_do_not_move_main_tip(self, tree, engine):
        _, anchor, tail = _conversation(tree)
        _thread_with_messages(engine, anchor, "Q", "A", "Q2")
        assert tree.current_node == tail.id
        assert tail.id == tree.get_chain()[-1].id

    def test_messages_chain_off_last_message(self, tree, engine):
        _, anchor, _ = _conversation(tree)
        annotation, (m1, m2, m3) = _thread_with_messages(engine, anchor, "Q", "A", "Q2")
        assert m2.parent_id == m1.id
        assert m3.parent_id == m2.id
        chain = engine.collect_thread_chain(annotation)
        assert [n.id for n in chain] == [annotation.root_message_id, m1.id, m2.id, m3.id]

    def test_unknown_thread_not_appended(self, tree, engine, notifier):
        _conversation(tree)
        before = len(tree)
        assert engine.append_thread_message("thread_missing", "user", "hi") is None
        assert len(tree) == before
        assert notifier.messages

    def test_draft_chain_is_empty(self, tree, engine):
        _, anchor, _ = _conversation(tree)
        annotation = engine.create_annotation(anchor.id, "mat")
        assert engine.collect_thread_chain(annotation) == []

    def test_thread_context_is_main_chain_to_anchor_plus_thread(self, tree, engine):
        first, anchor, tail = _conversation(tree)
        annotation, (m1, m2) = _thread_with_messages(engine, anchor, "Q", "A")

        context = engine.build_thread_context(annotation.id)

        assert [n.id for n in context] == [
            first.id, anchor.id, annotation.root_message_id, m1.id, m2.id,
        ]
        assert tail.id not in {n.id for n in context}

    def test_context_outside_thread_is_main_chain(self, tree, engine):
        nodes = _conversation(tree)
        assert engine.build_thread_context("thread_missing") == nodes

    def test_preview_lines(self, tree, engine):
        _, anchor, _ = _conversation(tree)
        long_reply = "word " * 40
        annotation, _ = _thread_with_messages(
            engine, anchor, "first", "<p>Some   <b>bold</b> answer</p>", "   ", long_reply,
        )

        lines = engine.thread_preview_lines(annotation.id)

        assert len(lines) == 3
        assert lines[0] == "AI: Some bold answer"
        assert lines[1] == "User: (empty)"
        assert lines[2].startswith("AI: word word")
        assert lines[2].endswith("…")
        assert len(lines[2]) == len("AI: ") + 81

    def test_preview_of_unknown_thread_is_empty(self, tree, engine):
        assert engine.thread_preview_lines("thread_missing") == []


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------


class TestDeleteThread:
    def test_cascading_delete_leaves_no_dangling_refs(self, tree, engine, changes):
        """Deleting a thread removes root_t, m1 and m2 and its annotation."""
        _, anchor, _ = _conversation(tree)
        annotation, (m1, m2) = _thread_with_messages(engine, anchor, "Q", "A")
        thread_ids = {annotation.root_message_id, m1.id, m2.id}
        changes.clear()

        assert engine.delete_thread(annotation.id) is True

        assert not thread_ids & set(tree.nodes)
        assert anchor.thread_annotations == []
        assert not any(c in thread_ids for n in tree.nodes.values() for c in n.children)
        assert all_parent_refs_resolve(tree)
        assert tree.check_invariants() == []
        assert engine.find_thread(annotation.id) is None
        assert changes == [1]

    def test_thread_nodes_deleted_tail_first(self, tree, engine, monkeypatch):
        """Nodes go m2, m1, then the hidden root."""
        _, anchor, _ = _conversation(tree)
        annotation, (m1, m2) = _thread_with_messages(engine, anchor, "Q", "A")
        deleted = []
        delete_by_id = tree.delete_by_id

        def recording_delete(node_id):
            deleted.append(node_id)
            return delete_by_id(node_id)

        monkeypatch.setattr(tree, "delete_by_id", recording_delete)

        engine.delete_thread(annotation.id)

        assert deleted == [m2.id, m1.id, annotation.root_message_id]

    def test_deleting_active_thread_exits_thread_mode(self, tree, engine):
        _, anchor, _ = _conversation(tree)
        annotation, _ = _thread_with_messages(engine, anchor, "Q")
        engine.enter_thread(annotation.id)

        engine.delete_thread(annotation.id)
        assert not engine.state.thread_mode_active

    def test_deleting_draft_thread(self, tree, engine):
        _, anchor, _ = _conversation(tree)
        annotation = engine.create_annotation(anchor.id, "mat")
        before = len(tree)
        assert engine.delete_thread(annotation.id)
        assert len(tree) == before
        assert anchor.thread_annotations == []

    def test_unknown_thread(self, tree, engine, notifier):
        assert engine.delete_thread("thread_missing") is False
        assert notifier.messages == [("warning", "Selection thread not found")]

    def test_other_threads_untouched(self, tree, engine):
        _, anchor, _ = _conversation(tree)
        doomed, _ = _thread_with_messages(engine, anchor, "Q")
        kept = engine.create_annotation(anchor.id, "mat")
        kept_msg = engine.append_thread_message(kept.id, "user", "About the mat")

        engine.delete_thread(doomed.id)

        assert anchor.thread_annotations == [kept]
        assert kept_msg.id in tree
        assert [n.id for n in engine.visible_thread_chain(kept)] == [kept_msg.id]


class TestDeleteMessage:
    def test_deleting_hidden_root_deletes_thread(self, tree, engine):
        _, anchor, _ = _conversation(tree)
        annotation, (m1,) = _thread_with_messages(engine, anchor, "Q")

        assert engine.delete_message(annotation.root_message_id)

        assert m1.id not in tree
        assert anchor.thread_annotations == []

    def test_deleting_last_thread_message_moves_last_back(self, tree, engine):
        _, anchor, _ = _conversation(tree)
        annotation, (m1, m2) = _thread_with_messages(engine, anchor, "Q", "A")

        engine.delete_message(m2.id)

        assert annotation.last_message_id == m1.id
        follow_up = engine.append_thread_message(annotation.id, "assistant", "A2")
        assert follow_up.parent_id == m1.id

    def test_deleting_middle_thread_message_keeps_chain(self, tree, engine):
        _, anchor, _ = _conversation(tree)
        annotation, (m1, m2, m3) = _thread_with_messages(engine, anchor, "Q", "A", "Q2")

        engine.delete_message(m2.id)

        chain = engine.visible_thread_chain(annotation)
        assert [n.id for n in chain] == [m1.id, m3.id]

    def test_deleting_anchor_drops_its_threads_from_index(self, tree, engine):
        """Thread nodes survive via reparenting; their annotation does not."""
        _, anchor, _ = _conversation(tree)
        annotation, _ = _thread_with_messages(engine, anchor, "Q")
        engine.enter_thread(annotation.id)

        engine.delete_message(anchor.id)

        assert engine.find_thread(annotation.id) is None
        assert not engine.state.thread_mode_active
        assert tree.check_invariants() == []

    def test_unknown_message(self, engine, notifier):
        assert engine.delete_message("missing") is False
        assert notifier.messages == [("warning", "Message not found")]


# ---------------------------------------------------------------------------
# Highlights and stats
# ---------------------------------------------------------------------------


class TestHighlightsAndStats:
    def test_highlight_ranges_for_anchor(self, tree, engine):
        _, anchor, _ = _conversation(tree)
        second_cat = engine.create_annotation(anchor.id, "cat", 1)
        mat = engine.create_annotation(anchor.id, "mat")

        ranges = {r.annotation.id: (r.start_pos, r.end_pos) for r in engine.highlight_ranges(anchor.id)}

        cat_start = ANCHOR_TEXT.rindex("cat")
        mat_start = ANCHOR_TEXT.index("mat")
        assert ranges == {
            second_cat.id: (cat_start, cat_start + 3),
            mat.id: (mat_start, mat_start + 3),
        }

    def test_render_highlighted_marks_both_ranges(self, tree, engine):
        _, anchor, _ = _conversation(tree)
        second_cat = engine.create_annotation(anchor.id, "cat", 1)
        mat = engine.create_annotation(anchor.id, "mat")

        markup = engine.render_highlighted(anchor.id)

        assert markup.count("<mark") == 2
        assert f'data-thread-id="{mat.id}">mat</mark>' in markup
        assert markup.endswith(f'data-thread-id="{second_cat.id}">cat</mark>.')

    def test_render_unknown_node(self, engine):
        assert engine.render_highlighted("missing") is None

    def test_custom_text_accessor(self, tree):
        node = tree.insert("assistant", "ignored")
        engine = ThreadAnnotationEngine(tree, text_accessor=lambda n: "alpha beta alpha")
        annotation = engine.create_annotation(node.id, "alpha", 1)
        (r,) = engine.highlight_ranges(node.id)
        assert r.annotation is annotation
        assert (r.start_pos, r.end_pos) == (11, 16)

    def test_conversation_stats(self, tree, engine):
        _, anchor, _ = _conversation(tree)
        _thread_with_messages(engine, anchor, "Q", "A")
        mat = engine.create_annotation(anchor.id, "mat")
        engine.append_thread_message(mat.id, "user", "mat?")

        stats = engine.conversation_stats()

        assert stats.main_message_count == 3
        # Two hidden roots plus three messages
        assert stats.thread_message_count == 5
        assert stats.total_count == 8
        assert stats.thread_count == 2
