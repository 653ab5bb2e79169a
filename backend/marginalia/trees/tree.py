"""In-memory conversation tree: an id-keyed arena of MessageNode records.

Links are ids, never object references, so deleting and reparenting are
plain id rewrites. All operations are synchronous and total: lookups that
miss return None/False instead of raising.
"""

import logging
from typing import Any

from marginalia.models import ConversationSnapshot, MessageNode, Role

logger = logging.getLogger(__name__)


class ConversationTree:
    """Owns every node of one conversation plus the root and tip pointers."""

    def __init__(self) -> None:
        self.nodes: dict[str, MessageNode] = {}
        self.root: str | None = None
        self.current_node: str | None = None

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def get(self, node_id: str | None) -> MessageNode | None:
        if node_id is None:
            return None
        return self.nodes.get(node_id)

    # -- Mutation --

    def insert(
        self,
        role: Role,
        content: str | list[dict[str, Any]],
        parent_id: str | None = None,
        *,
        preserve_current_node: bool = False,
        **markers: Any,
    ) -> MessageNode:
        """Create a node under parent_id and make it the current tip.

        An unknown parent_id still creates the node, as a parentless one.
        Thread messages pass preserve_current_node so the main path tip
        does not move. Extra keyword arguments set thread markers.
        """
        parent = self.get(parent_id)
        if parent_id is not None and parent is None:
            logger.warning("insert: parent %s not found, creating parentless node", parent_id)

        node = MessageNode(
            role=role,
            content=content,
            parent_id=parent.id if parent else None,
            **markers,
        )
        self.nodes[node.id] = node

        if parent is not None:
            parent.children.append(node.id)
        if self.root is None:
            self.root = node.id
        elif parent is None:
            logger.warning("insert: node %s has no parent but root %s exists", node.id, self.root)

        if not preserve_current_node or self.current_node is None:
            self.current_node = node.id
        return node

    def insert_after(
        self,
        after_id: str,
        role: Role,
        content: str | list[dict[str, Any]],
        *,
        next_id: str | None = None,
    ) -> MessageNode | None:
        """Insert a node between after_id and next_id (A -> new -> B).

        When next_id is not a direct child of after_id, the new node is just
        added as another child of after_id and next_id is left alone. The
        node is placed in store order right after after_id (or before
        next_id), so replaying nodes in order keeps the displayed sequence.
        """
        after = self.get(after_id)
        if after is None:
            return None
        next_id = next_id.strip() if next_id and next_id.strip() else None

        node = MessageNode(role=role, content=content, parent_id=after.id)

        order = list(self.nodes)
        insert_at = order.index(after.id) + 1
        if next_id is not None and next_id in self.nodes:
            next_pos = order.index(next_id)
            if next_pos > insert_at - 1:
                insert_at = next_pos
        order.insert(insert_at, node.id)
        staged = dict(self.nodes)
        staged[node.id] = node
        self.nodes = {node_id: staged[node_id] for node_id in order}

        next_node = self.get(next_id)
        if next_node is not None and next_node.parent_id == after.id:
            slot = after.children.index(next_node.id)
            after.children[slot] = node.id
            node.children = [next_node.id]
            next_node.parent_id = node.id
        else:
            after.children.append(node.id)

        if next_id is None and self.current_node == after.id:
            self.current_node = node.id
        return node

    def delete_by_id(self, node_id: str) -> bool:
        """Remove one node, splicing its children into its parent.

        Deleting a root with several children promotes only the first
        child; the others become parentless and are only reachable by id.
        """
        node = self.nodes.get(node_id)
        if node is None:
            return False

        if node.parent_id is not None:
            parent = self.nodes.get(node.parent_id)
            if parent is not None:
                parent.children = [c for c in parent.children if c != node_id]
                for child_id in node.children:
                    child = self.nodes.get(child_id)
                    if child is not None:
                        child.parent_id = parent.id
                        parent.children.append(child.id)
            else:
                logger.warning("delete_by_id: parent %s of %s missing", node.parent_id, node_id)
        elif node_id != self.root:
            # Detached subtree head: its children stay detached.
            for child_id in node.children:
                child = self.nodes.get(child_id)
                if child is not None:
                    child.parent_id = None
        elif not node.children:
            self.root = None
        elif len(node.children) == 1:
            new_root = self.nodes.get(node.children[0])
            self.root = new_root.id if new_root else None
            if new_root is not None:
                new_root.parent_id = None
        else:
            first = self.nodes.get(node.children[0])
            self.root = first.id if first else None
            for child_id in node.children:
                child = self.nodes.get(child_id)
                if child is not None:
                    child.parent_id = None
            logger.warning(
                "delete_by_id: root %s had %d children; %d subtree(s) detached",
                node_id, len(node.children), len(node.children) - 1,
            )

        if self.current_node == node_id:
            self.current_node = node.parent_id
        del self.nodes[node_id]
        return True

    def set_current(self, node_id: str) -> bool:
        if node_id not in self.nodes:
            return False
        self.current_node = node_id
        return True

    def clear(self) -> None:
        self.nodes = {}
        self.root = None
        self.current_node = None

    # -- Chains --

    def chain_to(self, node_id: str | None) -> list[MessageNode]:
        """Path from a parentless node down to node_id, oldest first.

        Stops early if a parent id does not resolve; that only happens on
        a corrupted tree.
        """
        chain: list[MessageNode] = []
        seen: set[str] = set()
        current_id = node_id
        while current_id is not None:
            node = self.nodes.get(current_id)
            if node is None:
                if chain:
                    logger.warning("chain truncated: parent %s not found", current_id)
                break
            if node.id in seen:
                logger.warning("chain truncated: cycle at %s", node.id)
                break
            seen.add(node.id)
            chain.append(node)
            current_id = node.parent_id
        chain.reverse()
        return chain

    def get_chain(self) -> list[MessageNode]:
        """Path from the root to the current node, oldest first."""
        return self.chain_to(self.current_node)

    def detached_nodes(self) -> list[MessageNode]:
        """Parentless nodes other than the root."""
        return [
            n for n in self.nodes.values()
            if n.parent_id is None and n.id != self.root
        ]

    def check_invariants(self) -> list[str]:
        """Describe every structural invariant the tree currently breaks."""
        problems: list[str] = []

        if self.root is not None:
            root = self.nodes.get(self.root)
            if root is None:
                problems.append(f"root {self.root} not in nodes")
            elif root.parent_id is not None:
                problems.append(f"root {self.root} has parent {root.parent_id}")

        for node in self.nodes.values():
            if node.parent_id is None:
                continue
            parent = self.nodes.get(node.parent_id)
            if parent is None:
                problems.append(f"{node.id}: parent {node.parent_id} missing")
            elif parent.children.count(node.id) != 1:
                problems.append(
                    f"{node.id}: listed {parent.children.count(node.id)} times "
                    f"in children of {parent.id}"
                )

        for node in self.nodes.values():
            for child_id in node.children:
                child = self.nodes.get(child_id)
                if child is None:
                    problems.append(f"{node.id}: child {child_id} missing")
                elif child.parent_id != node.id:
                    problems.append(f"{node.id}: child {child_id} points at {child.parent_id}")

        for node in self.nodes.values():
            seen: set[str] = set()
            current: MessageNode | None = node
            while current is not None and current.parent_id is not None:
                if current.id in seen:
                    problems.append(f"{node.id}: cycle through {current.id}")
                    break
                seen.add(current.id)
                current = self.nodes.get(current.parent_id)

        if self.current_node is not None and self.current_node not in self.nodes:
            problems.append(f"current node {self.current_node} missing")

        return problems

    # -- Snapshots --

    def to_snapshot(self, conversation_id: str, title: str | None = None) -> ConversationSnapshot:
        return ConversationSnapshot(
            conversation_id=conversation_id,
            title=title,
            nodes=[n.model_copy(deep=True) for n in self.nodes.values()],
            root=self.root,
            current_node=self.current_node,
        )

    @classmethod
    def from_snapshot(cls, snapshot: ConversationSnapshot) -> "ConversationTree":
        tree = cls()
        tree.nodes = {n.id: n.model_copy(deep=True) for n in snapshot.nodes}
        tree.root = snapshot.root if snapshot.root in tree.nodes else None
        tree.current_node = (
            snapshot.current_node if snapshot.current_node in tree.nodes else None
        )
        return tree
