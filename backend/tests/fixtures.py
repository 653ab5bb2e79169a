"""Shared test helpers."""

from httpx import AsyncClient

from marginalia.interfaces import Notifier, Renderer
from marginalia.models import HighlightRange, MessageNode
from marginalia.trees.tree import ConversationTree


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []

    def notify(self, message: str, level: str = "warning") -> None:
        self.messages.append((level, message))


class RecordingRenderer(Renderer):
    def __init__(self) -> None:
        self.calls: list[tuple[list[str], dict[str, list[HighlightRange]]]] = []

    def render_chain(
        self,
        chain: list[MessageNode],
        ranges_by_node: dict[str, list[HighlightRange]],
    ) -> None:
        self.calls.append(([n.id for n in chain], ranges_by_node))


# -- Tree builders --


def build_line(tree: ConversationTree, *contents: str) -> list[MessageNode]:
    """Insert a straight line of alternating user/assistant messages."""
    nodes: list[MessageNode] = []
    parent_id: str | None = None
    for i, content in enumerate(contents):
        role = "user" if i % 2 == 0 else "assistant"
        node = tree.insert(role, content, parent_id)
        nodes.append(node)
        parent_id = node.id
    return nodes


def all_parent_refs_resolve(tree: ConversationTree) -> bool:
    return all(
        n.parent_id is None or n.parent_id in tree.nodes
        for n in tree.nodes.values()
    )


# -- API-level helpers --


async def create_test_conversation(
    client: AsyncClient,
    title: str = "Test Conversation",
    system_prompt: str | None = None,
) -> dict:
    """Create a conversation via the API and return the response JSON."""
    body: dict = {"title": title}
    if system_prompt is not None:
        body["system_prompt"] = system_prompt
    resp = await client.post("/api/conversations", json=body)
    assert resp.status_code == 201
    return resp.json()


async def create_conversation_with_messages(
    client: AsyncClient,
    contents: list[str] | None = None,
    title: str = "Test Conversation",
) -> dict:
    """Create a conversation with a straight line of messages.

    Returns {"conversation_id": str, "node_ids": [str, ...]} where node_ids
    are in creation order.
    """
    contents = contents or ["Message 1", "Message 2", "Message 3", "Message 4"]
    conversation = await create_test_conversation(client, title=title)
    conversation_id = conversation["conversation_id"]
    node_ids: list[str] = []
    parent_id: str | None = None

    for i, content in enumerate(contents):
        role = "user" if i % 2 == 0 else "assistant"
        body: dict = {"content": content, "role": role}
        if parent_id is not None:
            body["parent_id"] = parent_id
        resp = await client.post(f"/api/conversations/{conversation_id}/messages", json=body)
        assert resp.status_code == 201
        node_ids.append(resp.json()["id"])
        parent_id = node_ids[-1]

    return {"conversation_id": conversation_id, "node_ids": node_ids}
