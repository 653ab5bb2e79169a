"""SQLite-backed PersistenceStore."""

import logging

from pydantic import TypeAdapter

from marginalia.db.connection import Database
from marginalia.interfaces import PersistenceStore
from marginalia.models import ConversationSnapshot, MessageNode, utcnow

logger = logging.getLogger(__name__)

_NODES = TypeAdapter(list[MessageNode])


class SqliteConversationStore(PersistenceStore):
    """Saves and loads whole conversation snapshots, one row each."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def save(self, snapshot: ConversationSnapshot) -> None:
        """Insert or replace a snapshot. created_at of an existing row is kept."""
        now = utcnow()
        thread_count = sum(len(n.thread_annotations) for n in snapshot.nodes)
        await self._db.execute(
            """
            INSERT INTO conversations
                (conversation_id, title, root, current_node, nodes,
                 message_count, thread_count, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(conversation_id) DO UPDATE SET
                title = excluded.title,
                root = excluded.root,
                current_node = excluded.current_node,
                nodes = excluded.nodes,
                message_count = excluded.message_count,
                thread_count = excluded.thread_count,
                updated_at = excluded.updated_at
            """,
            (
                snapshot.conversation_id,
                snapshot.title,
                snapshot.root,
                snapshot.current_node,
                _NODES.dump_json(snapshot.nodes).decode(),
                len(snapshot.nodes),
                thread_count,
                snapshot.created_at.isoformat(),
                now.isoformat(),
            ),
        )

    async def load(self, conversation_id: str) -> ConversationSnapshot | None:
        row = await self._db.fetchone(
            "SELECT * FROM conversations WHERE conversation_id = ?",
            (conversation_id,),
        )
        if row is None:
            return None
        try:
            nodes = _NODES.validate_json(row["nodes"])
        except ValueError:
            logger.error("conversation %s has unreadable nodes; loading it empty", conversation_id)
            nodes = []
        return ConversationSnapshot(
            conversation_id=row["conversation_id"],
            title=row["title"],
            nodes=nodes,
            root=row["root"],
            current_node=row["current_node"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def list_conversations(self) -> list[dict]:
        """Lightweight rows for listing, newest first. Nodes are not decoded."""
        rows = await self._db.fetchall(
            "SELECT conversation_id, title, message_count, thread_count, created_at, updated_at "
            "FROM conversations ORDER BY updated_at DESC"
        )
        return [dict(row) for row in rows]

    async def delete(self, conversation_id: str) -> bool:
        cursor = await self._db.execute(
            "DELETE FROM conversations WHERE conversation_id = ?",
            (conversation_id,),
        )
        return cursor.rowcount > 0

