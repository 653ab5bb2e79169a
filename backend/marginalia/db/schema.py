"""Database schema DDL. All tables use CREATE IF NOT EXISTS for idempotency.

A conversation is stored whole: one row per conversation, with the node
list (annotations included) serialized as JSON. Thread and message counts
are denormalized for listing without decoding the nodes.
"""

SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS conversations (
    conversation_id TEXT PRIMARY KEY,
    title TEXT,
    root TEXT,
    current_node TEXT,
    nodes TEXT NOT NULL DEFAULT '[]',
    message_count INTEGER NOT NULL DEFAULT 0,
    thread_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_conversations_updated_at ON conversations(updated_at);
"""
