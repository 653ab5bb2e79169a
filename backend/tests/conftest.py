"""Shared pytest fixtures for Marginalia tests."""

import pytest
from httpx import ASGITransport, AsyncClient

from marginalia.conversations.router import get_conversation_service
from marginalia.conversations.service import ConversationService
from marginalia.db.connection import Database
from marginalia.main import app
from marginalia.store.sqlite import SqliteConversationStore
from marginalia.threads.engine import ThreadAnnotationEngine
from marginalia.trees.tree import ConversationTree
from tests.fixtures import RecordingNotifier, RecordingRenderer


@pytest.fixture
async def db():
    """In-memory database for tests."""
    database = await Database.connect(":memory:")
    yield database
    await database.close()


@pytest.fixture
async def store(db):
    """SqliteConversationStore backed by in-memory database."""
    return SqliteConversationStore(db)


@pytest.fixture
async def service(store):
    return ConversationService(store, notifier=RecordingNotifier())


@pytest.fixture
async def client(service):
    """Async test client with in-memory DB wired into the app."""
    app.dependency_overrides[get_conversation_service] = lambda: service
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def tree():
    return ConversationTree()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def renderer():
    return RecordingRenderer()


@pytest.fixture
def changes():
    """Counts on_change callbacks from the engine."""
    return []


@pytest.fixture
def engine(tree, notifier, renderer, changes):
    return ThreadAnnotationEngine(
        tree,
        notifier=notifier,
        renderer=renderer,
        on_change=lambda: changes.append(1),
    )
