"""Marginalia FastAPI application entry point."""

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from marginalia.conversations.router import get_conversation_service
from marginalia.conversations.router import router as conversations_router
from marginalia.conversations.service import ConversationService
from marginalia.db.connection import Database
from marginalia.interfaces import LoggingNotifier
from marginalia.store.sqlite import SqliteConversationStore

logger = logging.getLogger(__name__)

# Load .env from backend/ directory before reading settings
load_dotenv(Path(__file__).resolve().parent.parent / ".env")

CORS_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("MARGINALIA_CORS_ORIGINS", "http://localhost:5173").split(",")
    if origin.strip()
]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage database lifecycle and service wiring."""
    db_path = os.environ.get("MARGINALIA_DB_PATH", "marginalia.db")
    db = await Database.connect(db_path)
    logger.info("using conversation database %s", db_path)

    service = ConversationService(SqliteConversationStore(db), notifier=LoggingNotifier())
    app.dependency_overrides[get_conversation_service] = lambda: service

    app.state.db = db
    yield

    await db.close()


app = FastAPI(
    title="Marginalia",
    description=(
        "Branching conversation trees with selection threads anchored"
        " to the text of earlier messages"
    ),
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(conversations_router)


@app.get("/api/health")
async def health() -> dict:
    return {"status": "ok", "version": "0.1.0"}
