"""Storage for chat sessions and their messages."""

import json
import logging
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import asyncpg

from chatbi.config import get_settings
from chatbi.models.chat import ChatMessage

logger = logging.getLogger(__name__)

MAX_LISTED_MESSAGES = 200

_CREATE_SESSIONS_TABLE = """
CREATE TABLE IF NOT EXISTS chat_sessions (
    session_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    organization_id TEXT,
    database_connection_id TEXT,
    agent_id TEXT,
    title TEXT NOT NULL,
    work_process JSONB NOT NULL DEFAULT '[]'::jsonb,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);
"""

_ADD_SESSIONS_WORK_PROCESS = """
ALTER TABLE chat_sessions
ADD COLUMN IF NOT EXISTS work_process JSONB NOT NULL DEFAULT '[]'::jsonb;
"""

_CREATE_MESSAGES_TABLE = """
CREATE TABLE IF NOT EXISTS chat_messages (
    message_id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES chat_sessions(session_id) ON DELETE CASCADE,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    metadata JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL
);
"""

_CREATE_MESSAGES_SESSION_INDEX = """
CREATE INDEX IF NOT EXISTS chat_messages_session_idx
ON chat_messages (session_id, created_at);
"""


class ConversationStore:
    """Persist chat sessions and messages in the system database."""

    def __init__(self, database_url: str | None = None, pool: asyncpg.Pool | None = None) -> None:
        settings = get_settings()
        self._database_url = database_url or (
            str(settings.system_database.url) if settings.system_database.url else None
        )
        self._pool = pool

    async def initialize(self) -> None:
        if self._pool is None:
            if not self._database_url:
                raise ValueError("SYSTEM_DATABASE_URL must be set for conversation storage.")
            dsn = self._normalize_postgres_url(self._database_url)
            self._pool = await asyncpg.create_pool(dsn=dsn, min_size=1, max_size=5)
        await self._pool.execute(_CREATE_SESSIONS_TABLE)
        await self._pool.execute(_ADD_SESSIONS_WORK_PROCESS)
        await self._pool.execute(_CREATE_MESSAGES_TABLE)
        await self._pool.execute(_CREATE_MESSAGES_SESSION_INDEX)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_session(
        self,
        *,
        session_id: str | None,
        user_id: str,
        title: str,
        organization_id: str | None = None,
        database_connection_id: str | None = None,
        agent_id: str | None = None,
    ) -> str:
        """Create the session row if missing; returns the session id."""
        self._ensure_pool()
        resolved = session_id or str(uuid4())
        now = datetime.now(UTC)
        await self._pool.execute(
            """
            INSERT INTO chat_sessions (
                session_id, user_id, organization_id, database_connection_id, agent_id,
                title, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $7)
            ON CONFLICT (session_id) DO UPDATE SET updated_at = EXCLUDED.updated_at
            """,
            resolved,
            user_id,
            organization_id,
            database_connection_id,
            agent_id,
            title[:100] or "新对话",
            now,
        )
        return resolved

    async def append_message(self, session_id: str, message: ChatMessage) -> str:
        self._ensure_pool()
        message_id = str(uuid4())
        now = datetime.now(UTC)
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO chat_messages (
                        message_id, session_id, role, content, metadata, created_at
                    ) VALUES ($1, $2, $3, $4, $5::jsonb, $6)
                    """,
                    message_id,
                    session_id,
                    message.role,
                    message.content,
                    json.dumps(message.metadata.model_dump(mode="json"), ensure_ascii=False),
                    now,
                )
                await conn.execute(
                    "UPDATE chat_sessions SET updated_at = $2 WHERE session_id = $1",
                    session_id,
                    now,
                )
        return message_id

    async def save_checkpoint(self, session_id: str, work_process: list[str]) -> None:
        """Record the latest processing steps on the session row."""
        self._ensure_pool()
        await self._pool.execute(
            "UPDATE chat_sessions SET work_process = $2::jsonb, updated_at = $3 WHERE session_id = $1",
            session_id,
            json.dumps(work_process, ensure_ascii=False),
            datetime.now(UTC),
        )

    async def list_messages(self, session_id: str, *, limit: int = 50) -> list[dict[str, Any]]:
        self._ensure_pool()
        bounded_limit = max(1, min(limit, MAX_LISTED_MESSAGES))
        rows = await self._pool.fetch(
            """
            SELECT message_id, role, content, metadata, created_at
            FROM (
                SELECT message_id, role, content, metadata, created_at
                FROM chat_messages
                WHERE session_id = $1
                ORDER BY created_at DESC
                LIMIT $2
            ) recent
            ORDER BY created_at ASC
            """,
            session_id,
            bounded_limit,
        )
        return [self._row_to_payload(row) for row in rows]

    def _ensure_pool(self) -> None:
        if self._pool is None:
            raise RuntimeError("ConversationStore not initialized")

    @staticmethod
    def _normalize_postgres_url(url: str) -> str:
        if url.startswith("postgresql+asyncpg://"):
            return "postgresql://" + url[len("postgresql+asyncpg://") :]
        return url

    @staticmethod
    def _decode_json_field(value: Any) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return None
        return value

    @classmethod
    def _row_to_payload(cls, row: asyncpg.Record) -> dict[str, Any]:
        return {
            "message_id": str(row["message_id"]),
            "role": str(row["role"]),
            "content": str(row["content"]),
            "metadata": cls._decode_json_field(row["metadata"]) or {},
            "created_at": row["created_at"].isoformat() if row["created_at"] else None,
        }
