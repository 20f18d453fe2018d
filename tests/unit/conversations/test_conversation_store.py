"""Unit tests for conversation persistence store behavior."""

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from chatbi.conversations.store import ConversationStore
from chatbi.models.chat import ChatMessage, ChatMessageMetadata


def _pool_with_connection():
    conn = MagicMock()
    conn.execute = AsyncMock()
    conn.transaction.return_value.__aenter__ = AsyncMock(return_value=None)
    conn.transaction.return_value.__aexit__ = AsyncMock(return_value=False)

    pool = AsyncMock()
    pool.acquire = MagicMock()
    pool.acquire.return_value.__aenter__ = AsyncMock(return_value=conn)
    pool.acquire.return_value.__aexit__ = AsyncMock(return_value=False)
    return pool, conn


@pytest.mark.asyncio
async def test_ensure_session_generates_id_and_trims_title() -> None:
    pool = AsyncMock()
    store = ConversationStore(pool=pool)

    session_id = await store.ensure_session(session_id=None, user_id="u-1", title="统" * 150)

    assert session_id
    args = pool.execute.await_args.args
    assert "ON CONFLICT (session_id) DO UPDATE" in args[0]
    assert args[1] == session_id
    assert args[2] == "u-1"
    assert args[6] == "统" * 100


@pytest.mark.asyncio
async def test_ensure_session_keeps_given_id() -> None:
    pool = AsyncMock()
    store = ConversationStore(pool=pool)

    session_id = await store.ensure_session(
        session_id="session-1", user_id="u-1", title="", database_connection_id="conn-1"
    )

    assert session_id == "session-1"
    args = pool.execute.await_args.args
    assert args[4] == "conn-1"
    assert args[6] == "新对话"


@pytest.mark.asyncio
async def test_append_message_writes_metadata_in_transaction() -> None:
    pool, conn = _pool_with_connection()
    store = ConversationStore(pool=pool)
    message = ChatMessage(
        role="assistant",
        content="共 3 条记录",
        metadata=ChatMessageMetadata(sql="SELECT 1", work_process=["执行查询"]),
    )

    message_id = await store.append_message("session-1", message)

    assert message_id
    conn.transaction.assert_called_once()
    insert_args = conn.execute.await_args_list[0].args
    assert "INSERT INTO chat_messages" in insert_args[0]
    assert insert_args[2:5] == ("session-1", "assistant", "共 3 条记录")
    metadata = json.loads(insert_args[5])
    assert metadata["sql"] == "SELECT 1"
    assert metadata["work_process"] == ["执行查询"]
    assert "UPDATE chat_sessions" in conn.execute.await_args_list[1].args[0]


@pytest.mark.asyncio
async def test_list_messages_decodes_rows_and_bounds_limit() -> None:
    pool = AsyncMock()
    pool.fetch.return_value = [
        {
            "message_id": "m-1",
            "role": "user",
            "content": "列出客户",
            "metadata": '{"sql": null}',
            "created_at": datetime(2026, 2, 20, 10, 0, tzinfo=UTC),
        }
    ]
    store = ConversationStore(pool=pool)

    messages = await store.list_messages("session-1", limit=10_000)

    assert messages == [
        {
            "message_id": "m-1",
            "role": "user",
            "content": "列出客户",
            "metadata": {"sql": None},
            "created_at": "2026-02-20T10:00:00+00:00",
        }
    ]
    assert pool.fetch.await_args.args[2] == 200


@pytest.mark.asyncio
async def test_operations_require_initialize() -> None:
    store = ConversationStore(database_url="postgresql://example")

    with pytest.raises(RuntimeError, match="not initialized"):
        await store.list_messages("session-1")


@pytest.mark.asyncio
async def test_initialize_without_url_raises() -> None:
    store = ConversationStore()

    with pytest.raises(ValueError, match="SYSTEM_DATABASE_URL"):
        await store.initialize()


@pytest.mark.asyncio
async def test_save_checkpoint_updates_session_work_process() -> None:
    pool = AsyncMock()
    store = ConversationStore(pool=pool)

    await store.save_checkpoint("session-1", ["已加载数据权限", "字段白名单包含 2 个表"])

    args = pool.execute.await_args.args
    assert "UPDATE chat_sessions SET work_process" in args[0]
    assert args[1] == "session-1"
    assert json.loads(args[2]) == ["已加载数据权限", "字段白名单包含 2 个表"]


@pytest.mark.asyncio
async def test_initialize_adds_work_process_column() -> None:
    pool = AsyncMock()
    store = ConversationStore(pool=pool)

    await store.initialize()

    statements = [call.args[0] for call in pool.execute.await_args_list]
    assert any("ADD COLUMN IF NOT EXISTS work_process" in sql for sql in statements)
