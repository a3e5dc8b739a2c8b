"""Tests for best-effort turn persistence."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from fakes import MemoryStore
from relay.errors import PersistenceError
from relay.models.turn import Role, Turn
from relay.services.recorder import TurnRecorder
from relay.storage.database import Database

FIXED = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FrozenDatetime(datetime):
    @classmethod
    def now(cls, tz=None):
        return FIXED


class SlowStore:
    async def append_turn(self, turn):
        await asyncio.sleep(10)
        return 1


class TestTurnRecorder:

    @pytest.mark.asyncio
    async def test_record_assigns_id_and_timestamp(self, recorder, store):
        turn = await recorder.record(Role.USER, "hello")

        assert turn.id == 1
        assert turn.role is Role.USER
        assert turn.content == "hello"
        assert turn.timestamp.tzinfo is not None
        assert store.turns == [turn.model_copy(update={"id": None})]

    @pytest.mark.asyncio
    async def test_one_record_per_call(self, recorder, store):
        await recorder.record(Role.USER, "a")
        await recorder.record(Role.ASSISTANT, "b")

        assert [(t.role, t.content) for t in store.turns] == [
            (Role.USER, "a"),
            (Role.ASSISTANT, "b"),
        ]

    def test_timestamps_strictly_increase_on_clock_tie(self, recorder):
        with patch("relay.services.recorder.datetime", FrozenDatetime):
            first = recorder.stamp(Role.USER, "a")
            second = recorder.stamp(Role.ASSISTANT, "b")

        assert first.timestamp == FIXED
        assert second.timestamp == FIXED + timedelta(microseconds=1)

    def test_stamped_turn_is_immutable(self, recorder):
        turn = recorder.stamp(Role.USER, "a")
        with pytest.raises(Exception):
            turn.content = "b"

    @pytest.mark.asyncio
    async def test_store_failure_is_logged_not_raised(self, caplog):
        recorder = TurnRecorder(MemoryStore(fail=True))

        with caplog.at_level(logging.WARNING, logger="relay.services.recorder"):
            result = await recorder.record(Role.USER, "hello")

        assert result is None
        assert "failed to record user turn" in caplog.text

    @pytest.mark.asyncio
    async def test_slow_store_times_out(self):
        recorder = TurnRecorder(SlowStore(), timeout=0.05)
        assert await recorder.record(Role.ASSISTANT, "hello") is None

    @pytest.mark.asyncio
    async def test_unexpected_store_error_is_contained(self):
        store = MagicMock()
        store.append_turn = AsyncMock(side_effect=KeyError("boom"))
        recorder = TurnRecorder(store)

        assert await recorder.record(Role.USER, "hello") is None

    @pytest.mark.asyncio
    async def test_missing_id_counts_as_failure(self):
        store = MagicMock()
        store.append_turn = AsyncMock(return_value=None)
        recorder = TurnRecorder(store)

        assert await recorder.record(Role.USER, "hello") is None

    @pytest.mark.asyncio
    async def test_record_nowait_runs_in_background(self, recorder, store):
        turn = recorder.stamp(Role.USER, "hello")
        task = recorder.record_nowait(turn)

        assert isinstance(task, asyncio.Task)
        saved = await task
        assert saved.id == 1
        assert saved.timestamp == turn.timestamp


class TestDatabase:

    @pytest.mark.asyncio
    async def test_append_turn_returns_new_id(self):
        pool = MagicMock()
        pool.fetchval = AsyncMock(return_value=42)
        turn = Turn(role=Role.ASSISTANT, content="hi", timestamp=FIXED)

        assert await Database(pool).append_turn(turn) == 42

        query, role, content, created_at = pool.fetchval.call_args.args
        assert query.startswith("INSERT INTO turns")
        assert "RETURNING id" in query
        assert (role, content, created_at) == ("assistant", "hi", FIXED)

    @pytest.mark.asyncio
    async def test_append_turn_wraps_store_errors(self):
        pool = MagicMock()
        pool.fetchval = AsyncMock(side_effect=OSError("connection refused"))

        with pytest.raises(PersistenceError):
            await Database(pool).append_turn(Turn(role=Role.USER, content="hi"))

    @pytest.mark.asyncio
    async def test_connect_rejects_unsafe_schema_name(self):
        with pytest.raises(ValueError):
            await Database.connect("postgresql://localhost/relay", schema="relay; DROP TABLE turns")

    @pytest.mark.asyncio
    async def test_connect_selects_namespace(self):
        conn = MagicMock()
        conn.execute = AsyncMock()
        conn.close = AsyncMock()

        pooled = MagicMock()
        pooled.execute = AsyncMock()
        acquire = MagicMock()
        acquire.__aenter__ = AsyncMock(return_value=pooled)
        acquire.__aexit__ = AsyncMock(return_value=False)
        pool = MagicMock()
        pool.acquire = MagicMock(return_value=acquire)

        with patch("relay.storage.database.asyncpg.connect", AsyncMock(return_value=conn)), \
                patch("relay.storage.database.asyncpg.create_pool", AsyncMock(return_value=pool)) as create_pool:
            db = await Database.connect("postgresql://u:p@localhost/relay", schema="chat")

        assert isinstance(db, Database)
        conn.execute.assert_awaited_once_with('CREATE SCHEMA IF NOT EXISTS "chat"')
        conn.close.assert_awaited_once()
        assert create_pool.call_args.kwargs["server_settings"] == {"search_path": "chat"}
        assert "CREATE TABLE IF NOT EXISTS turns" in pooled.execute.call_args.args[0]
