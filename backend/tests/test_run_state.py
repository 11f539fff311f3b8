"""Tests for the in-flight run registry (in-memory and SQL stores)."""

from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from flowreplay.db.models import Base
from flowreplay.schemas.runs import RunStateEntry
from flowreplay.services.run_state_service import (
    InMemoryRunStateStore,
    RunStateService,
    SqlRunStateStore,
)

_SQLITE_URL = "sqlite+aiosqlite:///:memory:"


async def _make_db() -> tuple:
    """Create an in-memory SQLite engine with all tables and return (engine, session_factory)."""
    eng = create_async_engine(_SQLITE_URL, echo=False, future=True)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(eng, class_=AsyncSession, expire_on_commit=False)
    return eng, factory


def _entry(run_id: str, status: str = "running") -> RunStateEntry:
    return RunStateEntry(id=run_id, flow_id="flow_a", name="Flow A", status=status)


# ── 1. In-memory store ──────────────────────────────────────────


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_add_update_delete(self):
        store = InMemoryRunStateStore()
        await store.add("r1", _entry("r1"))
        updated = await store.update("r1", {"status": "completed"})
        assert updated.status == "completed"
        assert (await store.restore())["r1"].status == "completed"
        await store.delete("r1")
        assert await store.restore() == {}

    @pytest.mark.asyncio
    async def test_update_unknown_is_ignored(self):
        store = InMemoryRunStateStore()
        assert await store.update("nope", {"status": "failed"}) is None

    @pytest.mark.asyncio
    async def test_patch_limited_to_mutable_fields(self):
        store = InMemoryRunStateStore()
        await store.add("r1", _entry("r1"))
        updated = await store.update("r1", {"flow_id": "hijack", "name": "Renamed"})
        assert updated.flow_id == "flow_a"
        assert updated.name == "Renamed"

    @pytest.mark.asyncio
    async def test_restore_returns_copy(self):
        store = InMemoryRunStateStore()
        await store.add("r1", _entry("r1"))
        snapshot = await store.restore()
        snapshot.clear()
        assert "r1" in await store.restore()


# ── 2. Service ──────────────────────────────────────────────────


class TestRunStateService:
    @pytest.mark.asyncio
    async def test_defaults_to_in_memory(self):
        svc = RunStateService()
        assert isinstance(svc.store, InMemoryRunStateStore)

    @pytest.mark.asyncio
    async def test_update_stamps_updated_at(self):
        svc = RunStateService()
        entry = _entry("r1")
        await svc.add("r1", entry)
        updated = await svc.update("r1", {"status": "stopped"})
        assert updated.status == "stopped"
        assert updated.updated_at >= entry.updated_at
        assert (await svc.get("r1")).status == "stopped"

    @pytest.mark.asyncio
    async def test_invalid_status_rejected(self):
        svc = RunStateService()
        await svc.add("r1", _entry("r1"))
        with pytest.raises(ValueError, match="invalid run status"):
            await svc.update("r1", {"status": "exploded"})

    @pytest.mark.asyncio
    async def test_restore_logs_running_once(self, caplog):
        store = InMemoryRunStateStore()
        await store.add("r1", _entry("r1"))
        await store.add("r2", _entry("r2", status="stopped"))
        svc = RunStateService(store)
        with caplog.at_level("INFO", logger="flowreplay.run_state"):
            entries = await svc.restore()
            await svc.restore()
        assert set(entries) == {"r1", "r2"}
        restored = [r for r in caplog.records if "Restored" in r.getMessage()]
        assert len(restored) == 1
        assert "r1" in restored[0].getMessage()

    @pytest.mark.asyncio
    async def test_get_missing(self):
        assert await RunStateService().get("ghost") is None


# ── 3. SQL store ────────────────────────────────────────────────


class TestSqlRunStateStore:
    @pytest.mark.asyncio
    async def test_roundtrip(self):
        eng, factory = await _make_db()
        store = SqlRunStateStore(factory)

        await store.add("r1", _entry("r1"))
        await store.add("r2", _entry("r2"))
        entries = await store.restore()
        assert set(entries) == {"r1", "r2"}
        assert entries["r1"].flow_id == "flow_a"
        assert entries["r1"].name == "Flow A"

        updated = await store.update("r1", {"status": "stopped"})
        assert updated.status == "stopped"
        await store.delete("r2")
        entries = await store.restore()
        assert set(entries) == {"r1"}
        assert entries["r1"].status == "stopped"
        await eng.dispose()

    @pytest.mark.asyncio
    async def test_add_existing_overwrites(self):
        eng, factory = await _make_db()
        store = SqlRunStateStore(factory)
        await store.add("r1", _entry("r1"))
        await store.add("r1", _entry("r1", status="failed"))
        assert (await store.restore())["r1"].status == "failed"
        await eng.dispose()

    @pytest.mark.asyncio
    async def test_update_and_delete_unknown(self):
        eng, factory = await _make_db()
        store = SqlRunStateStore(factory)
        assert await store.update("ghost", {"status": "failed"}) is None
        await store.delete("ghost")
        assert await store.restore() == {}
        await eng.dispose()

    @pytest.mark.asyncio
    async def test_service_over_sql(self):
        eng, factory = await _make_db()
        svc = RunStateService(SqlRunStateStore(factory))
        await svc.add("r1", _entry("r1"))
        await svc.update("r1", {"status": "completed"})
        assert (await svc.get("r1")).status == "completed"
        await eng.dispose()
