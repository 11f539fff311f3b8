"""Tests for run record persistence and the async engine helpers."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from flowreplay.db.engine import _build_engine_kwargs, create_engine, init_db, make_session_factory
from flowreplay.db.models import RunLogRow
from flowreplay.schemas.runs import NetworkSnippet, RunLogEntry, RunOptions, RunRecord
from flowreplay.services.execution_service import run_flow
from flowreplay.services.run_service import (
    SqlRunPersistence,
    append_run,
    get_run,
    list_runs,
    to_record,
)
from flowreplay.services.run_state_service import RunStateService, SqlRunStateStore
from flowreplay.runtime.plugins import BreakpointPlugin
from flowreplay.runtime.ports import EngineServices

_SQLITE_URL = "sqlite+aiosqlite:///:memory:"


async def _make_db() -> tuple:
    eng = create_engine(_SQLITE_URL)
    await init_db(eng)
    return eng, make_session_factory(eng)


def _record(run_id: str, flow_id: str = "flow_a", success: bool = True, offset_s: int = 0) -> RunRecord:
    started = datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=offset_s)
    return RunRecord(
        id=run_id,
        flow_id=flow_id,
        started_at=started,
        finished_at=started + timedelta(seconds=2),
        success=success,
        entries=[
            RunLogEntry(step_id="nav", status="success", took_ms=12.5),
            RunLogEntry(step_id="fill", status="retrying", message="not found"),
            RunLogEntry(
                step_id="network-capture",
                status="success",
                message="Captured 1 requests",
                network_snippets=[NetworkSnippet(method="POST", url="https://api/x", status=201, ms=40)],
            ),
        ],
    )


# ── 1. Engine helpers ───────────────────────────────────────────


class TestEngine:
    def test_sqlite_kwargs(self):
        kwargs = _build_engine_kwargs("sqlite+aiosqlite:///./x.db")
        assert kwargs["connect_args"] == {"check_same_thread": False}
        assert "pool_pre_ping" not in kwargs

    def test_postgres_kwargs(self):
        kwargs = _build_engine_kwargs("postgresql+asyncpg://u:p@h/db")
        assert kwargs["pool_pre_ping"] is True
        assert "connect_args" not in kwargs

    @pytest.mark.asyncio
    async def test_init_db_creates_tables(self):
        eng, factory = await _make_db()
        async with factory() as db:
            result = await db.execute(select(RunLogRow))
            assert result.scalars().all() == []
        await eng.dispose()


# ── 2. append / list / get ──────────────────────────────────────


class TestRunRecords:
    @pytest.mark.asyncio
    async def test_append_and_get_roundtrip(self):
        eng, factory = await _make_db()
        async with factory() as db:
            await append_run(db, _record("run_1"))
            await db.commit()

        async with factory() as db:
            row = await get_run(db, "run_1")
            record = to_record(row)

        assert record.id == "run_1"
        assert record.success is True
        assert [e.step_id for e in record.entries] == ["nav", "fill", "network-capture"]
        assert record.entries[0].took_ms == 12.5
        assert record.entries[1].message == "not found"
        snippet = record.entries[2].network_snippets[0]
        assert (snippet.method, snippet.status, snippet.ms) == ("POST", 201, 40)
        await eng.dispose()

    @pytest.mark.asyncio
    async def test_get_missing(self):
        eng, factory = await _make_db()
        async with factory() as db:
            assert await get_run(db, "ghost") is None
        await eng.dispose()

    @pytest.mark.asyncio
    async def test_snippets_stored_as_json(self):
        eng, factory = await _make_db()
        record = _record("run_1")
        record.entries[2].network_snippets[0].url = "https://api/x?token=abc"
        async with factory() as db:
            await append_run(db, record)
            await db.commit()
            rows = (await db.execute(select(RunLogRow).where(RunLogRow.step_id == "network-capture"))).scalars().all()
        stored = json.loads(rows[0].network_snippets_json)
        assert stored[0]["url"] == "https://api/x?token=abc"
        assert stored[0]["method"] == "POST"
        await eng.dispose()

    @pytest.mark.asyncio
    async def test_list_runs_filters(self):
        eng, factory = await _make_db()
        async with factory() as db:
            await append_run(db, _record("r1", offset_s=0))
            await append_run(db, _record("r2", success=False, offset_s=10))
            await append_run(db, _record("r3", flow_id="flow_b", offset_s=20))
            await db.commit()

        async with factory() as db:
            assert [r.run_id for r in await list_runs(db)] == ["r3", "r2", "r1"]
            assert [r.run_id for r in await list_runs(db, order="asc")] == ["r1", "r2", "r3"]
            assert [r.run_id for r in await list_runs(db, flow_id="flow_a")] == ["r2", "r1"]
            assert [r.run_id for r in await list_runs(db, success=False)] == ["r2"]
            assert [r.run_id for r in await list_runs(db, limit=1, offset=1)] == ["r2"]
            later = datetime(2026, 1, 1, 0, 0, 5, tzinfo=timezone.utc)
            assert [r.run_id for r in await list_runs(db, started_from=later, order="asc")] == ["r2", "r3"]
        await eng.dispose()


# ── 3. Ports wired to SQL ───────────────────────────────────────


class TestSqlPorts:
    @pytest.mark.asyncio
    async def test_persistence_port(self):
        eng, factory = await _make_db()
        await SqlRunPersistence(factory).append_run(_record("run_9"))
        async with factory() as db:
            assert (await get_run(db, "run_9")) is not None
        await eng.dispose()

    @pytest.mark.asyncio
    async def test_duplicate_run_id_rolls_back(self):
        eng, factory = await _make_db()
        port = SqlRunPersistence(factory)
        await port.append_run(_record("run_9"))
        with pytest.raises(IntegrityError):
            await port.append_run(_record("run_9"))
        async with factory() as db:
            assert len(await list_runs(db)) == 1
        await eng.dispose()

    @pytest.mark.asyncio
    async def test_run_flow_against_sql(self, linear_flow, registry):
        eng, factory = await _make_db()
        services = EngineServices(
            registry=registry,
            persistence=SqlRunPersistence(factory),
            run_state=RunStateService(SqlRunStateStore(factory)),
        )
        done = await run_flow(linear_flow, services=services)
        paused = await run_flow(
            linear_flow, RunOptions(plugins=[BreakpointPlugin(step_ids=["C"])]), services=services
        )

        async with factory() as db:
            runs = await list_runs(db)
            assert [r.run_id for r in runs] == [done.run_id]
            assert [e.step_id for e in to_record(runs[0]).entries] == ["A", "B", "C"]

        state = await services.run_state.restore()
        assert set(state) == {paused.run_id}
        assert state[paused.run_id].status == "stopped"
        await eng.dispose()
