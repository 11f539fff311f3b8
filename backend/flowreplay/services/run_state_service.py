"""In-flight run registry.

``RunStateService`` is created per orchestrator invocation (or injected by the
caller) and wraps a ``RunStateStore``.  Entries are keyed by run id, so
concurrent runs sharing one store never see each other's state.

Status transitions: running -> completed | failed | stopped.  Completed and
failed entries are deleted after the run record is persisted; stopped
(paused) entries stay for resumption tooling.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flowreplay.db.models import RunStateRow
from flowreplay.runtime.ports import RunStateStore
from flowreplay.schemas.runs import RunStateEntry

logger = logging.getLogger("flowreplay.run_state")

_TERMINAL = frozenset({"completed", "failed", "stopped"})
_PATCHABLE = frozenset({"status", "name", "updated_at"})


# ── Stores ─────────────────────────────────────────────────────


class InMemoryRunStateStore(RunStateStore):
    def __init__(self) -> None:
        self._entries: dict[str, RunStateEntry] = {}
        self._lock = asyncio.Lock()

    async def restore(self) -> dict[str, RunStateEntry]:
        async with self._lock:
            return dict(self._entries)

    async def add(self, run_id: str, entry: RunStateEntry) -> None:
        async with self._lock:
            self._entries[run_id] = entry

    async def update(self, run_id: str, patch: dict[str, Any]) -> RunStateEntry | None:
        async with self._lock:
            current = self._entries.get(run_id)
            if current is None:
                return None
            updated = current.model_copy(update=_clean_patch(patch))
            self._entries[run_id] = updated
            return updated

    async def delete(self, run_id: str) -> None:
        async with self._lock:
            self._entries.pop(run_id, None)


class SqlRunStateStore(RunStateStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def restore(self) -> dict[str, RunStateEntry]:
        async with self.session_factory() as db:
            result = await db.execute(select(RunStateRow))
            return {row.run_id: _row_to_entry(row) for row in result.scalars().all()}

    async def add(self, run_id: str, entry: RunStateEntry) -> None:
        async with self.session_factory() as db:
            row = await db.get(RunStateRow, run_id)
            if row is None:
                row = RunStateRow(run_id=run_id)
                db.add(row)
            row.flow_id = entry.flow_id
            row.name = entry.name
            row.status = entry.status
            row.started_at = entry.started_at
            row.updated_at = entry.updated_at
            await db.commit()

    async def update(self, run_id: str, patch: dict[str, Any]) -> RunStateEntry | None:
        async with self.session_factory() as db:
            row = await db.get(RunStateRow, run_id)
            if row is None:
                return None
            for key, value in _clean_patch(patch).items():
                setattr(row, key, value)
            await db.commit()
            return _row_to_entry(row)

    async def delete(self, run_id: str) -> None:
        async with self.session_factory() as db:
            row = await db.get(RunStateRow, run_id)
            if row is not None:
                await db.delete(row)
                await db.commit()


# ── Service ────────────────────────────────────────────────────


class RunStateService:
    def __init__(self, store: RunStateStore | None = None):
        self.store = store if store is not None else InMemoryRunStateStore()
        self._restored = False

    async def restore(self) -> dict[str, RunStateEntry]:
        entries = await self.store.restore()
        if not self._restored:
            running = [e.id for e in entries.values() if e.status == "running"]
            if running:
                logger.info("Restored %d in-flight run(s): %s", len(running), ", ".join(running))
            self._restored = True
        return entries

    async def add(self, run_id: str, entry: RunStateEntry) -> None:
        await self.store.add(run_id, entry)

    async def update(self, run_id: str, patch: dict[str, Any]) -> RunStateEntry | None:
        status = patch.get("status")
        if status is not None and status not in _TERMINAL and status != "running":
            raise ValueError(f"invalid run status: {status!r}")
        patch = {"updated_at": datetime.now(timezone.utc), **patch}
        return await self.store.update(run_id, patch)

    async def delete(self, run_id: str) -> None:
        await self.store.delete(run_id)

    async def get(self, run_id: str) -> RunStateEntry | None:
        return (await self.store.restore()).get(run_id)


def _clean_patch(patch: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in patch.items() if k in _PATCHABLE}


def _row_to_entry(row: RunStateRow) -> RunStateEntry:
    return RunStateEntry(
        id=row.run_id,
        flow_id=row.flow_id,
        name=row.name,
        status=row.status,
        started_at=row.started_at,
        updated_at=row.updated_at,
    )
