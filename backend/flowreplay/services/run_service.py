"""Run record persistence: append-only history of terminal runs."""

from __future__ import annotations

import json
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flowreplay.db.models import RunLogRow, RunRecordRow
from flowreplay.runtime.ports import RunPersistence
from flowreplay.schemas.runs import NetworkSnippet, RunLogEntry, RunRecord
from flowreplay.utils.redaction import redact_sensitive_data


async def append_run(db: AsyncSession, record: RunRecord) -> RunRecordRow:
    row = RunRecordRow(
        run_id=record.id,
        flow_id=record.flow_id,
        started_at=record.started_at,
        finished_at=record.finished_at,
        success=record.success,
    )
    for seq, entry in enumerate(record.entries):
        snippets = None
        if entry.network_snippets:
            snippets = json.dumps(
                redact_sensitive_data([s.model_dump() for s in entry.network_snippets])
            )
        row.entries.append(
            RunLogRow(
                seq=seq,
                step_id=entry.step_id,
                status=entry.status,
                message=entry.message,
                took_ms=entry.took_ms,
                screenshot=entry.screenshot,
                network_snippets_json=snippets,
                ts=entry.ts,
            )
        )
    db.add(row)
    await db.flush()
    return row


async def list_runs(
    db: AsyncSession,
    flow_id: str | None = None,
    success: bool | None = None,
    started_from: datetime | None = None,
    order: str = "desc",
    limit: int = 100,
    offset: int = 0,
) -> list[RunRecordRow]:
    stmt = select(RunRecordRow)
    if flow_id:
        stmt = stmt.where(RunRecordRow.flow_id == flow_id)
    if success is not None:
        stmt = stmt.where(RunRecordRow.success == success)
    if started_from:
        stmt = stmt.where(RunRecordRow.started_at >= started_from)

    stmt = stmt.order_by(
        RunRecordRow.started_at.asc() if order == "asc" else RunRecordRow.started_at.desc()
    )
    stmt = stmt.limit(limit).offset(offset)

    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_run(db: AsyncSession, run_id: str) -> RunRecordRow | None:
    return await db.get(RunRecordRow, run_id)


def to_record(row: RunRecordRow) -> RunRecord:
    """Convert an ORM row (with entries loaded) back into a RunRecord."""
    entries = []
    for e in row.entries:
        snippets = None
        if e.network_snippets_json:
            snippets = [NetworkSnippet(**s) for s in json.loads(e.network_snippets_json)]
        entries.append(
            RunLogEntry(
                step_id=e.step_id,
                status=e.status,
                message=e.message,
                took_ms=e.took_ms,
                screenshot=e.screenshot,
                network_snippets=snippets,
                ts=e.ts,
            )
        )
    return RunRecord(
        id=row.run_id,
        flow_id=row.flow_id,
        started_at=row.started_at,
        finished_at=row.finished_at,
        success=row.success,
        entries=entries,
    )


class SqlRunPersistence(RunPersistence):
    """RunPersistence port backed by the run_records / run_log_entries tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def append_run(self, record: RunRecord) -> None:
        async with self.session_factory() as db:
            try:
                await append_run(db, record)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
