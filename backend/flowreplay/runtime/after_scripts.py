"""Deferred post-step scripts.

An executor may hand back a script to run once its step has otherwise
finished (``ExecResult.defer_after_script``).  The queue is per run; the
StepRunner enqueues inside the retried operation and flushes before the step
is logged as successful, so a step is never complete while a deferred script
is still pending.  A failing script fails the step.
"""

from __future__ import annotations

import asyncio
import logging

from flowreplay.runtime.ports import DeferredScript, ExecCtx, NodeExecutor
from flowreplay.compiler.ir import IRStep

logger = logging.getLogger("flowreplay.runtime.after_scripts")


class AfterScriptQueue:
    def __init__(self, executor: NodeExecutor):
        self.executor = executor
        self._pending: list[DeferredScript] = []

    def __len__(self) -> int:
        return len(self._pending)

    def enqueue(self, script: DeferredScript) -> None:
        self._pending.append(script)

    async def flush(self, ctx: ExecCtx) -> int:
        """Run every pending script in FIFO order. Returns how many ran."""
        ran = 0
        while self._pending:
            script = self._pending.pop(0)
            if isinstance(script, IRStep):
                logger.debug("Running deferred script step '%s'", script.id)
                await self.executor.execute(ctx, script)
            else:
                out = script(ctx)
                if asyncio.iscoroutine(out):
                    await out
            ran += 1
        return ran

    def clear(self) -> None:
        self._pending.clear()
