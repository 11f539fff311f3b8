"""flowreplay: replay engine for recorded browser-interaction flows."""

from flowreplay.runtime.node_registry import NodeRegistry, default_registry
from flowreplay.runtime.plugins import BreakpointPlugin, HookContext, HookControl, RunPlugin
from flowreplay.runtime.ports import EngineServices, ExecCtx, ExecResult
from flowreplay.schemas.runs import RunOptions, RunResult
from flowreplay.services.execution_service import ExecutionOrchestrator, run_flow
from flowreplay.services.run_state_service import RunStateService

__all__ = [
    "BreakpointPlugin",
    "EngineServices",
    "ExecCtx",
    "ExecResult",
    "ExecutionOrchestrator",
    "HookContext",
    "HookControl",
    "NodeRegistry",
    "RunOptions",
    "RunPlugin",
    "RunResult",
    "RunStateService",
    "default_registry",
    "run_flow",
]
