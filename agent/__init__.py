"""
Agent package - execution core of the coding agent.

This package contains the agent loop split into logical modules:
- types: phases, statuses, tiers, strategies and the result data types
- errors: the error taxonomy raised and handled inside a run
- events: AgentEvent and the callback emitter
- files: snapshot arena, worktrees and three-way merge
- intent: complexity tier and mutation intent classification
- strategy: minimal / hybrid / maximal context strategies
- prompts: modular system prompt composition
- streaming: model invocation with retry and non-streaming fallback
- history: token budget, compression and memory anchors
- verification: post-edit checks and the final verification gate
- lifecycle: specialist state machine
- specialists: delegated sub-agents on worktrees
- checkpoint: deadline tracking and checkpoint/resume
- recovery: nudges, rethinks and corrective excerpts
- execution: loop step functions and decision precedence
- core: CodingAgent orchestrator

Only leaf modules are imported eagerly; the tools package imports them, and
core imports tools. CodingAgent and RunOptions load on first access.
"""

from .errors import (
    BudgetExceeded,
    ClarificationRequested,
    MutationConflict,
    ProviderFault,
    ToolExecutionFault,
    VerificationRegression,
)
from .events import AgentEvent, EventEmitter, ExecutionCallbacks
from .types import (
    CheckpointData,
    CodeChange,
    ExecutionResult,
    FileSnapshot,
    Mode,
    Phase,
    ReviewOutcome,
    Status,
    Strategy,
    Tier,
    Usage,
    ValidationIssue,
)

_LAZY = {
    "CodingAgent": ".core",
    "RunOptions": ".core",
}


def __getattr__(name):
    if name in _LAZY:
        import importlib
        module = importlib.import_module(_LAZY[name], __name__)
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "CodingAgent",
    "RunOptions",
    "AgentEvent",
    "EventEmitter",
    "ExecutionCallbacks",
    "BudgetExceeded",
    "ClarificationRequested",
    "MutationConflict",
    "ProviderFault",
    "ToolExecutionFault",
    "VerificationRegression",
    "CheckpointData",
    "CodeChange",
    "ExecutionResult",
    "FileSnapshot",
    "Mode",
    "Phase",
    "ReviewOutcome",
    "Status",
    "Strategy",
    "Tier",
    "Usage",
    "ValidationIssue",
]
