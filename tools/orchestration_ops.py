"""Orchestration tools: delegate to a specialist, review the change set, ask the user."""

import logging
from typing import Any, List, Optional

from agent.errors import ClarificationRequested
from tools._common import OrchestrationResult, ToolContext

logger = logging.getLogger(__name__)


async def run_specialist(ctx: ToolContext, kind: str, instructions: str,
                         files: Optional[List[str]] = None, **kw: Any) -> OrchestrationResult:
    """Run a bounded specialist sub-loop on a worktree and merge what it produced."""
    if ctx.specialists is None:
        return OrchestrationResult(success=False, output="",
                                   error="Delegation is disabled for this run; make the edit yourself.")
    if not instructions or not instructions.strip():
        return OrchestrationResult(success=False, output="", error="instructions are required")
    outcome = await ctx.specialists.run(kind or "general", instructions, files or [], ctx)
    if outcome.error:
        return OrchestrationResult(success=False, output="", error=outcome.error, handoff=outcome.handoff,
                                   clarification=outcome.clarification)
    return OrchestrationResult(
        success=True,
        output=outcome.handoff.render() if outcome.handoff else "Specialist finished.",
        handoff=outcome.handoff,
        changes=outcome.changes,
        clarification=outcome.clarification,
    )


async def run_review(ctx: ToolContext, **kw: Any) -> OrchestrationResult:
    """Verify the accumulated change set against the original project."""
    if ctx.gate is None:
        return OrchestrationResult(success=False, output="", error="No verification gate configured")
    report = ctx.gate.verify(ctx.arena)
    review = report.to_review()
    return OrchestrationResult(success=True, output=review.summary, review=review)


async def ask_clarification(ctx: ToolContext, question: str, options: Optional[List[str]] = None,
                            **kw: Any) -> OrchestrationResult:
    """Pause the run and ask the user a question."""
    if not question or not question.strip():
        return OrchestrationResult(success=False, output="", error="question is required")
    opts = [str(o) for o in (options or [])][:6]
    text = question.strip()
    if opts:
        text += "\n" + "\n".join(f"- {o}" for o in opts)
    logger.info(f"Clarification requested: {question[:120]}")
    raise ClarificationRequested(text, opts)
