"""
Specialist sub-agents.

A specialist runs a short tool loop on its own worktree with a restricted tool
set, then merges what it produced back into the execution's arena and reports a
handoff summary that later iterations see.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from config import app_config
from tools.dispatch import ToolDispatcher
from tools.registry import ToolRegistry
from tools.schemas import tool_definitions_for

from .errors import BudgetExceeded, MutationConflict, ProviderFault
from .events import EventEmitter
from .files import Worktree
from .lifecycle import LifecycleTracker, Reaction, SpecialistState
from .prompts import compose_system_prompt
from .state import LoopState
from .types import CodeChange, Mode, Strategy

logger = logging.getLogger(__name__)

_SPECIALIST_EXCLUDED_TOOLS = frozenset({"run_specialist", "run_review"})


@dataclass
class SpecialistHandoff:
    """What a specialist tells the rest of the run about its work."""
    agent_id: str
    kind: str
    files_touched: List[str] = field(default_factory=list)
    concerns: List[str] = field(default_factory=list)
    findings: str = ""

    def render(self) -> str:
        lines = [f"- {self.kind} ({self.agent_id})"]
        lines.append(f"  files touched: {', '.join(self.files_touched) if self.files_touched else 'none'}")
        for concern in self.concerns[:5]:
            lines.append(f"  concern: {concern}")
        if self.findings:
            lines.append(f"  findings: {self.findings[:600]}")
        return "\n".join(lines)


@dataclass
class SpecialistOutcome:
    handoff: Optional[SpecialistHandoff] = None
    changes: List[CodeChange] = field(default_factory=list)
    error: Optional[str] = None
    clarification: Optional[str] = None


def _reframe(instructions: str, kind: str) -> str:
    return (
        f"Your previous attempt as the {kind} specialist finished without changing any file. "
        f"The task does require an edit. Re-read the target file, locate the exact lines, and apply "
        f"the change with edit_lines or search_replace.\n\nTask: {instructions}"
    )


class SpecialistRunner:
    """Runs delegated sub-tasks for one execution and tracks their lifecycle."""

    def __init__(self, invoker, registry: ToolRegistry, lifecycle: Optional[LifecycleTracker] = None,
                 emitter: Optional[EventEmitter] = None, max_iterations: Optional[int] = None,
                 model_id: Optional[str] = None):
        self.invoker = invoker
        self.registry = registry
        self.lifecycle = lifecycle or LifecycleTracker()
        self.emitter = emitter or EventEmitter(keep_trace=False)
        self.max_iterations = max_iterations or app_config.specialist_max_iterations
        self.model_id = model_id

    async def run(self, kind: str, instructions: str, files: List[str], ctx) -> SpecialistOutcome:
        record = self.lifecycle.dispatch(kind)
        agent_id = record.agent_id
        await self.emitter.progress("specialist", f"Delegating to {kind}", agent_id=agent_id)
        task = instructions

        while True:
            self.lifecycle.transition(agent_id, SpecialistState.WORKING)
            worktree = Worktree(ctx.arena, agent=agent_id)
            sub_ctx = replace(ctx, arena=worktree, specialists=None, agent=agent_id)
            try:
                sub_state = await self._sub_loop(kind, task, files, sub_ctx, ctx)
            except (ProviderFault, BudgetExceeded) as e:
                logger.warning(f"Specialist {agent_id} failed: {e}")
                self.lifecycle.transition(agent_id, SpecialistState.FAILED)
                if self.lifecycle.reaction(agent_id) == Reaction.REQUEST_CLARIFICATION:
                    self.lifecycle.transition(agent_id, SpecialistState.ESCALATED)
                    return SpecialistOutcome(
                        error=f"Specialist {kind} failed twice: {e}",
                        clarification=f"The {kind} sub-task keeps failing ({e}). How should I proceed?",
                    )
                continue

            if sub_state.clarification:
                self.lifecycle.transition(agent_id, SpecialistState.ESCALATED)
                return SpecialistOutcome(error="Specialist needs clarification",
                                         clarification=sub_state.clarification)

            touched = worktree.touched()
            if not touched:
                self.lifecycle.transition(agent_id, SpecialistState.COMPLETED_NO_CHANGES)
                if self.lifecycle.reaction(agent_id) == Reaction.RETRY_REFRAMED:
                    logger.info(f"Specialist {agent_id} produced nothing; retrying with reframed instructions")
                    task = _reframe(instructions, kind)
                    continue
                handoff = SpecialistHandoff(agent_id, kind, findings=sub_state.analysis_text[:600],
                                            concerns=["finished without changes"])
                return SpecialistOutcome(handoff=handoff)

            try:
                merged = ctx.arena.merge(worktree)
            except MutationConflict as e:
                self.lifecycle.transition(agent_id, SpecialistState.FAILED)
                if self.lifecycle.reaction(agent_id) == Reaction.REQUEST_CLARIFICATION:
                    self.lifecycle.transition(agent_id, SpecialistState.ESCALATED)
                    return SpecialistOutcome(error=str(e), clarification=f"Conflicting edits: {e}")
                return SpecialistOutcome(error=f"{e}. The specialist's work was discarded; edit the file directly.")

            self.lifecycle.transition(agent_id, SpecialistState.PRODUCED_CHANGES)
            changes: List[CodeChange] = []
            for path in merged:
                snap = ctx.arena.resolve(path, include_deleted=True)
                change = ctx.arena.changes.get(snap.id) if snap is not None else None
                if change is not None:
                    changes.append(change)
            concerns = [f"{f.file_name}: {f.reason}" for f in sub_state.failures.values()]
            handoff = SpecialistHandoff(agent_id, kind, files_touched=merged, concerns=concerns,
                                        findings=sub_state.analysis_text[:600])
            logger.info(f"Specialist {agent_id} merged {len(merged)} file(s)")
            return SpecialistOutcome(handoff=handoff, changes=changes)

    async def _sub_loop(self, kind: str, task: str, files: List[str], sub_ctx, parent_ctx) -> LoopState:
        parent = parent_ctx.state
        state = LoopState(
            execution_id=f"{getattr(parent, 'execution_id', 'run')}:{sub_ctx.agent}",
            project_id=sub_ctx.project_id,
            user_id=getattr(parent, "user_id", ""),
            user_request=task,
            arena=sub_ctx.arena,
            mode=Mode.CODE,
            strategy=Strategy.MINIMAL,
            max_iterations=self.max_iterations,
        )
        sub_ctx = replace(sub_ctx, state=state)
        dispatcher = ToolDispatcher(self.registry, sub_ctx, self.emitter)
        tools = tool_definitions_for(Mode.CODE, allow_delegation=False, exclude=_SPECIALIST_EXCLUDED_TOOLS)
        system_prompt = (
            f"You are the {kind} specialist. Complete only the sub-task below, on the listed files, "
            f"then stop and state what you changed.\n\n"
            + compose_system_prompt(Mode.CODE, Strategy.MINIMAL, [t["name"] for t in tools])
        )
        file_list = "\n".join(f"- {f}" for f in files) if files else "- (find them yourself)"
        state.messages.append({"role": "user", "content": f"{task}\n\nFiles:\n{file_list}"})

        while state.iteration < state.max_iterations:
            state.iteration += 1
            turn = await self.invoker.invoke(state.messages, system_prompt, tools, model_id=self.model_id)
            state.usage.add(turn.usage)
            if parent is not None:
                parent.usage.add(turn.usage)
            state.messages.append(turn.to_message())
            if turn.text.strip():
                state.narrative.append(turn.text)
            calls = turn.tool_calls
            if not calls:
                break
            results = await dispatcher.dispatch_batch(calls, state)
            blocks: List[Dict[str, Any]] = [r.to_block() for r in results]
            blocks += [{"type": "text", "text": n} for n in state.take_notes()]
            state.messages.append({"role": "user", "content": blocks})
            if state.clarification:
                break
        return state
