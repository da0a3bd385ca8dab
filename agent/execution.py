"""
Agent loop execution: the iteration state machine of one run.

Each iteration is a fixed sequence of small steps over an explicit LoopState:
enforce the token budget, invoke the model, dispatch the tool batch, fold the
results back into the log in issue order, then decide what happens next.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from config import app_config
from jobs import ContinuationJob
from tools.dispatch import ToolDispatcher
from tools.schemas import tool_definitions_for

from .checkpoint import CHECKPOINT_ANALYSIS, CheckpointManager, DeadlineTracker
from .errors import BudgetExceeded, ProviderFault, VerificationRegression
from .events import EventEmitter
from .history import ContextManager
from .lifecycle import LifecycleTracker
from .prompts import compose_system_prompt, format_file_context
from .recovery import (
    nudge_message, rethink_limit, rethink_message, strategy_escalation_message, zero_change_summary,
)
from .state import LoopState
from .strategy import profile_for, should_escalate_strategy
from .streaming import ModelInvoker, ModelTurn
from .types import (
    ExecutionResult, Phase, ReviewOutcome, Status, Strategy, ValidationIssue,
)

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    CLARIFY = "clarify"
    CHECKPOINT = "checkpoint"
    BUDGET_STOP = "budget_stop"
    ESCALATE_STRATEGY = "strategy_escalation"
    CONTINUE = "continue"
    RETHINK = "rethink"
    NUDGE = "nudge"
    COMPLETE = "complete"


# Highest first. When several outcomes apply to one iteration the first one wins.
DECISION_PRECEDENCE: Tuple[Decision, ...] = (
    Decision.CLARIFY,
    Decision.CHECKPOINT,
    Decision.BUDGET_STOP,
    Decision.ESCALATE_STRATEGY,
    Decision.CONTINUE,
    Decision.RETHINK,
    Decision.NUDGE,
    Decision.COMPLETE,
)

_TERMINAL = {Decision.CLARIFY, Decision.CHECKPOINT, Decision.BUDGET_STOP, Decision.COMPLETE}

_PATH_HINT_RE = re.compile(r"[\w./-]+\.[A-Za-z0-9]{1,6}\b")


def pick_decision(candidates: Dict[Decision, str]) -> Tuple[Decision, str]:
    for decision in DECISION_PRECEDENCE:
        if decision in candidates:
            return decision, candidates[decision]
    return Decision.COMPLETE, ""


def lookup_abort_question(request: str, files_read: List[str]) -> str:
    seen = f" I looked at {', '.join(files_read[:5])}." if files_read else ""
    return (f"I could not find the code this request refers to: \"{request[:160]}\".{seen} "
            f"Which file (or section/snippet name) should I change?")


@dataclass
class RunContext:
    """Per-run collaborators threaded through the step functions."""
    emitter: EventEmitter
    invoker: ModelInvoker
    dispatcher: ToolDispatcher
    history: ContextManager
    deadline: DeadlineTracker
    job: ContinuationJob
    lifecycle: LifecycleTracker
    tool_ctx: Any
    project_kind: Optional[str] = None
    preferences: Optional[Dict[str, Any]] = None
    strategy_locked: bool = False
    iteration_override: Optional[int] = None
    system_prompt: str = ""
    tools: Optional[List[Dict[str, Any]]] = None
    model_id: Optional[str] = None


class ExecutionMixin:
    """Loop driver methods for CodingAgent.

    Expects self.store, self.gate, self.checkpoints (CheckpointManager),
    self.structural_index, self.term_cache and self._cancelled.
    """

    store: Any
    gate: Any
    checkpoints: CheckpointManager
    _cancelled: bool

    # ------------------------------------------------------------------
    # Log helpers
    # ------------------------------------------------------------------

    def _append(self, state: LoopState, message: Dict[str, Any]) -> None:
        state.messages.append(message)
        self.store.append_message(state.execution_id, message)

    @staticmethod
    def _append_text_to_last_user(state: LoopState, text: str, pin: bool = False) -> None:
        """Attach a text block to the trailing user turn, or open a new one."""
        if state.messages and state.messages[-1].get("role") == "user":
            last = state.messages[-1]
            content = last.get("content")
            if isinstance(content, str):
                last["content"] = [{"type": "text", "text": content}, {"type": "text", "text": text}]
            else:
                content.append({"type": "text", "text": text})
            if pin:
                last["pinned"] = True
        else:
            msg: Dict[str, Any] = {"role": "user", "content": [{"type": "text", "text": text}]}
            if pin:
                msg["pinned"] = True
            state.messages.append(msg)

    async def _set_phase(self, state: LoopState, run: RunContext, phase: Phase, label: str = "") -> None:
        if state.phase == phase:
            return
        state.phase = phase
        self.store.update_status(state.execution_id, Status.RUNNING, phase=phase)
        logger.info(f"[{state.execution_id}] phase -> {phase.value}")
        await run.emitter.progress(phase.value, label or phase.value.replace("_", " "))

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _configure_tools(self, state: LoopState, run: RunContext) -> None:
        profile = profile_for(state.strategy)
        run.tools = tool_definitions_for(
            state.mode,
            line_edits_only=profile.line_edits_only,
            allow_delegation=profile.allow_delegation and run.tool_ctx.specialists is not None,
        )
        run.system_prompt = compose_system_prompt(
            state.mode, state.strategy, [t["name"] for t in run.tools],
            project_kind=run.project_kind, preferences=run.preferences,
        )
        if run.iteration_override is None:
            state.max_iterations = max(state.max_iterations, profile.max_iterations)

    def _select_context_files(self, state: LoopState, run: RunContext) -> List[str]:
        """Files pre-loaded into the first turn: named files, learned/term matches, then neighbors."""
        profile = profile_for(state.strategy)
        files = run.tool_ctx.project_files()
        picked: List[str] = []
        for hint in _PATH_HINT_RE.findall(state.user_request):
            snap = state.arena.resolve(hint)
            if snap is not None and snap.path not in picked:
                picked.append(snap.path)
        for path in self.term_cache.lookup(state.project_id, state.user_request, files,
                                           limit=profile.max_preloaded_files):
            if path not in picked:
                picked.append(path)
        picked = picked[:profile.max_preloaded_files]
        if profile.dependency_depth > 0 and picked:
            graph = self.structural_index.get(state.project_id, files)
            room = max(0, profile.max_preloaded_files - len(picked))
            for path in graph.neighborhood(picked, depth=profile.dependency_depth, limit=room):
                if path not in picked:
                    picked.append(path)
        return picked

    def _initial_message(self, state: LoopState, run: RunContext) -> Dict[str, Any]:
        paths = state.arena.paths()
        listing = "\n".join(paths[:200])
        if len(paths) > 200:
            listing += f"\n... ({len(paths) - 200} more; use list_files)"
        preload = self._select_context_files(state, run)
        parts = [state.user_request, f"<project_files count=\"{len(paths)}\">\n{listing}\n</project_files>"]
        if preload:
            pairs = []
            for path in preload:
                snap = state.arena.resolve(path)
                if snap is None:
                    continue
                pairs.append((snap.path, snap.content))
                run.history.record_read(snap.path)
            parts.append("Likely relevant files:\n" + format_file_context(pairs))
        return {"role": "user", "content": "\n\n".join(parts), "pinned": True}

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _step_enforce_budget(self, state: LoopState, run: RunContext) -> None:
        run.history.enforce_budget(state.messages, run.system_prompt)
        tokens = run.history.total_tokens(state.messages, run.system_prompt)
        anchor = run.history.maybe_memory_anchor(
            state.iteration, tokens, state.user_request, state.change_count,
        )
        if anchor:
            self._append_text_to_last_user(state, anchor, pin=True)

    async def _step_invoke(self, state: LoopState, run: RunContext) -> Optional[ModelTurn]:
        try:
            turn = await run.invoker.invoke(state.messages, run.system_prompt, run.tools, model_id=run.model_id)
        except ProviderFault as e:
            if e.retryable:
                state.checkpoint_reason = f"provider fault: {e}"
                logger.warning(f"[{state.execution_id}] retryable provider fault, checkpointing: {e}")
            else:
                state.error = f"Model call failed: {e}"
                logger.error(f"[{state.execution_id}] fatal provider fault: {e}")
            return None
        state.usage.add(turn.usage)
        content = turn.content or [{"type": "text", "text": "(no output)"}]
        self._append(state, {"role": "assistant", "content": content})
        state.last_text = turn.text
        state.last_tool_call_count = len(turn.tool_calls)
        if turn.text.strip():
            state.narrative.append(turn.text)
        return turn

    async def _step_dispatch(self, state: LoopState, run: RunContext, turn: ModelTurn) -> List[Dict[str, Any]]:
        calls = turn.tool_calls
        handoffs_before = len(state.handoffs)
        try:
            results = await run.dispatcher.dispatch_batch(calls, state)
            blocks = [r.to_block() for r in results]
        except BudgetExceeded as e:
            logger.warning(f"[{state.execution_id}] {e}; asking for clarification")
            state.clarification = lookup_abort_question(state.user_request, run.history.files_read)
            blocks = [{
                "type": "tool_result", "tool_use_id": c.get("id", ""),
                "content": f"Error: {e}. Stop searching.", "is_error": True,
            } for c in calls]
        if len(state.handoffs) > handoffs_before:
            merged = ContextManager.merge_handoffs(state.handoffs[handoffs_before:])
            if merged:
                state.note(merged)
        if state.mutation_count and state.phase == Phase.BUILD_PATCH:
            await self._set_phase(state, run, Phase.APPLY_PATCH, "Applying changes")
        return blocks

    def _step_fold(self, state: LoopState, blocks: List[Dict[str, Any]]) -> None:
        """Tool results go back as one user turn, in call-issue order, then any notes."""
        content = list(blocks) + [{"type": "text", "text": n} for n in state.take_notes()]
        self._append(state, {"role": "user", "content": content})

    def _budget_reason(self, state: LoopState, run: RunContext) -> Optional[str]:
        if state.iteration >= state.max_iterations:
            return f"the iteration budget ({state.max_iterations}) was reached"
        if state.tool_calls >= app_config.max_tool_calls:
            return f"the tool-call budget ({app_config.max_tool_calls}) was reached"
        if run.deadline.expired():
            return "the time budget was reached"
        return None

    def _rethink_reason(self, state: LoopState) -> Optional[str]:
        if not state.mode.allows_mutation or not state.change_count:
            return None
        if state.rethinks >= rethink_limit(state.tier):
            return None
        report = self.gate.verify(state.arena)
        if not report.hard and not report.soft_errors:
            return None
        return report.summary()

    def _needs_nudge(self, state: LoopState) -> bool:
        return (state.mode.allows_mutation and state.implies_mutation
                and state.change_count == 0 and state.nudges < app_config.max_nudges)

    def _step_decide(self, state: LoopState, run: RunContext, turn: Optional[ModelTurn]) -> Tuple[Decision, str]:
        candidates: Dict[Decision, str] = {}
        has_calls = bool(turn is not None and turn.tool_calls)
        if state.clarification:
            candidates[Decision.CLARIFY] = state.clarification
        if state.checkpoint_reason or (has_calls and run.deadline.is_short()):
            candidates[Decision.CHECKPOINT] = state.checkpoint_reason or "deadline approaching"
        if not run.strategy_locked and should_escalate_strategy(
            state.strategy, state.tier, state.iteration, state.mutation_count, state.strategy_escalated,
        ):
            candidates[Decision.ESCALATE_STRATEGY] = ""
        if has_calls:
            candidates[Decision.CONTINUE] = ""
        else:
            rethink = self._rethink_reason(state)
            if rethink:
                candidates[Decision.RETHINK] = rethink
            if self._needs_nudge(state):
                candidates[Decision.NUDGE] = ""
            candidates[Decision.COMPLETE] = ""
        # a budget only stops work that would otherwise go on
        budget = self._budget_reason(state, run)
        wants_more = has_calls or Decision.RETHINK in candidates or Decision.NUDGE in candidates \
            or Decision.ESCALATE_STRATEGY in candidates
        if budget and wants_more:
            candidates[Decision.BUDGET_STOP] = budget
        return pick_decision(candidates)

    async def _apply_decision(self, state: LoopState, run: RunContext, decision: Decision, detail: str) -> None:
        if decision == Decision.BUDGET_STOP:
            state.budget_stop = detail
            logger.warning(f"[{state.execution_id}] stopping: {detail}")
        elif decision == Decision.CHECKPOINT:
            state.checkpoint_reason = detail
        elif decision == Decision.ESCALATE_STRATEGY:
            await self._escalate_strategy(state, run)
        elif decision == Decision.RETHINK:
            state.rethinks += 1
            limit = rethink_limit(state.tier)
            logger.info(f"[{state.execution_id}] rethink {state.rethinks}/{limit}")
            self._append(state, {"role": "user", "content": rethink_message(detail, state.rethinks, limit)})
        elif decision == Decision.NUDGE:
            state.nudges += 1
            logger.info(f"[{state.execution_id}] premature stop, nudge {state.nudges}/{app_config.max_nudges}")
            self._append(state, {"role": "user", "content": nudge_message(state.user_request, state.nudges)})

    async def _escalate_strategy(self, state: LoopState, run: RunContext) -> None:
        state.strategy = Strategy.MAXIMAL
        state.strategy_escalated = True
        self._configure_tools(state, run)
        profile = profile_for(state.strategy)
        files = run.tool_ctx.project_files()
        graph = self.structural_index.get(state.project_id, files)
        seeds = run.history.files_read or self.term_cache.lookup(state.project_id, state.user_request, files)
        related = list(dict.fromkeys(seeds + graph.neighborhood(seeds, depth=profile.dependency_depth)))
        related = related[:profile.max_preloaded_files]
        text = strategy_escalation_message(state.iteration)
        if related:
            text += "\nRelated files:\n" + "\n".join(graph.render(p) for p in related)
        self._append_text_to_last_user(state, text)
        await run.emitter.progress(state.phase.value, "Widening context", strategy=state.strategy.value)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run_loop(self, state: LoopState, run: RunContext) -> None:
        if state.phase == Phase.RESOLVE_INTENT:
            await self._set_phase(state, run, Phase.BUILD_PATCH, "Working on the request")
        while True:
            if self._cancelled:
                state.status = Status.CANCELLED
                logger.info(f"[{state.execution_id}] cancelled at iteration {state.iteration}")
                return
            state.iteration += 1
            await run.emitter.progress(state.phase.value, f"Iteration {state.iteration}",
                                       iteration=state.iteration, max_iterations=state.max_iterations)

            self._step_enforce_budget(state, run)
            turn = await self._step_invoke(state, run)
            if state.error:
                state.status = Status.FAILED
                return
            if turn is not None and turn.tool_calls:
                blocks = await self._step_dispatch(state, run, turn)
                self._step_fold(state, blocks)

            decision, detail = self._step_decide(state, run, turn)
            logger.debug(f"[{state.execution_id}] iteration {state.iteration}: {decision.value}")
            await self._apply_decision(state, run, decision, detail)
            if decision == Decision.CLARIFY:
                state.status = Status.CLARIFICATION
                return
            if decision == Decision.CHECKPOINT:
                state.status = Status.CHECKPOINTED
                return
            if decision in _TERMINAL:
                return

    # ------------------------------------------------------------------
    # Verification and result
    # ------------------------------------------------------------------

    async def _step_verify(self, state: LoopState, run: RunContext) -> Tuple[Optional[ReviewOutcome], List[ValidationIssue]]:
        if not state.change_count:
            return None, []
        await self._set_phase(state, run, Phase.VERIFY, "Verifying changes")
        try:
            report = self.gate.enforce(state.arena)
        except VerificationRegression as e:
            dropped = state.change_count
            state.arena.reset_to_originals()
            summary = "\n".join(f"- {i.file}: {i.description} ({i.category})" for i in e.issues[:8])
            question = state.clarification or "How would you like me to proceed?"
            state.clarification = (
                f"My changes introduced blocking problems, so all {dropped} change(s) were discarded:\n"
                f"{summary}\n{question}"
            )
            if state.status != Status.FAILED:
                state.status = Status.CLARIFICATION
            review = ReviewOutcome(approved=False, summary=str(e), issues=list(e.issues))
            self.store.store_review_result(state.execution_id, review)
            logger.warning(f"[{state.execution_id}] hard verification gate: {e}")
            return review, list(e.issues)
        review = report.to_review()
        self.store.store_review_result(state.execution_id, review)
        run.lifecycle.mark_reviewed()
        return review, list(report.regressions)

    def _analysis(self, state: LoopState, run: RunContext) -> str:
        if state.status == Status.CHECKPOINTED:
            return CHECKPOINT_ANALYSIS
        analysis = state.analysis_text
        if state.status == Status.CLARIFICATION and state.clarification:
            return f"{analysis}\n\n{state.clarification}".strip()
        if state.status == Status.FAILED:
            return f"{analysis}\n\nThe run failed: {state.error}".strip()
        if state.change_count == 0 and len(analysis) < app_config.min_narrative_chars:
            failures = sorted(state.failures.values(), key=lambda f: -f.attempt_count)
            if state.budget_stop:
                reason = state.budget_stop
            elif state.status == Status.CANCELLED:
                reason = "it was cancelled"
            else:
                reason = "the model stopped without making a change"
            summary = zero_change_summary(state.user_request, run.history.files_read, failures, reason)
            return f"{analysis}\n\n{summary}".strip() if analysis else summary
        if not analysis:
            paths = ", ".join(c.path or c.file_name for c in state.changes)
            analysis = f"Applied {state.change_count} change(s): {paths}."
        if state.budget_stop:
            analysis += f"\n\nStopped early because {state.budget_stop}."
        return analysis

    def _build_result(self, state: LoopState, run: RunContext, review: Optional[ReviewOutcome],
                      issues: List[ValidationIssue]) -> ExecutionResult:
        return ExecutionResult(
            execution_id=state.execution_id,
            analysis=self._analysis(state, run),
            changes=[] if state.status == Status.CHECKPOINTED else state.changes,
            review_outcome=review,
            usage=state.usage,
            checkpointed=state.status == Status.CHECKPOINTED,
            error=state.error,
            status=state.status,
            clarification=state.clarification if state.status == Status.CLARIFICATION else None,
            validation_issues=issues,
            iterations=state.iteration,
            tier=state.tier,
            strategy=state.strategy,
        )

    async def _finish(self, state: LoopState, run: RunContext) -> ExecutionResult:
        """Post-loop hooks: checkpoint or verify, persist, publish."""
        review: Optional[ReviewOutcome] = None
        issues: List[ValidationIssue] = []

        if state.status == Status.CHECKPOINTED:
            self.checkpoints.save(state, run.job, lifecycle=run.lifecycle, reason=state.checkpoint_reason or "")
            await run.emitter.progress("checkpoint", CHECKPOINT_ANALYSIS, iteration=state.iteration)
            return self._build_result(state, run, None, [])

        if state.status == Status.RUNNING:
            state.status = Status.COMPLETED
        # any run that ends holding changes gets them verified
        if state.status != Status.CHECKPOINTED and state.mode.allows_mutation:
            review, issues = await self._step_verify(state, run)
        if state.status == Status.COMPLETED:
            run.lifecycle.merge_all_pending()
            if state.changes:
                self.term_cache.learn(state.project_id, state.user_request,
                                      [c.path or c.file_name for c in state.changes])
            await self._set_phase(state, run, Phase.COMPLETE, "Done")

        self.store.store_changes(state.execution_id, state.changes)
        self.store.update_status(state.execution_id, state.status, phase=state.phase, error=state.error)
        result = self._build_result(state, run, review, issues)
        await run.emitter.content("done", result.analysis, status=state.status.value,
                                  changes=len(result.changes))
        logger.info(
            f"[{state.execution_id}] finished: status={state.status.value} "
            f"iterations={state.iteration} changes={len(result.changes)}"
        )
        return result
