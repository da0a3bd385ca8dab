"""
Main CodingAgent class that drives one execution of the tool-use loop.
Inherits the loop steps from ExecutionMixin.

Flow:
1. Classify the request (tier, mutation intent) and pick a context strategy
2. Build the snapshot arena from the caller's files, or rehydrate a checkpoint
3. Loop: model turn -> tool batch -> fold results -> decide
4. Verify the change set, persist, return an ExecutionResult
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from bedrock_service import BedrockService
from codebase_index import StructuralIndex, TermMappingCache
from config import app_config, get_context_window, model_config
from execution_store import ExecutionStore, InMemoryExecutionStore
from jobs import ContinuationJob, JobQueue
from tools import OutputStore, ToolContext, ToolDispatcher, default_registry
from tools.registry import ToolRegistry

from .checkpoint import CheckpointManager, DeadlineTracker
from .events import EventEmitter, ExecutionCallbacks
from .execution import ExecutionMixin, RunContext
from .files import FileArena
from .history import ContextManager
from .intent import Intent, IntentClassifier
from .lifecycle import LifecycleTracker
from .prompts import detect_project_kind
from .specialists import SpecialistRunner
from .state import LoopState
from .strategy import profile_for, select_strategy
from .streaming import ModelInvoker
from .types import ExecutionResult, FileSnapshot, Mode, Phase, Status, Strategy, Tier, Usage
from .verification import PostEditChecker, VerificationGate

logger = logging.getLogger(__name__)


@dataclass
class RunOptions:
    """Per-run overrides. Everything except callbacks survives a checkpoint."""
    mode: Mode = Mode.CODE
    tier: Optional[Tier] = None
    strategy: Optional[Strategy] = None
    max_iterations: Optional[int] = None
    timeout_seconds: Optional[float] = None
    model_id: Optional[str] = None
    callbacks: ExecutionCallbacks = field(default_factory=ExecutionCallbacks)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": Mode(self.mode).value,
            "tier": Tier(self.tier).value if self.tier else None,
            "strategy": Strategy(self.strategy).value if self.strategy else None,
            "max_iterations": self.max_iterations,
            "timeout_seconds": self.timeout_seconds,
            "model_id": self.model_id,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], callbacks: Optional[ExecutionCallbacks] = None) -> "RunOptions":
        data = data or {}
        return cls(
            mode=Mode(data.get("mode") or Mode.CODE.value),
            tier=Tier(data["tier"]) if data.get("tier") else None,
            strategy=Strategy(data["strategy"]) if data.get("strategy") else None,
            max_iterations=data.get("max_iterations"),
            timeout_seconds=data.get("timeout_seconds"),
            model_id=data.get("model_id"),
            callbacks=callbacks or ExecutionCallbacks(),
        )


def _snapshots(file_snapshots: List[Any]) -> List[FileSnapshot]:
    out = []
    for s in file_snapshots:
        out.append(s if isinstance(s, FileSnapshot) else FileSnapshot.from_dict(s))
    return out


class CodingAgent(ExecutionMixin):
    """
    Coding agent that turns one natural-language request into a verified set
    of proposed file changes.

    Project-scoped caches (structural index, learned term mappings) are shared
    across runs of the same agent; everything about one run lives in its
    LoopState.
    """

    def __init__(
        self,
        service: BedrockService,
        store: Optional[ExecutionStore] = None,
        job_queue: Optional[JobQueue] = None,
        structural_index: Optional[StructuralIndex] = None,
        term_cache: Optional[TermMappingCache] = None,
        registry: Optional[ToolRegistry] = None,
        verifier=None,
        intent_classifier: Optional[IntentClassifier] = None,
        model_id: Optional[str] = None,
    ):
        self.service = service
        self.store = store or InMemoryExecutionStore()
        self.job_queue = job_queue
        self.structural_index = structural_index or StructuralIndex()
        self.term_cache = term_cache or TermMappingCache()
        self.registry = registry or default_registry()
        self.gate = VerificationGate(verifier)
        self.intent_classifier = intent_classifier or IntentClassifier(service)
        self.model_id = model_id or getattr(service, "model_id", None) or model_config.model_id
        self.checkpoints = CheckpointManager(self.store, job_queue)
        self._cancelled = False

    def cancel(self):
        """Stop the current run at the next iteration boundary."""
        self._cancelled = True

    async def run(
        self,
        execution_id: Optional[str],
        project_id: str,
        user_id: str,
        user_request: str,
        file_snapshots: List[Any],
        preferences: Optional[Dict[str, Any]] = None,
        options: Optional[RunOptions] = None,
    ) -> ExecutionResult:
        """Run one execution; a completed run with nothing to show retries at a stronger tier."""
        options = options or RunOptions()
        execution_id = execution_id or uuid.uuid4().hex[:12]
        self._cancelled = False
        self.store.create_execution(execution_id, project_id, user_id, user_request)

        intent = self.intent_classifier.classify(user_request, options.mode)
        tier = Tier(options.tier) if options.tier else intent.tier
        total = Usage()
        depth = 0
        model_id = options.model_id or self.model_id
        while True:
            result = await self._run_once(execution_id, project_id, user_id, user_request,
                                          file_snapshots, preferences or {}, options, intent, tier, model_id)
            total.add(result.usage)
            result.usage = total
            if not self._should_escalate_tier(result, intent, options, depth):
                return result
            depth += 1
            logger.info(f"[{execution_id}] no changes at tier {tier.value}; retrying at {tier.stronger().value}")
            tier = tier.stronger()
            if not options.model_id and model_config.escalation_model_id:
                model_id = model_config.escalation_model_id

    def _should_escalate_tier(self, result: ExecutionResult, intent: Intent, options: RunOptions,
                              depth: int) -> bool:
        if depth >= app_config.max_escalation_depth or self._cancelled:
            return False
        if result.status != Status.COMPLETED or result.changes:
            return False
        if not (Mode(options.mode).allows_mutation and intent.implies_mutation):
            return False
        if options.tier is not None or result.tier == Tier.ARCHITECTURAL:
            return False
        return len(result.analysis.strip()) < app_config.min_narrative_chars or "No changes were made for:" in result.analysis

    async def _run_once(self, execution_id: str, project_id: str, user_id: str, user_request: str,
                        file_snapshots: List[Any], preferences: Dict[str, Any], options: RunOptions,
                        intent: Intent, tier: Tier, model_id: str) -> ExecutionResult:
        emitter = EventEmitter(callbacks=options.callbacks)
        arena = FileArena(_snapshots(file_snapshots))
        strategy = select_strategy(tier, options.strategy)
        state = LoopState(
            execution_id=execution_id,
            project_id=project_id,
            user_id=user_id,
            user_request=user_request,
            arena=arena,
            mode=Mode(options.mode),
            tier=tier,
            strategy=strategy,
            implies_mutation=intent.implies_mutation,
            max_iterations=options.max_iterations or profile_for(strategy).max_iterations,
        )
        history = ContextManager(model_id, get_context_window(model_id))
        invoker = ModelInvoker(self.service, emitter)
        lifecycle = LifecycleTracker()
        ctx = ToolContext(
            arena=arena,
            project_id=project_id,
            structural_index=self.structural_index,
            term_cache=self.term_cache,
            output_store=OutputStore(),
            gate=self.gate,
            state=state,
        )
        if Mode(options.mode).allows_mutation:
            ctx.specialists = SpecialistRunner(invoker, self.registry, lifecycle=lifecycle, emitter=emitter,
                                               model_id=model_config.specialist_model_id or model_id)
        dispatcher = ToolDispatcher(self.registry, ctx, emitter, history=history,
                                    post_edit=PostEditChecker(self.gate))
        dispatcher.cancel_check = lambda: self._cancelled
        job = ContinuationJob(
            execution_id=execution_id,
            project_id=project_id,
            user_id=user_id,
            user_request=user_request,
            file_snapshots=[s.to_dict() for s in _snapshots(file_snapshots)],
            preferences=dict(preferences),
            options=options.to_dict(),
        )
        run = RunContext(
            emitter=emitter,
            invoker=invoker,
            dispatcher=dispatcher,
            history=history,
            deadline=DeadlineTracker(options.timeout_seconds),
            job=job,
            lifecycle=lifecycle,
            tool_ctx=ctx,
            project_kind=detect_project_kind(arena.paths()),
            preferences=preferences,
            strategy_locked=options.strategy is not None,
            iteration_override=options.max_iterations,
            model_id=model_id,
        )

        await emitter.progress(Phase.RESOLVE_INTENT.value, "Understanding the request",
                               tier=tier.value, strategy=strategy.value)
        resumed = self._resume(state, run)
        self._configure_tools(state, run)
        if not resumed:
            self._append(state, self._initial_message(state, run))
        logger.info(
            f"[{execution_id}] start: mode={state.mode.value} tier={tier.value} strategy={state.strategy.value} "
            f"files={len(arena)} resumed={resumed}"
        )
        await self._run_loop(state, run)
        return await self._finish(state, run)

    def _resume(self, state: LoopState, run: RunContext) -> bool:
        """Restore a checkpointed run. Changes are back in the arena before any tool runs."""
        data = self.checkpoints.consume(state.execution_id)
        if data is None:
            return False
        CheckpointManager.rehydrate(state.arena, data)
        state.messages = [dict(m) for m in data.messages]
        state.iteration = data.iteration
        state.tier = Tier(data.tier)
        state.strategy = Strategy(data.strategy)
        state.phase = Phase(data.phase)
        state.completed_specialists = list(data.completed_specialists)
        run.lifecycle.restore_completed(data.completed_specialists)
        # the resumed run gets a fresh iteration allowance on top of what was used
        state.max_iterations = state.iteration + max(state.max_iterations, profile_for(state.strategy).max_iterations)
        if not state.messages:
            state.messages.append(self._initial_message(state, run))
        logger.info(f"[{state.execution_id}] resumed at iteration {state.iteration} "
                    f"with {state.change_count} change(s)")
        return True
