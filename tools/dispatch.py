"""Tool batch execution: budgets, caching, partitioning, worktrees and failure tracking."""

import asyncio
import json
import logging
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import app_config
from agent.errors import BudgetExceeded, ClarificationRequested, MutationConflict, ToolExecutionFault
from agent.events import EventEmitter
from agent.recovery import corrective_excerpt, forced_line_edit_error
from agent.types import MutationFailure
from tools._common import (
    LookupResult, MutationResult, OrchestrationResult, ToolCategory, ToolContext, ToolResult,
    mutation_failure,
)
from tools.output_store import summarize_output
from tools.registry import ToolHandler, ToolRegistry
from tools.schemas import FREEFORM_EDIT_TOOLS

logger = logging.getLogger(__name__)

_RESULT_TYPES = {
    ToolCategory.LOOKUP: LookupResult,
    ToolCategory.MUTATION: MutationResult,
    ToolCategory.ORCHESTRATION: OrchestrationResult,
}


CANCELLED_MESSAGE = "Execution cancelled before this call ran."
AWAITING_CLARIFICATION_MESSAGE = "Not run: awaiting clarification from the user."


def lookup_budget_message(count: int, budget: int) -> str:
    return (f"Pre-edit lookup budget exceeded ({count}/{budget}). "
            f"Proceed to an edit tool, run_specialist, or ask_clarification.")


def _error_result(handler: Optional[ToolHandler], name: str, message: str, path: str = "",
                  reason: str = "unknown") -> ToolResult:
    if handler is not None and handler.category == ToolCategory.MUTATION:
        return mutation_failure(name, path, reason, message)
    cls = _RESULT_TYPES.get(handler.category, ToolResult) if handler is not None else ToolResult
    return cls(success=False, output="", error=message)


class ToolDispatcher:
    """Executes one batch of model-issued tool calls against the snapshot arena.

    Results always come back in call-issue order. Domain failures are returned
    as error-flagged results; only the lookup abort threshold raises.
    """

    def __init__(self, registry: ToolRegistry, context: ToolContext, emitter: Optional[EventEmitter] = None,
                 history=None, post_edit=None):
        self.registry = registry
        self.ctx = context
        self.emitter = emitter or EventEmitter(keep_trace=False)
        self.history = history
        self.post_edit = post_edit
        self.max_parallel = app_config.max_parallel_tools
        self.lookup_budget = app_config.lookup_budget
        self.lookup_abort_threshold = app_config.lookup_abort_threshold
        self.max_output_chars = app_config.max_tool_output_chars
        self.max_failures = app_config.max_mutation_failures
        self.cancel_check: Callable[[], bool] = lambda: False
        self._cache: Dict[Tuple[str, str, int], ToolResult] = {}
        self._semaphore: Optional[asyncio.Semaphore] = None

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify(self, call: Dict[str, Any]) -> ToolCategory:
        handler = self.registry.get(call.get("name", ""))
        return handler.category if handler is not None else ToolCategory.LOOKUP

    @staticmethod
    def _cache_key(name: str, inputs: Dict[str, Any], context_version: int) -> Tuple[str, str, int]:
        return (name, json.dumps(inputs, sort_keys=True, default=str), context_version)

    def _has_pending_mutation(self, group: List[int], calls: List[Dict[str, Any]]) -> bool:
        return any(self.classify(calls[j]) == ToolCategory.MUTATION for j in group)

    # ------------------------------------------------------------------
    # Batch execution
    # ------------------------------------------------------------------

    async def dispatch_batch(self, calls: List[Dict[str, Any]], state) -> List[ToolResult]:
        """Run one batch in issue order.

        Consecutive calls with declared, pairwise disjoint targets form a group that
        runs concurrently. A call without declared targets runs alone. A lookup that
        follows a pending edit waits for it, so budgets and reads see the edit.
        Once a clarification is raised or the run is cancelled, the remaining
        calls are answered without running.
        """
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(max(1, self.max_parallel))
        results: List[Optional[ToolResult]] = [None] * len(calls)
        cache_keys: Dict[int, Tuple[str, str, int]] = {}
        state.tool_calls += len(calls)
        state.usage.tool_calls += len(calls)
        group: List[int] = []
        used: set = set()
        halt: Optional[str] = None

        for i, call in enumerate(calls):
            name = call.get("name", "")
            inputs = call.get("input")
            handler = self.registry.get(name)
            if halt is None and self.cancel_check():
                halt = CANCELLED_MESSAGE
            if (halt is None and handler is not None and handler.category == ToolCategory.LOOKUP
                    and self._has_pending_mutation(group, calls)):
                # a pending edit resets the lookup counter and the cache version
                halt = await self._flush(group, calls, results, state, cache_keys)
                group, used = [], set()
            if halt is not None:
                results[i] = _error_result(handler, name, halt)
                continue
            if handler is None:
                results[i] = ToolResult(success=False, output="", error=f"Unknown tool: {name}")
                continue
            if not isinstance(inputs, dict):
                results[i] = _error_result(handler, name, f"Invalid arguments for {name}: expected an object",
                                           reason="validation_error")
                continue
            targets = handler.targets(inputs, self.ctx)

            if handler.category == ToolCategory.LOOKUP:
                state.lookups_since_mutation += 1
                count = state.lookups_since_mutation
                if count >= self.lookup_abort_threshold:
                    raise BudgetExceeded("lookup", self.lookup_abort_threshold,
                                         f"{count} lookups without a successful edit")
                if count > self.lookup_budget:
                    results[i] = LookupResult(success=False, output="",
                                              error=lookup_budget_message(count, self.lookup_budget))
                    continue
                key = self._cache_key(name, inputs, state.context_version)
                cached = self._cache.get(key)
                if cached is not None:
                    logger.debug(f"Lookup cache hit: {name}")
                    results[i] = replace(
                        cached,
                        redundant=True,
                        output="[Redundant: identical lookup already ran and nothing changed since]\n" + cached.output,
                    )
                    continue
                cache_keys[i] = key

            elif handler.category == ToolCategory.MUTATION and name in FREEFORM_EDIT_TOOLS:
                if targets and targets[0] in state.forced_line_edit_files:
                    results[i] = mutation_failure(name, targets[0], "validation_error",
                                                  forced_line_edit_error(targets[0]))
                    continue

            if not targets:
                # no declared targets: runs alone, after everything issued before it
                if group:
                    halt = await self._flush(group, calls, results, state, cache_keys)
                    group, used = [], set()
                    if halt is not None:
                        results[i] = _error_result(handler, name, halt)
                        continue
                halt = await self._flush([i], calls, results, state, cache_keys)
                continue

            t = set(targets)
            if t & used:
                halt = await self._flush(group, calls, results, state, cache_keys)
                group, used = [], set()
                if halt is not None:
                    results[i] = _error_result(handler, name, halt)
                    continue
            group.append(i)
            used |= t

        if group:
            await self._flush(group, calls, results, state, cache_keys)

        out: List[ToolResult] = []
        for i, call in enumerate(calls):
            result = results[i]
            result.tool_use_id = call.get("id", "")
            result.tool_name = call.get("name", "")
            out.append(result)
        return out

    async def _flush(self, group: List[int], calls: List[Dict[str, Any]], results: List[Optional[ToolResult]],
                     state, cache_keys: Dict[int, Tuple[str, str, int]]) -> Optional[str]:
        """Run a group and post-process it. Returns why later calls must not run, if they must not."""
        if self.cancel_check():
            for i in group:
                name = calls[i].get("name", "")
                results[i] = _error_result(self.registry.get(name), name, CANCELLED_MESSAGE)
            return CANCELLED_MESSAGE
        await self._run_group(group, calls, results)
        for i in group:
            await self._finish(i, calls[i], results[i], state, cache_keys.get(i))
        if any(getattr(results[i], "clarification", None) for i in group):
            return AWAITING_CLARIFICATION_MESSAGE
        return None

    async def _run_group(self, group: List[int], calls: List[Dict[str, Any]],
                         results: List[Optional[ToolResult]]) -> None:
        parallel = len(group) > 1
        worktrees: Dict[int, Any] = {}

        async def run_one(i: int) -> ToolResult:
            call = calls[i]
            name = call.get("name", "")
            inputs = call.get("input") or {}
            handler = self.registry.get(name)
            ctx = self.ctx
            if parallel and handler.category == ToolCategory.MUTATION:
                worktrees[i] = self.ctx.arena.fork()
                ctx = replace(self.ctx, arena=worktrees[i])
            async with self._semaphore:
                await self.emitter.tool("tool_start", name, tool_use_id=call.get("id", ""), input=inputs)
                try:
                    return await handler.execute(inputs, ctx)
                except ClarificationRequested as e:
                    return OrchestrationResult(success=True,
                                               output="Question sent to the user. Stop and wait for the answer.",
                                               clarification=e.question, options=list(e.options))
                except TypeError as e:
                    return _error_result(handler, name, f"Invalid arguments for {name}: {e}",
                                         path=str(inputs.get("path", "")), reason="validation_error")
                except ToolExecutionFault as e:
                    return _error_result(handler, name, str(e), path=str(inputs.get("path", "")), reason=e.reason)
                except Exception as e:
                    logger.exception(f"Tool execution error: {name}")
                    return _error_result(handler, name, f"Tool error: {e}", path=str(inputs.get("path", "")))

        outcomes = await asyncio.gather(*(run_one(i) for i in group))

        # worktrees merge back in issue order
        for i, result in zip(group, outcomes):
            if i in worktrees and result.success and getattr(result, "changed", False):
                try:
                    self.ctx.arena.merge(worktrees[i])
                    snap = self.ctx.arena.resolve(result.path)
                    if snap is not None:
                        result.change = self.ctx.arena.changes.get(snap.id)
                        result.version = snap.version
                        result.file_id = snap.id
                except MutationConflict as e:
                    logger.warning(f"Merge conflict for {calls[i].get('name')}: {e}")
                    result = mutation_failure(calls[i].get("name", ""), e.path, "conflict",
                                              f"{e}. Re-read the file and retry the edit.")
            results[i] = result

    # ------------------------------------------------------------------
    # Post-processing (issue order)
    # ------------------------------------------------------------------

    async def _finish(self, i: int, call: Dict[str, Any], result: ToolResult, state,
                      cache_key: Optional[Tuple[str, str, int]]) -> None:
        name = call.get("name", "")
        handler = self.registry.get(name)

        if result.success and len(result.output) > self.max_output_chars and self.ctx.output_store is not None:
            output_id = self.ctx.output_store.put(result.output)
            result.output = summarize_output(result.output, output_id, self.max_output_chars)
            result.truncated = True
            result.output_id = output_id

        if handler.category == ToolCategory.LOOKUP:
            if result.success and cache_key is not None:
                self._cache[cache_key] = result
            if self.history is not None:
                for path, start, end in getattr(result, "reads", []):
                    self.history.record_read(path, start, end)
        elif handler.category == ToolCategory.MUTATION:
            self._after_mutation(call, result, state)
        else:
            self._after_orchestration(result, state)

        event = "tool_result" if result.success else "tool_error"
        preview = result.output[:500] if result.success else (result.error or "")
        await self.emitter.tool(event, name, tool_use_id=call.get("id", ""), success=result.success,
                                preview=preview, redundant=result.redundant)

    def _invalidate_derived(self, paths: List[str]) -> None:
        if self.ctx.structural_index is not None:
            self.ctx.structural_index.invalidate(self.ctx.project_id)
        if self.ctx.term_cache is not None:
            self.ctx.term_cache.invalidate(self.ctx.project_id, paths)

    def _record_success(self, state, paths: List[str]) -> None:
        state.lookups_since_mutation = 0
        state.mutation_count += 1
        state.context_version += 1
        self._invalidate_derived(paths)

    def _after_mutation(self, call: Dict[str, Any], result: MutationResult, state) -> None:
        name = call.get("name", "")
        inputs = call.get("input") or {}
        key = result.file_id or result.path
        if result.success:
            state.failures.pop(key, None)
            state.forced_line_edit_files.discard(result.path)
            if not result.changed:
                return
            self._record_success(state, [result.path])
            if self.history is not None:
                self.history.record_edit(result.path)
                self.history.record_action(f"{name} {result.path}")
            snap = self.ctx.arena.resolve(result.path)
            if self.post_edit is not None and snap is not None:
                msg = self.post_edit.after_edit(snap.path, snap.version, self.ctx.arena.original(snap.id),
                                                snap.content, self.ctx.project_files())
                if msg:
                    state.note(msg)
            return

        failure = result.failure or MutationFailure(tool=name, file_id=key, file_name=result.path,
                                                    reason="unknown", error=result.error or "")
        previous = state.failures.get(key)
        failure.attempt_count = previous.attempt_count + 1 if previous else 1
        state.failures[key] = failure
        if self.history is not None:
            self.history.record_action(f"{name} {result.path or '?'} failed ({failure.reason})")
        if failure.attempt_count >= self.max_failures:
            snap = self.ctx.arena.resolve(result.path)
            if snap is not None and snap.path not in state.forced_line_edit_files:
                state.forced_line_edit_files.add(snap.path)
                state.note(corrective_excerpt(snap.path, snap.content, failure.attempt_count,
                                              needle=str(inputs.get("old_text", ""))))
                logger.info(f"Forcing line-addressed edits for {snap.path} after {failure.attempt_count} failures")

    def _after_orchestration(self, result: OrchestrationResult, state) -> None:
        if result.handoff is not None:
            state.handoffs.append(result.handoff)
        if result.changes:
            self._record_success(state, [c.path or c.file_name for c in result.changes])
            if self.history is not None:
                for c in result.changes:
                    self.history.record_edit(c.path or c.file_name)
        if result.clarification:
            state.clarification = result.clarification
            state.clarification_options = list(result.options)
