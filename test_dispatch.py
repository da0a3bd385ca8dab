"""
Tests for tool batch dispatch: ordering, parallel worktrees, caching, budgets and edit recovery.
"""

import asyncio
import time

import pytest

from agent.errors import BudgetExceeded
from agent.events import EventEmitter
from agent.history import ContextManager
from agent.types import FileSnapshot
from conftest import tool_block
from tools import ToolDispatcher, default_registry
from tools._common import LookupResult, ToolCategory
from tools.registry import ToolHandler, path_target, undeclared


def make_dispatcher(tool_ctx, **kw):
    return ToolDispatcher(default_registry(), tool_ctx, EventEmitter(), **kw)


@pytest.mark.asyncio
async def test_results_come_back_in_issue_order(tool_ctx, loop_state):
    dispatcher = make_dispatcher(tool_ctx)
    calls = [
        tool_block("read_file", "t1", path="snippets/button.liquid"),
        tool_block("list_files", "t2", directory="sections"),
        tool_block("read_file", "t3", path="assets/theme.css"),
    ]
    results = await dispatcher.dispatch_batch(calls, loop_state)
    assert [r.tool_use_id for r in results] == ["t1", "t2", "t3"]
    assert all(r.success for r in results)
    assert "sections/header.liquid" in results[1].output
    assert loop_state.tool_calls == 3


@pytest.mark.asyncio
async def test_unknown_tool_and_bad_arguments_are_error_results(tool_ctx, loop_state):
    dispatcher = make_dispatcher(tool_ctx)
    calls = [
        {"type": "tool_use", "id": "t1", "name": "run_command", "input": {"command": "ls"}},
        {"type": "tool_use", "id": "t2", "name": "read_file", "input": "snippets/button.liquid"},
        tool_block("read_file", "t3", path="snippets/button.liquid", bogus_flag=1),
    ]
    results = await dispatcher.dispatch_batch(calls, loop_state)
    assert not results[0].success and "Unknown tool" in results[0].error
    assert not results[1].success
    # extra keyword arguments are tolerated by the handlers
    assert results[2].success
    block = results[0].to_block()
    assert block["is_error"] and block["tool_use_id"] == "t1"


@pytest.mark.asyncio
async def test_identical_lookup_is_served_from_cache_until_a_mutation(tool_ctx, loop_state):
    dispatcher = make_dispatcher(tool_ctx)
    read = tool_block("read_file", "t1", path="assets/theme.css")
    first = (await dispatcher.dispatch_batch([read], loop_state))[0]
    assert not first.redundant

    second = (await dispatcher.dispatch_batch([dict(read, id="t2")], loop_state))[0]
    assert second.redundant
    assert second.output.startswith("[Redundant")

    edit = tool_block("search_replace", "t3", path="assets/theme.css",
                      old_text="background-color: red;", new_text="background-color: blue;")
    assert (await dispatcher.dispatch_batch([edit], loop_state))[0].success

    third = (await dispatcher.dispatch_batch([dict(read, id="t4")], loop_state))[0]
    assert not third.redundant
    assert "blue" in third.output


@pytest.mark.asyncio
async def test_lookup_budget_then_abort(tool_ctx, loop_state):
    dispatcher = make_dispatcher(tool_ctx)
    dispatcher.lookup_budget = 2
    dispatcher.lookup_abort_threshold = 4
    calls = [tool_block("grep_content", f"t{i}", pattern=f"term{i}") for i in range(3)]
    results = await dispatcher.dispatch_batch(calls, loop_state)
    assert results[0].success and results[1].success
    assert not results[2].success
    assert "lookup budget exceeded" in results[2].error

    with pytest.raises(BudgetExceeded):
        await dispatcher.dispatch_batch([tool_block("grep_content", "t9", pattern="x")], loop_state)


@pytest.mark.asyncio
async def test_parallel_disjoint_mutations_both_apply(tool_ctx, loop_state):
    dispatcher = make_dispatcher(tool_ctx)
    calls = [
        tool_block("search_replace", "t1", path="assets/theme.css",
                   old_text="background-color: red;", new_text="background-color: blue;"),
        tool_block("search_replace", "t2", path="snippets/button.liquid",
                   old_text="class=\"btn\"", new_text="class=\"btn btn--primary\""),
    ]
    results = await dispatcher.dispatch_batch(calls, loop_state)
    assert all(r.success for r in results)
    assert loop_state.change_count == 2
    assert loop_state.mutation_count == 2
    assert loop_state.context_version == 2
    assert "blue" in tool_ctx.arena.resolve("assets/theme.css").content


@pytest.mark.asyncio
async def test_same_file_calls_run_sequentially(tool_ctx, loop_state):
    dispatcher = make_dispatcher(tool_ctx)
    calls = [
        tool_block("search_replace", "t1", path="assets/theme.css",
                   old_text="padding: 12px;", new_text="padding: 16px;"),
        tool_block("search_replace", "t2", path="assets/theme.css",
                   old_text="background-color: red;", new_text="background-color: blue;"),
    ]
    results = await dispatcher.dispatch_batch(calls, loop_state)
    assert all(r.success for r in results)
    content = tool_ctx.arena.resolve("assets/theme.css").content
    assert "padding: 16px;" in content and "background-color: blue;" in content
    assert loop_state.change_count == 1


@pytest.mark.asyncio
async def test_repeated_edit_failures_force_line_edits(tool_ctx, loop_state):
    dispatcher = make_dispatcher(tool_ctx, history=ContextManager("test-model", 200000))
    dispatcher.max_failures = 2
    bad = tool_block("search_replace", "t1", path="assets/theme.css",
                     old_text="background: red;", new_text="background: blue;")
    for n in range(2):
        result = (await dispatcher.dispatch_batch([dict(bad, id=f"t{n}")], loop_state))[0]
        assert not result.success
        assert result.failure.reason == "old_text_not_found"

    assert "assets/theme.css" in loop_state.forced_line_edit_files
    notes = loop_state.take_notes()
    assert any("Edit recovery" in n and "edit_lines" in n for n in notes)

    blocked = (await dispatcher.dispatch_batch([dict(bad, id="t5")], loop_state))[0]
    assert not blocked.success
    assert "Line-addressed edits are required" in blocked.error

    line_edit = tool_block("edit_lines", "t6", path="assets/theme.css", start_line=7, end_line=7,
                           new_content="  background-color: blue;")
    ok = (await dispatcher.dispatch_batch([line_edit], loop_state))[0]
    assert ok.success
    assert "assets/theme.css" not in loop_state.forced_line_edit_files
    assert "background-color: blue;" in tool_ctx.arena.resolve("assets/theme.css").content
    assert not loop_state.failures


@pytest.mark.asyncio
async def test_large_output_goes_to_output_store(tool_ctx, loop_state):
    big = "\n".join(f".rule-{i} {{ color: red; }}" for i in range(2000))
    tool_ctx.arena.add(FileSnapshot(id="big", name="big.css", path="assets/big.css", content=big))
    dispatcher = make_dispatcher(tool_ctx)
    dispatcher.max_output_chars = 2000
    result = (await dispatcher.dispatch_batch(
        [tool_block("grep_content", "t1", pattern="rule-")], loop_state))[0]
    assert result.truncated
    assert result.output_id
    assert len(result.output) <= 2000 + 40

    page = (await dispatcher.dispatch_batch(
        [tool_block("read_tool_output", "t2", output_id=result.output_id, offset=0, limit=500)], loop_state))[0]
    assert page.success
    assert "rule-" in page.output


@pytest.mark.asyncio
async def test_clarification_and_cancel(tool_ctx, loop_state):
    dispatcher = make_dispatcher(tool_ctx)
    results = await dispatcher.dispatch_batch(
        [tool_block("ask_clarification", "t1", question="Which button?", options=["header", "footer"])],
        loop_state,
    )
    assert results[0].success
    assert loop_state.clarification.startswith("Which button?")
    assert loop_state.clarification_options == ["header", "footer"]

    dispatcher.cancel_check = lambda: True
    cancelled = await dispatcher.dispatch_batch([tool_block("read_file", "t2", path="assets/theme.css")],
                                                loop_state)
    assert not cancelled[0].success
    assert "cancelled" in cancelled[0].error


@pytest.mark.asyncio
async def test_tool_events_are_emitted(tool_ctx, loop_state):
    emitter = EventEmitter()
    dispatcher = ToolDispatcher(default_registry(), tool_ctx, emitter)
    await dispatcher.dispatch_batch([
        tool_block("read_file", "t1", path="assets/theme.css"),
        tool_block("read_file", "t2", path="nope.css"),
    ], loop_state)
    assert emitter.types().count("tool_start") == 2
    assert "tool_result" in emitter.types()
    assert "tool_error" in emitter.types()


def _overlap(a, b):
    return a[0] < b[1] and b[0] < a[1]


def timed_registry(spans):
    async def slow_lookup(ctx, tag, **kw):
        start = time.monotonic()
        await asyncio.sleep(0.05)
        spans[tag] = (start, time.monotonic())
        return LookupResult(success=True, output=tag)

    registry = default_registry()
    registry.register(ToolHandler("slow_read", slow_lookup, ToolCategory.LOOKUP, path_target))
    registry.register(ToolHandler("slow_scan", slow_lookup, ToolCategory.LOOKUP, undeclared))
    return registry


@pytest.mark.asyncio
async def test_only_disjoint_declared_targets_run_concurrently(tool_ctx, loop_state):
    spans = {}
    dispatcher = ToolDispatcher(timed_registry(spans), tool_ctx, EventEmitter())
    calls = [
        tool_block("slow_read", "t1", tag="a1", path="assets/a.css"),
        tool_block("slow_read", "t2", tag="b", path="assets/b.css"),
        tool_block("slow_read", "t3", tag="a2", path="assets/a.css"),
        tool_block("slow_scan", "t4", tag="scan1"),
        tool_block("slow_scan", "t5", tag="scan2"),
    ]
    results = await dispatcher.dispatch_batch(calls, loop_state)

    assert [r.output for r in results] == ["a1", "b", "a2", "scan1", "scan2"]
    assert _overlap(spans["a1"], spans["b"])
    assert not _overlap(spans["a1"], spans["a2"])
    assert not _overlap(spans["a2"], spans["scan1"])
    assert not _overlap(spans["scan1"], spans["scan2"])


@pytest.mark.asyncio
async def test_project_search_after_an_edit_sees_the_edit(tool_ctx, loop_state):
    dispatcher = make_dispatcher(tool_ctx)
    results = await dispatcher.dispatch_batch([
        tool_block("search_replace", "t1", path="assets/theme.css",
                   old_text="background-color: red;", new_text="background-color: blue;"),
        tool_block("grep_content", "t2", pattern="background-color: blue"),
    ], loop_state)
    assert results[0].success
    assert "assets/theme.css:" in results[1].output


@pytest.mark.asyncio
async def test_clarification_stops_the_rest_of_the_batch(tool_ctx, loop_state):
    dispatcher = make_dispatcher(tool_ctx)
    results = await dispatcher.dispatch_batch([
        tool_block("ask_clarification", "t1", question="Which button?"),
        tool_block("search_replace", "t2", path="assets/theme.css",
                   old_text="background-color: red;", new_text="background-color: blue;"),
        tool_block("read_file", "t3", path="assets/theme.css"),
    ], loop_state)

    assert loop_state.clarification == "Which button?"
    assert [r.tool_use_id for r in results] == ["t1", "t2", "t3"]
    assert not results[1].success and "awaiting clarification" in results[1].error
    assert not results[2].success
    assert loop_state.change_count == 0
    assert "background-color: red;" in tool_ctx.arena.resolve("assets/theme.css").content


@pytest.mark.asyncio
async def test_edit_earlier_in_the_batch_resets_the_lookup_counter(tool_ctx, loop_state):
    dispatcher = make_dispatcher(tool_ctx)
    loop_state.lookups_since_mutation = dispatcher.lookup_abort_threshold - 1
    results = await dispatcher.dispatch_batch([
        tool_block("search_replace", "t1", path="assets/theme.css",
                   old_text="background-color: red;", new_text="background-color: blue;"),
        tool_block("read_file", "t2", path="assets/theme.css"),
    ], loop_state)

    assert all(r.success for r in results)
    assert loop_state.change_count == 1
    assert loop_state.lookups_since_mutation == 1
    assert "background-color: blue;" in results[1].output


@pytest.mark.asyncio
async def test_no_op_edit_keeps_the_lookup_counter(tool_ctx, loop_state):
    dispatcher = make_dispatcher(tool_ctx)
    loop_state.lookups_since_mutation = 5
    result = (await dispatcher.dispatch_batch([
        tool_block("search_replace", "t1", path="assets/theme.css",
                   old_text="background-color: red;", new_text="background-color: red;"),
    ], loop_state))[0]

    assert result.success and not result.changed
    assert loop_state.lookups_since_mutation == 5
    assert loop_state.mutation_count == 0
