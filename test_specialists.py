"""
Tests for specialist sub-agents: worktree isolation, merge-back, reframed retry and delegation.
"""

from dataclasses import replace

import pytest

from agent.events import EventEmitter
from agent.lifecycle import SpecialistState
from agent.specialists import SpecialistRunner
from agent.streaming import ModelInvoker
from conftest import ScriptedService, text_block, tool_block
from tools import ToolDispatcher, default_registry

EDIT = [tool_block("search_replace", "s1", path="assets/theme.css",
                   old_text="background-color: red;", new_text="background-color: blue;")]


def make_runner(turns):
    service = ScriptedService(turns)
    runner = SpecialistRunner(ModelInvoker(service, EventEmitter(), first_byte_timeout=5), default_registry(),
                              model_id="specialist-model")
    return runner, service


@pytest.mark.asyncio
async def test_specialist_changes_merge_back(tool_ctx, loop_state):
    runner, service = make_runner([EDIT, [text_block("Set .btn to blue.")]])
    outcome = await runner.run("css", "make .btn blue", ["assets/theme.css"], tool_ctx)

    assert outcome.error is None
    assert [c.path for c in outcome.changes] == ["assets/theme.css"]
    assert "background-color: blue;" in tool_ctx.arena.resolve("assets/theme.css").content
    assert outcome.handoff.files_touched == ["assets/theme.css"]
    assert outcome.handoff.findings == "Set .btn to blue."
    record = runner.lifecycle.get(outcome.handoff.agent_id)
    assert record.state == SpecialistState.PRODUCED_CHANGES
    # the parent run pays for the specialist's model calls
    assert loop_state.usage.model_calls == 2
    assert {c["model_id"] for c in service.calls} == {"specialist-model"}
    assert "run_specialist" not in service.calls[0]["tools"]


@pytest.mark.asyncio
async def test_no_change_specialist_retries_once_reframed(tool_ctx):
    runner, service = make_runner([[text_block("Nothing to do.")], [text_block("Still nothing.")]])
    outcome = await runner.run("liquid", "update the header", [], tool_ctx)

    assert outcome.changes == []
    assert outcome.handoff.concerns == ["finished without changes"]
    assert len(service.calls) == 2
    assert service.calls[1]["messages"][0]["content"].startswith("Your previous attempt as the liquid specialist")
    record = runner.lifecycle.get(outcome.handoff.agent_id)
    assert record.retry_count == 1
    assert record.state == SpecialistState.COMPLETED_NO_CHANGES
    assert len(tool_ctx.arena.changes) == 0


@pytest.mark.asyncio
async def test_specialist_clarification_escalates(tool_ctx):
    runner, _ = make_runner([[tool_block("ask_clarification", "q1", question="Which header?")]])
    outcome = await runner.run("liquid", "update the header", [], tool_ctx)
    assert outcome.clarification == "Which header?"
    assert runner.lifecycle.records()[0].state == SpecialistState.ESCALATED


@pytest.mark.asyncio
async def test_delegation_through_the_dispatcher(tool_ctx, loop_state):
    runner, _ = make_runner([EDIT, [text_block("Done with the color.")]])
    ctx = replace(tool_ctx, specialists=runner)
    dispatcher = ToolDispatcher(default_registry(), ctx, EventEmitter())
    call = tool_block("run_specialist", "d1", kind="css", instructions="make .btn blue",
                      files=["assets/theme.css"])
    result = (await dispatcher.dispatch_batch([call], loop_state))[0]

    assert result.success
    assert "css (" in result.output
    assert loop_state.mutation_count == 1
    assert loop_state.change_count == 1
    assert len(loop_state.handoffs) == 1


@pytest.mark.asyncio
async def test_delegation_disabled_without_runner(tool_ctx, loop_state):
    dispatcher = ToolDispatcher(default_registry(), tool_ctx, EventEmitter())
    call = tool_block("run_specialist", "d1", kind="css", instructions="make .btn blue")
    result = (await dispatcher.dispatch_batch([call], loop_state))[0]
    assert not result.success
    assert "Delegation is disabled" in result.error
