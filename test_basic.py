"""
Smoke tests: the package imports cleanly and the built-in tool set is consistent.
"""

import pytest

from tools import DECLARED_TOOL_NAMES, ToolHandler, ToolRegistry, ToolRegistryError, default_registry
from tools.registry import undeclared


def test_agent_imports():
    import agent
    assert callable(agent.CodingAgent)
    assert agent.RunOptions().mode == agent.Mode.CODE
    with pytest.raises(AttributeError):
        agent.NotAThing


def test_default_registry_covers_every_declared_tool():
    registry = default_registry()
    assert set(registry.names()) == set(DECLARED_TOOL_NAMES)


def test_registry_mismatch_is_rejected():
    async def noop(ctx, **kw):
        return None

    registry = ToolRegistry([ToolHandler("read_file", noop, None, undeclared)])
    with pytest.raises(ToolRegistryError) as exc:
        registry.validate({"read_file", "edit_lines"})
    assert "no handler for: edit_lines" in str(exc.value)
    with pytest.raises(ToolRegistryError):
        registry.validate(set())


def test_run_options_survive_a_checkpoint():
    from agent import RunOptions, Strategy, Tier
    options = RunOptions(mode="debug", tier=Tier.COMPLEX, strategy=Strategy.MAXIMAL, timeout_seconds=90)
    restored = RunOptions.from_dict(options.to_dict())
    assert restored.mode.value == "debug"
    assert restored.tier == Tier.COMPLEX
    assert restored.strategy == Strategy.MAXIMAL
    assert restored.timeout_seconds == 90
    assert restored.callbacks is not None
