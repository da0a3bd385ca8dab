"""
Tests for context management: token estimates, compression, memory anchors and handoff folding.
"""

from agent.history import ContextManager
from agent.specialists import SpecialistHandoff


def _tool_turns(n, size=3000):
    msgs = [{"role": "user", "content": "make the button blue", "pinned": True}]
    for i in range(n):
        msgs.append({"role": "assistant", "content": [
            {"type": "tool_use", "id": f"t{i}", "name": "read_file", "input": {"path": f"f{i}.css"}},
        ]})
        msgs.append({"role": "user", "content": [
            {"type": "tool_result", "tool_use_id": f"t{i}", "content": "x" * size},
        ]})
    return msgs


def test_estimate_tokens():
    assert ContextManager.estimate_tokens("") == 1
    assert ContextManager.estimate_tokens("a" * 35) == 10


def test_under_threshold_nothing_changes():
    cm = ContextManager("test-model", 200000)
    msgs = _tool_turns(2)
    before = [dict(m) for m in msgs]
    assert not cm.enforce_budget(msgs)
    assert msgs == before


def test_compression_keeps_pinned_latest_result_and_pairing():
    cm = ContextManager("test-model", 4000)
    msgs = _tool_turns(6)
    assert cm.enforce_budget(msgs, "system")

    assert msgs[0]["content"] == "make the button blue"
    assert "compressed" not in msgs[0]
    latest = ContextManager.latest_tool_result_index(msgs)
    assert latest == len(msgs) - 1
    assert msgs[latest]["content"][0]["content"] == "x" * 3000
    assert "chars compressed" in msgs[2]["content"][0]["content"]

    # every tool_use still has its tool_result right after it
    assert len(msgs) == 13
    for i in range(1, len(msgs), 2):
        use = msgs[i]["content"][0]
        result = msgs[i + 1]["content"][0]
        assert use["type"] == "tool_use" and result["tool_use_id"] == use["id"]


def test_memory_anchor_threshold_and_interval():
    cm = ContextManager("test-model", 10000)
    assert cm.maybe_memory_anchor(1, cm.anchor_threshold + 1, "goal", 0) is None  # nothing recorded yet

    cm.record_read("assets/theme.css", 1, 40)
    cm.record_read("assets/theme.css", 1, 40)
    cm.record_edit("assets/theme.css")
    cm.record_action("search_replace assets/theme.css")
    assert cm.maybe_memory_anchor(1, cm.anchor_threshold - 1, "goal", 1) is None

    anchor = cm.maybe_memory_anchor(2, cm.anchor_threshold + 1, "make the button blue", 1)
    assert anchor.startswith("MEMORY ANCHOR")
    assert "assets/theme.css (lines 1-40)" in anchor
    assert "assets/theme.css (1 edit)" in anchor
    assert "Total accumulated changes: 1" in anchor
    assert cm.anchors_injected == 1

    assert cm.maybe_memory_anchor(3, cm.anchor_threshold + 1, "goal", 1) is None
    assert cm.maybe_memory_anchor(2 + cm.anchor_min_interval, cm.anchor_threshold + 1, "goal", 1)


def test_files_read_and_edited_bookkeeping():
    cm = ContextManager("test-model", 10000)
    cm.record_read("a.css")
    cm.record_read("b.liquid", 3, 9)
    cm.record_edit("a.css")
    cm.record_edit("a.css")
    assert cm.files_read == ["a.css", "b.liquid"]
    assert cm.files_edited == {"a.css": 2}


def test_merge_handoffs():
    assert ContextManager.merge_handoffs([]) is None
    merged = ContextManager.merge_handoffs([
        SpecialistHandoff("css-1", "css", files_touched=["assets/theme.css"], findings="changed the color"),
        SpecialistHandoff("liquid-1", "liquid", concerns=["finished without changes"]),
    ])
    assert merged.startswith("[Specialist handoffs]")
    assert "css (css-1)" in merged
    assert "files touched: assets/theme.css" in merged
    assert "concern: finished without changes" in merged
