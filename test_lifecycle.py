"""
Tests for the specialist lifecycle state machine and its reaction rules.
"""

from agent.lifecycle import LifecycleTracker, Reaction, SpecialistState, TRANSITIONS, can_transition

S = SpecialistState


def test_terminal_states_have_no_exits():
    assert TRANSITIONS[S.MERGED] == frozenset()
    assert TRANSITIONS[S.ESCALATED] == frozenset()


def test_happy_path_to_merged():
    tracker = LifecycleTracker()
    rec = tracker.dispatch("css", agent_id="css-1")
    for target in (S.WORKING, S.PRODUCED_CHANGES, S.REVIEWED, S.MERGED):
        assert tracker.transition(rec.agent_id, target)
    assert rec.terminal
    assert [h[0] for h in rec.history] == ["dispatched", "working", "produced_changes", "reviewed", "merged"]


def test_illegal_transition_is_ignored():
    tracker = LifecycleTracker()
    rec = tracker.dispatch("css", agent_id="css-1")
    assert not tracker.transition(rec.agent_id, S.MERGED)
    assert rec.state == S.DISPATCHED
    assert not tracker.transition("unknown", S.WORKING)


def test_no_transition_out_of_terminal():
    tracker = LifecycleTracker()
    rec = tracker.dispatch("css", agent_id="css-1")
    tracker.transition(rec.agent_id, S.ESCALATED)
    assert not tracker.transition(rec.agent_id, S.WORKING)
    assert not can_transition(S.ESCALATED, S.WORKING)


def test_first_no_change_completion_earns_one_reframed_retry():
    tracker = LifecycleTracker()
    rec = tracker.dispatch("liquid", agent_id="liquid-1")
    tracker.transition(rec.agent_id, S.WORKING)
    tracker.transition(rec.agent_id, S.COMPLETED_NO_CHANGES)
    assert tracker.reaction(rec.agent_id) == Reaction.RETRY_REFRAMED

    tracker.transition(rec.agent_id, S.WORKING)
    assert rec.retry_count == 1
    tracker.transition(rec.agent_id, S.COMPLETED_NO_CHANGES)
    assert tracker.reaction(rec.agent_id) == Reaction.NONE


def test_second_failure_requests_clarification():
    tracker = LifecycleTracker()
    rec = tracker.dispatch("js", agent_id="js-1")
    tracker.transition(rec.agent_id, S.WORKING)
    tracker.transition(rec.agent_id, S.FAILED)
    assert tracker.reaction(rec.agent_id) == Reaction.NONE
    tracker.transition(rec.agent_id, S.WORKING)
    tracker.transition(rec.agent_id, S.FAILED)
    assert rec.failure_count == 2
    assert tracker.reaction(rec.agent_id) == Reaction.REQUEST_CLARIFICATION


def test_merge_all_pending_and_completed_ids():
    tracker = LifecycleTracker()
    a = tracker.dispatch("css", agent_id="css-1")
    b = tracker.dispatch("js", agent_id="js-1")
    for rec in (a, b):
        tracker.transition(rec.agent_id, S.WORKING)
    tracker.transition(a.agent_id, S.PRODUCED_CHANGES)
    tracker.transition(b.agent_id, S.COMPLETED_NO_CHANGES)

    assert tracker.mark_reviewed() == ["css-1"]
    assert tracker.merge_all_pending() == ["css-1"]
    assert a.state == S.MERGED
    assert b.state == S.COMPLETED_NO_CHANGES
    assert tracker.completed_ids() == ["css-1"]


def test_restore_completed_rebuilds_merged_records():
    tracker = LifecycleTracker()
    tracker.restore_completed(["css-ab12cd34"])
    rec = tracker.get("css-ab12cd34")
    assert rec.kind == "css"
    assert rec.state == S.MERGED
    assert tracker.completed_ids() == ["css-ab12cd34"]
