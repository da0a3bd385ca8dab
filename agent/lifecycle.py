"""
Specialist lifecycle state machine.

Delegated sub-agents move through a fixed transition table. Anything not in the
table is ignored and the record keeps its current state.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

logger = logging.getLogger(__name__)


class SpecialistState(str, Enum):
    DISPATCHED = "dispatched"
    WORKING = "working"
    PRODUCED_CHANGES = "produced_changes"
    COMPLETED_NO_CHANGES = "completed_no_changes"
    FAILED = "failed"
    REVIEWED = "reviewed"
    MERGED = "merged"
    ESCALATED = "escalated"


S = SpecialistState

TRANSITIONS: Dict[SpecialistState, FrozenSet[SpecialistState]] = {
    S.DISPATCHED: frozenset({S.WORKING, S.FAILED, S.ESCALATED}),
    S.WORKING: frozenset({S.PRODUCED_CHANGES, S.COMPLETED_NO_CHANGES, S.FAILED, S.ESCALATED}),
    S.PRODUCED_CHANGES: frozenset({S.REVIEWED, S.MERGED, S.ESCALATED}),
    S.COMPLETED_NO_CHANGES: frozenset({S.WORKING, S.FAILED, S.ESCALATED}),
    S.FAILED: frozenset({S.WORKING, S.ESCALATED}),
    S.REVIEWED: frozenset({S.MERGED, S.ESCALATED, S.WORKING}),
    S.MERGED: frozenset(),
    S.ESCALATED: frozenset(),
}

TERMINAL_STATES = frozenset({S.MERGED, S.ESCALATED})


class Reaction(str, Enum):
    NONE = "none"
    RETRY_REFRAMED = "retry_reframed"
    REQUEST_CLARIFICATION = "request_clarification"


@dataclass
class SpecialistRecord:
    agent_id: str
    kind: str
    state: SpecialistState = S.DISPATCHED
    retry_count: int = 0
    failure_count: int = 0
    last_update: float = field(default_factory=time.time)
    history: List[Tuple[str, float]] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES


def can_transition(current: SpecialistState, target: SpecialistState) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


class LifecycleTracker:
    """Owns every SpecialistRecord of one execution.

    Reaction rules:
    - a second ``failed`` on the same specialist asks for clarification;
    - the first ``completed_no_changes`` earns one retry with reframed instructions.
    """

    def __init__(self, max_retries: int = 1, max_failures: int = 2):
        self._records: Dict[str, SpecialistRecord] = {}
        self.max_retries = max_retries
        self.max_failures = max_failures

    def dispatch(self, kind: str, agent_id: Optional[str] = None) -> SpecialistRecord:
        agent_id = agent_id or f"{kind}-{uuid.uuid4().hex[:8]}"
        record = SpecialistRecord(agent_id=agent_id, kind=kind)
        record.history.append((S.DISPATCHED.value, record.last_update))
        self._records[agent_id] = record
        logger.info(f"Specialist dispatched: {agent_id}")
        return record

    def get(self, agent_id: str) -> Optional[SpecialistRecord]:
        return self._records.get(agent_id)

    def records(self) -> List[SpecialistRecord]:
        return list(self._records.values())

    def transition(self, agent_id: str, target: SpecialistState) -> bool:
        """Apply a transition. Illegal ones are ignored and return False."""
        record = self._records.get(agent_id)
        if record is None:
            return False
        target = SpecialistState(target)
        if not can_transition(record.state, target):
            logger.debug(f"Ignoring illegal specialist transition {record.state.value} -> {target.value} ({agent_id})")
            return False
        if target == S.WORKING and record.state in (S.COMPLETED_NO_CHANGES, S.FAILED, S.REVIEWED):
            record.retry_count += 1
        if target == S.FAILED:
            record.failure_count += 1
        record.state = target
        record.last_update = time.time()
        record.history.append((target.value, record.last_update))
        return True

    def reaction(self, agent_id: str) -> Reaction:
        """Reaction rule for the record's current state."""
        record = self._records.get(agent_id)
        if record is None:
            return Reaction.NONE
        if record.state == S.FAILED and record.failure_count >= self.max_failures:
            return Reaction.REQUEST_CLARIFICATION
        if record.state == S.COMPLETED_NO_CHANGES and record.retry_count < self.max_retries:
            return Reaction.RETRY_REFRAMED
        return Reaction.NONE

    def mark_reviewed(self) -> List[str]:
        return [r.agent_id for r in self._records.values()
                if r.state == S.PRODUCED_CHANGES and self.transition(r.agent_id, S.REVIEWED)]

    def merge_all_pending(self) -> List[str]:
        """Move every produced/reviewed specialist to merged at completion."""
        return [r.agent_id for r in self._records.values()
                if r.state in (S.PRODUCED_CHANGES, S.REVIEWED) and self.transition(r.agent_id, S.MERGED)]

    def completed_ids(self) -> List[str]:
        return [r.agent_id for r in self._records.values()
                if r.state in (S.MERGED, S.PRODUCED_CHANGES, S.REVIEWED)]

    def restore_completed(self, agent_ids: List[str]) -> None:
        """Rebuild records for specialists that finished before a checkpoint."""
        for agent_id in agent_ids:
            kind = agent_id.rsplit("-", 1)[0]
            record = SpecialistRecord(agent_id=agent_id, kind=kind, state=S.MERGED)
            record.history.append((S.MERGED.value, record.last_update))
            self._records[agent_id] = record
