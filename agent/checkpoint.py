"""
Deadline tracking and checkpoint/resume of in-progress executions.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional

from config import app_config
from jobs import ContinuationJob, JobQueue

from .files import FileArena
from .lifecycle import LifecycleTracker
from .state import LoopState
from .types import CheckpointData, CodeChange, Status

logger = logging.getLogger(__name__)

CHECKPOINT_ANALYSIS = "Agent checkpointed and continuing in background."


class DeadlineTracker:
    """Wall-clock budget for one execution."""

    def __init__(self, budget_seconds: Optional[float] = None, margin_seconds: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.budget_seconds = budget_seconds if budget_seconds is not None else app_config.execution_timeout
        self.margin_seconds = margin_seconds if margin_seconds is not None else app_config.checkpoint_margin_seconds
        self._clock = clock
        self.started_at = clock()

    def elapsed(self) -> float:
        return self._clock() - self.started_at

    def remaining(self) -> float:
        return max(0.0, self.budget_seconds - self.elapsed())

    def is_short(self) -> bool:
        """Less time left than the safety margin needed to checkpoint cleanly."""
        return self.remaining() < self.margin_seconds

    def expired(self) -> bool:
        return self.remaining() <= 0


class CheckpointManager:
    """Persists resumable state and enqueues the continuation job."""

    def __init__(self, store, job_queue: Optional[JobQueue] = None):
        self.store = store
        self.job_queue = job_queue

    def save(self, state: LoopState, job: ContinuationJob,
             lifecycle: Optional[LifecycleTracker] = None, reason: str = "") -> CheckpointData:
        completed = list(state.completed_specialists)
        if lifecycle is not None:
            completed += [a for a in lifecycle.completed_ids() if a not in completed]
        data = CheckpointData(
            execution_id=state.execution_id,
            phase=state.phase.value,
            dirty_file_ids=state.arena.dirty_ids(),
            changes=[c.to_dict() for c in state.arena.changes],
            completed_specialists=completed,
            iteration=state.iteration,
            strategy=state.strategy.value,
            tier=state.tier.value,
            messages=[{k: v for k, v in m.items()} for m in state.messages],
            reason=reason or state.checkpoint_reason or "",
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        self.store.save_checkpoint(state.execution_id, data)
        self.store.update_status(state.execution_id, Status.CHECKPOINTED, phase=state.phase)
        if self.job_queue is not None:
            self.job_queue.enqueue(job)
        else:
            logger.warning(f"No job queue configured; checkpoint for {state.execution_id} must be resumed manually")
        logger.info(
            f"Checkpointed {state.execution_id} at iteration {state.iteration} "
            f"({len(data.changes)} change(s), reason={data.reason or 'n/a'})"
        )
        return data

    def consume(self, execution_id: str) -> Optional[CheckpointData]:
        """Read the checkpoint once; it is cleared so a second resume starts fresh."""
        data = self.store.get_checkpoint(execution_id)
        if data is not None:
            self.store.clear_checkpoint(execution_id)
        return data

    @staticmethod
    def rehydrate(arena: FileArena, data: CheckpointData) -> List[str]:
        """Put every checkpointed change back into the arena before any tool runs."""
        changes = [CodeChange.from_dict(c) for c in data.changes]
        restored: List[str] = []
        for change in changes:
            path = change.path or change.file_name
            snap = arena.rehydrate(change.file_id, path, change.proposed_content,
                                   change.original_content, deleted=change.deleted)
            restored.append(snap.id)
        arena.changes.restore(changes)
        missing = [fid for fid in data.dirty_file_ids if fid not in restored]
        if missing:
            # edited and then reverted before the checkpoint: nothing to restore
            logger.debug(f"Dirty ids without a change entry: {missing}")
        logger.info(f"Rehydrated {len(restored)} file(s) for {data.execution_id}")
        return restored
