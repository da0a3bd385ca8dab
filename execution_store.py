"""
Execution persistence for the Bedrock Codex core.
Stores execution status, message log, changes, review results and checkpoints
so a run can be inspected later or resumed by a background worker.
"""

import copy
import json
import logging
import os
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from agent.types import CheckpointData, CodeChange, ExecutionRecord, ReviewOutcome

logger = logging.getLogger(__name__)

DEFAULT_BASE_DIR = os.path.join(os.path.expanduser("~"), ".bedrock-codex", "executions")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _safe_id(execution_id: str) -> str:
    """Turn an execution id into a safe filename component."""
    s = re.sub(r"[^A-Za-z0-9_.-]+", "-", execution_id).strip("-.")
    return s[:120] or "execution"


class ExecutionStore:
    """
    Read/write contract used by the execution loop.

    Records live in memory; subclasses persist them through ``_persist``.
    """

    def __init__(self):
        self._records: Dict[str, ExecutionRecord] = {}

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def create_execution(self, execution_id: str, project_id: str, user_id: str,
                         user_request: str) -> ExecutionRecord:
        existing = self.get(execution_id)
        if existing is not None:
            # resumed executions keep their record and history
            return existing
        now = _now_iso()
        record = ExecutionRecord(
            execution_id=execution_id,
            project_id=project_id,
            user_id=user_id,
            user_request=user_request,
            created_at=now,
            updated_at=now,
        )
        self._records[execution_id] = record
        self._persist(record)
        return record

    def update_status(self, execution_id: str, status: str, phase: Optional[str] = None,
                      error: Optional[str] = None) -> None:
        record = self._require(execution_id)
        record.status = getattr(status, "value", status)
        if phase is not None:
            record.phase = getattr(phase, "value", phase)
        if error is not None:
            record.error = error
        self._touch(record)

    def append_message(self, execution_id: str, message: Dict[str, Any]) -> None:
        record = self._require(execution_id)
        # snapshot: the loop keeps mutating its own copy (compression, anchors)
        record.messages.append(copy.deepcopy(message))
        self._touch(record)

    def store_review_result(self, execution_id: str, review: ReviewOutcome) -> None:
        record = self._require(execution_id)
        record.review = review.to_dict()
        self._touch(record)

    def store_changes(self, execution_id: str, changes: List[CodeChange]) -> None:
        record = self._require(execution_id)
        record.changes = [c.to_dict() for c in changes]
        self._touch(record)

    def save_checkpoint(self, execution_id: str, data: CheckpointData) -> None:
        record = self._require(execution_id)
        record.checkpoint = data.to_dict()
        self._touch(record)
        logger.info(f"Checkpoint saved for {execution_id} (phase={data.phase}, changes={len(data.changes)})")

    def get_checkpoint(self, execution_id: str) -> Optional[CheckpointData]:
        record = self.get(execution_id)
        if record is None or not record.checkpoint:
            return None
        return CheckpointData.from_dict(record.checkpoint)

    def clear_checkpoint(self, execution_id: str) -> None:
        record = self.get(execution_id)
        if record is None or record.checkpoint is None:
            return
        record.checkpoint = None
        self._touch(record)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, execution_id: str) -> Optional[ExecutionRecord]:
        return self._records.get(execution_id)

    def list_executions(self, project_id: Optional[str] = None) -> List[ExecutionRecord]:
        records = [r for r in self._records.values() if project_id is None or r.project_id == project_id]
        records.sort(key=lambda r: r.updated_at or "", reverse=True)
        return records

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _require(self, execution_id: str) -> ExecutionRecord:
        record = self.get(execution_id)
        if record is None:
            raise KeyError(f"Unknown execution: {execution_id}")
        return record

    def _touch(self, record: ExecutionRecord) -> None:
        record.updated_at = _now_iso()
        self._persist(record)

    def _persist(self, record: ExecutionRecord) -> None:
        pass


class InMemoryExecutionStore(ExecutionStore):
    """Process-local store, used by tests and one-shot CLI runs."""
    pass


class JsonExecutionStore(ExecutionStore):
    """
    Stores one JSON file per execution.

    File layout:  {base_dir}/{execution_id}.json
    """

    def __init__(self, base_dir: str = DEFAULT_BASE_DIR):
        super().__init__()
        self.base_dir = base_dir
        os.makedirs(self.base_dir, exist_ok=True)

    def get(self, execution_id: str) -> Optional[ExecutionRecord]:
        record = self._records.get(execution_id)
        if record is not None:
            return record
        path = self._path_for(execution_id)
        if not os.path.exists(path):
            return None
        record = self._read_file(path)
        if record is not None:
            self._records[execution_id] = record
        return record

    def list_executions(self, project_id: Optional[str] = None) -> List[ExecutionRecord]:
        for fname in os.listdir(self.base_dir):
            if not fname.endswith(".json"):
                continue
            record = self._read_file(os.path.join(self.base_dir, fname))
            if record is not None:
                self._records.setdefault(record.execution_id, record)
        return super().list_executions(project_id)

    def _path_for(self, execution_id: str) -> str:
        return os.path.join(self.base_dir, f"{_safe_id(execution_id)}.json")

    def _persist(self, record: ExecutionRecord) -> None:
        path = self._path_for(record.execution_id)
        tmp_path = path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(record.to_dict(), f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, path)
            logger.debug(f"Execution saved: {path}")
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def _read_file(self, path: str) -> Optional[ExecutionRecord]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return ExecutionRecord.from_dict(data)
        except (OSError, ValueError, TypeError, KeyError) as e:
            logger.warning(f"Failed to read execution {path}: {e}")
            return None
