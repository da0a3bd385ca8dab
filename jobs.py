"""
Continuation job queue.
A checkpointed execution enqueues a ContinuationJob; a worker drains the
queue and resumes the execution from its checkpoint.
"""

import json
import logging
import os
import uuid
from collections import deque
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_DIR = os.path.join(os.path.expanduser("~"), ".bedrock-codex", "jobs")


@dataclass
class ContinuationJob:
    """Invocation parameters of a checkpointed run (callbacks excluded)."""
    execution_id: str
    project_id: str
    user_id: str
    user_request: str
    file_snapshots: List[Dict[str, Any]] = field(default_factory=list)
    preferences: Dict[str, Any] = field(default_factory=dict)
    options: Dict[str, Any] = field(default_factory=dict)
    job_id: str = ""
    enqueued_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContinuationJob":
        return cls(**{k: data[k] for k in cls.__dataclass_fields__ if k in data})


class JobQueue(Protocol):
    def enqueue(self, job: ContinuationJob) -> str: ...

    def dequeue(self) -> Optional[ContinuationJob]: ...

    def pending(self) -> int: ...


def _stamp(job: ContinuationJob) -> ContinuationJob:
    if not job.job_id:
        job.job_id = uuid.uuid4().hex[:12]
    if not job.enqueued_at:
        job.enqueued_at = datetime.now(timezone.utc).isoformat()
    return job


class InMemoryJobQueue:
    """FIFO queue held in process memory."""

    def __init__(self):
        self._jobs: Deque[ContinuationJob] = deque()

    def enqueue(self, job: ContinuationJob) -> str:
        _stamp(job)
        self._jobs.append(job)
        logger.info(f"Continuation job queued: {job.job_id} ({job.execution_id})")
        return job.job_id

    def dequeue(self) -> Optional[ContinuationJob]:
        return self._jobs.popleft() if self._jobs else None

    def pending(self) -> int:
        return len(self._jobs)


class FileJobQueue:
    """
    One JSON file per job, ordered by enqueue time.

    File layout:  {base_dir}/{enqueued_at}_{job_id}.json
    """

    def __init__(self, base_dir: str = DEFAULT_QUEUE_DIR):
        self.base_dir = base_dir
        os.makedirs(self.base_dir, exist_ok=True)

    def _job_files(self) -> List[str]:
        return sorted(f for f in os.listdir(self.base_dir) if f.endswith(".json"))

    def enqueue(self, job: ContinuationJob) -> str:
        _stamp(job)
        stamp = job.enqueued_at.replace(":", "").replace("-", "").replace("+", "_")
        path = os.path.join(self.base_dir, f"{stamp}_{job.job_id}.json")
        tmp_path = path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(job.to_dict(), f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, path)
            logger.info(f"Continuation job written: {path}")
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        return job.job_id

    def dequeue(self) -> Optional[ContinuationJob]:
        for fname in self._job_files():
            path = os.path.join(self.base_dir, fname)
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                os.remove(path)
            except FileNotFoundError:
                # another worker took it
                continue
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping unreadable job file {path}: {e}")
                continue
            return ContinuationJob.from_dict(data)
        return None

    def pending(self) -> int:
        return len(self._job_files())
