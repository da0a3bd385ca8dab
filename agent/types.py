"""
Core data types shared by the execution loop, the tool dispatcher and persistence.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional


class Phase(str, Enum):
    RESOLVE_INTENT = "resolve_intent"
    BUILD_PATCH = "build_patch"
    APPLY_PATCH = "apply_patch"
    VERIFY = "verify"
    COMPLETE = "complete"


class Status(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CLARIFICATION = "clarification"
    CHECKPOINTED = "checkpointed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Mode(str, Enum):
    ASK = "ask"
    CODE = "code"
    PLAN = "plan"
    DEBUG = "debug"

    @property
    def allows_mutation(self) -> bool:
        return self in (Mode.CODE, Mode.DEBUG)


class Tier(str, Enum):
    TRIVIAL = "trivial"
    SIMPLE = "simple"
    COMPLEX = "complex"
    ARCHITECTURAL = "architectural"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def stronger(self) -> "Tier":
        """Next tier up; ARCHITECTURAL is the ceiling."""
        return _TIER_ORDER[min(self.rank + 1, len(_TIER_ORDER) - 1)]


_TIER_ORDER = [Tier.TRIVIAL, Tier.SIMPLE, Tier.COMPLEX, Tier.ARCHITECTURAL]


class Strategy(str, Enum):
    MINIMAL = "minimal"
    HYBRID = "hybrid"
    MAXIMAL = "maximal"


@dataclass(frozen=True)
class FileSnapshot:
    """Immutable view of one project file at one version."""
    id: str
    name: str
    path: str
    content: str
    version: int = 0
    dirty: bool = False
    deleted: bool = False

    @property
    def line_count(self) -> int:
        return len(self.content.splitlines())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileSnapshot":
        return cls(
            id=data["id"],
            name=data.get("name") or data["path"].rsplit("/", 1)[-1],
            path=data["path"],
            content=data.get("content", ""),
            version=data.get("version", 0),
            dirty=data.get("dirty", False),
            deleted=data.get("deleted", False),
        )


@dataclass
class CodeChange:
    """One proposed file mutation, expressed against the file's original content."""
    file_id: str
    file_name: str
    original_content: str
    proposed_content: str
    reasoning: str = ""
    agent: str = "pm"
    path: str = ""
    deleted: bool = False

    @property
    def is_creation(self) -> bool:
        return self.original_content == "" and self.proposed_content != ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CodeChange":
        return cls(**{k: data[k] for k in cls.__dataclass_fields__ if k in data})


@dataclass
class MutationFailure:
    """Last failed edit attempt; overwritten on each new failure."""
    tool: str
    file_id: str
    file_name: str
    reason: str  # old_text_not_found, file_not_found, validation_error, conflict, unknown
    attempt_count: int = 1
    error: str = ""


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    model_calls: int = 0
    tool_calls: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: "Usage") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_read_tokens += other.cache_read_tokens
        self.cache_write_tokens += other.cache_write_tokens
        self.model_calls += other.model_calls
        self.tool_calls += other.tool_calls

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class ValidationIssue:
    """One issue reported by a per-file, cross-file or project check."""
    severity: str  # error | warning
    category: str
    file: str
    description: str
    line: Optional[int] = None

    @property
    def key(self) -> str:
        # Line numbers shift with unrelated edits so they are not part of identity
        return f"{self.severity}:{self.category}:{self.file}:{self.description}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ReviewOutcome:
    approved: bool
    summary: str = ""
    issues: List[ValidationIssue] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approved": self.approved,
            "summary": self.summary,
            "issues": [i.to_dict() for i in self.issues],
        }


@dataclass
class CheckpointData:
    """Durable resumable state of an in-progress execution."""
    execution_id: str
    phase: str
    dirty_file_ids: List[str] = field(default_factory=list)
    changes: List[Dict[str, Any]] = field(default_factory=list)
    completed_specialists: List[str] = field(default_factory=list)
    iteration: int = 0
    strategy: str = Strategy.HYBRID.value
    tier: str = Tier.SIMPLE.value
    messages: List[Dict[str, Any]] = field(default_factory=list)
    reason: str = ""
    created_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CheckpointData":
        return cls(**{k: data[k] for k in cls.__dataclass_fields__ if k in data})


@dataclass
class ExecutionResult:
    """What run() hands back to the caller."""
    execution_id: str
    analysis: str
    changes: List[CodeChange] = field(default_factory=list)
    review_outcome: Optional[ReviewOutcome] = None
    usage: Usage = field(default_factory=Usage)
    checkpointed: bool = False
    error: Optional[str] = None
    status: Status = Status.COMPLETED
    clarification: Optional[str] = None
    validation_issues: List[ValidationIssue] = field(default_factory=list)
    iterations: int = 0
    tier: Tier = Tier.SIMPLE
    strategy: Strategy = Strategy.HYBRID

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "analysis": self.analysis,
            "changes": [c.to_dict() for c in self.changes],
            "review_outcome": self.review_outcome.to_dict() if self.review_outcome else None,
            "usage": self.usage.to_dict(),
            "checkpointed": self.checkpointed,
            "error": self.error,
            "status": self.status.value,
            "clarification": self.clarification,
            "validation_issues": [i.to_dict() for i in self.validation_issues],
            "iterations": self.iterations,
            "tier": self.tier.value,
            "strategy": self.strategy.value,
        }


@dataclass
class ExecutionRecord:
    """Persisted view of one execution, owned by the execution store."""
    execution_id: str
    project_id: str = ""
    user_id: str = ""
    user_request: str = ""
    status: str = Status.RUNNING.value
    phase: str = Phase.RESOLVE_INTENT.value
    created_at: str = ""
    updated_at: str = ""
    messages: List[Dict[str, Any]] = field(default_factory=list)
    changes: List[Dict[str, Any]] = field(default_factory=list)
    review: Optional[Dict[str, Any]] = None
    checkpoint: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionRecord":
        return cls(**{k: data[k] for k in cls.__dataclass_fields__ if k in data})
