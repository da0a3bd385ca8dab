"""Shared result types and execution context for the tools package."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from agent.files import FileArena
from agent.types import CodeChange, MutationFailure, ReviewOutcome


class ToolCategory(str, Enum):
    LOOKUP = "lookup"
    MUTATION = "mutation"
    ORCHESTRATION = "orchestration"


@dataclass
class ToolResult:
    """Result from executing a tool"""
    success: bool
    output: str
    error: Optional[str] = None
    tool_use_id: str = ""
    tool_name: str = ""
    redundant: bool = False
    truncated: bool = False
    output_id: Optional[str] = None

    category = ToolCategory.LOOKUP

    @property
    def text(self) -> str:
        if self.success:
            return self.output or "(no output)"
        return f"Error: {self.error or 'unknown error'}"

    def to_block(self) -> Dict[str, Any]:
        block: Dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.text,
        }
        if not self.success:
            block["is_error"] = True
        return block


@dataclass
class LookupResult(ToolResult):
    # (path, start_line, end_line) of every file region shown to the model
    reads: List[Tuple[str, Optional[int], Optional[int]]] = field(default_factory=list)

    category = ToolCategory.LOOKUP


@dataclass
class MutationResult(ToolResult):
    path: str = ""
    file_id: str = ""
    changed: bool = False
    version: int = 0
    change: Optional[CodeChange] = None
    failure: Optional[MutationFailure] = None

    category = ToolCategory.MUTATION


@dataclass
class OrchestrationResult(ToolResult):
    clarification: Optional[str] = None
    options: List[str] = field(default_factory=list)
    handoff: Any = None
    review: Optional[ReviewOutcome] = None
    changes: List[CodeChange] = field(default_factory=list)

    category = ToolCategory.ORCHESTRATION


def mutation_failure(tool: str, path: str, reason: str, error: str, file_id: str = "") -> MutationResult:
    """Error-flagged mutation result with a structured failure record."""
    return MutationResult(
        success=False,
        output="",
        error=error,
        path=path,
        file_id=file_id,
        failure=MutationFailure(tool=tool, file_id=file_id or path, file_name=path, reason=reason, error=error),
    )


@dataclass
class ToolContext:
    """Everything a tool handler may touch during one execution."""
    arena: FileArena
    project_id: str = ""
    structural_index: Any = None
    term_cache: Any = None
    output_store: Any = None
    gate: Any = None
    specialists: Any = None
    state: Any = None
    agent: str = "pm"

    def project_files(self) -> Dict[str, str]:
        return {s.path: s.content for s in self.arena.files()}
