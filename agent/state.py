"""
Explicit per-execution loop state.

Every step function of the execution loop reads and writes this object; nothing
about an in-flight run lives in module globals.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from .files import FileArena
from .types import Mode, MutationFailure, Phase, Status, Strategy, Tier, Usage


@dataclass
class LoopState:
    execution_id: str
    project_id: str
    user_id: str
    user_request: str
    arena: FileArena
    mode: Mode = Mode.CODE
    tier: Tier = Tier.SIMPLE
    strategy: Strategy = Strategy.HYBRID
    implies_mutation: bool = True
    max_iterations: int = 24

    phase: Phase = Phase.RESOLVE_INTENT
    status: Status = Status.RUNNING
    iteration: int = 0
    messages: List[Dict[str, Any]] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)

    # Dispatcher bookkeeping
    context_version: int = 0
    lookups_since_mutation: int = 0
    mutation_count: int = 0
    tool_calls: int = 0
    failures: Dict[str, MutationFailure] = field(default_factory=dict)
    forced_line_edit_files: Set[str] = field(default_factory=set)

    # Stop / retry bookkeeping
    nudges: int = 0
    rethinks: int = 0
    strategy_escalated: bool = False
    clarification: Optional[str] = None
    clarification_options: List[str] = field(default_factory=list)
    checkpoint_reason: Optional[str] = None
    budget_stop: Optional[str] = None
    error: Optional[str] = None

    # Text produced by the model across the run, and the last turn's text
    narrative: List[str] = field(default_factory=list)
    last_text: str = ""
    last_tool_call_count: int = 0

    # Text blocks to append to the next tool-result turn
    pending_notes: List[str] = field(default_factory=list)
    handoffs: List[Any] = field(default_factory=list)
    completed_specialists: List[str] = field(default_factory=list)

    @property
    def changes(self):
        return self.arena.changes.to_list()

    @property
    def change_count(self) -> int:
        return len(self.arena.changes)

    @property
    def analysis_text(self) -> str:
        return "\n\n".join(t.strip() for t in self.narrative if t.strip())

    def note(self, text: str) -> None:
        if text and text not in self.pending_notes:
            self.pending_notes.append(text)

    def take_notes(self) -> List[str]:
        notes, self.pending_notes = self.pending_notes, []
        return notes
