"""
Recovery messaging for the execution loop: corrective excerpts after repeated
edit failures, stop nudges, rethink prompts and the zero-change summary.
"""

import difflib
import logging
from typing import Dict, List, Optional

from .types import MutationFailure, Tier

logger = logging.getLogger(__name__)

RETHINK_LIMITS: Dict[Tier, int] = {
    Tier.TRIVIAL: 1,
    Tier.SIMPLE: 1,
    Tier.COMPLEX: 2,
    Tier.ARCHITECTURAL: 3,
}

_REASON_HINTS = {
    "old_text_not_found": "the text to replace did not match the file exactly",
    "file_not_found": "the target file does not exist in the project",
    "validation_error": "the edit request was malformed or ambiguous",
    "conflict": "a concurrent edit touched the same lines",
    "unknown": "the edit failed for an unexpected reason",
}


def rethink_limit(tier: Tier) -> int:
    return RETHINK_LIMITS.get(Tier(tier), 1)


def _best_line(lines: List[str], needle: str) -> Optional[int]:
    """0-based index of the line closest to the needle's first non-blank line."""
    anchor = next((l.strip() for l in needle.splitlines() if l.strip()), "")
    if not anchor or not lines:
        return None
    stripped = [l.strip() for l in lines]
    for i, line in enumerate(stripped):
        if anchor in line:
            return i
    close = difflib.get_close_matches(anchor, stripped, n=1, cutoff=0.5)
    if close:
        return stripped.index(close[0])
    return None


def corrective_excerpt(path: str, content: str, attempts: int, needle: str = "", window: int = 15) -> str:
    """Line-numbered excerpt of the current file plus the switch to line-addressed edits."""
    lines = content.splitlines()
    center = _best_line(lines, needle) if needle else None
    if center is None:
        start, end = 0, min(len(lines), 2 * window)
    else:
        start, end = max(0, center - window), min(len(lines), center + window + 1)
    numbered = "\n".join(f"{i + 1:6}|{lines[i]}" for i in range(start, end))
    more = f"\n(file has {len(lines)} lines; read_file with start_line/end_line for other regions)" \
        if end - start < len(lines) else ""
    return (
        f"**Edit recovery**: {attempts} consecutive edits to `{path}` failed. "
        f"This is its current content with verified line numbers (lines {start + 1}-{end}):\n"
        f"```\n{numbered}\n```{more}\n"
        f"From now on only edit_lines is accepted for `{path}`. Use these line numbers."
    )


def forced_line_edit_error(path: str) -> str:
    return (f"Line-addressed edits are required for {path} after repeated failures. "
            f"Use edit_lines with the line numbers from the excerpt provided.")


def nudge_message(request: str, nudge_number: int) -> str:
    return (
        f"You stopped without making any change, but the request needs one "
        f"(reminder {nudge_number}): \"{request[:300]}\". "
        "Locate the target and apply the edit now with search_replace or edit_lines. "
        "If the target genuinely cannot be found or the request is ambiguous, call ask_clarification."
    )


def rethink_message(summary: str, attempt: int, limit: int) -> str:
    return (
        f"**Rethink ({attempt}/{limit})**: verification of your changes found new problems.\n"
        f"{summary}\n"
        "Fix these issues with targeted edits, then stop. Do not revert unrelated work."
    )


def strategy_escalation_message(iterations: int) -> str:
    return (
        f"**Strategy escalation**: {iterations} iterations without an edit. Switching to wide context: "
        "the related files are listed below and only line-addressed edits (edit_lines) are available. "
        "Pick the target and edit it."
    )


def zero_change_summary(request: str, files_read: List[str], failures: List[MutationFailure],
                        stop_reason: str) -> str:
    """Synthesized analysis when a run produced no change and no usable narrative."""
    tried: List[str] = []
    if files_read:
        shown = ", ".join(files_read[:8]) + (f" and {len(files_read) - 8} more" if len(files_read) > 8 else "")
        tried.append(f"- Read {shown}")
    for f in failures[:5]:
        tried.append(f"- {f.tool} on {f.file_name} ({f.attempt_count} attempt(s))")
    if not tried:
        tried.append("- Looked for the code the request refers to")

    wrong: List[str] = []
    for f in failures[:5]:
        wrong.append(f"- {f.file_name}: {_REASON_HINTS.get(f.reason, _REASON_HINTS['unknown'])}")
    wrong.append(f"- The run ended because {stop_reason}")

    proceed = [
        "- Name the exact file (e.g. `snippets/button.liquid`) or paste the code to change",
        "- Describe the expected result in one sentence",
    ]
    if any(f.reason == "file_not_found" for f in failures):
        proceed.insert(0, "- Check that the file exists in this project; it may live in another theme or repo")

    return "\n".join([
        f"No changes were made for: \"{request[:200]}\"",
        "",
        "## What I tried",
        *tried,
        "",
        "## What went wrong",
        *wrong,
        "",
        "## How to proceed",
        *proceed,
    ])
