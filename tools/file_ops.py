"""File tools over the execution's snapshot arena: read, search_replace, edit_lines, propose, create, delete."""

import difflib
import logging
from typing import Any, List, Optional

from agent.files import normalize_path
from tools._common import LookupResult, MutationResult, ToolContext, mutation_failure

logger = logging.getLogger(__name__)

_MAX_FULL_READ_LINES = 500


def _extract_structure(lines: List[str]) -> str:
    """Structural summary of a large file: imports, classes, functions, Liquid schema and sections."""
    structure = []
    for i, line in enumerate(lines):
        stripped = line.strip()
        if stripped.startswith(("import ", "from ")) and i < 50:
            structure.append(f"{i+1:6}|{line.rstrip()}")
        elif stripped.startswith(("class ", "def ", "async def ", "function ", "export ")):
            structure.append(f"{i+1:6}|{line.rstrip()}")
        elif stripped.startswith(("{% schema", "{%- schema", "{% section", "{% render")):
            structure.append(f"{i+1:6}|{line.rstrip()}")
    return "\n".join(structure)


def _compact_diff(old_content: str, new_content: str, path: str, max_lines: int = 60) -> str:
    """Compact unified diff shown to the model after an edit."""
    old_lines = old_content.splitlines(keepends=True)
    new_lines = new_content.splitlines(keepends=True)
    diff = list(difflib.unified_diff(old_lines, new_lines, fromfile=path, tofile=path, lineterm=""))
    if not diff:
        return ""
    if len(diff) > max_lines:
        diff = diff[:max_lines] + [f"... ({len(diff) - max_lines} more diff lines)"]
    return "\n".join(line.rstrip() for line in diff)


def _not_found(tool: str, ctx: ToolContext, path: str) -> MutationResult:
    close = difflib.get_close_matches(normalize_path(path), ctx.arena.paths(), n=3)
    hint = f" Did you mean: {', '.join(close)}?" if close else " Use list_files or search_files to locate it."
    return mutation_failure(tool, path, "file_not_found", f"File not found: {path}.{hint}")


def _applied(ctx: ToolContext, tool: str, path: str, old: str, new: str, reasoning: str,
             summary: str) -> MutationResult:
    outcome = ctx.arena.apply(path, new, reasoning=reasoning, agent=ctx.agent)
    snap = outcome.snapshot
    if not outcome.changed:
        return MutationResult(success=True, output=f"No change: {snap.path} already has this content.",
                              path=snap.path, file_id=snap.id, changed=False, version=snap.version)
    diff_text = _compact_diff(old, new, snap.path)
    return MutationResult(
        success=True,
        output=f"{summary}\n{diff_text}" if diff_text else summary,
        path=snap.path,
        file_id=snap.id,
        changed=True,
        version=snap.version,
        change=outcome.change,
    )


def read_file(ctx: ToolContext, path: str, start_line: Optional[int] = None,
              end_line: Optional[int] = None, **kw: Any) -> LookupResult:
    """Read a file with line numbers; large files come back as an overview."""
    snap = ctx.arena.resolve(path)
    if snap is None:
        close = difflib.get_close_matches(normalize_path(path), ctx.arena.paths(), n=3)
        hint = f" Did you mean: {', '.join(close)}?" if close else ""
        return LookupResult(success=False, output="", error=f"File not found: {path}.{hint}")
    lines = snap.content.splitlines()
    total_lines = len(lines)

    if start_line is not None or end_line is not None:
        start = max((start_line or 1) - 1, 0)
        end = min(end_line or total_lines, total_lines)
        selected = lines[start:end]
        numbered = [f"{start + 1 + i:6}|{line}" for i, line in enumerate(selected)]
        header = f"{snap.path} [{total_lines} lines total] (showing lines {start + 1}-{start + len(selected)})"
        return LookupResult(success=True, output=header + "\n" + "\n".join(numbered),
                            reads=[(snap.path, start + 1, start + len(selected))])

    if total_lines <= _MAX_FULL_READ_LINES:
        numbered = [f"{i+1:6}|{line}" for i, line in enumerate(lines)]
        return LookupResult(success=True, output=f"{snap.path} [{total_lines} lines total]\n" + "\n".join(numbered),
                            reads=[(snap.path, None, None)])

    head_n, tail_n = 80, 40
    head = [f"{i+1:6}|{lines[i]}" for i in range(head_n)]
    tail = [f"{total_lines - tail_n + i + 1:6}|{lines[total_lines - tail_n + i]}" for i in range(tail_n)]
    parts = [
        f"{snap.path} [{total_lines} lines total, file is large: overview + head + tail]",
        "[Use start_line/end_line to read specific sections]", "",
        "-- structure --", _extract_structure(lines), "",
        f"-- first {head_n} lines --", "\n".join(head),
        f"\n  ... ({total_lines - head_n - tail_n} lines omitted) ...\n",
        f"-- last {tail_n} lines --", "\n".join(tail),
    ]
    return LookupResult(success=True, output="\n".join(parts),
                        reads=[(snap.path, 1, head_n), (snap.path, total_lines - tail_n + 1, total_lines)])


def search_replace(ctx: ToolContext, path: str, old_text: str, new_text: str,
                   replace_all: bool = False, reasoning: str = "", **kw: Any) -> MutationResult:
    """Replace an exact string in a file. By default it must match exactly one location."""
    snap = ctx.arena.resolve(path)
    if snap is None:
        return _not_found("search_replace", ctx, path)
    if not old_text:
        return mutation_failure("search_replace", snap.path, "validation_error", "old_text is required", snap.id)
    content = snap.content
    count = content.count(old_text)
    if count == 0:
        return mutation_failure(
            "search_replace", snap.path, "old_text_not_found",
            f"old_text not found in {snap.path}. It must match exactly, including whitespace and "
            f"indentation. Re-read the file to see its current content.",
            snap.id,
        )
    if count > 1 and not replace_all:
        return mutation_failure(
            "search_replace", snap.path, "validation_error",
            f"Found {count} occurrences of old_text in {snap.path}. Add surrounding context to make it "
            f"unique, or set replace_all=true.",
            snap.id,
        )
    new_content = content.replace(old_text, new_text) if replace_all else content.replace(old_text, new_text, 1)
    summary = f"Applied edit to {snap.path}" + (f" ({count} replacements)" if replace_all and count > 1 else "")
    return _applied(ctx, "search_replace", snap.path, content, new_content, reasoning, summary)


def edit_lines(ctx: ToolContext, path: str, start_line: int, end_line: int, new_content: str,
               reasoning: str = "", **kw: Any) -> MutationResult:
    """Replace an inclusive 1-based line range. end_line = start_line - 1 inserts before start_line."""
    snap = ctx.arena.resolve(path)
    if snap is None:
        return _not_found("edit_lines", ctx, path)
    try:
        start, end = int(start_line), int(end_line)
    except (TypeError, ValueError):
        return mutation_failure("edit_lines", snap.path, "validation_error",
                                "start_line and end_line must be integers", snap.id)
    lines = snap.content.splitlines(keepends=True)
    if start < 1 or start > len(lines) + 1 or end < start - 1 or end > len(lines):
        return mutation_failure(
            "edit_lines", snap.path, "validation_error",
            f"Line range {start}-{end} is outside {snap.path} ({len(lines)} lines).", snap.id,
        )
    replacement = new_content
    if replacement and not replacement.endswith("\n") and end < len(lines):
        replacement += "\n"
    updated = "".join(lines[:start - 1]) + replacement + "".join(lines[end:])
    summary = f"Replaced lines {start}-{end} of {snap.path}"
    return _applied(ctx, "edit_lines", snap.path, snap.content, updated, reasoning, summary)


def propose_code_edit(ctx: ToolContext, path: str, new_content: str, reasoning: str = "",
                      **kw: Any) -> MutationResult:
    """Replace a file's whole content."""
    snap = ctx.arena.resolve(path)
    if snap is None:
        return _not_found("propose_code_edit", ctx, path)
    return _applied(ctx, "propose_code_edit", snap.path, snap.content, new_content, reasoning,
                    f"Rewrote {snap.path}")


def create_file(ctx: ToolContext, path: str, content: str, reasoning: str = "", **kw: Any) -> MutationResult:
    """Create a new file."""
    norm = normalize_path(path)
    if not norm:
        return mutation_failure("create_file", path, "validation_error", "path is required")
    existing = ctx.arena.resolve(norm)
    if existing is not None and existing.path == norm:
        return mutation_failure("create_file", norm, "validation_error",
                                f"{norm} already exists; edit it instead.", existing.id)
    outcome = ctx.arena.create(norm, content, reasoning=reasoning, agent=ctx.agent)
    snap = outcome.snapshot
    preview = content.splitlines()[:30]
    diff_text = f"--- /dev/null\n+++ {norm}\n" + "\n".join(f"+{l}" for l in preview)
    if len(content.splitlines()) > 30:
        diff_text += f"\n+... ({len(content.splitlines()) - 30} more lines)"
    return MutationResult(
        success=True,
        output=f"Created {norm} ({len(content.splitlines())} lines)\n{diff_text}",
        path=norm, file_id=snap.id, changed=outcome.changed, version=snap.version, change=outcome.change,
    )


def delete_file(ctx: ToolContext, path: str, reasoning: str = "", **kw: Any) -> MutationResult:
    """Delete a file."""
    snap = ctx.arena.resolve(path)
    if snap is None:
        return _not_found("delete_file", ctx, path)
    outcome = ctx.arena.delete(snap.id, reasoning=reasoning, agent=ctx.agent)
    return MutationResult(
        success=True, output=f"Deleted {snap.path}", path=snap.path, file_id=snap.id,
        changed=True, version=outcome.snapshot.version, change=outcome.change,
    )
