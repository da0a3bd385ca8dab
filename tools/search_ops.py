"""Search, discovery, and navigation tools over the snapshot arena."""

import fnmatch
import logging
import posixpath
import re
from typing import Any, List, Optional

from agent.checks import check_references
from agent.files import normalize_path
from tools._common import LookupResult, ToolContext

logger = logging.getLogger(__name__)

_MAX_LIST_ENTRIES = 400
_MAX_GREP_MATCHES = 100


def list_files(ctx: ToolContext, directory: Optional[str] = None, pattern: Optional[str] = None,
               **kw: Any) -> LookupResult:
    """List project files under a directory, optionally filtered by a glob pattern."""
    prefix = normalize_path(directory or "")
    paths = ctx.arena.paths()
    if prefix and prefix != ".":
        paths = [p for p in paths if p == prefix or p.startswith(prefix + "/")]
    if pattern:
        paths = [p for p in paths if fnmatch.fnmatch(p, pattern) or fnmatch.fnmatch(posixpath.basename(p), pattern)]
    if not paths:
        where = f" under {prefix}" if prefix else ""
        return LookupResult(success=True, output=f"No files found{where}.")
    lines = paths[:_MAX_LIST_ENTRIES]
    out = "\n".join(lines)
    if len(paths) > _MAX_LIST_ENTRIES:
        out += f"\n... [{len(paths) - _MAX_LIST_ENTRIES} more files]"
    return LookupResult(success=True, output=f"{len(paths)} file(s)\n{out}")


def grep_content(ctx: ToolContext, pattern: str, path: Optional[str] = None, include: Optional[str] = None,
                 case_sensitive: bool = False, **kw: Any) -> LookupResult:
    """Regex search across file contents. Output lines are path:line: text."""
    if not pattern:
        return LookupResult(success=False, output="", error="pattern is required")
    try:
        regex = re.compile(pattern, 0 if case_sensitive else re.IGNORECASE)
    except re.error:
        regex = re.compile(re.escape(pattern), 0 if case_sensitive else re.IGNORECASE)
    prefix = normalize_path(path or "")
    matches: List[str] = []
    total = 0
    for snap in ctx.arena.files():
        if prefix and prefix != "." and not (snap.path == prefix or snap.path.startswith(prefix + "/")):
            continue
        if include and not fnmatch.fnmatch(posixpath.basename(snap.path), include):
            continue
        for n, line in enumerate(snap.content.splitlines(), start=1):
            if regex.search(line):
                total += 1
                if len(matches) < _MAX_GREP_MATCHES:
                    matches.append(f"{snap.path}:{n}: {line.strip()[:200]}")
    if not matches:
        return LookupResult(success=True, output="No matches found.")
    out = "\n".join(matches)
    if total > len(matches):
        out += f"\n\n... [{total - len(matches)} more matches truncated]"
    return LookupResult(success=True, output=out)


def search_files(ctx: ToolContext, query: str, limit: int = 10, **kw: Any) -> LookupResult:
    """Rank files for a natural-language query by learned terms, path and symbol overlap."""
    if not query or not query.strip():
        return LookupResult(success=False, output="", error="query is required")
    files = ctx.project_files()
    ranked: List[str] = []
    if ctx.term_cache is not None:
        ranked = ctx.term_cache.lookup(ctx.project_id, query, files, limit=limit)
    q = query.strip().lower()
    for p in files:
        if q in p.lower() and p not in ranked:
            ranked.append(p)
    if not ranked:
        return LookupResult(success=True, output=f"No files match '{query}'. Try grep_content for content matches.")
    return LookupResult(success=True, output="\n".join(ranked[:limit]))


def get_dependency_graph(ctx: ToolContext, path: str, depth: int = 1, **kw: Any) -> LookupResult:
    """Show what a file depends on, what depends on it, and its wider neighborhood."""
    snap = ctx.arena.resolve(path)
    if snap is None:
        return LookupResult(success=False, output="", error=f"File not found: {path}")
    if ctx.structural_index is None:
        return LookupResult(success=False, output="", error="Dependency graph is not available")
    graph = ctx.structural_index.get(ctx.project_id, ctx.project_files())
    depth = max(1, min(int(depth or 1), 3))
    out = [graph.render(snap.path)]
    if depth > 1:
        near = graph.neighborhood([snap.path], depth=depth)
        out.append(f"  within {depth} hops: " + (", ".join(near) if near else "(nothing)"))
    return LookupResult(success=True, output="\n".join(out))


def check_lint(ctx: ToolContext, path: str, **kw: Any) -> LookupResult:
    """Run the file's structural checks and cross-file reference checks."""
    snap = ctx.arena.resolve(path)
    if snap is None:
        return LookupResult(success=False, output="", error=f"File not found: {path}")
    if ctx.gate is None:
        return LookupResult(success=False, output="", error="No verifier configured")
    report = ctx.gate.verifier.check(snap.content, snap.path)
    issues = list(report.issues) + check_references(snap.path, snap.content, ctx.project_files())
    if not issues:
        return LookupResult(success=True, output=f"{snap.path}: no issues found.")
    lines = [f"{snap.path}: {len(issues)} issue(s)"]
    for issue in issues[:40]:
        where = f"line {issue.line}: " if issue.line else ""
        lines.append(f"- [{issue.severity}] {where}{issue.description} ({issue.category})")
    return LookupResult(success=True, output="\n".join(lines))


def read_tool_output(ctx: ToolContext, output_id: str, offset: int = 0, limit: int = 4000,
                     **kw: Any) -> LookupResult:
    """Page through a stored oversized tool output by character offset."""
    if ctx.output_store is None:
        return LookupResult(success=False, output="", error="No output store configured")
    text = ctx.output_store.get(output_id or "")
    if text is None:
        return LookupResult(success=False, output="", error=f"Unknown output id: {output_id}")
    start = max(0, int(offset or 0))
    size = max(1, min(int(limit or 4000), 6000))
    chunk = text[start:start + size]
    end = start + len(chunk)
    more = f"\n[{len(text) - end} more chars; next offset={end}]" if end < len(text) else "\n[end of output]"
    return LookupResult(success=True, output=f"[{output_id} chars {start}-{end} of {len(text)}]\n{chunk}{more}")
