"""
Prompt architecture and system prompt composition.
Small prompt modules assembled per mode, strategy and project type.
"""

import posixpath
from typing import Dict, List, Optional

from .types import Mode, Strategy

# ============================================================
# Modular Prompt Architecture
# ============================================================
# Each module is a focused prompt fragment. compose_system_prompt()
# assembles them based on mode, strategy and the detected project type.
# ============================================================

_MOD_IDENTITY = """You are an expert engineer working on a real project through tools. The project's files are loaded in memory; every edit you make is collected as a proposed change and verified before it reaches the user.

You are methodical: locate the exact code before acting, change only what the request needs, and never guess when you can check."""

_MOD_DOING_TASKS = """<doing_tasks>
- NEVER edit a file you have not read in this run.
- Make the smallest change that fulfils the request. No unrelated refactors, no extra features.
- Prefer search_replace for small edits and edit_lines when you know the exact lines. Use propose_code_edit only when most of a file changes.
- When you are done, stop calling tools and summarize what you changed in one or two sentences.
- If the request is ambiguous or the target cannot be found, call ask_clarification instead of guessing.
</doing_tasks>"""

_MOD_TOOL_POLICY = """<tool_policy>
PARALLELIZATION:
- Call independent tools in one response; calls on different files run in parallel.
- Read several candidate files in one turn rather than one per turn.

LOOKUP BUDGET:
- Lookups before your first edit are limited. Once you know the target, edit it.
- Identical lookups with nothing changed since are answered from cache; do not repeat them.

LARGE OUTPUT:
- Outputs over the size limit are stored as tool-output-<id>; page through them with read_tool_output.
</tool_policy>"""

_MOD_MODE_ASK = """<mode name="ask">
Answer the question from the project's code. You cannot change files in this mode. Cite file paths and line numbers.
</mode>"""

_MOD_MODE_PLAN = """<mode name="plan">
Produce a concise, ordered plan of the file changes the request needs. You cannot change files in this mode.
</mode>"""

_MOD_MODE_CODE = """<mode name="code">
Implement the request with edit tools. Run run_review once after your last edit.
</mode>"""

_MOD_MODE_DEBUG = """<mode name="debug">
Find the cause first: read the code paths involved and check_lint suspicious files. Then fix the cause, not the symptom.
</mode>"""

_MOD_STRATEGY_MINIMAL = """<strategy name="minimal">
This is a small, targeted edit. The likely files are already included below. Edit directly; do not explore the project.
</strategy>"""

_MOD_STRATEGY_HYBRID = """<strategy name="hybrid">
Related files and their direct dependencies are included below. For independent sub-tasks on other files you may delegate with run_specialist.
</strategy>"""

_MOD_STRATEGY_MAXIMAL = """<strategy name="maximal">
Wide context is included below. Only line-addressed edits (edit_lines, create_file, delete_file) are available, and delegation is disabled. Use the line numbers from the latest read.
</strategy>"""

_MOD_PROJECT_THEME = """<project_conventions kind="theme">
- Sections live in sections/, reusable partials in snippets/, styles and scripts in assets/, translations in locales/.
- A {% render 'x' %} needs snippets/x.liquid. A section's {% schema %} must stay valid JSON.
- Settings referenced as section.settings.<id> must be declared in the section schema.
- Prefer CSS custom properties and existing classes over inline styles.
</project_conventions>"""

_MOD_PROJECT_PYTHON = """<project_conventions kind="python">
- Follow PEP 8 and the existing naming. Keep imports at module top.
- Prefer small, well-named functions; do not swallow exceptions.
</project_conventions>"""

_MOD_PROJECT_JAVASCRIPT = """<project_conventions kind="javascript">
- Match the existing module style (ESM imports or require). Keep braces balanced.
</project_conventions>"""

MODE_MODULES: Dict[Mode, str] = {
    Mode.ASK: _MOD_MODE_ASK,
    Mode.PLAN: _MOD_MODE_PLAN,
    Mode.CODE: _MOD_MODE_CODE,
    Mode.DEBUG: _MOD_MODE_DEBUG,
}

STRATEGY_MODULES: Dict[Strategy, str] = {
    Strategy.MINIMAL: _MOD_STRATEGY_MINIMAL,
    Strategy.HYBRID: _MOD_STRATEGY_HYBRID,
    Strategy.MAXIMAL: _MOD_STRATEGY_MAXIMAL,
}

PROJECT_MODULES: Dict[str, str] = {
    "theme": _MOD_PROJECT_THEME,
    "python": _MOD_PROJECT_PYTHON,
    "javascript": _MOD_PROJECT_JAVASCRIPT,
}


def detect_project_kind(paths: List[str]) -> Optional[str]:
    """Detect the project type from its file paths."""
    if any(p.endswith(".liquid") for p in paths):
        return "theme"
    exts = [posixpath.splitext(p)[1] for p in paths]
    py = exts.count(".py")
    js = sum(exts.count(e) for e in (".js", ".ts", ".jsx", ".tsx", ".mjs"))
    if py == 0 and js == 0:
        return None
    return "python" if py >= js else "javascript"


def compose_system_prompt(
    mode: Mode,
    strategy: Strategy,
    tool_names: List[str],
    project_kind: Optional[str] = None,
    preferences: Optional[Dict[str, str]] = None,
) -> str:
    """Assemble the system prompt from modules based on mode, strategy and project type."""
    parts = [_MOD_IDENTITY]
    if Mode(mode).allows_mutation:
        parts.append(_MOD_DOING_TASKS)
    parts.append(_MOD_TOOL_POLICY)
    parts.append(MODE_MODULES[Mode(mode)])
    if Mode(mode).allows_mutation:
        parts.append(STRATEGY_MODULES[Strategy(strategy)])

    if project_kind and project_kind in PROJECT_MODULES:
        parts.append(PROJECT_MODULES[project_kind])

    if preferences:
        prefs = "\n".join(f"- {k}: {v}" for k, v in sorted(preferences.items()) if v)
        if prefs:
            parts.append(f"<user_preferences>\n{prefs}\n</user_preferences>")

    # Available tools (always last)
    parts.append(f"<tools_available>{', '.join(tool_names)}</tools_available>")
    return "\n\n".join(parts)


def format_file_context(files: List[tuple], max_chars: int = 60000) -> str:
    """Render pre-loaded files as line-numbered blocks for the first user turn.

    files is a list of (path, content) pairs in priority order.
    """
    blocks: List[str] = []
    used = 0
    for path, content in files:
        lines = content.splitlines()
        numbered = "\n".join(f"{i:6}|{line}" for i, line in enumerate(lines, start=1))
        block = f'<file path="{path}" lines="{len(lines)}">\n{numbered}\n</file>'
        if used + len(block) > max_chars and blocks:
            blocks.append(f'<file path="{path}" lines="{len(lines)}" omitted="context limit; use read_file" />')
            continue
        blocks.append(block)
        used += len(block)
    return "\n\n".join(blocks)
