"""Tool schema definitions (Bedrock/Anthropic Messages API) and tool-set selection."""

from typing import Any, Dict, FrozenSet, List

from agent.types import Mode

LOOKUP_TOOLS: FrozenSet[str] = frozenset({
    "read_file", "list_files", "grep_content", "search_files",
    "get_dependency_graph", "check_lint", "read_tool_output",
})
MUTATION_TOOLS: FrozenSet[str] = frozenset({
    "search_replace", "edit_lines", "propose_code_edit", "create_file", "delete_file",
})
ORCHESTRATION_TOOLS: FrozenSet[str] = frozenset({"run_specialist", "run_review", "ask_clarification"})

# Mutations that do not address lines; blocked for a file once line-addressed edits are forced
FREEFORM_EDIT_TOOLS: FrozenSet[str] = frozenset({"search_replace", "propose_code_edit"})

_PATH = {"type": "string", "description": "File path relative to the project root (e.g. 'snippets/button.liquid')"}
_REASONING = {"type": "string", "description": "One sentence on why this change is needed"}

TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "name": "read_file",
        "description": "Read a file with line numbers. Files over 500 lines return a structural overview plus head and tail; use start_line/end_line to read a region. Do not re-read a file you already read unless it was edited since.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": _PATH,
                "start_line": {"type": "integer", "description": "First line to show (1-based)"},
                "end_line": {"type": "integer", "description": "Last line to show (inclusive)"},
            },
            "required": ["path"],
        },
    },
    {
        "name": "list_files",
        "description": "List project files, optionally under a directory and filtered by a glob (e.g. '*.liquid').",
        "input_schema": {
            "type": "object",
            "properties": {
                "directory": {"type": "string", "description": "Directory prefix, e.g. 'sections'"},
                "pattern": {"type": "string", "description": "Glob filter on path or file name"},
            },
            "required": [],
        },
    },
    {
        "name": "grep_content",
        "description": "Regex search across file contents. Use for exact strings, class names, setting ids, or colors. Returns path:line: text.",
        "input_schema": {
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "Regex pattern"},
                "path": {"type": "string", "description": "Directory or file to search in"},
                "include": {"type": "string", "description": "Glob on file name, e.g. '*.css'"},
                "case_sensitive": {"type": "boolean", "description": "Default false"},
            },
            "required": ["pattern"],
        },
    },
    {
        "name": "search_files",
        "description": "Find the files most likely related to a natural-language query (path, symbol and learned matches). Start here when you do not know which file to open.",
        "input_schema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "What you are looking for, e.g. 'product card price'"},
                "limit": {"type": "integer", "description": "Max files to return (default 10)"},
            },
            "required": ["query"],
        },
    },
    {
        "name": "get_dependency_graph",
        "description": "Show what a file renders/imports, what renders/imports it, and (depth > 1) its wider neighborhood. Use before changing a snippet or shared module.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": _PATH,
                "depth": {"type": "integer", "description": "Hops to expand (1-3, default 1)"},
            },
            "required": ["path"],
        },
    },
    {
        "name": "check_lint",
        "description": "Run structural and cross-file reference checks on one file (syntax, schema, missing snippets/assets, locale keys).",
        "input_schema": {"type": "object", "properties": {"path": _PATH}, "required": ["path"]},
    },
    {
        "name": "read_tool_output",
        "description": "Page through a large tool output that was stored as tool-output-<id>.",
        "input_schema": {
            "type": "object",
            "properties": {
                "output_id": {"type": "string", "description": "The tool-output-<id> pointer"},
                "offset": {"type": "integer", "description": "Character offset (default 0)"},
                "limit": {"type": "integer", "description": "Characters to return (default 4000, max 6000)"},
            },
            "required": ["output_id"],
        },
    },
    {
        "name": "search_replace",
        "description": "Replace an exact string in a file. old_text must match exactly once (including whitespace) unless replace_all is true. Preferred for small, targeted edits.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": _PATH,
                "old_text": {"type": "string", "description": "Exact text to replace"},
                "new_text": {"type": "string", "description": "Replacement text"},
                "replace_all": {"type": "boolean", "description": "Replace every occurrence"},
                "reasoning": _REASONING,
            },
            "required": ["path", "old_text", "new_text"],
        },
    },
    {
        "name": "edit_lines",
        "description": "Replace an inclusive 1-based line range with new content. Use the line numbers from your most recent read of the file. end_line = start_line - 1 inserts before start_line.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": _PATH,
                "start_line": {"type": "integer"},
                "end_line": {"type": "integer"},
                "new_content": {"type": "string", "description": "Replacement lines"},
                "reasoning": _REASONING,
            },
            "required": ["path", "start_line", "end_line", "new_content"],
        },
    },
    {
        "name": "propose_code_edit",
        "description": "Replace the entire content of an existing file. Use only when most of the file changes.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": _PATH,
                "new_content": {"type": "string", "description": "Complete new file content"},
                "reasoning": _REASONING,
            },
            "required": ["path", "new_content"],
        },
    },
    {
        "name": "create_file",
        "description": "Create a new file. Fails if the file already exists.",
        "input_schema": {
            "type": "object",
            "properties": {"path": _PATH, "content": {"type": "string"}, "reasoning": _REASONING},
            "required": ["path", "content"],
        },
    },
    {
        "name": "delete_file",
        "description": "Delete a file. Check get_dependency_graph first so nothing still references it.",
        "input_schema": {
            "type": "object",
            "properties": {"path": _PATH, "reasoning": _REASONING},
            "required": ["path"],
        },
    },
    {
        "name": "run_specialist",
        "description": "Delegate a self-contained sub-task (e.g. 'styles', 'schema', 'javascript') to a specialist that edits in isolation and reports back a handoff. Use for independent work on files you are not editing yourself.",
        "input_schema": {
            "type": "object",
            "properties": {
                "kind": {"type": "string", "description": "Specialist kind, e.g. 'styles' or 'schema'"},
                "instructions": {"type": "string", "description": "Precise task including file paths and expected result"},
                "files": {"type": "array", "items": {"type": "string"}, "description": "Files the specialist may touch"},
            },
            "required": ["kind", "instructions"],
        },
    },
    {
        "name": "run_review",
        "description": "Verify the accumulated changes against the original project and report new issues. Use once your edits are done.",
        "input_schema": {"type": "object", "properties": {}, "required": []},
    },
    {
        "name": "ask_clarification",
        "description": "Ask the user a question and pause. Use only when the request is genuinely ambiguous or the target cannot be found. Provide 2-5 short options when possible.",
        "input_schema": {
            "type": "object",
            "properties": {
                "question": {"type": "string"},
                "options": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["question"],
        },
    },
]

DECLARED_TOOL_NAMES: FrozenSet[str] = frozenset(t["name"] for t in TOOL_DEFINITIONS)


def tool_definitions_for(mode: Mode, line_edits_only: bool = False, allow_delegation: bool = True,
                         exclude: FrozenSet[str] = frozenset()) -> List[Dict[str, Any]]:
    """Tool set exposed to the model for a mode and strategy."""
    mode = Mode(mode)
    names = set(LOOKUP_TOOLS) | {"ask_clarification"}
    if mode.allows_mutation:
        names |= MUTATION_TOOLS | {"run_review"}
        if allow_delegation:
            names.add("run_specialist")
        if line_edits_only:
            names -= FREEFORM_EDIT_TOOLS
    names -= set(exclude)
    return [t for t in TOOL_DEFINITIONS if t["name"] in names]
