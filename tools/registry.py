"""Tool name to handler registry, validated against the declared tool schemas."""

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from agent.files import normalize_path
from tools._common import ToolCategory, ToolContext, ToolResult

logger = logging.getLogger(__name__)

# Declared file targets of a call. None (or an empty list) means "unknown" and forces
# the call to run alone.
TargetFn = Callable[[Dict[str, Any], ToolContext], Optional[List[str]]]


class ToolRegistryError(Exception):
    """A declared tool has no handler, or a handler has no declaration."""
    pass


def path_target(inputs: Dict[str, Any], ctx: ToolContext) -> Optional[List[str]]:
    raw = inputs.get("path")
    if not raw:
        return None
    snap = ctx.arena.resolve(raw)
    return [snap.path if snap is not None else normalize_path(raw)]


def undeclared(inputs: Dict[str, Any], ctx: ToolContext) -> Optional[List[str]]:
    return None


def output_target(inputs: Dict[str, Any], ctx: ToolContext) -> Optional[List[str]]:
    return [f"output:{inputs.get('output_id', '')}"]


@dataclass
class ToolHandler:
    name: str
    func: Callable[..., Any]
    category: ToolCategory
    targets: TargetFn = undeclared

    async def execute(self, inputs: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        result = self.func(ctx, **inputs)
        if inspect.isawaitable(result):
            result = await result
        return result


class ToolRegistry:
    def __init__(self, handlers: Iterable[ToolHandler] = ()):
        self._handlers: Dict[str, ToolHandler] = {}
        for h in handlers:
            self.register(h)

    def register(self, handler: ToolHandler) -> None:
        if handler.name in self._handlers:
            logger.debug(f"Replacing handler for {handler.name}")
        self._handlers[handler.name] = handler

    def get(self, name: str) -> Optional[ToolHandler]:
        return self._handlers.get(name)

    def names(self) -> List[str]:
        return sorted(self._handlers)

    def validate(self, declared_tool_names: Iterable[str]) -> None:
        """Every declared tool needs a handler and every handler a declaration."""
        declared = set(declared_tool_names)
        missing = sorted(declared - set(self._handlers))
        extra = sorted(set(self._handlers) - declared)
        if missing or extra:
            parts = []
            if missing:
                parts.append(f"no handler for: {', '.join(missing)}")
            if extra:
                parts.append(f"no schema for: {', '.join(extra)}")
            raise ToolRegistryError("Tool registry mismatch (" + "; ".join(parts) + ")")
        logger.debug(f"Tool registry validated: {len(declared)} tool(s)")


def default_registry() -> ToolRegistry:
    """The built-in tool set, validated against TOOL_DEFINITIONS."""
    from tools import file_ops, orchestration_ops, search_ops
    from tools.schemas import DECLARED_TOOL_NAMES

    L, M, O = ToolCategory.LOOKUP, ToolCategory.MUTATION, ToolCategory.ORCHESTRATION
    registry = ToolRegistry([
        ToolHandler("read_file", file_ops.read_file, L, path_target),
        ToolHandler("list_files", search_ops.list_files, L, undeclared),
        ToolHandler("grep_content", search_ops.grep_content, L, undeclared),
        ToolHandler("search_files", search_ops.search_files, L, undeclared),
        ToolHandler("get_dependency_graph", search_ops.get_dependency_graph, L, path_target),
        ToolHandler("check_lint", search_ops.check_lint, L, path_target),
        ToolHandler("read_tool_output", search_ops.read_tool_output, L, output_target),
        ToolHandler("search_replace", file_ops.search_replace, M, path_target),
        ToolHandler("edit_lines", file_ops.edit_lines, M, path_target),
        ToolHandler("propose_code_edit", file_ops.propose_code_edit, M, path_target),
        ToolHandler("create_file", file_ops.create_file, M, path_target),
        ToolHandler("delete_file", file_ops.delete_file, M, path_target),
        ToolHandler("run_specialist", orchestration_ops.run_specialist, O, undeclared),
        ToolHandler("run_review", orchestration_ops.run_review, O, undeclared),
        ToolHandler("ask_clarification", orchestration_ops.ask_clarification, O, undeclared),
    ])
    registry.validate(DECLARED_TOOL_NAMES)
    return registry
