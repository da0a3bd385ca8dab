"""
Tool definitions and implementations for the coding agent.
Each tool has an Anthropic-compatible schema and a handler that works on the
in-memory file arena; the dispatcher runs model-issued batches of them.
"""

from tools._common import (  # noqa: F401
    ToolCategory,
    ToolContext,
    ToolResult,
    LookupResult,
    MutationResult,
    OrchestrationResult,
)
from tools.gitignore import load_gitignore, is_ignored, invalidate_gitignore_cache  # noqa: F401
from tools.output_store import OutputStore  # noqa: F401
from tools.project_files import load_project, write_changes  # noqa: F401
from tools.schemas import (  # noqa: F401
    TOOL_DEFINITIONS,
    DECLARED_TOOL_NAMES,
    LOOKUP_TOOLS,
    MUTATION_TOOLS,
    ORCHESTRATION_TOOLS,
    tool_definitions_for,
)
from tools.registry import ToolHandler, ToolRegistry, ToolRegistryError, default_registry  # noqa: F401
from tools.dispatch import ToolDispatcher  # noqa: F401
