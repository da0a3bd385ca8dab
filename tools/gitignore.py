""".gitignore-aware filtering helpers for loading a project from disk."""

import os
import logging
from typing import Dict, Optional, Set

import pathspec

logger = logging.getLogger(__name__)

ALWAYS_SKIP_DIRS: Set[str] = {
    ".git", "node_modules", "__pycache__", ".venv", "venv", "env",
    ".mypy_cache", ".pytest_cache", ".tox", ".eggs",
    "dist", "build", ".next", ".nuxt", ".cache",
    "coverage", ".coverage", "htmlcov", ".bedrock-codex",
}

ALWAYS_SKIP_EXTENSIONS: Set[str] = {
    ".pyc", ".pyo", ".so", ".dylib", ".o", ".a", ".class",
    ".png", ".jpg", ".jpeg", ".gif", ".webp", ".ico", ".woff", ".woff2", ".ttf",
    ".map", ".lock", ".zip", ".pdf",
}

_gitignore_cache: Dict[str, Optional[pathspec.PathSpec]] = {}


def load_gitignore(root: str) -> Optional[pathspec.PathSpec]:
    """Load and cache .gitignore patterns for a project root.

    Returns a PathSpec matcher or None if no .gitignore exists.
    """
    root = os.path.abspath(root)
    if root in _gitignore_cache:
        return _gitignore_cache[root]

    spec = None
    gitignore_path = os.path.join(root, ".gitignore")
    if os.path.isfile(gitignore_path):
        try:
            with open(gitignore_path, "r", encoding="utf-8", errors="replace") as f:
                spec = pathspec.PathSpec.from_lines("gitwildmatch", f)
        except OSError as e:
            logger.debug(f"Failed to read .gitignore: {e}")

    _gitignore_cache[root] = spec
    return spec


def is_ignored(rel_path: str, name: str, is_dir: bool,
               gitignore_spec: Optional[pathspec.PathSpec]) -> bool:
    """Check if a path should be skipped based on .gitignore plus hardcoded skips."""
    if is_dir and name in ALWAYS_SKIP_DIRS:
        return True
    if not is_dir:
        if name.endswith((".min.js", ".min.css")):
            return True
        _, ext = os.path.splitext(name)
        if ext.lower() in ALWAYS_SKIP_EXTENSIONS:
            return True
    if gitignore_spec:
        check_path = rel_path + "/" if is_dir else rel_path
        if gitignore_spec.match_file(check_path):
            return True
    return False


def invalidate_gitignore_cache(root: Optional[str] = None) -> None:
    """Clear cached .gitignore specs."""
    if root:
        _gitignore_cache.pop(os.path.abspath(root), None)
    else:
        _gitignore_cache.clear()
