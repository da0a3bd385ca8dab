"""Load a project directory into file snapshots and write accepted changes back."""

import hashlib
import logging
import os
from typing import Iterable, List

from agent.types import CodeChange, FileSnapshot
from tools.gitignore import is_ignored, load_gitignore

logger = logging.getLogger(__name__)

MAX_FILE_BYTES = 512 * 1024


def _file_id(rel_path: str) -> str:
    return "f-" + hashlib.sha256(rel_path.encode()).hexdigest()[:12]


def load_project(root: str, max_file_bytes: int = MAX_FILE_BYTES) -> List[FileSnapshot]:
    """Walk ``root`` honouring .gitignore; binary and oversized files are skipped."""
    root = os.path.abspath(root)
    spec = load_gitignore(root)
    snapshots: List[FileSnapshot] = []
    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = os.path.relpath(dirpath, root)
        rel_dir = "" if rel_dir == "." else rel_dir.replace(os.sep, "/")
        dirnames[:] = sorted(
            d for d in dirnames
            if not is_ignored(f"{rel_dir}/{d}" if rel_dir else d, d, True, spec)
        )
        for name in sorted(filenames):
            rel = f"{rel_dir}/{name}" if rel_dir else name
            if is_ignored(rel, name, False, spec):
                continue
            full = os.path.join(dirpath, name)
            try:
                if os.path.getsize(full) > max_file_bytes:
                    logger.debug(f"Skipping large file {rel}")
                    continue
                with open(full, "r", encoding="utf-8") as f:
                    content = f.read()
            except UnicodeDecodeError:
                continue
            except OSError as e:
                logger.warning(f"Could not read {rel}: {e}")
                continue
            snapshots.append(FileSnapshot(id=_file_id(rel), name=name, path=rel, content=content))
    logger.info(f"Loaded {len(snapshots)} file(s) from {root}")
    return snapshots


def write_changes(root: str, changes: Iterable[CodeChange]) -> List[str]:
    """Apply changes to disk. Deletions remove the file; everything else is written atomically."""
    root = os.path.abspath(root)
    written: List[str] = []
    for change in changes:
        rel = change.path or change.file_name
        full = os.path.abspath(os.path.join(root, rel))
        if not full.startswith(root + os.sep):
            logger.warning(f"Refusing to write outside the project: {rel}")
            continue
        if change.deleted:
            if os.path.exists(full):
                os.remove(full)
            written.append(rel)
            continue
        os.makedirs(os.path.dirname(full), exist_ok=True)
        tmp_path = full + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(change.proposed_content)
            os.replace(tmp_path, full)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        written.append(rel)
    return written
