"""
File snapshot arena, change accumulator and virtual worktrees.

Snapshots are immutable; every accepted mutation stores a new version and
updates the change accumulator. All file references (id, path, name or
basename) go through FileArena.resolve so every component agrees on "which file".
"""

import difflib
import hashlib
import logging
import posixpath
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import MutationConflict
from .types import CodeChange, FileSnapshot

logger = logging.getLogger(__name__)


def normalize_path(path: str) -> str:
    p = (path or "").strip().replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    p = p.lstrip("/")
    return posixpath.normpath(p) if p else ""


def _new_file_id(path: str) -> str:
    return "new-" + hashlib.sha256(path.encode()).hexdigest()[:12]


@dataclass
class MutationOutcome:
    snapshot: FileSnapshot
    changed: bool
    change: Optional[CodeChange] = None


class ChangeSet:
    """Ordered accumulator of one CodeChange per file."""

    def __init__(self):
        self._changes: Dict[str, CodeChange] = {}

    def __len__(self) -> int:
        return len(self._changes)

    def __iter__(self):
        return iter(list(self._changes.values()))

    def get(self, file_id: str) -> Optional[CodeChange]:
        return self._changes.get(file_id)

    def record(self, snapshot: FileSnapshot, original: str, reasoning: str, agent: str) -> Optional[CodeChange]:
        """Fold the file's new content into the accumulator.

        Content equal to the original removes the entry, so an edit followed
        by its inverse nets out to nothing.
        """
        existing = self._changes.get(snapshot.id)
        if snapshot.content == original and not snapshot.deleted:
            if existing:
                del self._changes[snapshot.id]
            return None
        proposed = "" if snapshot.deleted else snapshot.content
        if existing:
            existing.proposed_content = proposed
            existing.deleted = snapshot.deleted
            if reasoning:
                existing.reasoning = reasoning
            return existing
        change = CodeChange(
            file_id=snapshot.id,
            file_name=snapshot.name,
            original_content=original,
            proposed_content=proposed,
            reasoning=reasoning,
            agent=agent,
            path=snapshot.path,
            deleted=snapshot.deleted,
        )
        self._changes[snapshot.id] = change
        return change

    def restore(self, changes: Iterable[CodeChange]) -> None:
        self._changes = {c.file_id: c for c in changes}

    def clear(self) -> None:
        self._changes.clear()

    def to_list(self) -> List[CodeChange]:
        return list(self._changes.values())


class FileArena:
    """In-memory arena of immutable file snapshots for one execution."""

    def __init__(self, snapshots: Iterable[FileSnapshot] = ()):
        self._files: Dict[str, FileSnapshot] = {}
        self._by_path: Dict[str, str] = {}
        self._originals: Dict[str, str] = {}
        self.changes = ChangeSet()
        for snap in snapshots:
            self.add(snap)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def add(self, snapshot: FileSnapshot) -> FileSnapshot:
        path = normalize_path(snapshot.path)
        snap = replace(snapshot, path=path, name=snapshot.name or posixpath.basename(path))
        self._files[snap.id] = snap
        self._by_path[path] = snap.id
        self._originals.setdefault(snap.id, snap.content)
        return snap

    def resolve(self, ref: str, include_deleted: bool = False) -> Optional[FileSnapshot]:
        """Canonical lookup by id, path, name, or unique basename."""
        if not ref:
            return None
        snap = self._files.get(ref)
        if snap is None:
            norm = normalize_path(ref)
            file_id = self._by_path.get(norm)
            snap = self._files.get(file_id) if file_id else None
            if snap is None:
                base = posixpath.basename(norm)
                matches = [s for s in self._files.values() if s.name == base or posixpath.basename(s.path) == base]
                live = [s for s in matches if not s.deleted] or matches
                if len(live) == 1:
                    snap = live[0]
                else:
                    # "button.liquid" vs "snippets/button.liquid": match by path suffix
                    suffixed = [s for s in live if s.path.endswith("/" + norm)]
                    if len(suffixed) == 1:
                        snap = suffixed[0]
        if snap is not None and snap.deleted and not include_deleted:
            return None
        return snap

    def get(self, file_id: str) -> Optional[FileSnapshot]:
        return self._files.get(file_id)

    def files(self) -> List[FileSnapshot]:
        return sorted((s for s in self._files.values() if not s.deleted), key=lambda s: s.path)

    def paths(self) -> List[str]:
        return [s.path for s in self.files()]

    def original(self, file_id: str) -> str:
        return self._originals.get(file_id, "")

    def dirty_ids(self) -> List[str]:
        return [s.id for s in self._files.values() if s.dirty]

    def __len__(self) -> int:
        return len(self.files())

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def apply(self, ref: str, content: str, reasoning: str = "", agent: str = "pm") -> MutationOutcome:
        """Store a new version of an existing file; no-op if content is unchanged."""
        current = self.resolve(ref)
        if current is None:
            raise KeyError(ref)
        if current.content == content:
            return MutationOutcome(snapshot=current, changed=False)
        snap = replace(current, content=content, version=current.version + 1, dirty=True)
        self._files[snap.id] = snap
        change = self.changes.record(snap, self._originals.get(snap.id, ""), reasoning, agent)
        return MutationOutcome(snapshot=snap, changed=True, change=change)

    def create(self, path: str, content: str, reasoning: str = "", agent: str = "pm") -> MutationOutcome:
        norm = normalize_path(path)
        existing = self.resolve(norm, include_deleted=True)
        if existing is not None and existing.path == norm:
            if existing.deleted:
                snap = replace(existing, content=content, version=existing.version + 1, dirty=True, deleted=False)
                self._files[snap.id] = snap
                change = self.changes.record(snap, self._originals.get(snap.id, ""), reasoning, agent)
                return MutationOutcome(snapshot=snap, changed=True, change=change)
            return self.apply(existing.id, content, reasoning, agent)
        snap = FileSnapshot(
            id=_new_file_id(norm), name=posixpath.basename(norm), path=norm,
            content=content, version=1, dirty=True,
        )
        self._files[snap.id] = snap
        self._by_path[norm] = snap.id
        self._originals[snap.id] = ""
        change = self.changes.record(snap, "", reasoning, agent)
        return MutationOutcome(snapshot=snap, changed=True, change=change)

    def delete(self, ref: str, reasoning: str = "", agent: str = "pm") -> MutationOutcome:
        current = self.resolve(ref)
        if current is None:
            raise KeyError(ref)
        snap = replace(current, content="", version=current.version + 1, dirty=True, deleted=True)
        self._files[snap.id] = snap
        change = self.changes.record(snap, self._originals.get(snap.id, ""), reasoning, agent)
        return MutationOutcome(snapshot=snap, changed=True, change=change)

    def rehydrate(self, file_id: str, path: str, content: str, original: str,
                  deleted: bool = False) -> FileSnapshot:
        """Restore a dirty file's content after resume, without recording a new change."""
        current = self._files.get(file_id) or self.resolve(path, include_deleted=True)
        if current is None:
            norm = normalize_path(path)
            current = FileSnapshot(id=file_id, name=posixpath.basename(norm), path=norm, content=original)
            self._by_path[norm] = file_id
        self._originals.setdefault(current.id, original)
        snap = replace(current, content=content, version=current.version + 1, dirty=True, deleted=deleted)
        self._files[snap.id] = snap
        return snap

    def reset_to_originals(self) -> None:
        """Drop every accumulated change and restore original content."""
        for file_id, snap in list(self._files.items()):
            if not snap.dirty:
                continue
            original = self._originals.get(file_id, "")
            if original == "" and snap.id.startswith("new-"):
                del self._files[file_id]
                self._by_path.pop(snap.path, None)
                continue
            self._files[file_id] = replace(snap, content=original, version=snap.version + 1,
                                           dirty=False, deleted=False)
        self.changes.clear()

    # ------------------------------------------------------------------
    # Worktrees
    # ------------------------------------------------------------------

    def fork(self) -> "Worktree":
        return Worktree(self)

    def merge(self, worktree: "Worktree") -> List[str]:
        """Merge a worktree's edits back; raises MutationConflict on overlap."""
        merged: List[str] = []
        for snap, change in worktree.touched():
            fork_version, fork_content = worktree.fork_state(snap.id)
            current = self._files.get(snap.id)
            reasoning = change.reasoning if change else ""
            agent = change.agent if change else worktree.agent
            if current is None:
                if snap.deleted:
                    continue
                other = self.resolve(snap.path, include_deleted=True)
                if other is not None and other.path == snap.path and not other.deleted and other.content != snap.content:
                    raise MutationConflict(snap.path, "file was created concurrently with different content")
                self.create(snap.path, snap.content, reasoning, agent)
                merged.append(snap.path)
                continue
            if current.version == fork_version:
                final = snap
            elif snap.deleted or current.deleted:
                raise MutationConflict(snap.path, "file was deleted by a concurrent edit")
            else:
                combined = three_way_merge(fork_content, current.content, snap.content)
                if combined is None:
                    raise MutationConflict(snap.path, "overlapping line ranges")
                final = replace(snap, content=combined)
            if final.deleted:
                self.delete(snap.id, reasoning, agent)
            else:
                self.apply(snap.id, final.content, reasoning, agent)
            merged.append(snap.path)
        return merged


class Worktree(FileArena):
    """Isolated working copy of an arena for one concurrent mutating call."""

    def __init__(self, base: FileArena, agent: str = "pm"):
        super().__init__()
        self.base = base
        self.agent = agent
        self._files = dict(base._files)
        self._by_path = dict(base._by_path)
        self._originals = dict(base._originals)
        self._fork: Dict[str, Tuple[int, str]] = {
            fid: (s.version, s.content) for fid, s in base._files.items()
        }

    def fork_state(self, file_id: str) -> Tuple[int, str]:
        return self._fork.get(file_id, (-1, ""))

    def touched(self) -> List[Tuple[FileSnapshot, Optional[CodeChange]]]:
        out = []
        for fid, snap in self._files.items():
            version, _ = self._fork.get(fid, (-1, ""))
            if snap.version != version:
                out.append((snap, self.changes.get(fid)))
        return out


def _hunks(base: List[str], other: List[str]) -> List[Tuple[int, int, List[str]]]:
    matcher = difflib.SequenceMatcher(a=base, b=other, autojunk=False)
    return [(i1, i2, other[j1:j2]) for tag, i1, i2, j1, j2 in matcher.get_opcodes() if tag != "equal"]


def three_way_merge(base: str, ours: str, theirs: str) -> Optional[str]:
    """Line-based three-way merge. Returns None when the two sides touch the same lines."""
    if ours == theirs:
        return ours
    if ours == base:
        return theirs
    if theirs == base:
        return ours
    base_lines = base.splitlines(keepends=True)
    ours_hunks = _hunks(base_lines, ours.splitlines(keepends=True))
    theirs_hunks = _hunks(base_lines, theirs.splitlines(keepends=True))

    combined = list(ours_hunks)
    for t in theirs_hunks:
        if t in ours_hunks:
            continue
        for o in ours_hunks:
            # touching ranges count as overlap
            if t[0] <= o[1] and o[0] <= t[1]:
                return None
        combined.append(t)

    result = list(base_lines)
    for i1, i2, replacement in sorted(combined, key=lambda h: (h[0], h[1]), reverse=True):
        result[i1:i2] = replacement
    return "".join(result)
