"""
Tests for the snapshot arena: resolution, the change accumulator, worktrees and merging.
"""

import pytest

from agent.errors import MutationConflict
from agent.files import FileArena, normalize_path, three_way_merge


def test_normalize_path():
    assert normalize_path("./snippets//button.liquid") == "snippets/button.liquid"
    assert normalize_path("/assets/theme.css") == "assets/theme.css"
    assert normalize_path("sections\\header.liquid") == "sections/header.liquid"
    assert normalize_path("") == ""


def test_resolve_by_id_path_and_basename(arena):
    by_path = arena.resolve("snippets/button.liquid")
    assert by_path is not None
    assert arena.resolve(by_path.id) == by_path
    assert arena.resolve("button.liquid") == by_path
    assert arena.resolve("./snippets/button.liquid") == by_path
    assert arena.resolve("missing.liquid") is None


def test_apply_records_change_against_original(arena):
    out = arena.apply("assets/theme.css", "body {}\n", reasoning="reset")
    assert out.changed
    assert out.snapshot.version == 1
    assert out.snapshot.dirty
    assert len(arena.changes) == 1
    change = arena.changes.get(out.snapshot.id)
    assert change.original_content.startswith(".site-header")
    assert change.proposed_content == "body {}\n"
    assert change.path == "assets/theme.css"


def test_apply_same_content_is_noop(arena):
    snap = arena.resolve("assets/theme.css")
    out = arena.apply(snap.id, snap.content)
    assert not out.changed
    assert len(arena.changes) == 0


def test_edit_then_inverse_nets_out(arena):
    snap = arena.resolve("assets/theme.css")
    arena.apply(snap.id, "x {}\n")
    arena.apply(snap.id, snap.content)
    assert len(arena.changes) == 0


def test_repeated_edits_keep_one_change_per_file(arena):
    snap = arena.resolve("assets/theme.css")
    arena.apply(snap.id, "a {}\n")
    arena.apply(snap.id, "b {}\n")
    assert len(arena.changes) == 1
    assert arena.changes.get(snap.id).proposed_content == "b {}\n"
    assert arena.changes.get(snap.id).original_content == snap.content


def test_create_and_delete(arena):
    created = arena.create("snippets/badge.liquid", "<span>new</span>\n")
    assert created.change.is_creation
    assert "snippets/badge.liquid" in arena.paths()

    deleted = arena.delete("snippets/button.liquid")
    assert deleted.change.proposed_content == ""
    assert deleted.change.deleted
    assert arena.resolve("snippets/button.liquid") is None
    assert arena.resolve("snippets/button.liquid", include_deleted=True) is not None
    assert "snippets/button.liquid" not in arena.paths()


def test_reset_to_originals_drops_everything(arena):
    arena.apply("assets/theme.css", "x {}\n")
    arena.create("snippets/new.liquid", "hi\n")
    arena.delete("snippets/button.liquid")
    arena.reset_to_originals()
    assert len(arena.changes) == 0
    assert arena.resolve("snippets/new.liquid") is None
    assert arena.resolve("snippets/button.liquid") is not None
    assert arena.resolve("assets/theme.css").content.startswith(".site-header")
    assert arena.dirty_ids() == []


def test_rehydrate_restores_content_without_new_change(arena):
    snap = arena.resolve("assets/theme.css")
    arena.rehydrate(snap.id, snap.path, "restored {}\n", snap.content)
    assert arena.resolve(snap.id).content == "restored {}\n"
    assert snap.id in arena.dirty_ids()
    assert len(arena.changes) == 0


def test_worktree_isolated_until_merge(arena):
    wt = arena.fork()
    wt.apply("assets/theme.css", "wt {}\n")
    assert arena.resolve("assets/theme.css").content.startswith(".site-header")
    merged = arena.merge(wt)
    assert merged == ["assets/theme.css"]
    assert arena.resolve("assets/theme.css").content == "wt {}\n"
    assert len(arena.changes) == 1


def test_disjoint_worktrees_both_merge(arena):
    a, b = arena.fork(), arena.fork()
    a.apply("assets/theme.css", "a {}\n")
    b.apply("snippets/button.liquid", "<button>b</button>\n")
    arena.merge(a)
    arena.merge(b)
    assert len(arena.changes) == 2


def test_same_file_non_overlapping_edits_merge():
    base = "one\ntwo\nthree\nfour\nfive\nsix\n"
    ours = "ONE\ntwo\nthree\nfour\nfive\nsix\n"
    theirs = "one\ntwo\nthree\nfour\nfive\nSIX\n"
    assert three_way_merge(base, ours, theirs) == "ONE\ntwo\nthree\nfour\nfive\nSIX\n"


def test_touching_ranges_conflict():
    base = "one\ntwo\nthree\n"
    assert three_way_merge(base, "ONE\ntwo\nthree\n", "one\nTWO\nthree\n") is None


def test_overlapping_worktrees_raise_conflict(arena):
    a, b = arena.fork(), arena.fork()
    a.apply("snippets/button.liquid", "<button class=\"btn a\">{{ label }}</button>\n")
    b.apply("snippets/button.liquid", "<button class=\"btn b\">{{ label }}</button>\n")
    arena.merge(a)
    with pytest.raises(MutationConflict):
        arena.merge(b)


def test_fresh_arena_from_empty_iterable():
    arena = FileArena()
    assert len(arena) == 0
    assert arena.paths() == []
