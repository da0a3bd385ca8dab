"""
Tests for loading a project from disk and writing accepted changes back.
"""

import os

from agent.types import CodeChange
from tools import invalidate_gitignore_cache, is_ignored, load_gitignore, load_project, write_changes


def _write(root, rel, content):
    path = os.path.join(root, rel)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)


def test_load_project_honours_gitignore_and_skips(tmp_path):
    root = str(tmp_path)
    _write(root, ".gitignore", "secrets/\n*.log\n")
    _write(root, "assets/theme.css", ".btn { color: red; }\n")
    _write(root, "assets/theme.min.css", ".btn{}")
    _write(root, "snippets/button.liquid", "<button></button>\n")
    _write(root, "secrets/key.txt", "hunter2")
    _write(root, "debug.log", "noise")
    _write(root, "node_modules/lib/index.js", "module.exports = 1;")
    with open(os.path.join(root, "logo.bin"), "wb") as f:
        f.write(b"\xff\xfe\x00\x81")
    invalidate_gitignore_cache(root)

    snapshots = load_project(root)
    paths = [s.path for s in snapshots]
    assert paths == [".gitignore", "assets/theme.css", "snippets/button.liquid"]
    # ids are stable across loads
    assert [s.id for s in load_project(root)] == [s.id for s in snapshots]


def test_is_ignored_rules():
    assert is_ignored("node_modules", "node_modules", True, None)
    assert is_ignored("a/b.pyc", "b.pyc", False, None)
    assert not is_ignored("a/b.py", "b.py", False, None)


def test_gitignore_is_cached_until_invalidated(tmp_path):
    root = str(tmp_path)
    invalidate_gitignore_cache(root)
    assert load_gitignore(root) is None
    _write(root, ".gitignore", "*.tmp\n")
    assert load_gitignore(root) is None
    invalidate_gitignore_cache(root)
    assert load_gitignore(root).match_file("x.tmp")


def test_write_changes(tmp_path):
    root = str(tmp_path)
    _write(root, "assets/theme.css", "red")
    _write(root, "templates/old.json", "{}")
    _write(root, "notes.txt", "draft")
    changes = [
        CodeChange(file_id="a", file_name="theme.css", original_content="red", proposed_content="blue",
                   path="assets/theme.css"),
        CodeChange(file_id="b", file_name="badge.liquid", original_content="", proposed_content="<span>",
                   path="snippets/badge.liquid"),
        CodeChange(file_id="c", file_name="old.json", original_content="{}", proposed_content="",
                   path="templates/old.json", deleted=True),
        CodeChange(file_id="e", file_name="notes.txt", original_content="draft", proposed_content="",
                   path="notes.txt"),
        CodeChange(file_id="d", file_name="evil", original_content="", proposed_content="x",
                   path="../outside.txt"),
    ]
    written = write_changes(root, changes)

    assert written == ["assets/theme.css", "snippets/badge.liquid", "templates/old.json", "notes.txt"]
    with open(os.path.join(root, "assets/theme.css"), encoding="utf-8") as f:
        assert f.read() == "blue"
    assert os.path.exists(os.path.join(root, "snippets/badge.liquid"))
    assert not os.path.exists(os.path.join(root, "templates/old.json"))
    with open(os.path.join(root, "notes.txt"), encoding="utf-8") as f:
        assert f.read() == ""
    assert not os.path.exists(os.path.join(os.path.dirname(root), "outside.txt"))
