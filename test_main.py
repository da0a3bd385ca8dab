"""
Tests for the command-line front end (argument parsing and stored-execution commands).
"""

import json

import pytest

import main
from agent.types import CodeChange, Status


def test_parser_run_defaults():
    args = main.build_parser().parse_args(["run", "make the button blue"])
    assert args.command == "run"
    assert args.mode == "code"
    assert args.directory == "."
    assert args.tier is None and not args.apply


def test_parser_rejects_unknown_tier():
    with pytest.raises(SystemExit):
        main.build_parser().parse_args(["run", "--tier", "huge", "x"])


def test_run_requires_a_directory(tmp_path):
    assert main.main(["run", "-d", str(tmp_path / "missing"), "make the button blue"]) == 1


def test_show_and_list_stored_executions(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(main, "DATA_DIR", str(tmp_path))
    store = main._store()
    store.create_execution("exec-1", "/themes/dawn", "user-1", "make the button blue")
    store.store_changes("exec-1", [CodeChange(file_id="f4", file_name="theme.css", original_content="red\n",
                                              proposed_content="blue\n", path="assets/theme.css")])
    store.update_status("exec-1", Status.COMPLETED, phase="complete")

    assert main.main(["show", "exec-1", "--json"]) == 0
    shown = json.loads(capsys.readouterr().out)
    assert shown["status"] == "completed"
    assert shown["changes"][0]["path"] == "assets/theme.css"

    assert main.main(["show", "exec-1"]) == 0
    assert main.main(["show", "missing"]) == 1
    assert main.main(["list", "--project", "/themes/dawn"]) == 0
    assert main.main(["list", "--project", "/elsewhere"]) == 0
