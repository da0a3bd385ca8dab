"""
Tests for the verification gate: baseline diffing, the gate policy table and post-edit checks.
"""

import pytest

from agent.checks import DefaultVerifier, check_liquid
from agent.errors import VerificationRegression
from agent.verification import GATE_POLICY, PostEditChecker, VerificationGate, is_hard_gate, rule_for
from agent.types import FileSnapshot, ValidationIssue


def test_gate_policy_is_an_explicit_table():
    assert rule_for("syntax").hard_gate
    assert rule_for("snippet_reference").hard_gate
    assert not rule_for("schema_setting").hard_gate
    # unknown categories are advisory
    assert not rule_for("made_up_category").hard_gate
    assert set(GATE_POLICY) >= {"syntax", "schema", "companion_css", "template_section"}


def test_warning_in_hard_category_does_not_gate():
    issue = ValidationIssue(severity="warning", category="syntax", file="a.css", description="x")
    assert not is_hard_gate(issue)


def test_liquid_checks_find_unclosed_tags():
    issues = check_liquid("{% if x %}<p>hi</p>", "snippets/a.liquid")
    assert [i.category for i in issues] == ["syntax"]
    assert "Unclosed" in issues[0].description
    assert check_liquid("{% raw %}{% if %}{% endraw %}", "snippets/a.liquid") == []


def test_default_verifier_dispatches_by_extension():
    v = DefaultVerifier()
    assert not v.check("{\"a\": }", "config/settings.json").passed
    assert not v.check(".a { color: red;", "assets/a.css").passed
    assert v.check(".a { content: '}'; }", "assets/a.css").passed
    assert not v.check("def f(:\n", "tool.py").passed
    assert v.check("anything", "README.md").passed


def test_clean_change_passes(arena):
    arena.apply("assets/theme.css", arena.resolve("assets/theme.css").content.replace("red", "blue"))
    report = VerificationGate().verify(arena)
    assert report.passed
    assert report.regressions == []
    assert report.checked_files == ["assets/theme.css"]
    assert report.to_review().approved


def test_only_new_issues_are_regressions(arena):
    # pre-existing breakage in the baseline is not blamed on the change
    arena.add(FileSnapshot(id="legacy", name="legacy.liquid", path="snippets/legacy.liquid",
                           content="{% if x %}broken"))
    arena.apply("snippets/legacy.liquid", "{% if x %}still broken, new text")
    report = VerificationGate().verify(arena)
    assert report.regressions == []
    assert len(report.baseline) >= 1


def test_broken_snippet_reference_is_a_hard_regression(arena):
    header = arena.resolve("sections/header.liquid")
    arena.apply(header.id, header.content.replace("render 'button'", "render 'buton'"))
    gate = VerificationGate()
    report = gate.verify(arena)
    assert not report.passed
    assert [i.category for i in report.hard] == ["snippet_reference"]
    with pytest.raises(VerificationRegression) as exc:
        gate.enforce(arena)
    assert exc.value.hard
    assert exc.value.issues[0].category == "snippet_reference"


def test_deleting_a_rendered_snippet_is_caught(arena):
    arena.delete("snippets/button.liquid")
    report = VerificationGate().verify(arena)
    assert any(i.category == "snippet_reference" and i.file == "sections/header.liquid" for i in report.hard)


def test_soft_regression_does_not_gate(arena):
    header = arena.resolve("sections/header.liquid")
    arena.apply(header.id, header.content.replace("{{ section.settings.title }}",
                                                  "{{ section.settings.subtitle }}"))
    report = VerificationGate().verify(arena)
    assert report.passed
    assert [i.category for i in report.soft] == ["schema_setting"]
    assert report.soft_errors == []


def test_post_edit_checker_throttles_and_caps(arena):
    checker = PostEditChecker(VerificationGate(), max_injections=1)
    msg = checker.after_edit("assets/theme.css", 1, ".a {}\n", ".a {\n", {})
    assert msg and "new error" in msg
    # same version is not re-checked
    assert checker.after_edit("assets/theme.css", 1, ".a {}\n", ".a {\n", {}) is None
    # cap reached
    assert checker.after_edit("assets/theme.css", 2, ".a {}\n", ".a {\n", {}) is None


def test_post_edit_checker_ignores_pre_existing_errors():
    checker = PostEditChecker(VerificationGate())
    assert checker.after_edit("assets/a.css", 1, ".a {\n", ".a {\n  color: blue;\n", {}) is None
