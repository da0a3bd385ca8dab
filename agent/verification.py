"""
Verification gate: regression-only checking of the accumulated change set.

Every check runs against the proposed and the original content; only issues
whose key is absent from the baseline are regressions. Whether a regression is
a hard gate is decided by the GATE_POLICY table, never by category naming.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from config import app_config

from .checks import DefaultVerifier, Verifier, check_project, check_references
from .errors import VerificationRegression
from .files import FileArena
from .types import CodeChange, ReviewOutcome, ValidationIssue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GateRule:
    severity: str
    hard_gate: bool


# Structural checks and cross-file contracts gate; everything else is advisory.
GATE_POLICY: Dict[str, GateRule] = {
    "syntax": GateRule("error", True),
    "schema": GateRule("error", True),
    "type": GateRule("error", False),
    "snippet_reference": GateRule("error", True),
    "template_section": GateRule("error", True),
    "companion_css": GateRule("error", True),
    "companion_schema": GateRule("error", True),
    "schema_setting": GateRule("warning", False),
    "asset_reference": GateRule("warning", False),
    "deprecated_liquid": GateRule("warning", False),
    "locale_key": GateRule("warning", False),
    "companion_js": GateRule("warning", False),
}

_DEFAULT_RULE = GateRule("warning", False)


def rule_for(category: str) -> GateRule:
    return GATE_POLICY.get(category, _DEFAULT_RULE)


def is_hard_gate(issue: ValidationIssue) -> bool:
    rule = rule_for(issue.category)
    return rule.hard_gate and issue.severity == "error"


@dataclass
class GateReport:
    regressions: List[ValidationIssue] = field(default_factory=list)
    baseline: List[ValidationIssue] = field(default_factory=list)
    checked_files: List[str] = field(default_factory=list)

    @property
    def hard(self) -> List[ValidationIssue]:
        return [i for i in self.regressions if is_hard_gate(i)]

    @property
    def soft(self) -> List[ValidationIssue]:
        return [i for i in self.regressions if not is_hard_gate(i)]

    @property
    def soft_errors(self) -> List[ValidationIssue]:
        return [i for i in self.soft if i.severity == "error"]

    @property
    def passed(self) -> bool:
        return not self.hard

    def summary(self, limit: int = 12) -> str:
        if not self.regressions:
            return f"Verification passed ({len(self.checked_files)} file(s), no new issues)."
        lines = [f"Verification found {len(self.regressions)} new issue(s) "
                 f"({len(self.hard)} blocking):"]
        for issue in self.regressions[:limit]:
            where = f"{issue.file}:{issue.line}" if issue.line else issue.file
            tag = "BLOCKING" if is_hard_gate(issue) else issue.severity
            lines.append(f"- [{tag}] {where} ({issue.category}) {issue.description}")
        if len(self.regressions) > limit:
            lines.append(f"- ... {len(self.regressions) - limit} more")
        return "\n".join(lines)

    def to_review(self) -> ReviewOutcome:
        return ReviewOutcome(approved=self.passed, summary=self.summary(), issues=list(self.regressions))


def _dedupe(issues: List[ValidationIssue]) -> List[ValidationIssue]:
    seen = set()
    out = []
    for issue in issues:
        if issue.key not in seen:
            seen.add(issue.key)
            out.append(issue)
    return out


class VerificationGate:
    """Per-file, cross-file and whole-project checks with baseline diffing."""

    def __init__(self, verifier: Optional[Verifier] = None):
        self.verifier = verifier or DefaultVerifier()
        self._cache: Dict[Tuple[str, str], List[ValidationIssue]] = {}

    def _file_issues(self, path: str, content: str) -> List[ValidationIssue]:
        key = (path, hashlib.sha256(content.encode("utf-8", errors="replace")).hexdigest())
        cached = self._cache.get(key)
        if cached is None:
            cached = list(self.verifier.check(content, path).issues)
            self._cache[key] = cached
        return cached

    @staticmethod
    def project_views(arena: FileArena, changes: List[CodeChange]) -> Tuple[Dict[str, str], Dict[str, str]]:
        """(proposed, original) {path: content} views of the whole project."""
        # arena.files() already leaves deleted files out of the proposed view
        proposed = {s.path: s.content for s in arena.files()}
        original = dict(proposed)
        for change in changes:
            path = change.path or change.file_name
            if change.is_creation:
                original.pop(path, None)
            else:
                original[path] = change.original_content
        return proposed, original

    def verify(self, arena: FileArena, changes: Optional[List[CodeChange]] = None) -> GateReport:
        changes = list(arena.changes) if changes is None else changes
        report = GateReport()
        if not changes:
            return report
        proposed_view, original_view = self.project_views(arena, changes)

        after: List[ValidationIssue] = []
        before: List[ValidationIssue] = []
        for change in changes:
            path = change.path or change.file_name
            report.checked_files.append(path)
            if path in proposed_view:
                after.extend(self._file_issues(path, change.proposed_content))
                after.extend(check_references(path, change.proposed_content, proposed_view))
            if path in original_view:
                before.extend(self._file_issues(path, change.original_content))
                before.extend(check_references(path, change.original_content, original_view))
        after.extend(check_project(proposed_view))
        before.extend(check_project(original_view))

        baseline_keys = {i.key for i in before}
        report.baseline = _dedupe(before)
        report.regressions = [i for i in _dedupe(after) if i.key not in baseline_keys]
        logger.info(
            f"Verification: {len(report.checked_files)} file(s), "
            f"{len(report.regressions)} regression(s), {len(report.hard)} hard"
        )
        return report

    def enforce(self, arena: FileArena) -> GateReport:
        """Verify and raise VerificationRegression when a hard-gate regression exists."""
        report = self.verify(arena)
        if report.hard:
            raise VerificationRegression(report.hard, hard=True)
        return report


class PostEditChecker:
    """Lightweight per-file check right after an accepted edit.

    Throttled to one check per file version and capped at a fixed number of
    injected messages per execution.
    """

    def __init__(self, gate: VerificationGate, max_injections: Optional[int] = None):
        self.gate = gate
        self.max_injections = max_injections if max_injections is not None else app_config.max_verification_injections
        self.injections = 0
        self._checked: Dict[str, int] = {}

    def after_edit(self, path: str, version: int, original: str, proposed: str,
                   project: Optional[Dict[str, str]] = None) -> Optional[str]:
        """Return a message to feed back to the model, or None."""
        if self.injections >= self.max_injections:
            return None
        if self._checked.get(path) == version:
            return None
        self._checked[path] = version

        before = {i.key for i in self.gate._file_issues(path, original)} if original else set()
        new_issues = [i for i in self.gate._file_issues(path, proposed) if i.key not in before]
        if project is not None:
            ref_before = set()
            if original:
                original_view = dict(project)
                original_view[path] = original
                ref_before = {i.key for i in check_references(path, original, original_view)}
            new_issues += [i for i in check_references(path, proposed, project) if i.key not in ref_before]
        errors = [i for i in new_issues if i.severity == "error"]
        if not errors:
            return None
        self.injections += 1
        lines = [f"[Verification] {path} now has {len(errors)} new error(s):"]
        for issue in errors[:5]:
            where = f"line {issue.line}: " if issue.line else ""
            lines.append(f"- {where}{issue.description} ({issue.category})")
        lines.append("Fix these before continuing.")
        return "\n".join(lines)
