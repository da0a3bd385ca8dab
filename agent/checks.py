"""
Default verifier and cross-file reference checks.

The loop only depends on the verifier contract
``check(content, file_path) -> VerifierReport``; these implementations are
deliberately shallow structural checks (JSON, Liquid tag balance, brace
balance, Python syntax) plus theme-style reference checks between files.
"""

import ast
import json
import posixpath
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

from .types import ValidationIssue


@dataclass
class VerifierReport:
    passed: bool
    error_count: int = 0
    warning_count: int = 0
    issues: List[ValidationIssue] = field(default_factory=list)

    @classmethod
    def from_issues(cls, issues: List[ValidationIssue]) -> "VerifierReport":
        errors = sum(1 for i in issues if i.severity == "error")
        warnings = sum(1 for i in issues if i.severity == "warning")
        return cls(passed=errors == 0, error_count=errors, warning_count=warnings, issues=issues)


class Verifier(Protocol):
    def check(self, content: str, file_path: str) -> VerifierReport: ...


# ---------------------------------------------------------------------------
# Per-file structural checks
# ---------------------------------------------------------------------------

_LIQUID_BLOCK_TAGS = (
    "if", "unless", "case", "for", "capture", "form", "paginate",
    "schema", "style", "javascript", "stylesheet", "comment", "raw", "tablerow",
)
_LIQUID_TAG_RE = re.compile(r"{%-?\s*(end)?(" + "|".join(_LIQUID_BLOCK_TAGS) + r")\b")
_SCHEMA_RE = re.compile(r"{%-?\s*schema\s*-?%}(.*?){%-?\s*endschema\s*-?%}", re.DOTALL)
_INCLUDE_RE = re.compile(r"{%-?\s*include\s+['\"]([^'\"]+)['\"]")


def _line_of(content: str, offset: int) -> int:
    return content.count("\n", 0, offset) + 1


def _issue(severity: str, category: str, path: str, description: str, line: Optional[int] = None) -> ValidationIssue:
    return ValidationIssue(severity=severity, category=category, file=path, description=description, line=line)


def check_json(content: str, path: str) -> List[ValidationIssue]:
    if not content.strip():
        return []
    try:
        json.loads(content)
    except json.JSONDecodeError as e:
        return [_issue("error", "syntax", path, f"Invalid JSON: {e.msg}", e.lineno)]
    return []


def check_liquid(content: str, path: str) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    stack: List[tuple] = []
    raw_depth = 0
    for m in _LIQUID_TAG_RE.finditer(content):
        is_end, tag = bool(m.group(1)), m.group(2)
        if raw_depth and tag not in ("raw", "comment"):
            continue
        if not is_end:
            stack.append((tag, m.start()))
            if tag in ("raw", "comment"):
                raw_depth += 1
            continue
        if stack and stack[-1][0] == tag:
            stack.pop()
            if tag in ("raw", "comment"):
                raw_depth -= 1
        else:
            issues.append(_issue("error", "syntax", path, f"Unexpected {{% end{tag} %}}", _line_of(content, m.start())))
    for tag, offset in stack:
        issues.append(_issue("error", "syntax", path, f"Unclosed {{% {tag} %}}", _line_of(content, offset)))

    if content.count("{{") != content.count("}}"):
        issues.append(_issue("error", "syntax", path, "Unbalanced output delimiters {{ }}"))

    schema = _SCHEMA_RE.search(content)
    if schema:
        try:
            data = json.loads(schema.group(1))
        except json.JSONDecodeError as e:
            issues.append(_issue("error", "schema", path, f"Invalid schema JSON: {e.msg}",
                                 _line_of(content, schema.start(1)) + e.lineno - 1))
        else:
            for n, setting in enumerate(data.get("settings", []) if isinstance(data, dict) else []):
                if isinstance(setting, dict) and "type" not in setting:
                    issues.append(_issue("error", "schema", path, f"Schema setting #{n + 1} is missing 'type'"))

    for m in _INCLUDE_RE.finditer(content):
        issues.append(_issue("warning", "deprecated_liquid", path,
                             f"{{% include '{m.group(1)}' %}} is deprecated; use {{% render %}}",
                             _line_of(content, m.start())))
    return issues


def _strip_code(content: str, line_comment: Optional[str]) -> str:
    """Blank out comments and string literals so brace counting ignores them."""
    patterns = [r"/\*.*?\*/", r"\"(?:\\.|[^\"\\\n])*\"", r"'(?:\\.|[^'\\\n])*'"]
    if line_comment:
        patterns.append(re.escape(line_comment) + r"[^\n]*")
    regex = re.compile("|".join(patterns), re.DOTALL)
    return regex.sub(lambda m: re.sub(r"[^\n]", " ", m.group(0)), content)


def check_braces(content: str, path: str, line_comment: Optional[str] = None) -> List[ValidationIssue]:
    pairs = {")": "(", "]": "[", "}": "{"}
    stripped = _strip_code(content, line_comment)
    stack: List[tuple] = []
    for i, ch in enumerate(stripped):
        if ch in "([{":
            stack.append((ch, i))
        elif ch in pairs:
            if not stack or stack[-1][0] != pairs[ch]:
                return [_issue("error", "syntax", path, f"Unexpected '{ch}'", _line_of(content, i))]
            stack.pop()
    if stack:
        ch, i = stack[-1]
        return [_issue("error", "syntax", path, f"Unclosed '{ch}'", _line_of(content, i))]
    return []


def check_python(content: str, path: str) -> List[ValidationIssue]:
    try:
        ast.parse(content)
    except SyntaxError as e:
        return [_issue("error", "syntax", path, f"SyntaxError: {e.msg}", e.lineno)]
    return []


class DefaultVerifier:
    """Extension-dispatched structural checks."""

    def check(self, content: str, file_path: str) -> VerifierReport:
        ext = posixpath.splitext(file_path)[1].lower()
        if ext == ".json":
            issues = check_json(content, file_path)
        elif ext == ".liquid":
            issues = check_liquid(content, file_path)
        elif ext in (".css", ".scss"):
            issues = check_braces(content, file_path)
        elif ext in (".js", ".ts", ".mjs"):
            issues = check_braces(content, file_path, line_comment="//")
        elif ext == ".py":
            issues = check_python(content, file_path)
        else:
            issues = []
        return VerifierReport.from_issues(issues)


# ---------------------------------------------------------------------------
# Cross-file reference checks
# ---------------------------------------------------------------------------

_RENDER_RE = re.compile(r"{%-?\s*(?:render|include)\s+['\"]([^'\"]+)['\"]")
_SECTION_TAG_RE = re.compile(r"{%-?\s*section\s+['\"]([^'\"]+)['\"]")
_ASSET_RE = re.compile(r"['\"]([^'\"]+\.[A-Za-z0-9]+)['\"]\s*\|\s*asset_url((?:\s*\|\s*\w+)*)")
_SECTION_SETTING_RE = re.compile(r"\bsection\.settings\.([A-Za-z_][\w]*)")
_T_FILTER_RE = re.compile(r"['\"]([a-z0-9_]+(?:\.[a-z0-9_]+)+)['\"]\s*\|\s*t\b")


def _schema_setting_ids(content: str) -> Optional[set]:
    m = _SCHEMA_RE.search(content)
    if not m:
        return None
    try:
        data = json.loads(m.group(1))
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    return {s.get("id") for s in data.get("settings", []) if isinstance(s, dict)}


def _default_locale(files: Dict[str, str]) -> Optional[dict]:
    for path, content in files.items():
        if path.startswith("locales/") and path.endswith(".default.json"):
            try:
                data = json.loads(content)
            except json.JSONDecodeError:
                return None
            return data if isinstance(data, dict) else None
    return None


def _has_locale_key(locale: dict, key: str) -> bool:
    node = locale
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            return False
        node = node[part]
    return True


def _template_section_types(content: str) -> List[str]:
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        return []
    sections = data.get("sections", {}) if isinstance(data, dict) else {}
    return [s.get("type") for s in sections.values() if isinstance(s, dict) and s.get("type")]


def check_references(path: str, content: str, files: Dict[str, str]) -> List[ValidationIssue]:
    """Reference checks for one file against a {path: content} project view."""
    issues: List[ValidationIssue] = []
    if path.endswith(".liquid"):
        for m in _RENDER_RE.finditer(content):
            if f"snippets/{m.group(1)}.liquid" not in files:
                issues.append(_issue("error", "snippet_reference", path,
                                     f"Snippet '{m.group(1)}' does not exist", _line_of(content, m.start())))
        for m in _SECTION_TAG_RE.finditer(content):
            if f"sections/{m.group(1)}.liquid" not in files:
                issues.append(_issue("error", "template_section", path,
                                     f"Section '{m.group(1)}' does not exist", _line_of(content, m.start())))
        for m in _ASSET_RE.finditer(content):
            asset, filters = m.group(1), m.group(2) or ""
            if f"assets/{asset}" in files:
                continue
            line = _line_of(content, m.start())
            if "stylesheet_tag" in filters:
                issues.append(_issue("error", "companion_css", path, f"Stylesheet asset '{asset}' does not exist", line))
            elif "script_tag" in filters or asset.endswith(".js"):
                issues.append(_issue("warning", "companion_js", path, f"Script asset '{asset}' does not exist", line))
            else:
                issues.append(_issue("warning", "asset_reference", path, f"Asset '{asset}' does not exist", line))
        if path.startswith("sections/"):
            declared = _schema_setting_ids(content)
            if declared is not None:
                for m in _SECTION_SETTING_RE.finditer(content):
                    if m.group(1) not in declared:
                        issues.append(_issue("warning", "schema_setting", path,
                                             f"Setting '{m.group(1)}' is not declared in the schema",
                                             _line_of(content, m.start())))
        locale = _default_locale(files)
        if locale is not None:
            for m in _T_FILTER_RE.finditer(content):
                if not _has_locale_key(locale, m.group(1)):
                    issues.append(_issue("warning", "locale_key", path,
                                         f"Locale key '{m.group(1)}' is missing", _line_of(content, m.start())))
    elif path.startswith("templates/") and path.endswith(".json"):
        for section_type in _template_section_types(content):
            section_path = f"sections/{section_type}.liquid"
            if section_path not in files:
                issues.append(_issue("error", "template_section", path,
                                     f"Section type '{section_type}' does not exist"))
            elif _SCHEMA_RE.search(files[section_path]) is None:
                issues.append(_issue("error", "companion_schema", path,
                                     f"Section '{section_type}' has no {{% schema %}} block"))
    return issues


def check_project(files: Dict[str, str]) -> List[ValidationIssue]:
    """Whole-project consistency: reference checks over every file."""
    issues: List[ValidationIssue] = []
    for path in sorted(files):
        issues.extend(check_references(path, files[path], files))
    return issues
