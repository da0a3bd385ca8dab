"""
Structural codebase index for Bedrock Codex.

Builds a per-project dependency graph (Liquid render/section/asset references,
template section types, JS/CSS imports, Python imports) plus a light symbol
outline, and keeps a learned mapping from request terms to files. Both are
created once by the process root and shared by reference with every execution.
"""

import ast
import hashlib
import logging
import posixpath
import re
import threading
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

logger = logging.getLogger(__name__)

JS_EXTENSIONS = (".js", ".ts", ".jsx", ".tsx", ".mjs", ".cjs")

_STOPWORDS = {
    "the", "and", "for", "with", "that", "this", "from", "into", "make", "change",
    "update", "please", "should", "would", "could", "all", "add", "fix", "use",
    "when", "what", "where", "which", "are", "our", "their", "file", "files", "can",
    "not", "but", "has", "have", "its", "let", "set", "new", "now", "then", "code",
}


def extract_terms(text: str) -> Set[str]:
    """Lowercase word terms worth matching against file paths and symbols."""
    words = re.findall(r"[A-Za-z][A-Za-z0-9]+", text or "")
    terms = set()
    for w in words:
        # camelCase and snake_case split
        for part in re.findall(r"[A-Z]?[a-z0-9]+|[A-Z]+(?![a-z])", w):
            p = part.lower()
            if len(p) >= 3 and p not in _STOPWORDS:
                terms.add(p)
    return terms


def _path_terms(path: str) -> Set[str]:
    stem = posixpath.splitext(path)[0]
    return {p.lower() for p in re.split(r"[/_\-.\s]+", stem) if len(p) >= 3}


# ============================================================
# Symbols
# ============================================================

def _python_symbols(content: str) -> List[str]:
    try:
        tree = ast.parse(content)
    except SyntaxError:
        return []
    return [
        node.name for node in ast.walk(tree)
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef))
    ]


def _js_symbols(content: str) -> List[str]:
    pattern = re.compile(
        r"^\s*(?:export\s+)?(?:async\s+)?(?:function\s+(\w+)|class\s+(\w+)|(?:const|let)\s+(\w+)\s*=\s*(?:async\s*)?\()",
        re.MULTILINE,
    )
    return [m.group(1) or m.group(2) or m.group(3) for m in pattern.finditer(content)]


def extract_symbols(path: str, content: str) -> List[str]:
    ext = posixpath.splitext(path)[1].lower()
    if ext == ".py":
        return _python_symbols(content)
    if ext in JS_EXTENSIONS:
        return _js_symbols(content)
    if ext == ".liquid":
        m = re.search(r'{%-?\s*schema\s*-?%}.*?"name"\s*:\s*"([^"]+)"', content, re.DOTALL)
        return [m.group(1)] if m else []
    if ext in (".css", ".scss"):
        return sorted(set(re.findall(r"^\s*\.([A-Za-z][\w-]*)", content, re.MULTILINE)))[:50]
    return []


# ============================================================
# Import / reference tracking
# ============================================================

def extract_imports(path: str, content: str) -> List[str]:
    """Raw references a file makes, in the file's own notation.

    Liquid references come back already prefixed with their directory
    (``snippets/x.liquid``), JS and CSS imports as written, Python imports as
    dotted module names (relative imports keep their leading dots).
    """
    ext = posixpath.splitext(path)[1].lower()
    refs: List[str] = []

    if ext == ".py":
        try:
            tree = ast.parse(content)
            for node in ast.walk(tree):
                if isinstance(node, ast.Import):
                    refs.extend(alias.name for alias in node.names)
                elif isinstance(node, ast.ImportFrom):
                    module = "." * (node.level or 0) + (node.module or "")
                    refs.append(module)
                    for alias in node.names:
                        refs.append(f"{module}.{alias.name}" if node.module else f"{module}{alias.name}")
        except SyntaxError:
            for m in re.finditer(r"^\s*(?:from\s+([\w.]+)\s+)?import\s+([\w., ]+)", content, re.MULTILINE):
                refs.append(m.group(1) or m.group(2).split(",")[0].strip())

    elif ext == ".liquid":
        for m in re.finditer(r"{%-?\s*(?:render|include)\s+['\"]([^'\"]+)['\"]", content):
            refs.append(f"snippets/{m.group(1)}.liquid")
        for m in re.finditer(r"{%-?\s*section\s+['\"]([^'\"]+)['\"]", content):
            refs.append(f"sections/{m.group(1)}.liquid")
        for m in re.finditer(r"['\"]([^'\"]+\.[A-Za-z0-9]+)['\"]\s*\|\s*asset_url", content):
            refs.append(f"assets/{m.group(1)}")

    elif ext == ".json" and path.startswith("templates/"):
        for m in re.finditer(r'"type"\s*:\s*"([\w-]+)"', content):
            refs.append(f"sections/{m.group(1)}.liquid")

    elif ext in JS_EXTENSIONS:
        for m in re.finditer(r"(?:import\s+(?:.*?\s+from\s+)?['\"]([^'\"]+)['\"]|require\(['\"]([^'\"]+)['\"]\))", content):
            refs.append(m.group(1) or m.group(2))

    elif ext in (".css", ".scss"):
        for m in re.finditer(r"@import\s+(?:url\()?['\"]([^'\"]+)['\"]", content):
            refs.append(m.group(1))

    return refs


def _resolve_ref(src: str, ref: str, paths: Set[str], modules: Dict[str, str]) -> Optional[str]:
    """Map one raw reference onto a project path, or None when it points outside."""
    ext = posixpath.splitext(src)[1].lower()
    if ref in paths:
        return ref
    if ext == ".py":
        if ref.startswith("."):
            level = len(ref) - len(ref.lstrip("."))
            base = posixpath.dirname(src)
            for _ in range(level - 1):
                base = posixpath.dirname(base)
            rest = ref.lstrip(".").replace(".", "/")
            candidate = posixpath.join(base, rest) if rest else base
            for option in (candidate + ".py", posixpath.join(candidate, "__init__.py")):
                if option in paths:
                    return option
            return None
        return modules.get(ref)
    if ext in JS_EXTENSIONS or ext in (".css", ".scss"):
        if not ref.startswith("."):
            return None
        joined = posixpath.normpath(posixpath.join(posixpath.dirname(src), ref))
        for option in (joined,) + tuple(joined + e for e in JS_EXTENSIONS + (".css", ".scss")) + (
                posixpath.join(joined, "index.js"),):
            if option in paths:
                return option
    return None


def _module_table(paths: Iterable[str]) -> Dict[str, str]:
    table = {}
    for p in paths:
        if not p.endswith(".py"):
            continue
        mod = p[:-3]
        if mod.endswith("/__init__"):
            mod = mod[: -len("/__init__")]
        table[mod.replace("/", ".")] = p
    return table


@dataclass
class ProjectGraph:
    """Dependency graph and symbol outline of one project at one content version."""
    fingerprint: str
    forward: Dict[str, List[str]] = field(default_factory=dict)
    reverse: Dict[str, List[str]] = field(default_factory=dict)
    symbols: Dict[str, List[str]] = field(default_factory=dict)

    def dependencies(self, path: str) -> List[str]:
        return list(self.forward.get(path, []))

    def dependents(self, path: str) -> List[str]:
        return list(self.reverse.get(path, []))

    def neighborhood(self, paths: Iterable[str], depth: int = 1, limit: int = 20) -> List[str]:
        """Files within ``depth`` hops (either direction) of the seeds, seeds excluded."""
        seeds = [p for p in paths if p in self.forward or p in self.reverse]
        seen: Set[str] = set(seeds)
        found: List[str] = []
        queue: deque = deque((p, 0) for p in seeds)
        while queue and len(found) < limit:
            current, dist = queue.popleft()
            if dist >= depth:
                continue
            for nxt in self.forward.get(current, []) + self.reverse.get(current, []):
                if nxt in seen:
                    continue
                seen.add(nxt)
                found.append(nxt)
                queue.append((nxt, dist + 1))
        return found[:limit]

    def render(self, path: str) -> str:
        deps = self.dependencies(path)
        users = self.dependents(path)
        lines = [f"{path}"]
        lines.append("  depends on: " + (", ".join(deps) if deps else "(nothing)"))
        lines.append("  used by: " + (", ".join(users) if users else "(nothing)"))
        if self.symbols.get(path):
            lines.append("  symbols: " + ", ".join(self.symbols[path][:20]))
        return "\n".join(lines)


def _fingerprint(files: Dict[str, str]) -> str:
    h = hashlib.sha256()
    for path in sorted(files):
        h.update(path.encode())
        h.update(hashlib.sha256(files[path].encode("utf-8", errors="replace")).digest())
    return h.hexdigest()[:16]


def build_graph(files: Dict[str, str]) -> ProjectGraph:
    paths = set(files)
    modules = _module_table(paths)
    forward: Dict[str, List[str]] = {}
    reverse: Dict[str, List[str]] = {p: [] for p in paths}
    symbols: Dict[str, List[str]] = {}
    for src in sorted(paths):
        targets: List[str] = []
        for ref in extract_imports(src, files[src]):
            target = _resolve_ref(src, ref, paths, modules)
            if target and target != src and target not in targets:
                targets.append(target)
        forward[src] = targets
        for t in targets:
            reverse[t].append(src)
        syms = extract_symbols(src, files[src])
        if syms:
            symbols[src] = syms
    return ProjectGraph(fingerprint=_fingerprint(files), forward=forward, reverse=reverse, symbols=symbols)


class StructuralIndex:
    """Process-wide dependency graphs keyed by project id."""

    def __init__(self):
        self._graphs: Dict[str, ProjectGraph] = {}
        self._lock = threading.Lock()
        self.builds = 0

    def get(self, project_id: str, files: Dict[str, str]) -> ProjectGraph:
        """Cached graph for the project, rebuilt when invalidated or the content changed."""
        fingerprint = _fingerprint(files)
        with self._lock:
            graph = self._graphs.get(project_id)
            if graph is not None and graph.fingerprint == fingerprint:
                return graph
        graph = build_graph(files)
        with self._lock:
            self._graphs[project_id] = graph
            self.builds += 1
        logger.debug(f"Structural index built for {project_id}: {len(files)} file(s)")
        return graph

    def invalidate(self, project_id: str) -> None:
        with self._lock:
            self._graphs.pop(project_id, None)


class TermMappingCache:
    """Learned request-term to file mapping, plus per-file derived term sets."""

    def __init__(self):
        self._learned: Dict[str, Dict[str, Counter]] = {}
        self._derived: Dict[str, Dict[str, Set[str]]] = {}
        self._lock = threading.Lock()

    def learn(self, project_id: str, request: str, paths: Iterable[str]) -> None:
        """Remember which files a request with these terms ended up touching."""
        paths = list(paths)
        if not paths:
            return
        with self._lock:
            table = self._learned.setdefault(project_id, {})
            for term in extract_terms(request):
                counter = table.setdefault(term, Counter())
                for p in paths:
                    counter[p] += 1

    def _derived_terms(self, project_id: str, files: Dict[str, str]) -> Dict[str, Set[str]]:
        with self._lock:
            derived = self._derived.setdefault(project_id, {})
            for path, content in files.items():
                if path not in derived:
                    terms = _path_terms(path)
                    terms.update(s.lower() for s in extract_symbols(path, content))
                    derived[path] = terms
            return derived

    def lookup(self, project_id: str, request: str, files: Dict[str, str], limit: int = 10) -> List[str]:
        """Rank project paths for a request: learned hits first, then term overlap."""
        terms = extract_terms(request)
        if not terms:
            return []
        scores: Counter = Counter()
        with self._lock:
            learned = self._learned.get(project_id, {})
            for term in terms:
                for path, n in learned.get(term, Counter()).items():
                    if path in files:
                        scores[path] += 3 * n
        for path, path_terms in self._derived_terms(project_id, files).items():
            if path not in files:
                continue
            overlap = len(terms & path_terms)
            if overlap:
                scores[path] += overlap
        return [p for p, _ in sorted(scores.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]]

    def invalidate(self, project_id: str, paths: Optional[Iterable[str]] = None) -> None:
        with self._lock:
            derived = self._derived.get(project_id)
            if derived is None:
                return
            if paths is None:
                self._derived.pop(project_id, None)
            else:
                for p in paths:
                    derived.pop(p, None)
