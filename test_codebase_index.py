"""
Tests for the structural index (dependency graph) and the learned term mapping cache.
"""

from codebase_index import (
    StructuralIndex, TermMappingCache, build_graph, extract_imports, extract_symbols, extract_terms,
)
from conftest import THEME_FILES


def test_extract_terms_splits_and_filters():
    terms = extract_terms("Make the primaryButton blue and fix hero_banner")
    assert terms == {"primary", "button", "blue", "hero", "banner"}


def test_liquid_and_template_references():
    assert extract_imports("sections/header.liquid", THEME_FILES["sections/header.liquid"]) == [
        "snippets/button.liquid"
    ]
    assert extract_imports("layout/theme.liquid", THEME_FILES["layout/theme.liquid"]) == [
        "sections/header.liquid", "assets/theme.css",
    ]
    assert extract_imports("templates/index.json", THEME_FILES["templates/index.json"]) == [
        "sections/header.liquid"
    ]


def test_symbols_per_language():
    assert extract_symbols("a.py", "class A:\n    def run(self):\n        pass\n") == ["A", "run"]
    assert extract_symbols("a.js", "export function init() {}\nconst load = async () => {}\n") == ["init", "load"]
    assert extract_symbols("sections/header.liquid", THEME_FILES["sections/header.liquid"]) == ["Header"]
    assert extract_symbols("assets/theme.css", THEME_FILES["assets/theme.css"]) == ["btn", "site-header"]


def test_theme_graph_and_neighborhood():
    graph = build_graph(dict(THEME_FILES))
    assert graph.dependencies("sections/header.liquid") == ["snippets/button.liquid"]
    assert sorted(graph.dependents("sections/header.liquid")) == ["layout/theme.liquid", "templates/index.json"]
    assert graph.neighborhood(["snippets/button.liquid"], depth=1) == ["sections/header.liquid"]
    two_hops = graph.neighborhood(["snippets/button.liquid"], depth=2)
    assert set(two_hops) == {"sections/header.liquid", "layout/theme.liquid", "templates/index.json"}
    assert "used by: sections/header.liquid" in graph.render("snippets/button.liquid")


def test_python_relative_and_absolute_imports():
    files = {
        "pkg/__init__.py": "",
        "pkg/core.py": "from .util import helper\nimport pkg.models\n",
        "pkg/util.py": "def helper():\n    return 1\n",
        "pkg/models.py": "class Model:\n    pass\n",
    }
    graph = build_graph(files)
    assert sorted(graph.dependencies("pkg/core.py")) == ["pkg/models.py", "pkg/util.py"]


def test_structural_index_caches_by_content():
    index = StructuralIndex()
    files = dict(THEME_FILES)
    first = index.get("proj-1", files)
    assert index.get("proj-1", files) is first
    assert index.builds == 1

    files["snippets/button.liquid"] = "{% render 'icon' %}"
    rebuilt = index.get("proj-1", files)
    assert rebuilt is not first
    assert index.builds == 2

    index.invalidate("proj-1")
    index.get("proj-1", files)
    assert index.builds == 3


def test_term_cache_prefers_learned_mappings():
    cache = TermMappingCache()
    files = dict(THEME_FILES)
    # before learning, path terms decide
    assert cache.lookup("proj-1", "make the button blue", files)[0] == "snippets/button.liquid"

    cache.learn("proj-1", "make the button blue", ["assets/theme.css"])
    assert cache.lookup("proj-1", "make the button blue", files)[0] == "assets/theme.css"
    # mappings are per project
    assert cache.lookup("proj-2", "make the button blue", files)[0] == "snippets/button.liquid"


def test_term_cache_ignores_paths_outside_the_project():
    cache = TermMappingCache()
    cache.learn("proj-1", "button color", ["assets/old.css"])
    assert "assets/old.css" not in cache.lookup("proj-1", "button color", dict(THEME_FILES))
    assert cache.lookup("proj-1", "", dict(THEME_FILES)) == []
