"""
Shared fixtures: a scripted model service and a small theme project.
"""

import json
import threading
import time
from typing import Any, Dict, List, Optional

import pytest

from agent.files import FileArena
from agent.state import LoopState
from agent.types import FileSnapshot
from bedrock_service import GenerationResult, result_to_events
from codebase_index import StructuralIndex, TermMappingCache
from tools import OutputStore, ToolContext

pytest_plugins = ["pytest_asyncio"]


def text_block(text: str) -> Dict[str, Any]:
    return {"type": "text", "text": text}


def tool_block(name: str, call_id: str, **inputs: Any) -> Dict[str, Any]:
    return {"type": "tool_use", "id": call_id, "name": name, "input": inputs}


class ScriptedService:
    """Stands in for BedrockService: each model call plays the next scripted turn.

    A turn is a list of content blocks. An exception in place of a turn is raised
    by that model call. Both transports replay the same turn
    through result_to_events, so streaming and non-streaming paths see an
    identical normalized sequence.
    """

    def __init__(self, turns: Optional[List[List[Dict[str, Any]]]] = None,
                 stall_streams: int = 0, stall_seconds: float = 0.5,
                 fail_with: Optional[List[Exception]] = None):
        self.turns = list(turns or [])
        self.stall_streams = stall_streams
        self.stall_seconds = stall_seconds
        self.fail_with = list(fail_with or [])
        self.model_id = "scripted-model"
        self.calls: List[Dict[str, Any]] = []
        self.stream_calls = 0
        self.event_calls = 0
        self._lock = threading.Lock()

    def _next_result(self, messages, system_prompt, tools, model_id=None) -> GenerationResult:
        with self._lock:
            self.calls.append({
                "model_id": model_id,
                "messages": json.loads(json.dumps(messages)),
                "system_prompt": system_prompt,
                "tools": [t["name"] for t in tools or []],
            })
            if self.fail_with:
                raise self.fail_with.pop(0)
            blocks = self.turns.pop(0) if self.turns else [text_block("Done.")]
            if isinstance(blocks, Exception):
                raise blocks
        return GenerationResult(
            content="".join(b.get("text", "") for b in blocks if b["type"] == "text"),
            content_blocks=blocks,
            stop_reason="tool_use" if any(b["type"] == "tool_use" for b in blocks) else "end_turn",
            input_tokens=100,
            output_tokens=20,
        )

    def generate_response(self, messages, system_prompt=None, model_id=None, config=None, tools=None):
        return self._next_result(messages, system_prompt, tools, model_id)

    def generate_response_events(self, messages, system_prompt=None, model_id=None, config=None, tools=None):
        self.event_calls += 1
        result = self._next_result(messages, system_prompt, tools, model_id)
        yield from result_to_events(result)

    def generate_response_stream(self, messages, system_prompt=None, model_id=None, config=None, tools=None):
        self.stream_calls += 1
        if self.stall_streams > 0:
            self.stall_streams -= 1
            time.sleep(self.stall_seconds)
            return
        result = self._next_result(messages, system_prompt, tools, model_id)
        yield from result_to_events(result)

    @property
    def remaining(self) -> int:
        return len(self.turns)


THEME_FILES = {
    "layout/theme.liquid": (
        "<html>\n<head>\n{{ 'theme.css' | asset_url | stylesheet_tag }}\n</head>\n"
        "<body>\n{% section 'header' %}\n{{ content_for_layout }}\n</body>\n</html>\n"
    ),
    "sections/header.liquid": (
        "<header class=\"site-header\">\n"
        "  <h1>{{ section.settings.title }}</h1>\n"
        "  {% render 'button', label: 'Shop now' %}\n"
        "</header>\n"
        "{% schema %}\n"
        "{\"name\": \"Header\", \"settings\": [{\"id\": \"title\", \"type\": \"text\", \"label\": \"Title\"}]}\n"
        "{% endschema %}\n"
    ),
    "snippets/button.liquid": "<button class=\"btn\">{{ label }}</button>\n",
    "assets/theme.css": (
        ".site-header {\n  padding: 12px;\n}\n\n"
        ".btn {\n  color: white;\n  background-color: red;\n}\n"
    ),
    "templates/index.json": "{\"sections\": {\"main\": {\"type\": \"header\"}}, \"order\": [\"main\"]}\n",
}


def make_snapshots(files: Dict[str, str]) -> List[FileSnapshot]:
    return [
        FileSnapshot(id=f"f{i}", name=path.rsplit("/", 1)[-1], path=path, content=content)
        for i, (path, content) in enumerate(sorted(files.items()), start=1)
    ]


@pytest.fixture
def theme_files() -> Dict[str, str]:
    return dict(THEME_FILES)


@pytest.fixture
def theme_snapshots(theme_files) -> List[FileSnapshot]:
    return make_snapshots(theme_files)


@pytest.fixture
def arena(theme_snapshots) -> FileArena:
    return FileArena(theme_snapshots)


@pytest.fixture
def loop_state(arena) -> LoopState:
    return LoopState(
        execution_id="exec-1",
        project_id="proj-1",
        user_id="user-1",
        user_request="make the button blue",
        arena=arena,
    )


@pytest.fixture
def tool_ctx(arena, loop_state) -> ToolContext:
    return ToolContext(
        arena=arena,
        project_id="proj-1",
        structural_index=StructuralIndex(),
        term_cache=TermMappingCache(),
        output_store=OutputStore(),
        state=loop_state,
    )
