"""
Model invocation for the agent loop.

The streaming transport runs in a producer thread feeding a queue that the
event loop drains; the non-streaming fallback replays a complete response as
the same normalized event sequence, so the loop never knows which one ran.
"""

import asyncio
import json
import logging
import queue
import threading
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Optional

from bedrock_service import GenerationConfig
from config import app_config

from .errors import ProviderFault, classify_provider_error
from .events import EventEmitter
from .types import Usage

logger = logging.getLogger(__name__)

# Message keys used only inside the loop; never sent to the provider
_LOCAL_KEYS = ("pinned", "compressed", "cache_hint")

_DONE = object()


class FirstByteTimeout(Exception):
    """The streaming transport produced nothing within the first-byte window."""
    pass


@dataclass
class ModelTurn:
    """One assistant turn assembled from the normalized event sequence."""
    content: List[Dict[str, Any]] = field(default_factory=list)
    stop_reason: Optional[str] = None
    usage: Usage = field(default_factory=Usage)
    transport: str = "stream"
    events: List[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(b.get("text", "") for b in self.content if b.get("type") == "text")

    @property
    def tool_calls(self) -> List[Dict[str, Any]]:
        return [b for b in self.content if b.get("type") == "tool_use"]

    def to_message(self) -> Dict[str, Any]:
        return {"role": "assistant", "content": list(self.content)}


def provider_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Copy of the log without loop-local keys."""
    out = []
    for msg in messages:
        if any(k in msg for k in _LOCAL_KEYS):
            msg = {k: v for k, v in msg.items() if k not in _LOCAL_KEYS}
        out.append(msg)
    return out


class _TurnAssembler:
    """Folds normalized stream events into a ModelTurn."""

    def __init__(self, transport: str):
        self.turn = ModelTurn(transport=transport)
        self._text = ""
        self._tool: Optional[Dict[str, Any]] = None
        self._json_parts: List[str] = []

    def feed(self, chunk: Dict[str, Any]) -> Optional[str]:
        """Apply one event; returns a text delta to publish, if any."""
        chunk_type = chunk.get("type", "")
        content = chunk.get("content", "")
        self.turn.events.append(chunk_type)

        if chunk_type == "usage_start":
            usage = chunk.get("usage", {}) or {}
            self.turn.usage.input_tokens += usage.get("input_tokens", 0)
            self.turn.usage.cache_read_tokens += usage.get("cache_read_input_tokens", 0)
            self.turn.usage.cache_write_tokens += usage.get("cache_creation_input_tokens", 0)
        elif chunk_type == "text_start":
            self._text = ""
        elif chunk_type == "text":
            self._text += content
            return content
        elif chunk_type == "text_end":
            if self._text:
                self.turn.content.append({"type": "text", "text": self._text})
            self._text = ""
        elif chunk_type == "tool_use_start":
            self._tool = dict(chunk.get("data", {}) or {})
            self._json_parts = []
        elif chunk_type == "tool_use_delta":
            self._json_parts.append(content)
        elif chunk_type == "tool_use_end":
            if self._tool is not None:
                raw = "".join(self._json_parts)
                try:
                    tool_input = json.loads(raw) if raw.strip() else {}
                except json.JSONDecodeError:
                    logger.warning(f"Malformed tool input JSON for {self._tool.get('name')}: {raw[:200]}")
                    tool_input = {}
                self.turn.content.append({
                    "type": "tool_use",
                    "id": self._tool.get("id", ""),
                    "name": self._tool.get("name", ""),
                    "input": tool_input,
                })
                self._tool = None
        elif chunk_type == "message_end":
            usage = chunk.get("usage", {}) or {}
            self.turn.usage.output_tokens += usage.get("output_tokens", 0)
            self.turn.stop_reason = chunk.get("stop_reason") or None
        return None

    def finish(self) -> ModelTurn:
        # A stream cut between text_start and text_end still keeps its text
        if self._text:
            self.turn.content.append({"type": "text", "text": self._text})
            self._text = ""
        self.turn.usage.model_calls = 1
        return self.turn


class ModelInvoker:
    """Invokes the model for one iteration with retry and first-byte fallback."""

    def __init__(self, service, emitter: Optional[EventEmitter] = None,
                 first_byte_timeout: Optional[float] = None,
                 idle_timeout: Optional[float] = None,
                 max_retries: Optional[int] = None,
                 retry_backoff: Optional[float] = None,
                 sleep: Callable[[float], Any] = asyncio.sleep):
        self.service = service
        self.emitter = emitter or EventEmitter(keep_trace=False)
        self.first_byte_timeout = first_byte_timeout if first_byte_timeout is not None else app_config.first_byte_timeout
        self.idle_timeout = idle_timeout if idle_timeout is not None else app_config.stream_idle_timeout
        self.max_retries = max(1, max_retries if max_retries is not None else app_config.stream_max_retries)
        self.retry_backoff = retry_backoff if retry_backoff is not None else app_config.stream_retry_backoff
        self._sleep = sleep
        self.fallbacks = 0

    async def invoke(self, messages: List[Dict[str, Any]], system_prompt: str,
                     tools: Optional[List[Dict[str, Any]]] = None,
                     config: Optional[GenerationConfig] = None,
                     model_id: Optional[str] = None) -> ModelTurn:
        """Run one model call; raises ProviderFault once retries are exhausted."""
        payload = provider_messages(messages)
        for attempt in range(1, self.max_retries + 1):
            if attempt > 1:
                await self.emitter.content(
                    "stream_retry",
                    f"Connection lost, retrying ({attempt}/{self.max_retries})...",
                    attempt=attempt, max_retries=self.max_retries,
                )
            try:
                return await self._attempt(payload, system_prompt, tools, config, model_id)
            except Exception as e:
                fault = classify_provider_error(e)
                if not fault.retryable or attempt >= self.max_retries:
                    logger.error(f"Model call failed (attempt {attempt}, retryable={fault.retryable}): {fault}")
                    raise fault from e
                delay = self.retry_backoff * (2 ** (attempt - 1))
                logger.warning(f"Retryable model error (attempt {attempt}/{self.max_retries}), "
                               f"retrying in {delay:.1f}s: {fault}")
                await self._sleep(delay)
        raise ProviderFault("Model call failed", retryable=True)

    async def _attempt(self, messages, system_prompt, tools, config, model_id) -> ModelTurn:
        try:
            return await self._stream(messages, system_prompt, tools, config, model_id)
        except FirstByteTimeout:
            self.fallbacks += 1
            logger.warning(f"No stream output within {self.first_byte_timeout}s, "
                           f"falling back to non-streaming call")
            await self.emitter.progress("stream_fallback", "Switching to non-streaming response")
            return await self._non_stream(messages, system_prompt, tools, config, model_id)

    async def _stream(self, messages, system_prompt, tools, config, model_id) -> ModelTurn:
        chunk_queue: queue.Queue = queue.Queue()
        stop = threading.Event()

        def _stream_producer():
            """Run the sync generator in a background thread, forwarding chunks to the queue."""
            try:
                for c in self.service.generate_response_stream(
                    messages=messages,
                    system_prompt=system_prompt,
                    model_id=model_id,
                    config=config,
                    tools=tools,
                ):
                    if stop.is_set():
                        return
                    chunk_queue.put(c)
                chunk_queue.put(_DONE)
            except Exception as exc:
                chunk_queue.put(exc)

        producer_thread = threading.Thread(target=_stream_producer, daemon=True)
        producer_thread.start()

        loop = asyncio.get_running_loop()
        assembler = _TurnAssembler("stream")
        first = True
        try:
            while True:
                timeout = self.first_byte_timeout if first else self.idle_timeout
                try:
                    chunk = await loop.run_in_executor(None, partial(chunk_queue.get, True, timeout))
                except queue.Empty:
                    if first:
                        raise FirstByteTimeout()
                    raise ProviderFault(f"Stream idle for {timeout}s", retryable=True)
                first = False
                if chunk is _DONE:
                    break
                if isinstance(chunk, Exception):
                    raise chunk
                delta = assembler.feed(chunk)
                if delta:
                    await self.emitter.content("text", delta)
        finally:
            stop.set()
        producer_thread.join(timeout=2)
        return assembler.finish()

    async def _non_stream(self, messages, system_prompt, tools, config, model_id) -> ModelTurn:
        loop = asyncio.get_running_loop()

        def _collect() -> List[Dict[str, Any]]:
            return list(self.service.generate_response_events(
                messages=messages,
                system_prompt=system_prompt,
                model_id=model_id,
                config=config,
                tools=tools,
            ))

        events: Iterable[Dict[str, Any]] = await loop.run_in_executor(None, _collect)
        assembler = _TurnAssembler("non_stream")
        for chunk in events:
            delta = assembler.feed(chunk)
            if delta:
                await self.emitter.content("text", delta)
        return assembler.finish()
