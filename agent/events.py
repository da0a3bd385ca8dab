"""
Agent event data type and the callback channels used to publish it.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class AgentEvent:
    """Event emitted during agent execution"""
    type: str  # phase, text, tool_start, tool_result, tool_error, checkpoint, done, etc.
    content: str = ""
    data: Optional[Dict[str, Any]] = None


EventCallback = Callable[[AgentEvent], Awaitable[None]]


@dataclass
class ExecutionCallbacks:
    """Callback channels consumed by an external presentation layer.

    - on_progress: phase / sub-phase / label updates
    - on_content_chunk: streamed narrative text
    - on_tool_event: tool start / progress / result / error
    """
    on_progress: Optional[EventCallback] = None
    on_content_chunk: Optional[EventCallback] = None
    on_tool_event: Optional[EventCallback] = None


@dataclass
class EventEmitter:
    """Routes events to the right channel and keeps an in-memory trace.

    A failing callback never breaks the run; it is logged and skipped.
    """
    callbacks: ExecutionCallbacks = field(default_factory=ExecutionCallbacks)
    trace: List[AgentEvent] = field(default_factory=list)
    keep_trace: bool = True

    async def _send(self, cb: Optional[EventCallback], event: AgentEvent) -> None:
        if self.keep_trace:
            self.trace.append(event)
        if cb is None:
            return
        try:
            await cb(event)
        except Exception as e:
            logger.warning(f"Event callback failed for {event.type}: {e}")

    async def progress(self, phase: str, label: str = "", **data: Any) -> None:
        await self._send(
            self.callbacks.on_progress,
            AgentEvent(type="progress", content=label, data={"phase": phase, **data}),
        )

    async def content(self, event_type: str, text: str = "", **data: Any) -> None:
        await self._send(
            self.callbacks.on_content_chunk,
            AgentEvent(type=event_type, content=text, data=data or None),
        )

    async def tool(self, event_type: str, name: str, **data: Any) -> None:
        await self._send(
            self.callbacks.on_tool_event,
            AgentEvent(type=event_type, content=name, data=data or None),
        )

    def types(self) -> List[str]:
        return [e.type for e in self.trace]
