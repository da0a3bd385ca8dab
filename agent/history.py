"""
Context window management for the execution loop.
Handles token estimation, compression of old turns, memory anchors and
specialist handoff folding.
"""

import json
import logging
from collections import OrderedDict, deque
from typing import Any, Deque, Dict, List, Optional, Tuple

from config import app_config, get_context_window

logger = logging.getLogger(__name__)


class ContextManager:
    """Owns token accounting and trimming for one execution's message log.

    The log is a list of Anthropic-format message dicts. Messages are never
    removed or reordered here, so tool_use/tool_result pairing always stays
    valid; only long bodies of old turns are shortened.
    """

    BODY_LIMIT = 1200
    HEAD_CHARS = 600
    TAIL_CHARS = 300

    def __init__(self, model_id: str, context_window: Optional[int] = None):
        self.context_window = context_window or get_context_window(model_id)
        self.compress_threshold = int(self.context_window * app_config.compress_ratio)
        self.provider_trim_trigger = int(self.context_window * app_config.provider_trim_ratio)
        self.anchor_threshold = int(self.provider_trim_trigger * app_config.anchor_ratio)
        self.anchor_min_interval = app_config.anchor_min_interval

        self._reads: "OrderedDict[str, List[Tuple[Optional[int], Optional[int]]]]" = OrderedDict()
        self._edits: "OrderedDict[str, int]" = OrderedDict()
        self._actions: Deque[str] = deque(maxlen=5)
        self._last_anchor_iteration: Optional[int] = None
        self.anchors_injected = 0

    # ------------------------------------------------------------------
    # Token estimation
    # ------------------------------------------------------------------

    @staticmethod
    def estimate_tokens(text: str) -> int:
        """Token estimate: ~3.5 chars per token for mixed English/code."""
        return max(1, int(len(text) / 3.5))

    def _block_tokens(self, block: Any) -> int:
        if isinstance(block, str):
            return self.estimate_tokens(block)
        if isinstance(block, dict):
            total = 10  # overhead for block structure
            for key in ("text", "content"):
                val = block.get(key, "")
                if isinstance(val, str):
                    total += self.estimate_tokens(val)
            inp = block.get("input")
            if isinstance(inp, dict):
                total += self.estimate_tokens(json.dumps(inp))
            return total
        return 0

    def message_tokens(self, msg: Dict[str, Any]) -> int:
        content = msg.get("content", "")
        if isinstance(content, str):
            return self.estimate_tokens(content) + 5
        if isinstance(content, list):
            return sum(self._block_tokens(b) for b in content) + 5
        return 5

    def total_tokens(self, messages: List[Dict[str, Any]], system_prompt: str = "") -> int:
        base = sum(self.message_tokens(m) for m in messages)
        if system_prompt:
            base += self.estimate_tokens(system_prompt)
        return base

    # ------------------------------------------------------------------
    # Compression
    # ------------------------------------------------------------------

    def _shorten(self, text: str) -> str:
        if len(text) <= self.BODY_LIMIT:
            return text
        omitted = len(text) - self.HEAD_CHARS - self.TAIL_CHARS
        return (
            text[:self.HEAD_CHARS]
            + f"\n  ... ({omitted} chars compressed) ...\n"
            + text[-self.TAIL_CHARS:]
        )

    def _compress_message(self, msg: Dict[str, Any]) -> bool:
        content = msg.get("content")
        changed = False
        if isinstance(content, str):
            short = self._shorten(content)
            if short != content:
                msg["content"] = short
                changed = True
        elif isinstance(content, list):
            new_blocks = []
            for block in content:
                if isinstance(block, dict):
                    for key in ("text", "content"):
                        val = block.get(key)
                        if isinstance(val, str):
                            short = self._shorten(val)
                            if short != val:
                                block = {**block, key: short}
                                changed = True
                new_blocks.append(block)
            if changed:
                msg["content"] = new_blocks
        msg["compressed"] = True
        return changed

    @staticmethod
    def latest_tool_result_index(messages: List[Dict[str, Any]]) -> Optional[int]:
        for i in range(len(messages) - 1, -1, -1):
            content = messages[i].get("content")
            if isinstance(content, list) and any(
                isinstance(b, dict) and b.get("type") == "tool_result" for b in content
            ):
                return i
        return None

    def enforce_budget(self, messages: List[Dict[str, Any]], system_prompt: str = "") -> bool:
        """Compress the oldest half of eligible turns while over the threshold.

        Pinned and system messages and the most recent tool-result turn are
        never touched. Returns True if anything was compressed.
        """
        current = self.total_tokens(messages, system_prompt)
        if current <= self.compress_threshold:
            return False

        protected = self.latest_tool_result_index(messages)
        compressed_any = False
        for _ in range(4):
            eligible = [
                i for i, m in enumerate(messages)
                if not m.get("pinned") and m.get("role") != "system"
                and i != protected and not m.get("compressed")
            ]
            if not eligible:
                break
            oldest_half = eligible[:max(1, (len(eligible) + 1) // 2)]
            for i in oldest_half:
                if self._compress_message(messages[i]):
                    compressed_any = True
            current = self.total_tokens(messages, system_prompt)
            if current <= self.compress_threshold:
                break
        logger.info(
            f"Context compression: ~{current:,} tokens after pass "
            f"(threshold {self.compress_threshold:,}, compressed={compressed_any})"
        )
        return compressed_any

    # ------------------------------------------------------------------
    # Operational memory
    # ------------------------------------------------------------------

    def record_read(self, path: str, start: Optional[int] = None, end: Optional[int] = None) -> None:
        self._reads.setdefault(path, [])
        if (start, end) not in self._reads[path]:
            self._reads[path].append((start, end))

    def record_edit(self, path: str) -> None:
        self._edits[path] = self._edits.get(path, 0) + 1

    def record_action(self, description: str) -> None:
        self._actions.append(description)

    @property
    def files_read(self) -> List[str]:
        return list(self._reads.keys())

    @property
    def files_edited(self) -> Dict[str, int]:
        return dict(self._edits)

    def build_memory_anchor(self, goal: str, change_count: int) -> str:
        read_parts = []
        for path, ranges in self._reads.items():
            spans = [f"{s}-{e}" for s, e in ranges if s is not None]
            read_parts.append(f"{path} (lines {', '.join(spans)})" if spans else path)
        edit_parts = [f"{p} ({n} edit{'s' if n != 1 else ''})" for p, n in self._edits.items()]
        lines = [
            "MEMORY ANCHOR (do not forget):",
            f"Files already read: {', '.join(read_parts) or 'none'}",
            f"Files edited: {', '.join(edit_parts) or 'none'}",
            f"Total accumulated changes: {change_count}",
        ]
        if self._actions:
            lines.append("Last actions: " + "; ".join(self._actions))
        lines.append(f"Current goal: {goal[:300]}")
        lines.append("Do NOT re-read files listed above unless they were edited after reading.")
        return "\n".join(lines)

    def maybe_memory_anchor(self, iteration: int, usage_tokens: int, goal: str, change_count: int) -> Optional[str]:
        """Anchor once usage crosses the fraction of the provider trim trigger."""
        if usage_tokens < self.anchor_threshold:
            return None
        if not self._reads and not self._edits:
            return None
        if (self._last_anchor_iteration is not None
                and iteration - self._last_anchor_iteration < self.anchor_min_interval):
            return None
        self._last_anchor_iteration = iteration
        self.anchors_injected += 1
        logger.info(f"Injecting memory anchor at iteration {iteration} (~{usage_tokens:,} tokens)")
        return self.build_memory_anchor(goal, change_count)

    @staticmethod
    def merge_handoffs(handoffs: List[Any]) -> Optional[str]:
        """Fold specialist handoff summaries into one context block."""
        if not handoffs:
            return None
        parts = ["[Specialist handoffs] Work already done in this run:"]
        for h in handoffs:
            parts.append(h.render())
        return "\n".join(parts)
