"""Full copies of oversized tool outputs, addressable by id."""

import logging
import threading
import uuid
from collections import OrderedDict
from typing import Optional

logger = logging.getLogger(__name__)

OUTPUT_ID_PREFIX = "tool-output-"


class OutputStore:
    """Bounded in-memory store; oldest outputs are evicted first."""

    def __init__(self, max_entries: int = 200):
        self.max_entries = max_entries
        self._outputs: "OrderedDict[str, str]" = OrderedDict()
        self._lock = threading.Lock()

    def put(self, text: str) -> str:
        output_id = OUTPUT_ID_PREFIX + uuid.uuid4().hex[:10]
        with self._lock:
            self._outputs[output_id] = text
            while len(self._outputs) > self.max_entries:
                evicted, _ = self._outputs.popitem(last=False)
                logger.debug(f"Evicted stored tool output {evicted}")
        return output_id

    def get(self, output_id: str) -> Optional[str]:
        with self._lock:
            return self._outputs.get(output_id.strip())

    def __len__(self) -> int:
        return len(self._outputs)


def summarize_output(text: str, output_id: str, cap: int) -> str:
    """Head/tail excerpt of a large output with a pointer to the stored copy."""
    lines = text.split("\n")
    pointer = (f"[Large output ({len(text)} chars) stored as {output_id}. "
               f"Use read_tool_output with this id and offset/limit to page through it.]\n\n")
    if len(lines) > 50:
        head_n = max(20, cap // 400)
        tail_n = max(10, cap // 800)
        body = (
            "\n".join(lines[:head_n])
            + f"\n\n... ({len(lines) - head_n - tail_n} lines omitted) ...\n\n"
            + "\n".join(lines[-tail_n:])
        )
    else:
        body = text[:cap // 2] + f"\n... ({len(text) - cap // 2} chars omitted) ..."
    out = pointer + body
    if len(out) > cap:
        out = out[:cap] + "\n... (excerpt capped) ..."
    return out
