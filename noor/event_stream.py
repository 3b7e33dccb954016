"""Incremental parser for the proxy's ``text/event-stream`` body.

Network reads never line up with event boundaries: a read may end in the
middle of a line or even inside a multi-byte UTF-8 sequence. The decoder keeps
both an incremental text decoder and a partial-line buffer between calls, so
feeding the same bytes in any split produces the same fragments.
"""

import codecs
import json
import logging
from typing import Any, List, Optional

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
TEXT_EVENT = "content_block_delta"
TEXT_DELTA = "text_delta"


def text_fragment(payload: Any) -> Optional[str]:
    """Return the text carried by one decoded event, or None for other events."""
    if not isinstance(payload, dict) or payload.get("type") != TEXT_EVENT:
        return None
    delta = payload.get("delta")
    if not isinstance(delta, dict) or delta.get("type") != TEXT_DELTA:
        return None
    text = delta.get("text")
    if not isinstance(text, str):
        return None
    return text


def parse_line(line: str) -> Optional[str]:
    if line.endswith("\r"):
        line = line[:-1]
    if not line.startswith("data:"):
        return None
    data = line[len("data:") :]
    if data.startswith(" "):
        data = data[1:]
    data = data.strip()
    if not data or data == DONE_SENTINEL:
        return None
    try:
        payload = json.loads(data)
    except ValueError:
        # Unknown or truncated events are skipped, not fatal.
        logger.debug("skipping malformed event line: %.80s", data)
        return None
    return text_fragment(payload)


class EventStreamDecoder:
    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[str]:
        """Consume one network read and return the text fragments it completed."""
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._fragments(lines)

    def close(self) -> List[str]:
        """Flush a final line that arrived without a trailing newline."""
        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        return self._fragments([tail]) if tail else []

    @staticmethod
    def _fragments(lines: List[str]) -> List[str]:
        out: List[str] = []
        for line in lines:
            frag = parse_line(line)
            if frag:
                out.append(frag)
        return out
