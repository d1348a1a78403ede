"""
Server-Sent Events reader

Incrementally decodes a raw byte stream into ``data:`` payload strings.
"""

import codecs
import json
import re
from typing import AsyncIterator, List, Optional

DONE_SENTINEL = "[DONE]"

_LINE_BREAK = re.compile(r"\r\n|\r|\n")


def _is_complete_payload(payload: str) -> bool:
    text = payload.strip()
    if not text:
        return False
    if text == DONE_SENTINEL:
        return True
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


class SSEDecoder:
    """Stateful SSE line decoder.

    Events are normally terminated by a blank line. Providers that omit the
    blank line are tolerated: a new ``data:`` line arriving while the
    pending payload is already a complete JSON value flushes it first.
    """

    def __init__(self, done_sentinel: Optional[str] = DONE_SENTINEL):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._data_lines: List[str] = []
        self._done_sentinel = done_sentinel
        self.done = False

    def feed(self, chunk: bytes) -> List[str]:
        """Consume one raw read and return the payloads it completed."""
        if self.done or not chunk:
            return []
        self._buffer += self._decoder.decode(chunk)
        events: List[str] = []
        for line in self._take_lines():
            self._handle_line(line, events)
            if self.done:
                break
        return events

    def flush(self) -> List[str]:
        """Emit whatever is pending at end of stream."""
        if self.done:
            return []
        self._buffer += self._decoder.decode(b"", final=True)
        events: List[str] = []
        lines = self._take_lines()
        tail = self._buffer.rstrip("\r")
        self._buffer = ""
        if tail:
            lines.append(tail)
        for line in lines:
            self._handle_line(line, events)
            if self.done:
                return events
        self._emit_pending(events)
        return events

    def _take_lines(self) -> List[str]:
        lines: List[str] = []
        while True:
            match = _LINE_BREAK.search(self._buffer)
            if match is None:
                break
            # 末尾的 \r 可能是被拆开的 \r\n，留到下一次读取
            if match.group() == "\r" and match.end() == len(self._buffer):
                break
            lines.append(self._buffer[:match.start()])
            self._buffer = self._buffer[match.end():]
        return lines

    def _handle_line(self, line: str, events: List[str]) -> None:
        if line == "":
            self._emit_pending(events)
            return
        if line.startswith(":"):
            return

        name, sep, value = line.partition(":")
        if not sep or name != "data":
            # event/id/retry 以及无法识别的行都忽略
            return
        if value.startswith(" "):
            value = value[1:]

        if self._data_lines and _is_complete_payload("\n".join(self._data_lines)):
            self._emit_pending(events)
            if self.done:
                return
        self._data_lines.append(value)

    def _emit_pending(self, events: List[str]) -> None:
        if not self._data_lines:
            return
        payload = "\n".join(self._data_lines)
        self._data_lines = []
        if self._done_sentinel is not None and payload.strip() == self._done_sentinel:
            self.done = True
            return
        if payload.strip():
            events.append(payload)


async def iter_sse_events(
    byte_stream: AsyncIterator[bytes],
    done_sentinel: Optional[str] = DONE_SENTINEL,
) -> AsyncIterator[str]:
    """Yield event payloads from an async byte iterator until end or sentinel."""
    decoder = SSEDecoder(done_sentinel=done_sentinel)
    async for chunk in byte_stream:
        for payload in decoder.feed(chunk):
            yield payload
        if decoder.done:
            return
    for payload in decoder.flush():
        yield payload
