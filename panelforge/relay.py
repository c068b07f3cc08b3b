"""Incremental decoding of ``data: <json>`` chat-completion streams."""
from __future__ import annotations

import codecs
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Optional

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class SSELineDecoder:
    """Reassembles framing lines that may be split across arbitrary chunks."""

    def __init__(self) -> None:
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: str | bytes) -> list[str]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        if not chunk:
            return []
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return [payload for payload in map(_payload, lines) if payload is not None]

    def flush(self) -> list[str]:
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        payload = _payload(tail)
        return [payload] if payload is not None else []


def _payload(line: str) -> Optional[str]:
    line = line.strip()
    if not line.startswith(DATA_PREFIX):
        return None
    return line[len(DATA_PREFIX):].strip()


def extract_delta(payload: str) -> Optional[str]:
    """Return ``choices[0].delta.content`` of a frame, or ``None`` if absent or malformed."""
    try:
        data: Any = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed stream frame: %.80s", payload)
        return None
    try:
        content = data["choices"][0]["delta"].get("content")
    except (KeyError, IndexError, TypeError, AttributeError):
        return None
    return content if isinstance(content, str) else None


class StreamRelay:
    """Async iterator of text deltas read from a chunked completion stream.

    Iteration stops at the ``[DONE]`` sentinel or when the input ends;
    ``terminated`` tells the two apart.
    """

    def __init__(self, chunks: AsyncIterable[str | bytes]) -> None:
        self._chunks = chunks
        self._decoder = SSELineDecoder()
        self._consumed = False
        self.terminated = False
        self.deltas = 0

    def __aiter__(self) -> AsyncIterator[str]:
        if self._consumed:
            raise RuntimeError("StreamRelay can only be iterated once")
        self._consumed = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        async for chunk in self._chunks:
            for payload in self._decoder.feed(chunk):
                if payload == DONE_SENTINEL:
                    self.terminated = True
                    return
                delta = extract_delta(payload)
                if delta:
                    self.deltas += 1
                    yield delta
        for payload in self._decoder.flush():
            if payload == DONE_SENTINEL:
                self.terminated = True
                return
            delta = extract_delta(payload)
            if delta:
                self.deltas += 1
                yield delta


__all__ = ["DATA_PREFIX", "DONE_SENTINEL", "SSELineDecoder", "StreamRelay", "extract_delta"]
