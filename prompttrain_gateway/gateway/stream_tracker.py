from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

logger = logging.getLogger("uvicorn.error")

DATA_PREFIX = b"data:"
DONE_SENTINEL = "[DONE]"


@dataclass(slots=True)
class UsageTotals:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    @property
    def cache_tokens(self) -> int:
        return self.cache_creation_input_tokens + self.cache_read_input_tokens

    @property
    def is_empty(self) -> bool:
        return not (self.input_tokens or self.output_tokens or self.cache_tokens)

    def apply(self, usage: Any, *, include_input: bool) -> None:
        if not isinstance(usage, dict):
            return
        if include_input or usage.get("input_tokens"):
            self.input_tokens = _as_int(usage.get("input_tokens"), self.input_tokens)
        self.output_tokens = _as_int(usage.get("output_tokens"), self.output_tokens)
        self.cache_creation_input_tokens = _as_int(
            usage.get("cache_creation_input_tokens"), self.cache_creation_input_tokens
        )
        self.cache_read_input_tokens = _as_int(
            usage.get("cache_read_input_tokens"), self.cache_read_input_tokens
        )

    @classmethod
    def from_usage(cls, usage: Any) -> UsageTotals:
        totals = cls()
        totals.apply(usage, include_input=True)
        return totals


def _as_int(value: Any, default: int) -> int:
    if isinstance(value, bool) or value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return default


@dataclass(slots=True)
class StreamSummary:
    usage: UsageTotals
    text: str
    saw_content: bool
    completed: bool
    frames: int
    parse_errors: int
    error: dict[str, Any] | None = None
    tracking_failed: bool = False

    @property
    def is_empty(self) -> bool:
        if self.tracking_failed:
            return False
        return not self.saw_content and self.usage.is_empty


@dataclass(slots=True)
class StreamTracker:
    """Incremental parser over a server-sent-events byte stream.

    ``feed`` never alters or withholds bytes; it only observes them. Frames are
    the complete ``data: <json>`` lines seen so far, so a frame split across
    chunks is parsed once its terminating newline arrives. An unexpected
    failure while observing stops tracking for the rest of the stream.
    """

    request_id: str = ""
    usage: UsageTotals = field(default_factory=UsageTotals)
    saw_content: bool = False
    completed: bool = False
    frames: int = 0
    parse_errors: int = 0
    error: dict[str, Any] | None = None
    failed: bool = False
    _buffer: bytearray = field(default_factory=bytearray)
    _text: list[str] = field(default_factory=list)

    def feed(self, chunk: bytes) -> None:
        if not chunk or self.failed:
            return
        self._buffer.extend(chunk)
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            line = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]
            self._observe(line)
            if self.failed:
                break

    def finish(self) -> StreamSummary:
        if self._buffer and not self.failed:
            line = bytes(self._buffer)
            self._buffer.clear()
            self._observe(line)
        return StreamSummary(
            usage=self.usage,
            text="".join(self._text),
            saw_content=self.saw_content,
            completed=self.completed,
            frames=self.frames,
            parse_errors=self.parse_errors,
            error=self.error,
            tracking_failed=self.failed,
        )

    def _observe(self, line: bytes) -> None:
        try:
            self._handle_line(line)
        except Exception as exc:
            self.failed = True
            self._buffer.clear()
            logger.warning(
                "stream_tracker_failed request_id=%s error_type=%s error=%s",
                self.request_id,
                exc.__class__.__name__,
                exc,
            )

    def _handle_line(self, line: bytes) -> None:
        line = line.rstrip(b"\r")
        if not line.startswith(DATA_PREFIX):
            return
        payload = line[len(DATA_PREFIX) :].strip()
        if not payload:
            return
        self.frames += 1
        try:
            decoded = payload.decode("utf-8")
            if decoded == DONE_SENTINEL:
                self.completed = True
                return
            event = json.loads(decoded)
        except (UnicodeDecodeError, ValueError, RecursionError) as exc:
            self.parse_errors += 1
            logger.warning(
                "stream_frame_parse_error request_id=%s error=%s bytes=%d",
                self.request_id,
                exc.__class__.__name__,
                len(payload),
            )
            return
        if isinstance(event, dict):
            self._handle_event(event)

    def _handle_event(self, event: dict[str, Any]) -> None:
        event_type = event.get("type")
        if event_type == "message_start":
            message = event.get("message")
            if isinstance(message, dict):
                self.usage.apply(message.get("usage"), include_input=True)
                content = message.get("content")
                if isinstance(content, list) and content:
                    self.saw_content = True
        elif event_type == "content_block_start":
            self.saw_content = True
            block = event.get("content_block")
            if isinstance(block, dict) and isinstance(block.get("text"), str):
                self._text.append(block["text"])
        elif event_type == "content_block_delta":
            self.saw_content = True
            delta = event.get("delta")
            if isinstance(delta, dict):
                text = delta.get("text")
                if isinstance(text, str):
                    self._text.append(text)
        elif event_type == "message_delta":
            self.usage.apply(event.get("usage"), include_input=False)
        elif event_type == "message_stop":
            self.completed = True
        elif event_type == "error":
            error = event.get("error")
            self.error = error if isinstance(error, dict) else {"message": str(error)}


async def tee_stream(
    chunks: AsyncIterator[bytes], tracker: StreamTracker
) -> AsyncIterator[bytes]:
    """Yield each upstream chunk unchanged, then let ``tracker`` observe it."""
    async for chunk in chunks:
        yield chunk
        tracker.feed(chunk)
