from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable

import tiktoken

from prompttrain_gateway.errors import InvalidRequestError
from prompttrain_gateway.runtime.bounded_maps import ExpiringLruMap

logger = logging.getLogger("uvicorn.error")

Tokenizer = Callable[[str], int]


@lru_cache(maxsize=1)
def _default_encoding() -> tiktoken.Encoding:
    return tiktoken.get_encoding("cl100k_base")


def default_tokenizer(text: str) -> int:
    return len(_default_encoding().encode(text, disallowed_special=()))


def _text_segments(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return " ".join(
            str(part.get("text") or "")
            for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        )
    return ""


def serialize_for_count(body: dict[str, Any]) -> str:
    """Flatten a messages request into the plain text the tokenizer sees.

    The system prompt comes first, then one ``Human: ...`` / ``Assistant: ...``
    entry per message, entries separated by a blank line.
    """
    messages = body.get("messages")
    if not isinstance(messages, list):
        raise InvalidRequestError("Request body must contain a 'messages' array.")

    parts: list[str] = []
    system_text = _text_segments(body.get("system"))
    if system_text:
        parts.append(system_text)
    for message in messages:
        if not isinstance(message, dict):
            continue
        role = "Human" if message.get("role") == "user" else "Assistant"
        parts.append(f"{role}: {_text_segments(message.get('content'))}")
    return "\n\n".join(parts)


@dataclass(slots=True)
class _InflightCount:
    task: asyncio.Task[int]
    started_at: float


class TokenCountApproximator:
    """Approximate input-token counts with caching and in-flight coalescing.

    Counts are an estimate: the local tokenizer is not the upstream model's.
    """

    def __init__(
        self,
        *,
        tokenizer: Tokenizer = default_tokenizer,
        max_entries: int = 1000,
        ttl_seconds: float = 3600.0,
        inflight_timeout_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._tokenizer = tokenizer
        self._clock = clock
        self._cache: ExpiringLruMap[str, int] = ExpiringLruMap(
            max_keys=max_entries, ttl_seconds=ttl_seconds, clock=clock
        )
        self._inflight: dict[str, _InflightCount] = {}
        self._inflight_timeout_seconds = max(0.1, float(inflight_timeout_seconds))
        self.tokenizer_calls = 0

    async def count(self, body: dict[str, Any]) -> int:
        text = serialize_for_count(body)
        key = hashlib.sha256(text.encode("utf-8")).hexdigest()

        cached = self._cache.get(key)
        if cached is not None:
            return cached

        now = self._clock()
        inflight = self._inflight.get(key)
        if inflight is not None and now - inflight.started_at > self._inflight_timeout_seconds:
            logger.warning("token_count_inflight_stale key=%s", key[:12])
            del self._inflight[key]
            inflight = None

        if inflight is None:
            task = asyncio.create_task(self._compute(key, text), name="token-count")
            inflight = _InflightCount(task=task, started_at=now)
            self._inflight[key] = inflight
            task.add_done_callback(lambda done, entry=inflight: self._release(key, entry, done))

        return await asyncio.shield(inflight.task)

    async def _compute(self, key: str, text: str) -> int:
        self.tokenizer_calls += 1
        started = time.perf_counter()
        tokens = await asyncio.to_thread(self._tokenizer, text)
        self._cache.set(key, int(tokens))
        logger.debug(
            "token_count_computed chars=%d tokens=%d duration_ms=%.2f",
            len(text),
            tokens,
            (time.perf_counter() - started) * 1000.0,
        )
        return int(tokens)

    def _release(self, key: str, entry: _InflightCount, task: asyncio.Task[int]) -> None:
        if self._inflight.get(key) is entry:
            del self._inflight[key]
        if not task.cancelled():
            task.exception()

    def sweep(self) -> int:
        return self._cache.prune()
