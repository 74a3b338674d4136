from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Protocol

from prompttrain_gateway.errors import RefreshFailure
from prompttrain_gateway.gateway.oauth import OAuthTokens
from prompttrain_gateway.models import Credential, CredentialKind

logger = logging.getLogger("uvicorn.error")


class TokenExchanger(Protocol):
    async def refresh(self, refresh_token: str) -> OAuthTokens: ...


class OAuthTokenWriter(Protocol):
    async def replace_oauth_tokens(
        self,
        credential_id: str,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_at: int | None,
        scopes: list[str] | None = None,
    ) -> Credential: ...


@dataclass(slots=True)
class NegativeCacheEntry:
    reason: str
    recorded_at: float


@dataclass(slots=True)
class _InflightRefresh:
    task: asyncio.Task[Credential]
    started_at: float


@dataclass(slots=True)
class RefreshMetrics:
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    concurrent_waits: int = 0
    total_refresh_seconds: float = 0.0


class RefreshCoordinator:
    """Keeps OAuth access tokens current with one renewal per credential at a time.

    Per credential the state moves ``idle -> refreshing -> idle`` on success or
    ``-> cooldown -> idle`` on failure. Callers arriving while a renewal is in
    flight await the same task; callers arriving during cooldown fail at once
    with the cached reason. Nothing here retries on its own.
    """

    def __init__(
        self,
        *,
        store: OAuthTokenWriter,
        exchanger: TokenExchanger,
        buffer_seconds: float = 60.0,
        cooldown_seconds: float = 5.0,
        refresh_timeout_seconds: float = 60.0,
        sweep_interval_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._exchanger = exchanger
        self._buffer_seconds = max(0.0, float(buffer_seconds))
        self._cooldown_seconds = max(0.0, float(cooldown_seconds))
        self._refresh_timeout_seconds = max(0.1, float(refresh_timeout_seconds))
        self._sweep_interval_seconds = max(0.1, float(sweep_interval_seconds))
        self._clock = clock
        self._inflight: dict[str, _InflightRefresh] = {}
        self._failures: dict[str, NegativeCacheEntry] = {}
        self._fresh: dict[str, Credential] = {}
        self._metrics = RefreshMetrics()
        self._task: asyncio.Task[None] | None = None

    def is_due(self, credential: Credential) -> bool:
        return credential.is_due(self._clock(), self._buffer_seconds)

    async def get_access_token(self, credential: Credential) -> str:
        if credential.kind == CredentialKind.API_KEY:
            if not credential.api_key:
                raise RefreshFailure(
                    f"Credential '{credential.name}' has no api key.",
                    credential=credential.name,
                )
            return credential.api_key

        now = self._clock()
        if not credential.is_due(now, self._buffer_seconds):
            return credential.access_token or ""

        key = credential.id
        # Another caller in this process may already hold a newer pair than the
        # copy passed in.
        fresh = self._fresh.get(key)
        if fresh is not None and not fresh.is_due(now, self._buffer_seconds):
            return fresh.access_token or ""

        failure = self._failures.get(key)
        if failure is not None:
            if now - failure.recorded_at < self._cooldown_seconds:
                logger.info(
                    "oauth_refresh_cooldown credential=%s age_seconds=%.3f",
                    credential.name,
                    now - failure.recorded_at,
                )
                raise RefreshFailure(
                    f"OAuth refresh for '{credential.name}' failed recently: {failure.reason}",
                    credential=credential.name,
                    cached=True,
                )
            del self._failures[key]

        inflight = self._inflight.get(key)
        if inflight is not None:
            self._metrics.concurrent_waits += 1
            logger.debug(
                "oauth_refresh_join credential=%s waits=%d",
                credential.name,
                self._metrics.concurrent_waits,
            )
        else:
            if not credential.refresh_token:
                raise RefreshFailure(
                    f"Credential '{credential.name}' has no refresh token.",
                    credential=credential.name,
                )
            task = asyncio.create_task(
                self._refresh(credential), name=f"oauth-refresh-{credential.name}"
            )
            inflight = _InflightRefresh(task=task, started_at=now)
            self._inflight[key] = inflight
            task.add_done_callback(partial(self._on_refresh_done, key, inflight))

        # A cancelled caller must not cancel the renewal other callers share.
        refreshed = await asyncio.shield(inflight.task)
        return refreshed.access_token or ""

    async def _refresh(self, credential: Credential) -> Credential:
        key = credential.id
        started = self._clock()
        self._metrics.attempts += 1
        logger.info("oauth_refresh_start credential=%s", credential.name)
        try:
            tokens = await self._exchanger.refresh(credential.refresh_token or "")
            updated = await self._store.replace_oauth_tokens(
                key,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token or credential.refresh_token,
                expires_at=tokens.expires_at,
                scopes=tokens.scopes or None,
            )
        except Exception as exc:
            reason = str(exc) or exc.__class__.__name__
            self._metrics.failures += 1
            self._failures[key] = NegativeCacheEntry(reason=reason, recorded_at=self._clock())
            logger.warning(
                "oauth_refresh_error credential=%s error_type=%s reason=%s",
                credential.name,
                exc.__class__.__name__,
                reason,
            )
            raise RefreshFailure(
                f"OAuth refresh for '{credential.name}' failed: {reason}",
                credential=credential.name,
            ) from exc
        finally:
            self._metrics.total_refresh_seconds += max(0.0, self._clock() - started)

        self._metrics.successes += 1
        self._failures.pop(key, None)
        self._fresh[key] = updated
        logger.info(
            "oauth_refresh_success credential=%s expires_at=%s",
            credential.name,
            updated.expires_at,
        )
        return updated

    def _on_refresh_done(
        self, key: str, entry: _InflightRefresh, task: asyncio.Task[Credential]
    ) -> None:
        if self._inflight.get(key) is entry:
            del self._inflight[key]
        if not task.cancelled():
            # Marks the exception retrieved when every caller has gone away.
            task.exception()

    def sweep(self) -> dict[str, int]:
        now = self._clock()
        stale = [
            key
            for key, entry in self._inflight.items()
            if now - entry.started_at > self._refresh_timeout_seconds
        ]
        for key in stale:
            del self._inflight[key]
            logger.warning("oauth_refresh_stale_dropped credential_id=%s", key)

        expired_failures = [
            key
            for key, entry in self._failures.items()
            if now - entry.recorded_at >= self._cooldown_seconds
        ]
        for key in expired_failures:
            del self._failures[key]

        due_fresh = [
            key
            for key, credential in self._fresh.items()
            if credential.is_due(now, self._buffer_seconds)
        ]
        for key in due_fresh:
            del self._fresh[key]

        snapshot = self.metrics()
        logger.info(
            (
                "oauth_refresh_sweep stale_dropped=%d failures_pruned=%d attempts=%d "
                "successes=%d failures=%d concurrent_waits=%d"
            ),
            len(stale),
            len(expired_failures),
            snapshot["attempts"],
            snapshot["successes"],
            snapshot["failures"],
            snapshot["concurrent_waits"],
        )
        return {"stale_dropped": len(stale), "failures_pruned": len(expired_failures)}

    def metrics(self) -> dict[str, Any]:
        metrics = self._metrics
        return {
            "attempts": metrics.attempts,
            "successes": metrics.successes,
            "failures": metrics.failures,
            "concurrent_waits": metrics.concurrent_waits,
            "total_refresh_seconds": round(metrics.total_refresh_seconds, 6),
            "average_refresh_seconds": (
                round(metrics.total_refresh_seconds / metrics.attempts, 6)
                if metrics.attempts
                else 0.0
            ),
            "success_rate": (
                round(metrics.successes / metrics.attempts, 4) if metrics.attempts else 0.0
            ),
            "active_refreshes": len(self._inflight),
            "cached_failures": len(self._failures),
        }

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name="oauth-refresh-sweep")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval_seconds)
            try:
                self.sweep()
            except Exception as exc:
                logger.warning("oauth_refresh_sweep_failed error=%s", str(exc))
