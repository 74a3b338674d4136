from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Mapping, Protocol

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from prompttrain_gateway.errors import EmptyResponseError, UpstreamError, UpstreamTimeoutError
from prompttrain_gateway.gateway.account_selector import AuthResult
from prompttrain_gateway.gateway.stream_tracker import (
    StreamSummary,
    StreamTracker,
    UsageTotals,
    tee_stream,
)
from prompttrain_gateway.models import ProviderKind

HOP_BY_HOP_RESPONSE_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
}

# Never forwarded upstream, whatever the provider.
BLOCKED_REQUEST_HEADERS = {
    "authorization",
    "host",
    "content-length",
    "connection",
    "x-api-key",
    "accept-encoding",
    "msl-project-id",
    "msl-account",
    "keep-alive",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

RETRYABLE_CONNECT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class GatewayRequest:
    body: dict[str, Any]
    headers: Mapping[str, str] = field(default_factory=dict)
    request_id: str = ""
    model_override: str | None = None
    stream_override: bool | None = None
    passthrough_body: bool = False

    @property
    def stream(self) -> bool:
        if self.stream_override is not None:
            return self.stream_override
        return bool(self.body.get("stream"))

    @property
    def model(self) -> str | None:
        if self.model_override:
            return self.model_override
        model = self.body.get("model")
        return str(model) if model else None


@dataclass(slots=True)
class ProcessedResponse:
    status: int
    headers: dict[str, str]
    body: dict[str, Any]
    usage: UsageTotals


StreamCompleteHook = Callable[[StreamSummary], None]


class UpstreamGateway(Protocol):
    kind: ProviderKind

    async def forward(self, request: GatewayRequest, auth: AuthResult) -> httpx.Response: ...

    async def process_response(
        self, request: GatewayRequest, response: httpx.Response
    ) -> ProcessedResponse: ...

    def process_stream(
        self,
        request: GatewayRequest,
        response: httpx.Response,
        on_complete: StreamCompleteHook | None = None,
    ) -> AsyncIterator[bytes]: ...


def filter_response_headers(headers: httpx.Headers) -> dict[str, str]:
    filtered: dict[str, str] = {}
    for name, value in headers.items():
        if name.lower() not in HOP_BY_HOP_RESPONSE_HEADERS:
            filtered[name] = value
    return filtered


def build_upstream_headers(
    incoming: Mapping[str, str],
    auth_headers: Mapping[str, str],
    *,
    stream: bool,
) -> dict[str, str]:
    headers: dict[str, str] = {}
    for name, value in incoming.items():
        if name.lower() in BLOCKED_REQUEST_HEADERS:
            continue
        headers[name] = value
    for name, value in auth_headers.items():
        for existing in [key for key in headers if key.lower() == name.lower()]:
            del headers[existing]
        headers[name] = value
    if not any(key.lower() == "content-type" for key in headers):
        headers["Content-Type"] = "application/json"
    if not any(key.lower() == "accept" for key in headers):
        headers["Accept"] = "text/event-stream" if stream else "application/json"
    headers["Accept-Encoding"] = "identity"
    return headers


def upstream_error_from_body(status: int, raw: bytes, *, target: str) -> UpstreamError:
    text = raw.decode("utf-8", errors="replace")
    error_type: str | None = None
    message = text.strip()[:500] or f"HTTP {status}"
    try:
        parsed = json.loads(text)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        error = parsed.get("error")
        if isinstance(error, dict):
            error_type = str(error.get("type") or "") or None
            message = str(error.get("message") or message)
        elif isinstance(parsed.get("message"), str):
            message = parsed["message"]
    return UpstreamError(
        f"Upstream {target} returned {status}: {message}",
        status=status,
        body=text,
        error_type=error_type,
        context={"target": target},
    )


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_repr = repr(exc)
    details: dict[str, Any] = {
        "error": str(exc).strip() or error_repr,
        "error_type": exc.__class__.__name__.strip() or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    return details


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    retry_statuses: frozenset[int] = frozenset({503, 529})


class UpstreamTransport:
    """Sends one upstream call under a hard timeout with bounded retries.

    Only failures that happen before the upstream could have acted on the
    request are retried: connect-phase errors and overload statuses. Read-phase
    errors and 502/504 responses surface immediately.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        timeout_seconds: float,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.client = client
        self._timeout_seconds = max(0.1, float(timeout_seconds))
        self._retry = retry or RetryPolicy()

    def _is_retryable(self, exc: BaseException) -> bool:
        if isinstance(exc, RETRYABLE_CONNECT_ERRORS):
            return True
        return (
            isinstance(exc, UpstreamError)
            and not isinstance(exc, EmptyResponseError)
            and exc.status in self._retry.retry_statuses
        )

    async def send(
        self,
        *,
        url: str,
        body: dict[str, Any],
        headers: dict[str, str],
        stream: bool,
        request_id: str,
        target: str,
        timeout_seconds: float | None = None,
    ) -> httpx.Response:
        def log_retry(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            exc = outcome.exception() if outcome is not None else None
            logger.warning(
                "upstream_retry request_id=%s target=%s attempt=%d error_type=%s error=%s",
                request_id,
                target,
                retry_state.attempt_number,
                exc.__class__.__name__ if exc is not None else None,
                str(exc) if exc is not None else None,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self._retry.max_attempts)),
            wait=wait_exponential(
                multiplier=self._retry.base_delay_seconds,
                max=self._retry.max_delay_seconds,
            ),
            retry=retry_if_exception(self._is_retryable),
            before_sleep=log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._send_once(
                        url=url,
                        body=body,
                        headers=headers,
                        stream=stream,
                        request_id=request_id,
                        target=target,
                        timeout_seconds=timeout_seconds or self._timeout_seconds,
                    )
        except httpx.TimeoutException as exc:
            details = _request_error_details(exc)
            logger.warning(
                "upstream_timeout request_id=%s target=%s error_type=%s",
                request_id,
                target,
                details["error_type"],
            )
            raise UpstreamTimeoutError(
                f"Upstream {target} timed out ({details['error_type']}).",
                context={"target": target, "request_id": request_id},
            ) from exc
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                "upstream_request_error request_id=%s target=%s error_type=%s error=%s",
                request_id,
                target,
                details["error_type"],
                details["error"],
            )
            raise UpstreamError(
                f"Could not reach upstream {target} ({details['error_type']}): {details['error']}",
                status=502,
                context={"target": target, "request_id": request_id},
            ) from exc
        raise AssertionError("unreachable")

    async def _send_once(
        self,
        *,
        url: str,
        body: dict[str, Any],
        headers: dict[str, str],
        stream: bool,
        request_id: str,
        target: str,
        timeout_seconds: float,
    ) -> httpx.Response:
        request = self.client.build_request("POST", url, json=body, headers=headers)
        started = time.perf_counter()

        async def exchange() -> httpx.Response:
            response = await self.client.send(request, stream=True)
            if not stream or response.status_code >= 400:
                try:
                    await response.aread()
                finally:
                    await response.aclose()
            return response

        try:
            response = await asyncio.wait_for(exchange(), timeout=timeout_seconds)
        except TimeoutError as exc:
            raise UpstreamTimeoutError(
                f"Upstream {target} exceeded the {timeout_seconds:.1f}s hard timeout.",
                context={"target": target, "request_id": request_id},
            ) from exc

        logger.info(
            "upstream_connected request_id=%s target=%s status=%d connect_ms=%.2f",
            request_id,
            target,
            response.status_code,
            (time.perf_counter() - started) * 1000.0,
        )
        if response.status_code >= 400:
            raise upstream_error_from_body(response.status_code, response.content, target=target)
        return response


def read_json_body(response: httpx.Response, *, target: str) -> dict[str, Any]:
    try:
        body = json.loads(response.content)
    except ValueError as exc:
        raise UpstreamError(
            f"Upstream {target} returned a non-JSON body.",
            status=502,
            body=response.text[:500],
            context={"target": target},
        ) from exc
    if not isinstance(body, dict):
        raise UpstreamError(
            f"Upstream {target} returned a non-object JSON body.",
            status=502,
            body=response.text[:500],
            context={"target": target},
        )
    return body


async def iter_tracked_stream(
    response: httpx.Response,
    *,
    request_id: str,
    target: str,
    on_complete: StreamCompleteHook | None,
    reject_empty: bool,
) -> AsyncIterator[bytes]:
    """Forward upstream bytes verbatim while a ``StreamTracker`` observes them."""
    tracker = StreamTracker(request_id=request_id)
    try:
        try:
            async for chunk in tee_stream(response.aiter_raw(), tracker):
                yield chunk
        except httpx.TimeoutException as exc:
            logger.warning("upstream_stream_timeout request_id=%s target=%s", request_id, target)
            raise UpstreamTimeoutError(
                f"Upstream {target} stream timed out.",
                context={"target": target, "request_id": request_id},
            ) from exc
        except httpx.RequestError as exc:
            logger.warning(
                "upstream_stream_error request_id=%s target=%s error=%s",
                request_id,
                target,
                exc,
            )
            raise UpstreamError(
                f"Upstream {target} stream failed: {exc}",
                status=502,
                context={"target": target, "request_id": request_id},
            ) from exc
        summary = tracker.finish()
        logger.info(
            (
                "upstream_stream_complete request_id=%s target=%s frames=%d parse_errors=%d "
                "input_tokens=%d output_tokens=%d cache_tokens=%d"
            ),
            request_id,
            target,
            summary.frames,
            summary.parse_errors,
            summary.usage.input_tokens,
            summary.usage.output_tokens,
            summary.usage.cache_tokens,
        )
        if reject_empty and summary.is_empty:
            logger.warning("upstream_empty_stream request_id=%s target=%s", request_id, target)
            raise EmptyResponseError(
                f"Upstream {target} stream ended with no content and no usage.",
                status=502,
                context={"target": target, "request_id": request_id},
            )
        if on_complete is not None:
            on_complete(summary)
    finally:
        await response.aclose()
