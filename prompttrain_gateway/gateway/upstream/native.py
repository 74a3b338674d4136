from __future__ import annotations

import logging
from typing import Any, AsyncIterator

import httpx

from prompttrain_gateway.gateway.account_selector import AuthResult
from prompttrain_gateway.gateway.stream_tracker import UsageTotals
from prompttrain_gateway.gateway.upstream.base import (
    GatewayRequest,
    ProcessedResponse,
    StreamCompleteHook,
    UpstreamTransport,
    build_upstream_headers,
    filter_response_headers,
    iter_tracked_stream,
    read_json_body,
)
from prompttrain_gateway.models import ProviderKind

logger = logging.getLogger("uvicorn.error")


def _merge_beta(incoming: str | None, required: str) -> str:
    values = [item.strip() for item in (incoming or "").split(",") if item.strip()]
    if required not in values:
        values.append(required)
    return ",".join(values)


class NativeGateway:
    """Forwards messages requests to the native API with the body unchanged."""

    kind = ProviderKind.NATIVE

    def __init__(
        self,
        transport: UpstreamTransport,
        *,
        base_url: str,
        api_version: str = "2023-06-01",
        count_tokens_timeout_seconds: float = 30.0,
    ) -> None:
        self._transport = transport
        self._base_url = base_url.rstrip("/")
        self._api_version = api_version
        self._count_tokens_timeout_seconds = count_tokens_timeout_seconds

    def _headers(self, request: GatewayRequest, auth: AuthResult, *, stream: bool) -> dict[str, str]:
        auth_headers = dict(auth.headers)
        beta = auth_headers.pop("anthropic-beta", None)
        headers = build_upstream_headers(request.headers, auth_headers, stream=stream)
        if beta:
            incoming_beta = next(
                (value for key, value in request.headers.items() if key.lower() == "anthropic-beta"),
                None,
            )
            for key in [key for key in headers if key.lower() == "anthropic-beta"]:
                del headers[key]
            headers["anthropic-beta"] = _merge_beta(incoming_beta, beta)
        if not any(key.lower() == "anthropic-version" for key in headers):
            headers["anthropic-version"] = self._api_version
        return headers

    async def forward(self, request: GatewayRequest, auth: AuthResult) -> httpx.Response:
        return await self._transport.send(
            url=f"{self._base_url}/v1/messages",
            body=request.body,
            headers=self._headers(request, auth, stream=request.stream),
            stream=request.stream,
            request_id=request.request_id,
            target=f"native:{auth.credential_name}",
        )

    async def process_response(
        self, request: GatewayRequest, response: httpx.Response
    ) -> ProcessedResponse:
        body = read_json_body(response, target="native")
        return ProcessedResponse(
            status=response.status_code,
            headers=filter_response_headers(response.headers),
            body=body,
            usage=UsageTotals.from_usage(body.get("usage")),
        )

    def process_stream(
        self,
        request: GatewayRequest,
        response: httpx.Response,
        on_complete: StreamCompleteHook | None = None,
    ) -> AsyncIterator[bytes]:
        return iter_tracked_stream(
            response,
            request_id=request.request_id,
            target="native",
            on_complete=on_complete,
            reject_empty=False,
        )

    async def count_tokens(self, body: dict[str, Any], auth: AuthResult, *, request_id: str) -> int:
        count_body = {
            key: value
            for key, value in body.items()
            if key in {"model", "messages", "system", "tools", "tool_choice", "thinking"}
        }
        request = GatewayRequest(body=count_body, request_id=request_id)
        response = await self._transport.send(
            url=f"{self._base_url}/v1/messages/count_tokens",
            body=count_body,
            headers=self._headers(request, auth, stream=False),
            stream=False,
            request_id=request_id,
            target=f"native:{auth.credential_name}",
            timeout_seconds=self._count_tokens_timeout_seconds,
        )
        payload = read_json_body(response, target="native")
        return int(payload.get("input_tokens") or 0)
