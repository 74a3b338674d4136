from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Callable

import httpx
import pytest

from prompttrain_gateway.errors import GatewayError
from prompttrain_gateway.gateway.account_selector import (
    AccountSelector,
    AuthResult,
    RoutingContext,
    build_auth_headers,
)
from prompttrain_gateway.gateway.service import GatewayService
from prompttrain_gateway.gateway.upstream.base import GatewayRequest, RetryPolicy, UpstreamTransport
from prompttrain_gateway.gateway.upstream.cloud_runtime import CloudRuntimeGateway
from prompttrain_gateway.gateway.upstream.native import NativeGateway
from prompttrain_gateway.gateway.usage import InMemoryUsageLedger
from prompttrain_gateway.models import Credential, CredentialKind, ProviderKind, RoutingEntity
from prompttrain_gateway.runtime.token_counter import TokenCountApproximator


class SingleCredentialStore:
    def __init__(self, credential: Credential) -> None:
        self.credential = credential

    async def fetch_routing_entity(self, entity_id: str) -> RoutingEntity | None:
        return RoutingEntity(id=entity_id, name=entity_id, credential_ids=[self.credential.id])

    async def credentials_for_routing_entity(self, entity_id: str) -> list[Credential]:
        return [self.credential]

    async def mark_used(self, credential_id: str) -> None:
        return None


class StaticTokens:
    async def get_access_token(self, credential: Credential) -> str:
        return credential.secret or ""


def _credential(provider: ProviderKind) -> Credential:
    return Credential(
        id="acc_1",
        name=f"{provider.value}-key",
        kind=CredentialKind.API_KEY,
        provider_kind=provider,
        api_key="secret-key",
    )


def _service(
    handler: Callable[[httpx.Request], httpx.Response],
    provider: ProviderKind,
    ledger: InMemoryUsageLedger,
) -> GatewayService:
    transport = UpstreamTransport(
        httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        timeout_seconds=5,
        retry=RetryPolicy(max_attempts=1, base_delay_seconds=0),
    )
    return GatewayService(
        selector=AccountSelector(
            store=SingleCredentialStore(_credential(provider)), tokens=StaticTokens()
        ),
        gateways={
            ProviderKind.NATIVE: NativeGateway(transport, base_url="https://native.example.test"),
            ProviderKind.CLOUD_RUNTIME: CloudRuntimeGateway(
                transport, endpoint_template="https://runtime.{region}.example.test"
            ),
        },
        token_counter=TokenCountApproximator(tokenizer=lambda text: len(text.split())),
        usage_ledger=ledger,
    )


def _body(**overrides: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "model": "claude-haiku-4-5",
        "max_tokens": 16,
        "messages": [{"role": "user", "content": "one two three"}],
    }
    body.update(overrides)
    return body


def test_forward_returns_body_and_records_usage() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "content": [{"type": "text", "text": "hi"}],
                "usage": {"input_tokens": 8, "output_tokens": 3, "cache_read_input_tokens": 2},
            },
        )

    async def _run() -> None:
        ledger = InMemoryUsageLedger()
        service = _service(handler, ProviderKind.CLOUD_RUNTIME, ledger)
        auth = await service.authenticate(RoutingContext(routing_key="train-a", request_id="r1"))
        result = await service.forward(GatewayRequest(body=_body(), request_id="r1"), auth)

        assert result.status == 200
        assert result.body is not None and result.body["content"][0]["text"] == "hi"
        assert result.headers["x-gateway-request-id"] == "r1"
        assert result.headers["x-gateway-credential"] == "cloud_runtime-key"
        assert result.headers["x-gateway-provider"] == "cloud_runtime"
        event = ledger.events[0]
        assert event.routing_entity_id == "train-a"
        assert (event.input_tokens, event.output_tokens, event.cache_tokens) == (8, 3, 2)
        assert event.stream is False

    asyncio.run(_run())


def test_streamed_forward_records_usage_when_stream_completes() -> None:
    events = [
        {"type": "message_start", "message": {"usage": {"input_tokens": 50}}},
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "x"}},
        {"type": "message_delta", "usage": {"output_tokens": 12}},
        {"type": "message_stop"},
    ]
    payload = b"".join(f"data: {json.dumps(event)}\n\n".encode("utf-8") for event in events)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, headers={"content-type": "text/event-stream", "request-id": "up-1"}, content=payload
        )

    async def _run() -> None:
        ledger = InMemoryUsageLedger()
        service = _service(handler, ProviderKind.NATIVE, ledger)
        auth = await service.authenticate(RoutingContext(routing_key="train-a"))
        result = await service.forward(
            GatewayRequest(body=_body(stream=True), request_id="r-stream"), auth
        )

        assert result.stream is not None
        assert result.headers["content-type"] == "text/event-stream"
        assert result.headers["request-id"] == "up-1"
        assert ledger.events == []
        received = b"".join([chunk async for chunk in result.stream])

        assert received == payload
        assert len(ledger.events) == 1
        assert ledger.events[0].input_tokens == 50
        assert ledger.events[0].output_tokens == 12
        assert ledger.events[0].stream is True

    asyncio.run(_run())


def test_count_tokens_routes_by_provider() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"input_tokens": 99})

    async def _run() -> None:
        cloud = _service(handler, ProviderKind.CLOUD_RUNTIME, InMemoryUsageLedger())
        cloud_auth = AuthResult(
            credential=_credential(ProviderKind.CLOUD_RUNTIME),
            routing_entity_id="train-a",
            headers=build_auth_headers(_credential(ProviderKind.CLOUD_RUNTIME), "secret-key"),
        )
        assert await cloud.count_tokens(_body(), cloud_auth, request_id="r") == 4
        assert await cloud.count_tokens(_body(), None) == 4
        assert captured == []

        native = _service(handler, ProviderKind.NATIVE, InMemoryUsageLedger())
        native_auth = await native.authenticate(RoutingContext(routing_key="train-a"))
        assert await native.count_tokens(_body(), native_auth, request_id="r") == 99
        assert len(captured) == 1

    asyncio.run(_run())


def test_gateway_for_unregistered_provider_fails() -> None:
    service = GatewayService(
        selector=AccountSelector(
            store=SingleCredentialStore(_credential(ProviderKind.NATIVE)), tokens=StaticTokens()
        ),
        gateways={},
        token_counter=TokenCountApproximator(tokenizer=lambda text: 1),
    )

    with pytest.raises(GatewayError):
        service.gateway_for(ProviderKind.CLOUD_RUNTIME)


class CloseRecordingStream(httpx.AsyncByteStream):
    def __init__(self, payload: bytes) -> None:
        self.payload = payload
        self.closed = 0

    async def __aiter__(self) -> AsyncIterator[bytes]:
        yield self.payload

    async def aclose(self) -> None:
        self.closed += 1


def test_unconsumed_stream_can_still_release_upstream() -> None:
    upstream_stream = CloseRecordingStream(b'data: {"type":"message_stop"}\n\n')

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=upstream_stream)

    async def _run() -> None:
        ledger = InMemoryUsageLedger()
        service = _service(handler, ProviderKind.CLOUD_RUNTIME, ledger)
        auth = await service.authenticate(RoutingContext(routing_key="train-a"))
        result = await service.forward(
            GatewayRequest(body=_body(stream=True), request_id="r-abandoned"), auth
        )

        assert result.stream is not None
        assert result.close is not None
        await result.close()
        await result.close()

        assert upstream_stream.closed == 1
        assert ledger.events == []

    asyncio.run(_run())
