from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping

from prompttrain_gateway.errors import GatewayError
from prompttrain_gateway.gateway.account_selector import AccountSelector, AuthResult, RoutingContext
from prompttrain_gateway.gateway.stream_tracker import StreamSummary, UsageTotals
from prompttrain_gateway.gateway.upstream.base import GatewayRequest, UpstreamGateway
from prompttrain_gateway.gateway.upstream.native import NativeGateway
from prompttrain_gateway.gateway.usage import UsageLedger
from prompttrain_gateway.models import ProviderKind, UsageEvent
from prompttrain_gateway.runtime.token_counter import TokenCountApproximator

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class GatewayResponse:
    status: int
    headers: dict[str, str]
    body: dict[str, Any] | None = None
    stream: AsyncIterator[bytes] | None = None
    usage: UsageTotals | None = None
    # Releases the upstream connection even if ``stream`` is never iterated.
    close: Callable[[], Awaitable[None]] | None = None


class GatewayService:
    """Authenticate, forward and count tokens for one inbound request."""

    def __init__(
        self,
        *,
        selector: AccountSelector,
        gateways: Mapping[ProviderKind, UpstreamGateway],
        token_counter: TokenCountApproximator,
        usage_ledger: UsageLedger | None = None,
    ) -> None:
        self._selector = selector
        self._gateways = dict(gateways)
        self._token_counter = token_counter
        self._usage_ledger = usage_ledger

    def gateway_for(self, kind: ProviderKind) -> UpstreamGateway:
        gateway = self._gateways.get(kind)
        if gateway is None:
            raise GatewayError(f"No upstream gateway registered for provider '{kind.value}'.")
        return gateway

    async def authenticate(self, context: RoutingContext) -> AuthResult:
        return await self._selector.authenticate(context)

    async def forward(self, request: GatewayRequest, auth: AuthResult) -> GatewayResponse:
        gateway = self.gateway_for(auth.provider_kind)
        upstream = await gateway.forward(request, auth)
        headers = {
            "x-gateway-request-id": request.request_id,
            "x-gateway-credential": auth.credential_name,
            "x-gateway-provider": auth.provider_kind.value,
        }

        if request.stream:
            from_upstream = {
                key: value
                for key, value in upstream.headers.items()
                if key.lower() in {"content-type", "request-id", "x-amzn-requestid"}
            }

            def on_complete(summary: StreamSummary) -> None:
                self._emit_usage(request, auth, summary.usage)

            return GatewayResponse(
                status=upstream.status_code,
                headers={**from_upstream, **headers},
                stream=gateway.process_stream(request, upstream, on_complete),
                close=upstream.aclose,
            )

        processed = await gateway.process_response(request, upstream)
        self._emit_usage(request, auth, processed.usage)
        return GatewayResponse(
            status=processed.status,
            headers={**processed.headers, **headers},
            body=processed.body,
            usage=processed.usage,
        )

    async def count_tokens(
        self,
        body: dict[str, Any],
        auth: AuthResult | None = None,
        *,
        request_id: str = "",
    ) -> int:
        if auth is not None and auth.provider_kind == ProviderKind.NATIVE:
            gateway = self._gateways.get(ProviderKind.NATIVE)
            if isinstance(gateway, NativeGateway):
                return await gateway.count_tokens(body, auth, request_id=request_id)
        count = await self._token_counter.count(body)
        logger.info("token_count_approximated request_id=%s input_tokens=%d", request_id, count)
        return count

    def _emit_usage(self, request: GatewayRequest, auth: AuthResult, usage: UsageTotals) -> None:
        ledger = self._usage_ledger
        if ledger is None:
            return
        event = UsageEvent(
            request_id=request.request_id,
            credential_id=auth.credential.id,
            routing_entity_id=auth.routing_entity_id,
            provider_kind=auth.provider_kind.value,
            model=request.model,
            stream=request.stream,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cache_tokens=usage.cache_tokens,
        )
        try:
            ledger.record(event)
        except Exception as exc:
            logger.debug(
                "usage_ledger_failed request_id=%s error=%s", request.request_id, exc
            )
