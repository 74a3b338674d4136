from __future__ import annotations

import logging
from typing import Any, AsyncIterator

import httpx

from prompttrain_gateway.errors import EmptyResponseError, InvalidRequestError
from prompttrain_gateway.gateway.account_selector import AuthResult
from prompttrain_gateway.gateway.model_mapping import resolve_cloud_target
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
from prompttrain_gateway.settings import DEFAULT_CLOUD_RUNTIME_ENDPOINT

CLOUD_RUNTIME_ANTHROPIC_VERSION = "bedrock-2023-05-31"
# Body fields the invoke contract carries in the URL instead.
STRIPPED_BODY_FIELDS = ("stream", "model")

logger = logging.getLogger("uvicorn.error")


def to_cloud_body(body: dict[str, Any]) -> dict[str, Any]:
    translated = {key: value for key, value in body.items() if key not in STRIPPED_BODY_FIELDS}
    translated["anthropic_version"] = CLOUD_RUNTIME_ANTHROPIC_VERSION
    return translated


def is_empty_response(body: dict[str, Any]) -> bool:
    content = body.get("content")
    has_content = isinstance(content, list) and len(content) > 0
    return not has_content and UsageTotals.from_usage(body.get("usage")).is_empty


class CloudRuntimeGateway:
    """Invokes the cloud-runtime upstream, translating the request contract.

    The model moves from the body into the URL, the region is resolved per
    request, and ``stream`` selects the invoke endpoint rather than a body flag.
    """

    kind = ProviderKind.CLOUD_RUNTIME

    def __init__(
        self,
        transport: UpstreamTransport,
        *,
        default_region: str = "us-east-1",
        endpoint_template: str = DEFAULT_CLOUD_RUNTIME_ENDPOINT,
    ) -> None:
        self._transport = transport
        self._default_region = default_region
        self._endpoint_template = endpoint_template

    def build_url(self, model: str, *, region_hint: str | None, stream: bool) -> tuple[str, str]:
        region, model_id = resolve_cloud_target(
            model, credential_region=region_hint, default_region=self._default_region
        )
        base = self._endpoint_template.format(region=region).rstrip("/")
        action = "invoke-with-response-stream" if stream else "invoke"
        return f"{base}/model/{model_id}/{action}", region

    async def forward(self, request: GatewayRequest, auth: AuthResult) -> httpx.Response:
        model = request.model
        if not model:
            raise InvalidRequestError("Request body must name a 'model'.")
        url, region = self.build_url(
            model, region_hint=auth.credential.region, stream=request.stream
        )
        body = request.body if request.passthrough_body else to_cloud_body(request.body)
        logger.info(
            "cloud_runtime_invoke request_id=%s credential=%s region=%s stream=%s",
            request.request_id,
            auth.credential_name,
            region,
            request.stream,
        )
        return await self._transport.send(
            url=url,
            body=body,
            headers=build_upstream_headers(request.headers, auth.headers, stream=request.stream),
            stream=request.stream,
            request_id=request.request_id,
            target=f"cloud_runtime:{auth.credential_name}",
        )

    async def process_response(
        self, request: GatewayRequest, response: httpx.Response
    ) -> ProcessedResponse:
        body = read_json_body(response, target="cloud_runtime")
        if is_empty_response(body):
            logger.warning(
                "cloud_runtime_empty_response request_id=%s status=%d",
                request.request_id,
                response.status_code,
            )
            raise EmptyResponseError(
                "Cloud runtime returned a response with no content and no usage.",
                status=502,
                body=response.text[:500],
                context={"request_id": request.request_id},
            )
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
            target="cloud_runtime",
            on_complete=on_complete,
            reject_empty=True,
        )
