from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from sqlalchemy.ext.asyncio import create_async_engine
from starlette.background import BackgroundTask

from prompttrain_gateway.errors import GatewayError, InvalidRequestError
from prompttrain_gateway.gateway.account_selector import AccountSelector, AuthResult, RoutingContext
from prompttrain_gateway.gateway.client_auth import (
    ROUTING_KEY_HEADER,
    ClientAuthenticator,
    requested_account,
)
from prompttrain_gateway.gateway.oauth import OAuthTokenClient
from prompttrain_gateway.gateway.service import GatewayService
from prompttrain_gateway.gateway.upstream.base import (
    GatewayRequest,
    RetryPolicy,
    UpstreamTransport,
)
from prompttrain_gateway.gateway.upstream.cloud_runtime import CloudRuntimeGateway
from prompttrain_gateway.gateway.upstream.native import NativeGateway
from prompttrain_gateway.gateway.usage import JsonlUsageLedger
from prompttrain_gateway.models import ProviderKind
from prompttrain_gateway.runtime.refresh_coordinator import RefreshCoordinator
from prompttrain_gateway.runtime.token_counter import TokenCountApproximator
from prompttrain_gateway.settings import get_settings
from prompttrain_gateway.storage.bootstrap import seed_from_yaml
from prompttrain_gateway.storage.credential_store import CredentialStore

app = FastAPI(
    title="PromptTrain Gateway",
    description="Credential-managing gateway for the native and cloud-runtime messages APIs.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")

GATEWAY_PATH_PREFIXES = ("/v1/", "/model/")
# Headers JSONResponse sets itself.
_JSON_RESPONSE_MANAGED_HEADERS = {"content-type", "content-encoding"}


def _request_id(request: Request) -> str:
    return (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )


def _error_response(exc: GatewayError, request_id: str | None) -> JSONResponse:
    headers = {"x-gateway-request-id": request_id} if request_id else None
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_payload(request_id),
        headers=headers,
    )


@app.middleware("http")
async def client_auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    request_id = _request_id(request)
    request.state.request_id = request_id
    if not request.url.path.startswith(GATEWAY_PATH_PREFIXES):
        return await call_next(request)

    authenticator: ClientAuthenticator | None = getattr(
        app.state, "client_authenticator", None
    )
    if authenticator is None:
        request.state.routing_key = (
            request.headers.get(ROUTING_KEY_HEADER) or get_settings().default_routing_key
        )
        return await call_next(request)
    try:
        request.state.routing_key = await authenticator.resolve_routing_key(request.headers)
    except GatewayError as exc:
        logger.info(
            "client_auth_failed request_id=%s path=%s kind=%s",
            request_id,
            request.url.path,
            exc.kind,
        )
        return _error_response(exc, request_id)
    return await call_next(request)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    log = logger.warning if exc.status_code >= 500 else logger.info
    log(
        "gateway_error request_id=%s path=%s kind=%s status=%d message=%s",
        request_id,
        request.url.path,
        exc.kind,
        exc.status_code,
        exc.message,
    )
    return _error_response(exc, request_id)


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    engine = create_async_engine(settings.database_url)
    store = CredentialStore(engine, encryption_key=settings.credential_encryption_key)
    if settings.database_auto_create:
        await store.create_schema()
    if settings.credentials_bootstrap_path:
        await seed_from_yaml(store, settings.credentials_bootstrap_path)

    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=None,
            connect=max(0.1, settings.upstream_connect_timeout_seconds),
            read=max(0.1, settings.upstream_timeout_seconds),
            write=max(0.1, settings.upstream_timeout_seconds),
            pool=max(0.1, settings.upstream_connect_timeout_seconds),
        ),
        limits=httpx.Limits(max_connections=512, max_keepalive_connections=128),
    )
    refresh_coordinator = RefreshCoordinator(
        store=store,
        exchanger=OAuthTokenClient(
            client=http_client,
            token_url=settings.oauth_token_url,
            client_id=settings.oauth_client_id,
        ),
        buffer_seconds=settings.oauth_refresh_buffer_seconds,
        cooldown_seconds=settings.oauth_refresh_cooldown_seconds,
        refresh_timeout_seconds=settings.oauth_refresh_timeout_seconds,
        sweep_interval_seconds=settings.oauth_refresh_sweep_interval_seconds,
    )
    await refresh_coordinator.start()

    transport = UpstreamTransport(
        http_client,
        timeout_seconds=settings.upstream_timeout_seconds,
        retry=RetryPolicy(
            max_attempts=max(1, settings.upstream_retry_max_attempts),
            base_delay_seconds=max(0.0, settings.upstream_retry_base_delay_seconds),
            max_delay_seconds=max(0.0, settings.upstream_retry_max_delay_seconds),
        ),
    )
    usage_ledger = JsonlUsageLedger(
        path=settings.usage_log_path,
        enabled=settings.usage_log_enabled,
    )
    app.state.settings = settings
    app.state.credential_store = store
    app.state.http_client = http_client
    app.state.refresh_coordinator = refresh_coordinator
    app.state.usage_ledger = usage_ledger
    app.state.client_authenticator = ClientAuthenticator(
        store,
        required=settings.client_auth_required,
        default_routing_key=settings.default_routing_key,
    )
    app.state.gateway_service = GatewayService(
        selector=AccountSelector(store=store, tokens=refresh_coordinator),
        gateways={
            ProviderKind.NATIVE: NativeGateway(
                transport,
                base_url=settings.native_base_url,
                api_version=settings.native_api_version,
                count_tokens_timeout_seconds=settings.native_count_tokens_timeout_seconds,
            ),
            ProviderKind.CLOUD_RUNTIME: CloudRuntimeGateway(
                transport,
                default_region=settings.cloud_runtime_default_region,
                endpoint_template=settings.cloud_runtime_endpoint_template,
            ),
        },
        token_counter=TokenCountApproximator(
            max_entries=settings.token_count_cache_max_entries,
            ttl_seconds=settings.token_count_cache_ttl_seconds,
            inflight_timeout_seconds=settings.token_count_inflight_timeout_seconds,
        ),
        usage_ledger=usage_ledger,
    )
    logger.info(
        (
            "startup complete native_base_url=%s cloud_runtime_region=%s client_auth_required=%s "
            "usage_log_enabled=%s usage_log_path=%s"
        ),
        settings.native_base_url,
        settings.cloud_runtime_default_region,
        settings.client_auth_required,
        settings.usage_log_enabled,
        settings.usage_log_path,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    refresh_coordinator: RefreshCoordinator | None = getattr(
        app.state, "refresh_coordinator", None
    )
    if refresh_coordinator is not None:
        await refresh_coordinator.stop()
    http_client: httpx.AsyncClient | None = getattr(app.state, "http_client", None)
    if http_client is not None:
        await http_client.aclose()
    usage_ledger: JsonlUsageLedger | None = getattr(app.state, "usage_ledger", None)
    if usage_ledger is not None:
        usage_ledger.close()
    store: CredentialStore | None = getattr(app.state, "credential_store", None)
    if store is not None:
        await store.close()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/internal/oauth/metrics")
async def oauth_refresh_metrics() -> dict[str, Any]:
    coordinator: RefreshCoordinator = app.state.refresh_coordinator
    return coordinator.metrics()


async def _read_json_object(request: Request) -> dict[str, Any]:
    try:
        payload = json.loads(await request.body())
    except ValueError as exc:
        raise InvalidRequestError(f"Expected JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise InvalidRequestError("Expected a JSON object request body.")
    return payload


async def _authenticate(request: Request) -> AuthResult:
    service: GatewayService = app.state.gateway_service
    return await service.authenticate(
        RoutingContext(
            routing_key=request.state.routing_key,
            request_id=request.state.request_id,
            account_name=requested_account(request.headers),
        )
    )


async def _forward(gateway_request: GatewayRequest, auth: AuthResult) -> Response:
    service: GatewayService = app.state.gateway_service
    result = await service.forward(gateway_request, auth)
    if result.stream is not None:
        return StreamingResponse(
            result.stream,
            status_code=result.status,
            headers={
                key: value for key, value in result.headers.items() if key.lower() != "content-type"
            },
            media_type=result.headers.get("content-type", "text/event-stream"),
            background=BackgroundTask(result.close) if result.close is not None else None,
        )
    return JSONResponse(
        status_code=result.status,
        content=result.body,
        headers={
            key: value
            for key, value in result.headers.items()
            if key.lower() not in _JSON_RESPONSE_MANAGED_HEADERS
        },
    )


@app.post("/v1/messages")
async def messages(request: Request) -> Response:
    body = await _read_json_object(request)
    auth = await _authenticate(request)
    gateway_request = GatewayRequest(
        body=body,
        headers=request.headers,
        request_id=request.state.request_id,
    )
    return await _forward(gateway_request, auth)


@app.post("/v1/messages/count_tokens")
async def count_tokens(request: Request) -> dict[str, int]:
    body = await _read_json_object(request)
    auth = await _authenticate(request)
    service: GatewayService = app.state.gateway_service
    input_tokens = await service.count_tokens(
        body, auth, request_id=request.state.request_id
    )
    return {"input_tokens": input_tokens}


async def _invoke_cloud_runtime(request: Request, model_id: str, *, stream: bool) -> Response:
    body = await _read_json_object(request)
    auth = await _authenticate(request)
    if auth.provider_kind != ProviderKind.CLOUD_RUNTIME:
        raise InvalidRequestError(
            f"Credential '{auth.credential_name}' cannot serve cloud-runtime invoke requests."
        )
    gateway_request = GatewayRequest(
        body=body,
        headers=request.headers,
        request_id=request.state.request_id,
        model_override=model_id,
        stream_override=stream,
        passthrough_body=True,
    )
    return await _forward(gateway_request, auth)


@app.post("/model/{model_id:path}/invoke")
async def invoke(model_id: str, request: Request) -> Response:
    return await _invoke_cloud_runtime(request, model_id, stream=False)


@app.post("/model/{model_id:path}/invoke-with-response-stream")
async def invoke_with_response_stream(model_id: str, request: Request) -> Response:
    return await _invoke_cloud_runtime(request, model_id, stream=True)


def run() -> None:
    settings = get_settings()
    uvicorn.run("prompttrain_gateway.main:app", host=settings.host, port=settings.port)
