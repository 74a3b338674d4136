from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import time
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from prompttrain_gateway.gateway.oauth import (
    OAUTH_BETA_HEADER,
    OAuthTokenClient,
    OAuthTokenExchangeError,
    build_authorization_url,
    generate_pkce,
)

TOKEN_URL = "https://auth.example.test/v1/oauth/token"


def _client(handler: httpx.MockTransport) -> OAuthTokenClient:
    return OAuthTokenClient(
        client=httpx.AsyncClient(transport=handler),
        token_url=TOKEN_URL,
        client_id="client-123",
    )


def test_generate_pkce_challenge_matches_verifier() -> None:
    verifier, challenge = generate_pkce()
    expected = (
        base64.urlsafe_b64encode(hashlib.sha256(verifier.encode("utf-8")).digest())
        .decode("ascii")
        .rstrip("=")
    )

    assert challenge == expected
    assert "=" not in verifier
    assert generate_pkce()[0] != verifier


def test_build_authorization_url_carries_pkce_parameters() -> None:
    url = build_authorization_url(client_id="client-123", code_challenge="abc", state="s1")
    query = parse_qs(urlparse(url).query)

    assert query["client_id"] == ["client-123"]
    assert query["code_challenge"] == ["abc"]
    assert query["code_challenge_method"] == ["S256"]
    assert query["response_type"] == ["code"]
    assert query["state"] == ["s1"]
    assert "user:inference" in query["scope"][0].split(" ")


def test_refresh_posts_refresh_grant_and_parses_tokens() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(
            200,
            json={
                "access_token": "new-access",
                "refresh_token": "new-refresh",
                "expires_in": 3600,
                "scope": "user:inference user:profile",
            },
        )

    before = int(time.time())
    tokens = asyncio.run(_client(httpx.MockTransport(handler)).refresh("old-refresh"))

    assert tokens.access_token == "new-access"
    assert tokens.refresh_token == "new-refresh"
    assert tokens.expires_at is not None and tokens.expires_at >= before + 3600
    assert tokens.scopes == ["user:inference", "user:profile"]
    request = captured[0]
    assert str(request.url) == TOKEN_URL
    assert request.headers["anthropic-beta"] == OAUTH_BETA_HEADER
    assert json.loads(request.content) == {
        "grant_type": "refresh_token",
        "refresh_token": "old-refresh",
        "client_id": "client-123",
    }


def test_refresh_keeps_old_refresh_token_when_none_returned() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"access_token": "a", "expires_at": 1_900_000_000})

    tokens = asyncio.run(_client(httpx.MockTransport(handler)).refresh("keep-me"))

    assert tokens.refresh_token == "keep-me"
    assert tokens.expires_at == 1_900_000_000


def test_refresh_failures_raise_exchange_error() -> None:
    def rejected(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_grant"})

    def missing_token(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"token_type": "bearer"})

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(OAuthTokenExchangeError) as raised:
        asyncio.run(_client(httpx.MockTransport(rejected)).refresh("r"))
    assert raised.value.status == 400
    assert "invalid_grant" in str(raised.value)

    with pytest.raises(OAuthTokenExchangeError):
        asyncio.run(_client(httpx.MockTransport(missing_token)).refresh("r"))
    with pytest.raises(OAuthTokenExchangeError):
        asyncio.run(_client(httpx.MockTransport(unreachable)).refresh("r"))


def test_exchange_authorization_code_splits_pasted_state() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(
            200, json={"access_token": "a", "refresh_token": "r", "expires_in": 60}
        )

    tokens = asyncio.run(
        _client(httpx.MockTransport(handler)).exchange_authorization_code(
            " the-code#the-state ", code_verifier="verifier"
        )
    )

    assert tokens.refresh_token == "r"
    payload = json.loads(captured[0].content)
    assert payload["grant_type"] == "authorization_code"
    assert payload["code"] == "the-code"
    assert payload["state"] == "the-state"
    assert payload["code_verifier"] == "verifier"
