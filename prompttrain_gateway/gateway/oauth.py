from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

import httpx

from prompttrain_gateway.settings import DEFAULT_OAUTH_CLIENT_ID, DEFAULT_OAUTH_TOKEN_URL

OAUTH_BETA_HEADER = "oauth-2025-04-20"
DEFAULT_OAUTH_AUTHORIZE_URL = "https://claude.ai/oauth/authorize"
DEFAULT_OAUTH_REDIRECT_URI = "https://console.anthropic.com/oauth/code/callback"
DEFAULT_OAUTH_SCOPES = ("org:create_api_key", "user:profile", "user:inference")

logger = logging.getLogger("uvicorn.error")


class OAuthTokenExchangeError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None):
        self.status = status
        super().__init__(message)


@dataclass(slots=True)
class OAuthTokens:
    access_token: str
    refresh_token: str | None
    expires_at: int | None
    scopes: list[str] = field(default_factory=list)


def _base64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_pkce() -> tuple[str, str]:
    verifier = _base64url(secrets.token_bytes(32))
    challenge = _base64url(hashlib.sha256(verifier.encode("utf-8")).digest())
    return verifier, challenge


def build_authorization_url(
    *,
    client_id: str = DEFAULT_OAUTH_CLIENT_ID,
    code_challenge: str,
    redirect_uri: str = DEFAULT_OAUTH_REDIRECT_URI,
    scopes: tuple[str, ...] | list[str] = DEFAULT_OAUTH_SCOPES,
    authorize_url: str = DEFAULT_OAUTH_AUTHORIZE_URL,
    state: str | None = None,
) -> str:
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(scopes),
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    if state:
        params["state"] = state
    return f"{authorize_url}?{urlencode(params)}"


def _extract_expires_at(token_response: dict[str, Any], now: float) -> int | None:
    raw_expires_in = token_response.get("expires_in")
    if raw_expires_in is not None:
        try:
            return int(now) + int(float(raw_expires_in))
        except (TypeError, ValueError):
            pass

    raw_expires_at = token_response.get("expires_at")
    if raw_expires_at is not None:
        try:
            return int(float(raw_expires_at))
        except (TypeError, ValueError):
            pass

    return None


def _extract_scopes(token_response: dict[str, Any]) -> list[str]:
    raw = token_response.get("scope")
    if isinstance(raw, str):
        return [item for item in raw.split(" ") if item]
    return []


class OAuthTokenClient:
    """Refresh-token and authorization-code grants against the token endpoint."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        token_url: str = DEFAULT_OAUTH_TOKEN_URL,
        client_id: str = DEFAULT_OAUTH_CLIENT_ID,
    ) -> None:
        self._client = client
        self._token_url = token_url
        self._client_id = client_id

    async def _post(self, payload: dict[str, str], *, label: str) -> dict[str, Any]:
        try:
            response = await self._client.post(
                self._token_url,
                json=payload,
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                    "anthropic-beta": OAUTH_BETA_HEADER,
                },
            )
        except httpx.RequestError as exc:
            raise OAuthTokenExchangeError(
                f"{label} request failed ({exc.__class__.__name__}): {exc}"
            ) from exc

        if response.status_code >= 400:
            raise OAuthTokenExchangeError(
                f"{label} rejected ({response.status_code}): {response.text[:500]}",
                status=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise OAuthTokenExchangeError(f"{label} returned invalid JSON") from exc
        if not isinstance(body, dict):
            raise OAuthTokenExchangeError(f"{label} returned a non-object body")
        return body

    def _tokens_from_body(
        self, body: dict[str, Any], *, fallback_refresh_token: str | None, label: str
    ) -> OAuthTokens:
        raw_access = body.get("access_token")
        access_token = str(raw_access).strip() if raw_access is not None else ""
        if not access_token:
            raise OAuthTokenExchangeError(f"{label} response is missing access_token")

        raw_refresh = body.get("refresh_token")
        next_refresh = (
            str(raw_refresh).strip() if raw_refresh is not None else fallback_refresh_token
        ) or fallback_refresh_token
        return OAuthTokens(
            access_token=access_token,
            refresh_token=next_refresh,
            expires_at=_extract_expires_at(body, time.time()),
            scopes=_extract_scopes(body),
        )

    async def refresh(self, refresh_token: str) -> OAuthTokens:
        body = await self._post(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._client_id,
            },
            label="oauth_refresh",
        )
        return self._tokens_from_body(
            body, fallback_refresh_token=refresh_token, label="oauth_refresh"
        )

    async def exchange_authorization_code(
        self,
        code: str,
        *,
        code_verifier: str,
        redirect_uri: str = DEFAULT_OAUTH_REDIRECT_URI,
    ) -> OAuthTokens:
        # Pasted codes may arrive as "<code>#<state>".
        code, _, state = code.strip().partition("#")
        payload = {
            "grant_type": "authorization_code",
            "client_id": self._client_id,
            "code": code,
            "code_verifier": code_verifier,
            "redirect_uri": redirect_uri,
        }
        if state:
            payload["state"] = state
        body = await self._post(payload, label="oauth_code_exchange")
        tokens = self._tokens_from_body(
            body, fallback_refresh_token=None, label="oauth_code_exchange"
        )
        logger.info("oauth_code_exchange_success expires_at=%s", tokens.expires_at)
        return tokens
