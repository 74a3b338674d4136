from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

EXPIRING_SOON_SECONDS = 300


class CredentialKind(StrEnum):
    API_KEY = "api_key"
    OAUTH = "oauth"


class ProviderKind(StrEnum):
    NATIVE = "native"
    CLOUD_RUNTIME = "cloud_runtime"


@dataclass(slots=True)
class Credential:
    id: str
    name: str
    kind: CredentialKind
    provider_kind: ProviderKind
    api_key: str | None = field(default=None, repr=False)
    access_token: str | None = field(default=None, repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    expires_at: int | None = None
    scopes: list[str] = field(default_factory=list)
    region: str | None = None
    active: bool = True
    last_used_at: float | None = None
    last_refresh_at: float | None = None

    @property
    def secret(self) -> str | None:
        if self.kind == CredentialKind.API_KEY:
            return self.api_key
        return self.access_token

    def is_due(self, now: float, buffer_seconds: float) -> bool:
        if self.kind != CredentialKind.OAUTH:
            return False
        if not self.access_token or self.expires_at is None:
            return True
        return now >= self.expires_at - buffer_seconds


@dataclass(slots=True)
class CredentialSummary:
    """Listing view of a credential; never carries secrets."""

    id: str
    name: str
    kind: CredentialKind
    provider_kind: ProviderKind
    region: str | None
    active: bool
    token_status: str | None
    secret_suffix: str | None
    expires_at: int | None
    last_used_at: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "provider_kind": self.provider_kind.value,
            "region": self.region,
            "active": self.active,
            "token_status": self.token_status,
            "secret_suffix": self.secret_suffix,
            "expires_at": self.expires_at,
            "last_used_at": self.last_used_at,
        }


def token_status(expires_at: int | None, now: float | None = None) -> str:
    if expires_at is None:
        return "expired"
    current = time.time() if now is None else now
    if expires_at <= current:
        return "expired"
    if expires_at - current <= EXPIRING_SOON_SECONDS:
        return "expiring_soon"
    return "valid"


def secret_suffix(secret: str | None) -> str | None:
    if not secret:
        return None
    return "..." + secret[-4:]


@dataclass(slots=True)
class RoutingEntity:
    id: str
    name: str
    credential_ids: list[str] = field(default_factory=list)
    active: bool = True


@dataclass(slots=True, frozen=True)
class UsageEvent:
    request_id: str
    credential_id: str
    routing_entity_id: str
    provider_kind: str
    model: str | None
    stream: bool
    input_tokens: int = 0
    output_tokens: int = 0
    cache_tokens: int = 0
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "credential_id": self.credential_id,
            "routing_entity_id": self.routing_entity_id,
            "provider_kind": self.provider_kind,
            "model": self.model,
            "stream": self.stream,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_tokens": self.cache_tokens,
            "timestamp": self.timestamp,
        }
