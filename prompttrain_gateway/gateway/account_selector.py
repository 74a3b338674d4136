from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Protocol

from prompttrain_gateway.errors import (
    AccountNotLinkedError,
    GatewayError,
    NoCredentialsConfiguredError,
    NoValidCredentialsError,
)
from prompttrain_gateway.gateway.oauth import OAUTH_BETA_HEADER
from prompttrain_gateway.models import Credential, CredentialKind, ProviderKind, RoutingEntity

logger = logging.getLogger("uvicorn.error")


class CredentialSource(Protocol):
    async def fetch_routing_entity(self, entity_id: str) -> RoutingEntity | None: ...

    async def credentials_for_routing_entity(self, entity_id: str) -> list[Credential]: ...

    async def mark_used(self, credential_id: str) -> None: ...


class TokenProvider(Protocol):
    async def get_access_token(self, credential: Credential) -> str: ...


@dataclass(slots=True)
class RoutingContext:
    routing_key: str
    request_id: str = ""
    account_name: str | None = None


@dataclass(slots=True)
class AuthResult:
    credential: Credential
    routing_entity_id: str
    headers: dict[str, str] = field(default_factory=dict, repr=False)

    @property
    def provider_kind(self) -> ProviderKind:
        return self.credential.provider_kind

    @property
    def credential_name(self) -> str:
        return self.credential.name


def rendezvous_score(routing_key: str, credential_name: str) -> int:
    digest = hashlib.sha256(f"{routing_key}::{credential_name}".encode("utf-8")).digest()
    return int.from_bytes(digest, "big")


def rank_credentials(routing_key: str, credentials: list[Credential]) -> list[Credential]:
    """Highest-random-weight order for ``routing_key``; ties fall back to name."""
    return sorted(
        credentials,
        key=lambda credential: (-rendezvous_score(routing_key, credential.name), credential.name),
    )


def build_auth_headers(credential: Credential, token: str) -> dict[str, str]:
    if credential.provider_kind == ProviderKind.CLOUD_RUNTIME:
        return {"Authorization": f"Bearer {token}"}
    if credential.kind == CredentialKind.OAUTH:
        return {"Authorization": f"Bearer {token}", "anthropic-beta": OAUTH_BETA_HEADER}
    return {"x-api-key": token}


class AccountSelector:
    def __init__(self, *, store: CredentialSource, tokens: TokenProvider) -> None:
        self._store = store
        self._tokens = tokens

    async def authenticate(self, context: RoutingContext) -> AuthResult:
        entity = await self._store.fetch_routing_entity(context.routing_key)
        if entity is None or not entity.active:
            raise NoCredentialsConfiguredError(
                f"No credentials configured for '{context.routing_key}'.",
                context={"routing_key": context.routing_key, "request_id": context.request_id},
            )
        candidates = await self._store.credentials_for_routing_entity(entity.id)
        if not candidates:
            raise NoCredentialsConfiguredError(
                f"No credentials configured for '{context.routing_key}'.",
                context={"routing_key": context.routing_key, "request_id": context.request_id},
            )

        if context.account_name:
            named = [item for item in candidates if item.name == context.account_name]
            if not named:
                raise AccountNotLinkedError(
                    f"Account '{context.account_name}' is not linked to '{context.routing_key}'.",
                    context={
                        "routing_key": context.routing_key,
                        "credential": context.account_name,
                        "request_id": context.request_id,
                    },
                )
            ranked = named
        else:
            ranked = rank_credentials(entity.id, candidates)

        failures: list[str] = []
        for credential in ranked:
            try:
                token = await self._tokens.get_access_token(credential)
            except GatewayError as exc:
                failures.append(credential.name)
                logger.warning(
                    "credential_unavailable request_id=%s routing_key=%s credential=%s kind=%s reason=%s",
                    context.request_id,
                    context.routing_key,
                    credential.name,
                    exc.kind,
                    exc.message,
                )
                continue
            if not token:
                failures.append(credential.name)
                logger.warning(
                    "credential_unavailable request_id=%s routing_key=%s credential=%s reason=empty_token",
                    context.request_id,
                    context.routing_key,
                    credential.name,
                )
                continue

            await self._touch(credential, context)
            logger.info(
                "credential_selected request_id=%s routing_key=%s credential=%s provider=%s skipped=%d",
                context.request_id,
                context.routing_key,
                credential.name,
                credential.provider_kind.value,
                len(failures),
            )
            return AuthResult(
                credential=credential,
                routing_entity_id=entity.id,
                headers=build_auth_headers(credential, token),
            )

        raise NoValidCredentialsError(
            f"No valid credentials available for '{context.routing_key}'.",
            context={
                "routing_key": context.routing_key,
                "attempted": failures,
                "request_id": context.request_id,
            },
        )

    async def _touch(self, credential: Credential, context: RoutingContext) -> None:
        try:
            await self._store.mark_used(credential.id)
        except Exception as exc:
            logger.debug(
                "credential_mark_used_failed request_id=%s credential=%s error=%s",
                context.request_id,
                credential.name,
                exc,
            )
