from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field

from prompttrain_gateway.errors import CredentialNotFoundError
from prompttrain_gateway.storage.credential_store import CredentialStore

logger = logging.getLogger("uvicorn.error")


def _resolve_env_or_value(env_name: str | None, value: Any) -> Any:
    if env_name:
        env_value = os.getenv(env_name, "").strip()
        if env_value:
            return env_value
    return value


class CredentialSeed(BaseModel):
    name: str
    kind: Literal["api_key", "oauth"] = "api_key"
    provider: Literal["native", "cloud_runtime"] = "native"
    api_key: str | None = None
    api_key_env: str | None = None
    oauth_access_token: str | None = None
    oauth_access_token_env: str | None = None
    oauth_refresh_token: str | None = None
    oauth_refresh_token_env: str | None = None
    oauth_expires_at: int | None = None
    scopes: list[str] = Field(default_factory=list)
    region: str | None = None
    active: bool = True

    def resolved_api_key(self) -> str | None:
        return _resolve_env_or_value(self.api_key_env, self.api_key)

    def resolved_oauth_access_token(self) -> str | None:
        return _resolve_env_or_value(self.oauth_access_token_env, self.oauth_access_token)

    def resolved_oauth_refresh_token(self) -> str | None:
        return _resolve_env_or_value(self.oauth_refresh_token_env, self.oauth_refresh_token)


class RoutingEntitySeed(BaseModel):
    id: str
    name: str | None = None
    credentials: list[str] = Field(default_factory=list)
    client_tokens: list[str] = Field(default_factory=list)
    client_tokens_env: str | None = None
    active: bool = True

    def resolved_client_tokens(self) -> list[str]:
        tokens = list(self.client_tokens)
        if self.client_tokens_env:
            raw = os.getenv(self.client_tokens_env, "")
            tokens.extend(item.strip() for item in raw.split(",") if item.strip())
        return tokens


class BootstrapDocument(BaseModel):
    credentials: list[CredentialSeed] = Field(default_factory=list)
    routing_entities: list[RoutingEntitySeed] = Field(default_factory=list)


def load_bootstrap_document(path: str | Path) -> BootstrapDocument:
    source = Path(path)
    with source.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle)
    return BootstrapDocument.model_validate(payload or {})


async def seed_store(store: CredentialStore, document: BootstrapDocument) -> dict[str, int]:
    """Create credentials and routing entities that do not exist yet.

    Existing credential names and routing entity ids are left untouched.
    """
    created_credentials = 0
    created_entities = 0
    ids_by_name: dict[str, str] = {}

    for seed in document.credentials:
        try:
            existing = await store.fetch_by_name(seed.name)
        except CredentialNotFoundError:
            existing = None
        if existing is not None:
            ids_by_name[seed.name] = existing.id
            continue
        ids_by_name[seed.name] = await store.create_credential(
            name=seed.name,
            kind=seed.kind,
            provider_kind=seed.provider,
            api_key=seed.resolved_api_key(),
            access_token=seed.resolved_oauth_access_token(),
            refresh_token=seed.resolved_oauth_refresh_token(),
            expires_at=seed.oauth_expires_at,
            scopes=seed.scopes,
            region=seed.region,
            active=seed.active,
        )
        created_credentials += 1

    for entity in document.routing_entities:
        if await store.fetch_routing_entity(entity.id) is not None:
            continue
        credential_ids: list[str] = []
        for name in entity.credentials:
            credential_id = ids_by_name.get(name)
            if credential_id is None:
                credential_id = (await store.fetch_by_name(name)).id
            credential_ids.append(credential_id)
        await store.create_routing_entity(
            entity.id,
            name=entity.name,
            credential_ids=credential_ids,
            client_tokens=entity.resolved_client_tokens(),
            active=entity.active,
        )
        created_entities += 1

    logger.info(
        "bootstrap_seeded credentials_created=%d routing_entities_created=%d",
        created_credentials,
        created_entities,
    )
    return {"credentials": created_credentials, "routing_entities": created_entities}


async def seed_from_yaml(store: CredentialStore, path: str | Path) -> dict[str, int]:
    return await seed_store(store, load_bootstrap_document(path))
