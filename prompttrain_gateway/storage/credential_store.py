from __future__ import annotations

import logging
import time
from typing import Callable, Iterable
from uuid import uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from prompttrain_gateway.errors import (
    CredentialKindMismatchError,
    CredentialNotFoundError,
    InvalidRequestError,
)
from prompttrain_gateway.models import (
    Credential,
    CredentialKind,
    CredentialSummary,
    ProviderKind,
    RoutingEntity,
    secret_suffix,
    token_status,
)
from prompttrain_gateway.storage.encryption import (
    decrypt_secret,
    encrypt_secret,
    hash_client_token,
    validate_master_key,
    verify_client_token,
)
from prompttrain_gateway.storage.tables import (
    Base,
    CredentialRow,
    RoutingEntityCredentialRow,
    RoutingEntityRow,
)

logger = logging.getLogger("uvicorn.error")


def _join(values: Iterable[str]) -> str:
    return ",".join(value for value in values if value)


def _split(value: str | None) -> list[str]:
    if not value:
        return []
    return [item for item in value.split(",") if item]


class CredentialStore:
    """Durable credential and routing-entity records.

    Secret columns are encrypted at rest; decrypted values only ever leave
    this class inside ``Credential`` objects, never inside summaries.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        encryption_key: str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._encryption_key = validate_master_key(encryption_key)
        self._engine = engine
        self._sessions = async_sessionmaker(engine, expire_on_commit=False)
        self._clock = clock

    async def create_schema(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    def _encrypt(self, value: str | None) -> str | None:
        if not value:
            return None
        return encrypt_secret(value, self._encryption_key)

    def _decrypt(self, value: str | None) -> str | None:
        if not value:
            return None
        return decrypt_secret(value, self._encryption_key)

    def _to_credential(self, row: CredentialRow) -> Credential:
        return Credential(
            id=row.id,
            name=row.name,
            kind=CredentialKind(row.kind),
            provider_kind=ProviderKind(row.provider_kind),
            api_key=self._decrypt(row.encrypted_api_key),
            access_token=self._decrypt(row.encrypted_access_token),
            refresh_token=self._decrypt(row.encrypted_refresh_token),
            expires_at=row.expires_at,
            scopes=_split(row.scopes),
            region=row.region,
            active=bool(row.active),
            last_used_at=row.last_used_at,
            last_refresh_at=row.last_refresh_at,
        )

    def _to_summary(self, row: CredentialRow) -> CredentialSummary:
        kind = CredentialKind(row.kind)
        return CredentialSummary(
            id=row.id,
            name=row.name,
            kind=kind,
            provider_kind=ProviderKind(row.provider_kind),
            region=row.region,
            active=bool(row.active),
            token_status=(
                token_status(row.expires_at, self._clock())
                if kind == CredentialKind.OAUTH
                else None
            ),
            secret_suffix=row.secret_suffix,
            expires_at=row.expires_at,
            last_used_at=row.last_used_at,
        )

    async def create_credential(
        self,
        *,
        name: str,
        kind: CredentialKind | str,
        provider_kind: ProviderKind | str,
        api_key: str | None = None,
        access_token: str | None = None,
        refresh_token: str | None = None,
        expires_at: int | None = None,
        scopes: list[str] | None = None,
        region: str | None = None,
        active: bool = True,
    ) -> str:
        kind = CredentialKind(kind)
        provider_kind = ProviderKind(provider_kind)
        if kind == CredentialKind.API_KEY:
            if not api_key:
                raise InvalidRequestError(f"Credential '{name}' of kind api_key needs an api_key.")
            access_token = refresh_token = None
            expires_at = None
        else:
            if provider_kind == ProviderKind.CLOUD_RUNTIME:
                raise InvalidRequestError(
                    f"Credential '{name}': the cloud runtime only accepts api_key credentials."
                )
            if not access_token and not refresh_token:
                raise InvalidRequestError(
                    f"Credential '{name}' of kind oauth needs an access or refresh token."
                )
            api_key = None

        now = self._clock()
        credential_id = f"acc_{uuid4()}"
        row = CredentialRow(
            id=credential_id,
            name=name,
            kind=kind.value,
            provider_kind=provider_kind.value,
            encrypted_api_key=self._encrypt(api_key),
            encrypted_access_token=self._encrypt(access_token),
            encrypted_refresh_token=self._encrypt(refresh_token),
            expires_at=expires_at,
            scopes=_join(scopes or []),
            region=region if provider_kind == ProviderKind.CLOUD_RUNTIME else None,
            secret_suffix=secret_suffix(api_key or access_token),
            active=active,
            created_at=now,
            updated_at=now,
        )
        async with self._sessions() as session, session.begin():
            session.add(row)
        logger.info(
            "credential_created credential=%s kind=%s provider=%s",
            name,
            kind.value,
            provider_kind.value,
        )
        return credential_id

    async def fetch_by_name(self, name: str) -> Credential:
        async with self._sessions() as session:
            row = (
                await session.execute(select(CredentialRow).where(CredentialRow.name == name))
            ).scalar_one_or_none()
        if row is None:
            raise CredentialNotFoundError(
                f"Credential '{name}' not found.", context={"credential": name}
            )
        return self._to_credential(row)

    async def fetch_by_id(self, credential_id: str) -> Credential:
        async with self._sessions() as session:
            row = await session.get(CredentialRow, credential_id)
        if row is None:
            raise CredentialNotFoundError(
                f"Credential '{credential_id}' not found.",
                context={"credential_id": credential_id},
            )
        return self._to_credential(row)

    async def list_credentials(self) -> list[CredentialSummary]:
        async with self._sessions() as session:
            rows = (
                await session.execute(select(CredentialRow).order_by(CredentialRow.name))
            ).scalars()
            return [self._to_summary(row) for row in rows]

    async def delete_credential(self, credential_id: str) -> None:
        async with self._sessions() as session, session.begin():
            await session.execute(
                delete(RoutingEntityCredentialRow).where(
                    RoutingEntityCredentialRow.credential_id == credential_id
                )
            )
            result = await session.execute(
                delete(CredentialRow).where(CredentialRow.id == credential_id)
            )
        if not result.rowcount:
            raise CredentialNotFoundError(
                f"Credential '{credential_id}' not found.",
                context={"credential_id": credential_id},
            )

    async def replace_oauth_tokens(
        self,
        credential_id: str,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_at: int | None,
        scopes: list[str] | None = None,
    ) -> Credential:
        """Persist a refreshed token pair under a row lock.

        The row is re-read after the lock is taken. When another writer has
        already stored an expiry at least as late as ours, its state wins and
        is returned unchanged.
        """
        now = self._clock()
        async with self._sessions() as session, session.begin():
            row = (
                await session.execute(
                    select(CredentialRow)
                    .where(CredentialRow.id == credential_id)
                    .with_for_update()
                )
            ).scalar_one_or_none()
            if row is None:
                raise CredentialNotFoundError(
                    f"Credential '{credential_id}' not found.",
                    context={"credential_id": credential_id},
                )
            if row.kind != CredentialKind.OAUTH.value:
                raise CredentialKindMismatchError(
                    f"Credential '{row.name}' is no longer an oauth credential.",
                    context={"credential": row.name, "kind": row.kind},
                )
            if (
                expires_at is not None
                and row.expires_at is not None
                and row.expires_at >= expires_at
                and row.encrypted_access_token
            ):
                logger.info(
                    "oauth_tokens_superseded credential=%s stored_expires_at=%s offered_expires_at=%s",
                    row.name,
                    row.expires_at,
                    expires_at,
                )
                return self._to_credential(row)

            row.encrypted_access_token = self._encrypt(access_token)
            if refresh_token:
                row.encrypted_refresh_token = self._encrypt(refresh_token)
            row.expires_at = expires_at
            if scopes:
                row.scopes = _join(scopes)
            row.secret_suffix = secret_suffix(access_token)
            row.last_refresh_at = now
            row.updated_at = now
            credential = self._to_credential(row)
        return credential

    async def mark_used(self, credential_id: str) -> None:
        async with self._sessions() as session, session.begin():
            await session.execute(
                update(CredentialRow)
                .where(CredentialRow.id == credential_id)
                .values(last_used_at=self._clock())
            )

    async def create_routing_entity(
        self,
        entity_id: str,
        *,
        name: str | None = None,
        credential_ids: list[str] | None = None,
        client_tokens: list[str] | None = None,
        active: bool = True,
    ) -> RoutingEntity:
        row = RoutingEntityRow(
            id=entity_id,
            name=name or entity_id,
            client_token_hashes=_join(hash_client_token(token) for token in client_tokens or []),
            active=active,
            created_at=self._clock(),
        )
        for priority, credential_id in enumerate(credential_ids or []):
            row.links.append(
                RoutingEntityCredentialRow(credential_id=credential_id, priority=priority)
            )
        async with self._sessions() as session, session.begin():
            session.add(row)
        return RoutingEntity(
            id=entity_id,
            name=row.name,
            credential_ids=list(credential_ids or []),
            active=active,
        )

    async def link_credential(
        self, entity_id: str, credential_id: str, *, priority: int | None = None
    ) -> None:
        async with self._sessions() as session, session.begin():
            existing = (
                await session.execute(
                    select(RoutingEntityCredentialRow.priority).where(
                        RoutingEntityCredentialRow.routing_entity_id == entity_id
                    )
                )
            ).scalars().all()
            if priority is None:
                priority = (max(existing) + 1) if existing else 0
            session.add(
                RoutingEntityCredentialRow(
                    routing_entity_id=entity_id,
                    credential_id=credential_id,
                    priority=priority,
                )
            )

    async def add_client_token(self, entity_id: str, token: str) -> None:
        async with self._sessions() as session, session.begin():
            row = await session.get(RoutingEntityRow, entity_id, with_for_update=True)
            if row is None:
                raise InvalidRequestError(f"Routing entity '{entity_id}' not found.")
            hashes = _split(row.client_token_hashes)
            hashes.append(hash_client_token(token))
            row.client_token_hashes = _join(hashes)

    async def fetch_routing_entity(self, entity_id: str) -> RoutingEntity | None:
        async with self._sessions() as session:
            row = await session.get(RoutingEntityRow, entity_id)
            if row is None:
                return None
            links = (
                await session.execute(
                    select(RoutingEntityCredentialRow.credential_id)
                    .where(RoutingEntityCredentialRow.routing_entity_id == entity_id)
                    .order_by(RoutingEntityCredentialRow.priority, RoutingEntityCredentialRow.id)
                )
            ).scalars().all()
        return RoutingEntity(
            id=row.id, name=row.name, credential_ids=list(links), active=bool(row.active)
        )

    async def credentials_for_routing_entity(self, entity_id: str) -> list[Credential]:
        async with self._sessions() as session:
            rows = (
                await session.execute(
                    select(CredentialRow)
                    .join(
                        RoutingEntityCredentialRow,
                        RoutingEntityCredentialRow.credential_id == CredentialRow.id,
                    )
                    .where(
                        RoutingEntityCredentialRow.routing_entity_id == entity_id,
                        CredentialRow.active.is_(True),
                    )
                    .order_by(RoutingEntityCredentialRow.priority, RoutingEntityCredentialRow.id)
                )
            ).scalars().all()
        return [self._to_credential(row) for row in rows]

    async def verify_client_token(self, entity_id: str, token: str) -> bool:
        async with self._sessions() as session:
            row = await session.get(RoutingEntityRow, entity_id)
        if row is None or not row.active:
            return False
        matched = False
        # Visits every hash regardless of match position.
        for token_hash in _split(row.client_token_hashes):
            matched = verify_client_token(token, token_hash) or matched
        return matched

    async def find_routing_entity_by_client_token(self, token: str) -> str | None:
        async with self._sessions() as session:
            rows = (
                await session.execute(
                    select(RoutingEntityRow).where(RoutingEntityRow.active.is_(True))
                )
            ).scalars().all()
        for row in rows:
            for token_hash in _split(row.client_token_hashes):
                if verify_client_token(token, token_hash):
                    return row.id
        return None
