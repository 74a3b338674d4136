from __future__ import annotations

import logging
from typing import Mapping, Protocol

from prompttrain_gateway.errors import InvalidClientTokenError

ROUTING_KEY_HEADER = "msl-project-id"
ACCOUNT_HEADER = "msl-account"

logger = logging.getLogger("uvicorn.error")


class ClientTokenVerifier(Protocol):
    async def verify_client_token(self, entity_id: str, token: str) -> bool: ...

    async def find_routing_entity_by_client_token(self, token: str) -> str | None: ...


def extract_client_token(headers: Mapping[str, str]) -> str | None:
    authorization = (headers.get("authorization") or "").strip()
    if authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
        if token:
            return token
    api_key = (headers.get("x-api-key") or "").strip()
    return api_key or None


class ClientAuthenticator:
    """Maps an inbound request to its routing key, checking the client token."""

    def __init__(
        self,
        verifier: ClientTokenVerifier,
        *,
        required: bool = True,
        default_routing_key: str = "default",
    ) -> None:
        self._verifier = verifier
        self._required = required
        self._default_routing_key = default_routing_key

    async def resolve_routing_key(self, headers: Mapping[str, str]) -> str:
        routing_key = (headers.get(ROUTING_KEY_HEADER) or "").strip() or None
        if not self._required:
            return routing_key or self._default_routing_key

        token = extract_client_token(headers)
        if not token:
            raise InvalidClientTokenError("Missing client token.")

        if routing_key is not None:
            if await self._verifier.verify_client_token(routing_key, token):
                return routing_key
            logger.info("client_token_rejected routing_key=%s", routing_key)
            raise InvalidClientTokenError(
                "Invalid client token.", context={"routing_key": routing_key}
            )

        resolved = await self._verifier.find_routing_entity_by_client_token(token)
        if resolved is None:
            logger.info("client_token_rejected routing_key=<unresolved>")
            raise InvalidClientTokenError("Invalid client token.")
        return resolved


def requested_account(headers: Mapping[str, str]) -> str | None:
    value = (headers.get(ACCOUNT_HEADER) or "").strip()
    return value or None
