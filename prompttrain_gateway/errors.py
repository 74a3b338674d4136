from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base class for every error the gateway surfaces to its callers.

    ``kind`` is a stable discriminator rendered into error bodies; ``context``
    carries diagnostics (credential name, request id, upstream status) and must
    never contain secret material.
    """

    kind = "gateway_error"
    status_code = 500

    def __init__(self, message: str, *, context: dict[str, Any] | None = None):
        self.message = message
        self.context = dict(context or {})
        super().__init__(message)

    def to_payload(self, request_id: str | None = None) -> dict[str, Any]:
        error: dict[str, Any] = {"type": self.kind, "message": self.message}
        if request_id:
            error["request_id"] = request_id
        return {"error": error}


class InvalidRequestError(GatewayError):
    kind = "invalid_request_error"
    status_code = 400


class AuthenticationError(GatewayError):
    kind = "authentication_error"
    status_code = 401


class NoCredentialsConfiguredError(AuthenticationError):
    kind = "no_credentials_configured"


class AccountNotLinkedError(AuthenticationError):
    kind = "account_not_linked"


class NoValidCredentialsError(AuthenticationError):
    kind = "no_valid_credentials"


class InvalidClientTokenError(AuthenticationError):
    kind = "invalid_client_token"


class RefreshFailure(GatewayError):
    kind = "oauth_refresh_error"
    status_code = 503

    def __init__(
        self,
        message: str,
        *,
        credential: str,
        cached: bool = False,
        context: dict[str, Any] | None = None,
    ):
        self.credential = credential
        self.cached = cached
        super().__init__(
            message, context={"credential": credential, "cached": cached, **(context or {})}
        )


class UpstreamError(GatewayError):
    kind = "upstream_error"

    def __init__(
        self,
        message: str,
        *,
        status: int = 502,
        body: str | None = None,
        error_type: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        self.status = int(status)
        self.body = body
        self.error_type = error_type
        super().__init__(message, context={"upstream_status": self.status, **(context or {})})

    @property
    def status_code(self) -> int:  # type: ignore[override]
        return self.status if 400 <= self.status <= 599 else 502

    def to_payload(self, request_id: str | None = None) -> dict[str, Any]:
        payload = super().to_payload(request_id)
        if self.error_type:
            payload["error"]["upstream_type"] = self.error_type
        return payload


class EmptyResponseError(UpstreamError):
    """Upstream answered 2xx with neither content nor token usage."""

    kind = "empty_response"


class UpstreamTimeoutError(GatewayError):
    kind = "upstream_timeout"
    status_code = 504


class CredentialStoreError(GatewayError):
    kind = "credential_store_error"


class CredentialNotFoundError(CredentialStoreError):
    kind = "credential_not_found"
    status_code = 404


class CredentialKindMismatchError(CredentialStoreError):
    kind = "credential_kind_mismatch"
    status_code = 409


class EncryptionKeyError(CredentialStoreError):
    kind = "encryption_key_error"


class DecryptionError(CredentialStoreError):
    kind = "decryption_error"
