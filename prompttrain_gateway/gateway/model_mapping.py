from __future__ import annotations

import re

from prompttrain_gateway.errors import InvalidRequestError

# Canonical model name -> cloud-runtime model id. Unknown names pass through.
CLOUD_RUNTIME_MODEL_IDS: dict[str, str] = {
    "claude-opus-4-5": "global.anthropic.claude-opus-4-5-20251101-v1:0",
    "claude-opus-4-5-20251101": "global.anthropic.claude-opus-4-5-20251101-v1:0",
    "claude-haiku-4-5": "global.anthropic.claude-haiku-4-5-20251015-v1:0",
    "claude-haiku-4-5-20251015": "global.anthropic.claude-haiku-4-5-20251015-v1:0",
    "claude-haiku-4-5-20251001": "global.anthropic.claude-haiku-4-5-20251001-v1:0",
    "claude-sonnet-4-5": "global.anthropic.claude-sonnet-4-5-20250929-v1:0",
    "claude-sonnet-4-5-20250929": "global.anthropic.claude-sonnet-4-5-20250929-v1:0",
    "claude-opus-4-1": "us.anthropic.claude-opus-4-1-20250805-v1:0",
    "claude-opus-4-1-20250805": "us.anthropic.claude-opus-4-1-20250805-v1:0",
    "claude-sonnet-4-20250514": "global.anthropic.claude-sonnet-4-20250514-v1:0",
    "claude-opus-4-20250514": "global.anthropic.claude-opus-4-20250514-v1:0",
    "claude-3-5-sonnet-20241022": "us.anthropic.claude-3-5-sonnet-20241022-v2:0",
    "claude-3-5-sonnet-20240620": "us.anthropic.claude-3-5-sonnet-20240620-v1:0",
    "claude-3-5-haiku-20241022": "us.anthropic.claude-3-5-haiku-20241022-v1:0",
    "claude-3-opus-20240229": "us.anthropic.claude-3-opus-20240229-v1:0",
    "claude-3-sonnet-20240229": "us.anthropic.claude-3-sonnet-20240229-v1:0",
    "claude-3-haiku-20240307": "us.anthropic.claude-3-haiku-20240307-v1:0",
}

_REGION_PREFIX_RE = re.compile(r"^(?P<region>[a-z]{2}(?:-gov)?-[a-z]+-\d+)[/.](?P<model>.+)$")
_REGION_RE = re.compile(r"^[a-z]{2}(?:-gov)?-[a-z]+-\d+$")

MODEL_ID_MAX_LENGTH = 256
_MODEL_ID_RE = re.compile(r"^[A-Za-z0-9._:-]+$")


def split_region_prefix(model_id: str) -> tuple[str | None, str]:
    """Split ``eu-west-1/claude-...`` or ``eu-west-1.anthropic...`` into region and id."""
    match = _REGION_PREFIX_RE.match(model_id.strip())
    if match is None:
        return None, model_id.strip()
    return match.group("region"), match.group("model")


def validate_model_id(model_id: str) -> None:
    """Reject ids that could escape the ``/model/{id}/`` path segment."""
    if len(model_id) > MODEL_ID_MAX_LENGTH or not _MODEL_ID_RE.fullmatch(model_id):
        raise InvalidRequestError("Invalid model id format.", context={"model": model_id[:64]})


def map_to_cloud_model(model: str) -> str:
    return CLOUD_RUNTIME_MODEL_IDS.get(model, model)


def is_cloud_model_id(model_id: str) -> bool:
    return "anthropic.claude" in model_id


def resolve_cloud_target(
    model: str,
    *,
    credential_region: str | None,
    default_region: str,
) -> tuple[str, str]:
    """Return ``(region, cloud model id)``.

    Region priority: prefix on the model id, then the credential's region,
    then the configured default.
    """
    prefix_region, bare_model = split_region_prefix(model)
    validate_model_id(bare_model)
    region = prefix_region or (credential_region or "").strip() or default_region
    if not _REGION_RE.fullmatch(region):
        raise InvalidRequestError(f"Invalid cloud region: {region!r}")
    return region, map_to_cloud_model(bare_model)
