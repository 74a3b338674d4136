from __future__ import annotations

import pytest

from prompttrain_gateway.errors import InvalidRequestError
from prompttrain_gateway.gateway.model_mapping import (
    MODEL_ID_MAX_LENGTH,
    is_cloud_model_id,
    map_to_cloud_model,
    resolve_cloud_target,
    split_region_prefix,
)


def test_map_to_cloud_model_translates_known_names_only() -> None:
    assert map_to_cloud_model("claude-sonnet-4-5") == (
        "global.anthropic.claude-sonnet-4-5-20250929-v1:0"
    )
    assert map_to_cloud_model("claude-3-haiku-20240307") == (
        "us.anthropic.claude-3-haiku-20240307-v1:0"
    )
    assert map_to_cloud_model("eu.anthropic.claude-custom-v1:0") == (
        "eu.anthropic.claude-custom-v1:0"
    )


def test_split_region_prefix_accepts_slash_and_dot_forms() -> None:
    assert split_region_prefix("eu-west-1/claude-haiku-4-5") == ("eu-west-1", "claude-haiku-4-5")
    assert split_region_prefix("us-gov-west-1.anthropic.claude-v2") == (
        "us-gov-west-1",
        "anthropic.claude-v2",
    )
    assert split_region_prefix("us.anthropic.claude-3-haiku-20240307-v1:0") == (
        None,
        "us.anthropic.claude-3-haiku-20240307-v1:0",
    )
    assert split_region_prefix(" claude-sonnet-4-5 ") == (None, "claude-sonnet-4-5")


def test_resolve_cloud_target_prefers_prefix_then_credential_then_default() -> None:
    assert resolve_cloud_target(
        "ap-northeast-1/claude-sonnet-4-5", credential_region="eu-west-1", default_region="us-east-1"
    ) == ("ap-northeast-1", "global.anthropic.claude-sonnet-4-5-20250929-v1:0")
    assert resolve_cloud_target(
        "claude-sonnet-4-5", credential_region="eu-west-1", default_region="us-east-1"
    )[0] == "eu-west-1"
    assert resolve_cloud_target(
        "claude-sonnet-4-5", credential_region="  ", default_region="us-east-1"
    )[0] == "us-east-1"


def test_is_cloud_model_id() -> None:
    assert is_cloud_model_id("global.anthropic.claude-opus-4-5-20251101-v1:0")
    assert not is_cloud_model_id("claude-opus-4-5")


@pytest.mark.parametrize(
    "model",
    [
        "../../admin/delete?x=",
        "eu-west-1/../../admin",
        "claude sonnet",
        "claude;rm",
        "a" * (MODEL_ID_MAX_LENGTH + 1),
        "",
    ],
)
def test_resolve_cloud_target_rejects_malformed_model_ids(model: str) -> None:
    with pytest.raises(InvalidRequestError) as exc_info:
        resolve_cloud_target(model, credential_region=None, default_region="us-east-1")

    assert exc_info.value.status_code == 400


def test_resolve_cloud_target_accepts_model_id_at_length_limit() -> None:
    model = "a" * MODEL_ID_MAX_LENGTH

    assert resolve_cloud_target(model, credential_region=None, default_region="us-east-1") == (
        "us-east-1",
        model,
    )


def test_resolve_cloud_target_rejects_malformed_regions() -> None:
    with pytest.raises(InvalidRequestError):
        resolve_cloud_target(
            "claude-sonnet-4-5", credential_region="evil.example.com/x", default_region="us-east-1"
        )
    with pytest.raises(InvalidRequestError):
        resolve_cloud_target("claude-sonnet-4-5", credential_region=None, default_region="US_EAST")
