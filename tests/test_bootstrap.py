from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from prompttrain_gateway.models import CredentialKind, ProviderKind
from prompttrain_gateway.storage.bootstrap import load_bootstrap_document, seed_from_yaml
from tests.client_test_utils import build_store, save_yaml_file


def _bootstrap_payload() -> dict[str, object]:
    return {
        "credentials": [
            {"name": "native-key", "kind": "api_key", "api_key_env": "TEST_NATIVE_KEY"},
            {
                "name": "team-oauth",
                "kind": "oauth",
                "oauth_access_token": "access-1",
                "oauth_refresh_token": "refresh-1",
                "oauth_expires_at": 1_900_000_000,
                "scopes": ["user:inference"],
            },
            {
                "name": "cloud-key",
                "kind": "api_key",
                "provider": "cloud_runtime",
                "api_key": "cr-inline",
                "region": "eu-west-1",
            },
        ],
        "routing_entities": [
            {
                "id": "train-a",
                "credentials": ["team-oauth", "cloud-key"],
                "client_tokens": ["ptk_inline"],
                "client_tokens_env": "TEST_CLIENT_TOKENS",
            }
        ],
    }


def test_load_bootstrap_document_resolves_env_values(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("TEST_NATIVE_KEY", "sk-from-env")
    monkeypatch.setenv("TEST_CLIENT_TOKENS", "ptk_env_one, ptk_env_two,")
    path = tmp_path / "bootstrap.yaml"
    save_yaml_file(path, _bootstrap_payload())

    document = load_bootstrap_document(path)

    assert document.credentials[0].resolved_api_key() == "sk-from-env"
    assert document.credentials[2].resolved_api_key() == "cr-inline"
    assert document.routing_entities[0].resolved_client_tokens() == [
        "ptk_inline",
        "ptk_env_one",
        "ptk_env_two",
    ]


def test_seed_from_yaml_is_idempotent(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_NATIVE_KEY", "sk-from-env")
    monkeypatch.setenv("TEST_CLIENT_TOKENS", "ptk_env_one")
    path = tmp_path / "bootstrap.yaml"
    save_yaml_file(path, _bootstrap_payload())

    async def _run() -> None:
        store = await build_store(tmp_path)
        try:
            first = await seed_from_yaml(store, path)
            second = await seed_from_yaml(store, path)
            native = await store.fetch_by_name("native-key")
            cloud = await store.fetch_by_name("cloud-key")
            linked = await store.credentials_for_routing_entity("train-a")
            assert await store.verify_client_token("train-a", "ptk_env_one")
            assert await store.verify_client_token("train-a", "ptk_inline")
        finally:
            await store.close()

        assert first == {"credentials": 3, "routing_entities": 1}
        assert second == {"credentials": 0, "routing_entities": 0}
        assert native.api_key == "sk-from-env"
        assert cloud.provider_kind == ProviderKind.CLOUD_RUNTIME
        assert cloud.region == "eu-west-1"
        assert [credential.name for credential in linked] == ["team-oauth", "cloud-key"]
        assert linked[0].kind == CredentialKind.OAUTH

    asyncio.run(_run())


def test_empty_bootstrap_file_seeds_nothing(tmp_path: Path) -> None:
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")

    document = load_bootstrap_document(path)

    assert document.credentials == []
    assert document.routing_entities == []
