from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine

from prompttrain_gateway.main import app
from prompttrain_gateway.settings import get_settings
from prompttrain_gateway.storage.credential_store import CredentialStore

TEST_ENCRYPTION_KEY = "test-master-key-with-at-least-32-characters"


def save_yaml_file(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(payload, handle, sort_keys=False)


async def build_store(tmp_path: Path, **kwargs: Any) -> CredentialStore:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'credentials.db'}")
    store = CredentialStore(engine, encryption_key=TEST_ENCRYPTION_KEY, **kwargs)
    await store.create_schema()
    return store


def set_default_test_env(monkeypatch: Any, tmp_path: Path) -> None:
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'gateway.db'}")
    monkeypatch.setenv("DATABASE_AUTO_CREATE", "true")
    monkeypatch.setenv("CREDENTIAL_ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    monkeypatch.setenv("USAGE_LOG_PATH", str(tmp_path / "logs" / "usage.jsonl"))
    monkeypatch.setenv("USAGE_LOG_ENABLED", "false")
    monkeypatch.setenv("UPSTREAM_RETRY_BASE_DELAY_SECONDS", "0")


def build_test_client(
    monkeypatch: Any,
    tmp_path: Path,
    *,
    bootstrap: dict[str, Any] | None = None,
    **env: Any,
) -> TestClient:
    set_default_test_env(monkeypatch, tmp_path)
    if bootstrap is not None:
        bootstrap_path = tmp_path / "bootstrap.yaml"
        save_yaml_file(bootstrap_path, bootstrap)
        monkeypatch.setenv("CREDENTIALS_BOOTSTRAP_PATH", str(bootstrap_path))
    for key, value in env.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()
    return TestClient(app)
