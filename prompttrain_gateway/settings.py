from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_OAUTH_CLIENT_ID = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"
DEFAULT_OAUTH_TOKEN_URL = "https://console.anthropic.com/v1/oauth/token"
DEFAULT_CLOUD_RUNTIME_ENDPOINT = "https://bedrock-runtime.{region}.amazonaws.com"


class Settings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 3000
    database_url: str = "sqlite+aiosqlite:///./prompttrain.db"
    database_auto_create: bool = False
    credential_encryption_key: str = ""
    credentials_bootstrap_path: str | None = None

    oauth_client_id: str = DEFAULT_OAUTH_CLIENT_ID
    oauth_token_url: str = DEFAULT_OAUTH_TOKEN_URL
    oauth_refresh_buffer_seconds: float = 60.0
    oauth_refresh_cooldown_seconds: float = 5.0
    oauth_refresh_timeout_seconds: float = 60.0
    oauth_refresh_sweep_interval_seconds: float = 300.0

    native_base_url: str = "https://api.anthropic.com"
    native_api_version: str = "2023-06-01"
    native_count_tokens_timeout_seconds: float = 30.0
    cloud_runtime_default_region: str = "us-east-1"
    cloud_runtime_endpoint_template: str = DEFAULT_CLOUD_RUNTIME_ENDPOINT

    upstream_timeout_seconds: float = 600.0
    upstream_connect_timeout_seconds: float = 10.0
    upstream_retry_max_attempts: int = 3
    upstream_retry_base_delay_seconds: float = 0.5
    upstream_retry_max_delay_seconds: float = 8.0

    token_count_cache_max_entries: int = 1000
    token_count_cache_ttl_seconds: float = 3600.0
    token_count_inflight_timeout_seconds: float = 30.0

    client_auth_required: bool = True
    default_routing_key: str = "default"

    usage_log_enabled: bool = True
    usage_log_path: str = "logs/usage_events.jsonl"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
