from __future__ import annotations

from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    redis_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("REDIS_URL", "REDIS_CONN_STRING"),
    )
    auth_token: str | None = None
    access_pwd: str | None = None
    route_prefix: str = ""
    proxy_url: str | None = None
    coding_mode: bool = False
    coding_token: str | None = None
    tenant_url: str | None = None
    debug: bool = False
    upstream_connect_timeout_seconds: float = 10.0
    upstream_read_timeout_seconds: float = 300.0
    upstream_write_timeout_seconds: float = 30.0
    upstream_pool_timeout_seconds: float = 10.0
    probe_timeout_seconds: float = 15.0
    chat_usage_limit: int = 3000
    agent_usage_limit: int = 50
    min_request_interval_seconds: float = 3.0
    request_status_ttl_seconds: int = 3600
    cooldown_seconds: float = 60.0
    shard_url_template: str = "https://d{index}.api.augmentcode.com/"
    shard_count: int = 20
    usage_reset_enabled: bool = True

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def normalized_route_prefix(self) -> str:
        return normalize_route_prefix(self.route_prefix)

    @property
    def shard_urls(self) -> list[str]:
        return [
            self.shard_url_template.format(index=index)
            for index in range(max(0, self.shard_count), 0, -1)
        ]


def normalize_route_prefix(value: str | None) -> str:
    if not value:
        return ""
    prefix = value.strip()
    if not prefix:
        return ""
    if not prefix.startswith("/"):
        prefix = "/" + prefix
    return prefix.rstrip("/")


@lru_cache
def get_settings() -> Settings:
    return Settings()
