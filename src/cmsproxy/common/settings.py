"""Application configuration for the CMS proxy service."""

from __future__ import annotations

from typing import Annotated, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


def _split_csv(value):
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class ProxySettings(BaseSettings):
    """Runtime settings for the caching Contentful proxy."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    space_id: Optional[str] = env_field(None, "CONTENTFUL_SPACE_ID")
    access_token: Optional[SecretStr] = env_field(None, "CONTENTFUL_ACCESS_TOKEN")
    upstream_base_url: str = env_field("https://cdn.contentful.com", "CMSPROXY_UPSTREAM_BASE_URL")
    upstream_timeout_seconds: float = env_field(10.0, "CMSPROXY_UPSTREAM_TIMEOUT")
    cache_ttl_seconds: int = env_field(300, "CMSPROXY_CACHE_TTL")
    upstream_asset_host: str = env_field("images.ctfassets.net", "CMSPROXY_UPSTREAM_ASSET_HOST")
    public_asset_host: Optional[str] = env_field(None, "CMSPROXY_PUBLIC_ASSET_HOST")
    rate_limit: int = env_field(100, "CMSPROXY_RATE_LIMIT")
    rate_limit_window_seconds: int = env_field(15 * 60, "CMSPROXY_RATE_LIMIT_WINDOW")
    redis_url: Optional[str] = env_field(None, "CMSPROXY_REDIS_URL")
    trusted_proxy_cidrs: Annotated[list[str], NoDecode] = Field(default_factory=list, validation_alias="CMSPROXY_TRUSTED_PROXY_CIDRS")
    allowed_origins: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://localhost:3001"],
        validation_alias="ALLOWED_ORIGINS",
    )
    admin_token: Optional[SecretStr] = env_field(None, "CMSPROXY_ADMIN_TOKEN")
    metrics_token: Optional[SecretStr] = env_field(None, "CMSPROXY_METRICS_TOKEN")
    environment: str = env_field("development", "CMSPROXY_ENV")
    host: str = env_field("0.0.0.0", "CMSPROXY_HOST")
    port: int = env_field(3000, "PORT")
    log_level: str = env_field("INFO", "CMSPROXY_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "CMSPROXY_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "CMSPROXY_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "CMSPROXY_OTEL_SAMPLER_RATIO")

    @field_validator("trusted_proxy_cidrs", mode="before")
    @classmethod
    def _split_trusted_proxies(cls, value):
        return _split_csv(value)

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _split_allowed_origins(cls, value):
        return _split_csv(value)

    @field_validator("cache_ttl_seconds")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("cache TTL must be positive")
        return value

    @field_validator("public_asset_host", "space_id", mode="before")
    @classmethod
    def _blank_as_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def has_credentials(self) -> bool:
        return bool(self.space_id and self.access_token and self.access_token.get_secret_value())
