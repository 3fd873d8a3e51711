from __future__ import annotations

import ipaddress
import re
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

DEFAULT_FIELDS = (
    "id,caption,media_type,media_url,permalink,thumbnail_url,timestamp,username,"
    "children{media_type,media_url,thumbnail_url}"
)


def _validate_env_var_name(value: str) -> str:
    name = (value or "").strip()
    if not _ENV_NAME_RE.fullmatch(name):
        raise ValueError("must be a valid environment variable name")
    return name


PositiveInt = Annotated[int, Field(ge=1)]


class GraphConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    base_url: str = "https://graph.facebook.com/"
    api_version: str = "v24.0"
    timeout_seconds: float = Field(10.0, gt=0)
    verify_ssl: bool = True
    ca_bundle_path: str | None = None
    default_fields: str = DEFAULT_FIELDS

    business_account_id_env: str = "IG_BUSINESS_ACCOUNT_ID"
    access_token_env: str = "IG_ACCESS_TOKEN"
    token_storage_env: str = "IG_TOKEN_STORAGE"

    @field_validator("business_account_id_env", "access_token_env", "token_storage_env")
    @classmethod
    def _env_names_must_be_valid(cls, v: str) -> str:
        return _validate_env_var_name(v)

    @field_validator("api_version")
    @classmethod
    def _api_version_shape(cls, v: str) -> str:
        version = (v or "").strip().strip("/")
        if not version:
            raise ValueError("must be non-empty")
        return version


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    cache_dir: str = "var/cache"
    snapshot_dir: str = "var/data"
    ratelimit_dir: str = "var/ratelimit"
    scheduler_dir: str = "var/cache"


class CacheConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    ttl_seconds: PositiveInt = 86400


class RateLimitConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool = True
    group: str = "instagram"
    window_seconds: PositiveInt = 60
    max_requests: PositiveInt = 60
    trust_proxy: bool = False


class CrawlConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    per_page: int = Field(3, ge=1, le=50)
    max_pages: PositiveInt = 500


class ScheduleConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    refresh_window_seconds: int = Field(3600, ge=60)


class AccessConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    admin_token_env: str = "ADMIN_TOKEN"
    whitelisted_ips: list[str] = Field(default_factory=list)

    @field_validator("admin_token_env")
    @classmethod
    def _admin_env_must_be_valid(cls, v: str) -> str:
        return _validate_env_var_name(v)

    @field_validator("whitelisted_ips")
    @classmethod
    def _ips_must_parse(cls, v: list[str]) -> list[str]:
        out: list[str] = []
        for raw in v:
            ip = (raw or "").strip()
            if not ip:
                continue
            ipaddress.ip_address(ip)
            out.append(ip)
        return out


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    path: str = "var/log/ig_feed.jsonl"
    level: Literal["DEBUG", "INFO", "WARN", "ERROR"] = "INFO"


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    graph: GraphConfig = Field(default_factory=GraphConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    crawl: CrawlConfig = Field(default_factory=CrawlConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    access: AccessConfig = Field(default_factory=AccessConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
