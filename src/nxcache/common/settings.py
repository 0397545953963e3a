"""Application configuration for the cache server."""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


MIN_S3_PART_SIZE = 5 * 1024 * 1024
DEFAULT_S3_PART_SIZE = 8 * 1024 * 1024
DEFAULT_TOKENS_DB_PATH = "./data/nx-cache-server-tokens.sqlite"


def env_field(default, env_name: str, **kwargs):
    return Field(default, validation_alias=env_name, **kwargs)


def sqlite_url_for_path(value: str | Path) -> str:
    path = Path(value).expanduser().resolve()
    return f"sqlite+aiosqlite:///{path.as_posix()}"


class CacheServerSettings(BaseSettings):
    """Runtime settings for the cache server."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    admin_token: SecretStr = env_field(..., "ADMIN_TOKEN")
    host: str = env_field("0.0.0.0", "HOST")
    port: int = env_field(3000, "PORT")
    tokens_database_url: str = env_field(DEFAULT_TOKENS_DB_PATH, "TOKENS_DB_PATH", validate_default=True)
    storage_strategy: Literal["filesystem", "s3"] = env_field("filesystem", "STORAGE_STRATEGY")
    cache_dir: Path = env_field(Path("./cache"), "CACHE_DIR")
    s3_region: Optional[str] = env_field(None, "S3_REGION")
    s3_bucket: Optional[str] = env_field(None, "S3_BUCKET")
    s3_endpoint_url: Optional[str] = env_field(None, "S3_ENDPOINT")
    s3_access_key_id: Optional[SecretStr] = env_field(None, "S3_ACCESS_KEY_ID")
    s3_secret_access_key: Optional[SecretStr] = env_field(None, "S3_SECRET_ACCESS_KEY")
    s3_part_size_bytes: int = env_field(DEFAULT_S3_PART_SIZE, "S3_PART_SIZE")
    s3_max_retries: int = env_field(3, "S3_MAX_RETRIES")
    s3_retry_base_seconds: float = env_field(0.2, "S3_RETRY_BASE")
    s3_retry_max_seconds: float = env_field(2.0, "S3_RETRY_MAX")
    log_level: str = env_field("WARNING", "LOG_LEVEL")
    verbose: bool = env_field(False, "VERBOSE")
    metrics_token: Optional[SecretStr] = env_field(None, "METRICS_TOKEN")
    otel_exporter_endpoint: Optional[str] = env_field(None, "OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "OTEL_SAMPLER_RATIO")

    @field_validator("admin_token")
    @classmethod
    def _require_admin_token(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value().strip():
            raise ValueError("ADMIN_TOKEN must be set")
        return value

    @field_validator("port")
    @classmethod
    def _validate_port(cls, value: int) -> int:
        if value <= 0 or value >= 65536:
            raise ValueError("PORT must be a valid port number")
        return value

    @field_validator("storage_strategy", mode="before")
    @classmethod
    def _normalize_strategy(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("tokens_database_url", mode="before")
    @classmethod
    def _normalize_tokens_url(cls, value):
        if value in (None, ...):
            return value
        if isinstance(value, Path):
            return sqlite_url_for_path(value)
        if isinstance(value, str) and "://" not in value:
            return sqlite_url_for_path(value)
        return value

    @field_validator("s3_part_size_bytes")
    @classmethod
    def _validate_part_size(cls, value: int) -> int:
        return max(MIN_S3_PART_SIZE, value)

    @property
    def effective_log_level(self) -> str:
        if self.verbose and self.log_level.strip().upper() not in {"DEBUG", "INFO"}:
            return "INFO"
        return self.log_level
