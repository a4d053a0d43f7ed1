from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

ENV_FILE = Path(".env")

SSE_ALGORITHMS: tuple[str, ...] = ("", "AES256", "aws:kms")
DEFAULT_DIRECT_DOWNLOAD_EXPIRE = 60 * 60  # 1h


class ConfigurationError(ValueError):
    """Raised when mandatory storage configuration is missing or invalid."""


def _load_env_file() -> None:
    if not ENV_FILE.exists():
        return
    for raw_line in ENV_FILE.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.lower() in {"1", "true", "t", "yes", "y", "on"}


def _as_int(value: str | None, default: int | None) -> int | None:
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as exc:
        raise ConfigurationError(f"Cannot parse integer value: {value!r}") from exc


def _first_set(*names: str) -> str | None:
    for name in names:
        value = os.environ.get(name)
        if value:
            return value
    return None


@dataclass
class Settings:
    DB_URL: str = "sqlite:///./blobstore.db"
    DB_CONNECT_TIMEOUT: int = 5
    ENABLE_METRICS: bool = True
    TRACE_HTTP: bool = False
    API_KEY_ENABLED: bool = False
    API_KEY: str | None = None
    ADMIN_API_KEY: str | None = None

    S3_BUCKET: str | None = None
    S3_PREFIX: str = ""
    S3_REGION: str | None = None
    S3_ACCESS_KEY_ID: str | None = None
    S3_SECRET_ACCESS_KEY: str | None = None
    S3_ENDPOINT_URL: str | None = None
    S3_ADDRESSING_STYLE: str = "auto"
    S3_USE_SSL: bool = True
    # connection tuning, None keeps the botocore defaults
    S3_MAX_CONNECTIONS: int | None = None
    S3_MAX_RETRIES: int | None = None
    S3_CONNECT_TIMEOUT: int | None = None
    S3_READ_TIMEOUT: int | None = None
    S3_SSE_ALGORITHM: str = ""
    S3_SSE_KMS_KEY_ID: str | None = None
    S3_CREATE_BUCKET: bool = False
    S3_DIRECT_DOWNLOAD: bool = False
    S3_DIRECT_DOWNLOAD_EXPIRE: int = DEFAULT_DIRECT_DOWNLOAD_EXPIRE

    BLOB_CACHE_DIR: str = "./var/blobcache"

    BATCH_ROLE_ARN: str | None = None
    BATCH_ACCELERATE: bool = False
    BATCH_PROVIDER_ID: str = "s3"
    BATCH_TTL_SECONDS: int = 60 * 60

    def __post_init__(self) -> None:
        if self.S3_SSE_ALGORITHM not in SSE_ALGORITHMS:
            raise ConfigurationError(
                f"S3_SSE_ALGORITHM must be one of {SSE_ALGORITHMS[1:]} or empty, "
                f"got {self.S3_SSE_ALGORITHM!r}"
            )
        if self.S3_SSE_KMS_KEY_ID and self.S3_SSE_ALGORITHM != "aws:kms":
            raise ConfigurationError(
                "S3_SSE_KMS_KEY_ID requires S3_SSE_ALGORITHM=aws:kms"
            )
        if self.S3_DIRECT_DOWNLOAD_EXPIRE < 0:
            self.S3_DIRECT_DOWNLOAD_EXPIRE = DEFAULT_DIRECT_DOWNLOAD_EXPIRE

    @property
    def is_encrypted(self) -> bool:
        """KMS-encrypted objects carry an ETag that is not the plaintext MD5."""
        return self.S3_SSE_ALGORITHM == "aws:kms"

    def require_bucket(self) -> str:
        if not self.S3_BUCKET:
            raise ConfigurationError("Missing conf: S3_BUCKET")
        return self.S3_BUCKET

    @classmethod
    def from_environment(cls) -> "Settings":
        _load_env_file()
        env = os.environ.get
        return cls(
            DB_URL=env("DB_URL", cls.DB_URL),
            DB_CONNECT_TIMEOUT=int(env("DB_CONNECT_TIMEOUT", cls.DB_CONNECT_TIMEOUT)),
            ENABLE_METRICS=_as_bool(env("ENABLE_METRICS"), cls.ENABLE_METRICS),
            TRACE_HTTP=_as_bool(env("TRACE_HTTP"), cls.TRACE_HTTP),
            API_KEY_ENABLED=_as_bool(env("API_KEY_ENABLED"), cls.API_KEY_ENABLED),
            API_KEY=env("API_KEY"),
            ADMIN_API_KEY=env("ADMIN_API_KEY"),
            S3_BUCKET=env("S3_BUCKET"),
            S3_PREFIX=env("S3_PREFIX", cls.S3_PREFIX),
            S3_REGION=env("S3_REGION") or None,
            # Fallback on the default AWS env keys for ID and secret
            S3_ACCESS_KEY_ID=_first_set("S3_ACCESS_KEY_ID", "AWS_ACCESS_KEY_ID"),
            S3_SECRET_ACCESS_KEY=_first_set(
                "S3_SECRET_ACCESS_KEY", "AWS_SECRET_ACCESS_KEY"
            ),
            S3_ENDPOINT_URL=env("S3_ENDPOINT_URL") or None,
            S3_ADDRESSING_STYLE=env("S3_ADDRESSING_STYLE", cls.S3_ADDRESSING_STYLE),
            S3_USE_SSL=_as_bool(env("S3_USE_SSL"), cls.S3_USE_SSL),
            S3_MAX_CONNECTIONS=_as_int(env("S3_MAX_CONNECTIONS"), None),
            S3_MAX_RETRIES=_as_int(env("S3_MAX_RETRIES"), None),
            S3_CONNECT_TIMEOUT=_as_int(env("S3_CONNECT_TIMEOUT"), None),
            S3_READ_TIMEOUT=_as_int(env("S3_READ_TIMEOUT"), None),
            S3_SSE_ALGORITHM=env("S3_SSE_ALGORITHM", cls.S3_SSE_ALGORITHM).strip(),
            S3_SSE_KMS_KEY_ID=env("S3_SSE_KMS_KEY_ID") or None,
            S3_CREATE_BUCKET=_as_bool(env("S3_CREATE_BUCKET"), cls.S3_CREATE_BUCKET),
            S3_DIRECT_DOWNLOAD=_as_bool(
                env("S3_DIRECT_DOWNLOAD"), cls.S3_DIRECT_DOWNLOAD
            ),
            S3_DIRECT_DOWNLOAD_EXPIRE=_as_int(
                env("S3_DIRECT_DOWNLOAD_EXPIRE"), cls.S3_DIRECT_DOWNLOAD_EXPIRE
            ),
            BLOB_CACHE_DIR=env("BLOB_CACHE_DIR", cls.BLOB_CACHE_DIR),
            BATCH_ROLE_ARN=env("BATCH_ROLE_ARN") or None,
            BATCH_ACCELERATE=_as_bool(env("BATCH_ACCELERATE"), cls.BATCH_ACCELERATE),
            BATCH_PROVIDER_ID=env("BATCH_PROVIDER_ID", cls.BATCH_PROVIDER_ID),
            BATCH_TTL_SECONDS=_as_int(
                env("BATCH_TTL_SECONDS"), cls.BATCH_TTL_SECONDS
            ),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_environment()
