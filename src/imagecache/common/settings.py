"""Application configuration for the image cache proxy."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


NONE_SENTINEL = "[none]"


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class ImageCacheSettings(BaseSettings):
    """Runtime settings for the proxy, read once at startup."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    log_level: str = env_field("INFO", "LOG_LEVEL")
    host: str = env_field("0.0.0.0", "HOST")
    port: int = env_field(3000, "PORT")
    cache_dir: Path = env_field(Path("./data/cache"), "CACHE_DIR")
    aws_access_key_id: Optional[str] = env_field(None, "AWS_ACCESS_KEY_ID")
    aws_secret_access_key: Optional[SecretStr] = env_field(None, "AWS_SECRET_ACCESS_KEY")
    aws_region: str = env_field("localhost", "AWS_REGION")
    aws_endpoint: Optional[str] = env_field(None, "AWS_ENDPOINT")
    aws_force_path_style: bool = env_field(False, "AWS_FORCE_PATH_STYLE")
    aws_s3_bucket: str = env_field(..., "AWS_S3_BUCKET")
    url_signature_key: SecretStr = env_field(..., "URL_SIGNATURE_KEY")
    coalesce_misses: bool = env_field(True, "COALESCE_MISSES")
    max_image_dimension: int = env_field(8192, "MAX_IMAGE_DIMENSION")
    stream_chunk_bytes: int = env_field(64 * 1024, "STREAM_CHUNK_BYTES")
    metrics_token: Optional[SecretStr] = env_field(None, "METRICS_TOKEN")
    otel_exporter_endpoint: Optional[str] = env_field(None, "OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "OTEL_SAMPLER_RATIO")

    @field_validator("aws_endpoint", "aws_access_key_id", mode="before")
    @classmethod
    def _nullable(cls, value):
        if isinstance(value, str) and (not value.strip() or value.strip() == NONE_SENTINEL):
            return None
        return value

    @field_validator("max_image_dimension", "stream_chunk_bytes")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    def describe(self) -> dict[str, Any]:
        """Return the effective configuration with secrets redacted."""

        return {
            "log_level": self.log_level,
            "host": self.host,
            "port": self.port,
            "cache_dir": str(self.cache_dir),
            "aws": {
                "credentials": {
                    "access_key_id": self.aws_access_key_id,
                    "secret_access_key": "[redacted]" if self.aws_secret_access_key else None,
                },
                "region": self.aws_region,
                "endpoint": self.aws_endpoint,
                "bucket": self.aws_s3_bucket,
                "force_path_style": self.aws_force_path_style,
            },
            "url_signature_key": "[redacted]",
            "coalesce_misses": self.coalesce_misses,
            "max_image_dimension": self.max_image_dimension,
        }
