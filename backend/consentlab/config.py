# SPDX-License-Identifier: Apache-2.0
"""All configuration via environment variables (12-factor). No hardcoded values."""
from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = Field(default="sqlite:///./consentlab.db", description="Database URL")

    # Security: required in production, set in .env
    secret_key: str = Field(default="dev-secret-key-change-in-production", min_length=16)

    # CORS
    allowed_origins: list[str] = Field(
        default=["http://localhost:3000"],
        description="Allowed CORS origins",
    )

    # Studies
    join_code_length: int = Field(default=8, ge=4, le=16, description="Length of generated join codes")
    min_categories: int = Field(default=3, ge=1, le=10, description="Minimum categories per study")
    receipt_schema_version: int = Field(default=1, ge=1)

    # Uploads (metadata only, bytes live in external storage)
    max_upload_size_mb: int = Field(default=10, ge=1, le=2000, description="Max upload size in MB")

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True)
    join_rate_limit: str = Field(default="30/minute", description="Limit for join-by-code attempts")

    # Logging
    log_level: str = Field(default="INFO")

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_size_mb * 1024 * 1024

    @property
    def production(self) -> bool:
        return self.secret_key != "dev-secret-key-change-in-production"


settings = Settings()

JOIN_CODE_MIN_LENGTH = 4
JOIN_CODE_MAX_LENGTH = 16
RECEIPT_HASH_PREFIX = "sha256:"
