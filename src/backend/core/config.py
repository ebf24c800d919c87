"""
Application configuration using Pydantic Settings.

All configuration is loaded from environment variables (or a local .env file).
"""

import json
import re
from functools import lru_cache
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_HEX_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "EvalShield"
    APP_ENV: str = "development"
    DEBUG: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Field-Level Encryption (envelope KEK)
    # 64 hex characters (256-bit AES key).
    # Generate with: python -c "from core.encryption import generate_master_key; print(generate_master_key())"
    ENCRYPTION_MASTER_KEY: str | None = None

    # HMAC key for student receipts; never stored with the evaluations.
    # A random per-process key is used when unset, so receipts stay
    # unlinkable but cannot be re-verified after a restart.
    RECEIPT_SECRET: str | None = None

    # Admin diagnostics endpoints (audit, DP budget, statistics)
    ADMIN_API_KEY: str | None = None

    # Document store: "memory" or "cosmos"
    STORE_BACKEND: str = "memory"

    # Azure Cosmos DB (only read when STORE_BACKEND == "cosmos")
    AZURE_COSMOS_ENDPOINT: str | None = None
    AZURE_COSMOS_CONNECTION_STRING: str | None = None  # For local emulator only
    AZURE_COSMOS_DATABASE: str = "evalshield"
    AZURE_COSMOS_DISABLE_SSL: bool = False

    # Submission timing obfuscation
    SUBMISSION_DELAY_MIN_SECONDS: float = 2.0
    SUBMISSION_DELAY_MAX_SECONDS: float = 8.0
    MIXING_POOL_MINUTES: int = 15

    # Aggregate release gates
    K_ANONYMITY_THRESHOLD: int = 5
    STATISTICAL_SAFETY_MIN: int = 10

    # Differential privacy budget (per window)
    DP_TOTAL_BUDGET: float = 1.0
    DP_WINDOW_MINUTES: int = 60
    DP_MAX_QUERIES: int = 10
    DP_QUERY_EPSILON: float = 0.1

    # Comment sanitization
    COMMENT_MAX_LENGTH: int = 500

    # CORS - comma-separated or JSON list
    CORS_ORIGINS: str = "http://localhost:3000"

    @field_validator("ENCRYPTION_MASTER_KEY", mode="before")
    @classmethod
    def normalize_master_key(cls, v: Any) -> str | None:
        """
        Drop malformed master keys instead of failing startup.

        The envelope cipher reports "not configured" for a missing key, and
        the submission path refuses to store comments in that state.
        """
        if v is None:
            return None
        v = str(v).strip()
        if not v:
            return None
        if not _HEX_KEY_PATTERN.match(v):
            structlog.get_logger(__name__).error(
                "invalid_encryption_master_key",
                expected="64 hex characters",
                actual_length=len(v),
            )
            return None
        return v

    @field_validator("STORE_BACKEND")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        """Only the in-memory and Cosmos DB stores exist."""
        v = v.lower()
        if v not in ("memory", "cosmos"):
            raise ValueError("STORE_BACKEND must be 'memory' or 'cosmos'")
        return v

    @property
    def cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        try:
            return json.loads(self.CORS_ORIGINS)
        except json.JSONDecodeError:
            return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        return self.APP_ENV in ("production", "staging")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
