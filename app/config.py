"""
Amora — Application Configuration

Every tunable of the engine and the API is a field on ``Settings``, read from
the process environment or a local ``.env`` file.  Call-sites obtain the one
shared instance through ``get_settings()``; tests construct ``Settings``
directly with keyword overrides.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the Amora engine and API."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Runtime environment
    # ------------------------------------------------------------------ #
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # ------------------------------------------------------------------ #
    # Document store
    # ------------------------------------------------------------------ #
    STORE_BACKEND: str = "firestore"  # firestore | memory
    FIRESTORE_DATABASE: str = "(default)"
    TRANSACTION_MAX_ATTEMPTS: int = 5

    # ------------------------------------------------------------------ #
    # Google Cloud Platform
    # ------------------------------------------------------------------ #
    GCP_PROJECT_ID: str = ""
    GCS_BUCKET_NAME: str = ""

    # ------------------------------------------------------------------ #
    # HTTP server
    # ------------------------------------------------------------------ #
    ALLOWED_ORIGINS: str = "*"
    REQUEST_TIMEOUT_SECONDS: float = 30.0
    SHUTDOWN_DRAIN_SECONDS: float = 15.0

    # ------------------------------------------------------------------ #
    # Discovery feed
    # ------------------------------------------------------------------ #
    FEED_BATCH_SIZE: int = 25
    FEED_WINDOW_SIZE: int = 80  # over-fetch to absorb exclusion losses

    # ------------------------------------------------------------------ #
    # Chat
    # ------------------------------------------------------------------ #
    MESSAGES_PAGE_SIZE: int = 50

    # ------------------------------------------------------------------ #
    # Voice calls (WebRTC)
    # ------------------------------------------------------------------ #
    STUN_SERVER_URL: str = "stun:stun.l.google.com:19302"
    TURN_SERVER_URL: str = ""
    TURN_SERVER_USERNAME: str = ""
    TURN_SERVER_PASSWORD: str = ""
    CALL_ANSWER_TIMEOUT_SECONDS: float = 45.0
    CALL_MAX_DURATION_SECONDS: float = 4 * 60 * 60
    AUDIO_INPUT_DEVICE: str = "default"
    AUDIO_INPUT_FORMAT: str = "pulse"

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #
    @property
    def allowed_origins_list(self) -> list[str]:
        """Return ALLOWED_ORIGINS as a list split on commas."""
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def ice_servers(self) -> list[dict]:
        """STUN server plus the TURN relay when credentials are configured."""
        servers: list[dict] = [{"urls": self.STUN_SERVER_URL}]
        if self.TURN_SERVER_URL:
            servers.append({
                "urls": self.TURN_SERVER_URL,
                "username": self.TURN_SERVER_USERNAME,
                "credential": self.TURN_SERVER_PASSWORD,
            })
        return servers

    @field_validator("STORE_BACKEND")
    @classmethod
    def _known_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in ("firestore", "memory"):
            raise ValueError(f"STORE_BACKEND must be 'firestore' or 'memory', got {v!r}")
        return v

    @field_validator("CALL_ANSWER_TIMEOUT_SECONDS", "CALL_MAX_DURATION_SECONDS")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"Timeout must be >= 0, got {v}")
        return v

    @model_validator(mode="after")
    def _window_covers_batch(self) -> "Settings":
        if self.FEED_WINDOW_SIZE < self.FEED_BATCH_SIZE:
            raise ValueError(
                "FEED_WINDOW_SIZE must be at least FEED_BATCH_SIZE "
                f"({self.FEED_WINDOW_SIZE} < {self.FEED_BATCH_SIZE})"
            )
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """The process-wide ``Settings``, parsed from the environment on first use."""
    return Settings()
