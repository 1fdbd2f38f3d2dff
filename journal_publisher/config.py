"""Configuration loaded from environment (pydantic Settings)."""

from typing import Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# A send claim younger than SEND_TIMEOUT + this may still be in flight
STALE_SEND_MARGIN_SEC = 30


class Settings(BaseSettings):
    """Journal publisher settings. All secrets from env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    DATABASE_URL: str
    # Bot API token; without it every send fails with missing_tg_token
    BOT_TOKEN: Optional[str] = None
    # Default destination when a post has no tg_chat_id (e.g. -1001234567890 or @channel)
    TARGET_CHANNEL_ID: Optional[str] = None
    # Public site origin used for article links and relative cover images
    SITE_URL: str = ""
    JOURNAL_PATH_PREFIX: str = "journal"
    READ_MORE_LABEL: str = "Читать полностью"

    CONTROL_API_PORT: int = 8080
    CONTROL_API_TOKEN: str = ""  # required: Authorization: Bearer <token>
    CONTROL_API_PREFIX: str = "/master/blog-posts"

    SCHEDULER_INTERVAL: int = 30
    SCHEDULER_BATCH_SIZE: int = 25
    SCHEDULER_CONCURRENCY: int = 2
    SEND_TIMEOUT: float = 30.0
    STALE_SEND_AFTER_SEC: int = 600

    # Operator chat for delivery failure alerts (optional)
    ALERT_CHAT_ID: Optional[int] = None
    # Proxy for Bot API requests. If empty, HTTP_PROXY from env is used.
    TELEGRAM_PROXY: Optional[str] = None
    LOG_LEVEL: str = "INFO"

    @field_validator("BOT_TOKEN", "TARGET_CHANNEL_ID", "TELEGRAM_PROXY")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None

    @field_validator("SITE_URL")
    @classmethod
    def site_url_strip(cls, v: str) -> str:
        return (v or "").strip().rstrip("/")

    @field_validator("JOURNAL_PATH_PREFIX")
    @classmethod
    def path_prefix_strip(cls, v: str) -> str:
        v = (v or "").strip().strip("/")
        if not v:
            raise ValueError("JOURNAL_PATH_PREFIX must not be empty")
        return v

    @field_validator("SCHEDULER_INTERVAL", "SCHEDULER_BATCH_SIZE", "SCHEDULER_CONCURRENCY")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @field_validator("SEND_TIMEOUT")
    @classmethod
    def timeout_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("SEND_TIMEOUT must be positive")
        return v

    @model_validator(mode="after")
    def stale_after_exceeds_send_timeout(self) -> "Settings":
        minimum = self.SEND_TIMEOUT + STALE_SEND_MARGIN_SEC
        if self.STALE_SEND_AFTER_SEC < minimum:
            raise ValueError(
                f"STALE_SEND_AFTER_SEC must be >= SEND_TIMEOUT + {STALE_SEND_MARGIN_SEC} ({minimum:g})"
            )
        return self
