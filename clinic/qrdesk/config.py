"""Central configuration for the qrdesk registration service and its clients."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ROOT_DIR = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILE = ROOT_DIR / ".env"


# ============================================================
# Nested Configuration Classes
# ============================================================

class RoomSettings(BaseModel):
    """Room join and setup timing for staff displays."""
    join_retry_delay_seconds: float = Field(2.0, description="Delay before re-sending an unconfirmed room join")
    join_retry_backoff: float = Field(1.0, description="Multiplier applied to the delay after each retry (1.0 = fixed)")
    join_retry_max_delay_seconds: float = Field(30.0, description="Upper bound for the retry delay")
    join_max_attempts: int = Field(5, description="Join attempts before the display is marked stalled")
    setup_timeout_seconds: float = Field(10.0, description="Time a display may stay loading before it is stalled")


class TokenSettings(BaseModel):
    """One-time registration token minting."""
    token_bytes: int = Field(24, description="Random bytes per token (url-safe encoded)")
    ttl_seconds: int = Field(3600, description="Token lifetime in seconds (0 disables expiry)")


class ChannelSettings(BaseModel):
    """Real-time channel tuning."""
    ping_interval_seconds: float = Field(25.0, description="Server heartbeat interval")
    event_queue_size: int = Field(16, description="Max buffered events per display subscriber")
    connect_timeout_seconds: float = Field(10.0, description="Websocket opening handshake timeout")


class StaffAccount(BaseModel):
    """Demo staff directory entry."""
    id: str
    username: str
    password: str
    role: str = Field("staff", description="admin | doctor | staff")


def _default_staff() -> List[StaffAccount]:
    return [
        StaffAccount(id="u-admin", username="admin", password="admin", role="admin"),
        StaffAccount(id="u-dr-smith", username="dr.smith", password="doctor", role="doctor"),
        StaffAccount(id="u-dr-patel", username="dr.patel", password="doctor", role="doctor"),
        StaffAccount(id="u-reception", username="reception", password="reception", role="staff"),
    ]


class Settings(BaseSettings):
    """Environment-driven settings shared by the server and the display client."""

    # Client endpoints
    api_base_url: str = Field("http://localhost:5000/api", description="REST base URL used by clients")
    ws_url: str = Field("ws://localhost:5000/ws", description="Real-time channel URL used by clients")
    frontend_origin: str = Field("http://localhost:5173", description="Origin of the patient registration page")
    http_timeout_seconds: float = Field(15.0, description="Timeout for REST calls")

    # Server
    server_host: str = Field("0.0.0.0", description="Host interface for the FastAPI server")
    server_port: int = Field(5000, description="Port for the FastAPI server")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="Allowed CORS origins")

    # Client-side handoff cache (mapping creation -> setup display)
    handoff_cache_dir: Path = Field(ROOT_DIR / ".qrdesk", description="Directory for short-lived handoff entries")

    # Auth
    staff_accounts: List[StaffAccount] = Field(default_factory=_default_staff, description="Demo staff directory")

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    log_directory: Path = Field(ROOT_DIR / "logs", description="Log directory path")
    log_retention_days: int = Field(14, description="Number of log files to retain")

    # Nested Configuration Objects
    rooms: RoomSettings = Field(default_factory=RoomSettings, description="Room join settings")
    tokens: TokenSettings = Field(default_factory=TokenSettings, description="Token settings")
    channel: ChannelSettings = Field(default_factory=ChannelSettings, description="Real-time channel settings")

    @field_validator("frontend_origin", "api_base_url", "ws_url", mode="before")
    @classmethod
    def _strip_trailing_slash(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().rstrip("/")
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    model_config = SettingsConfigDict(
        env_file=str(DEFAULT_ENV_FILE),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings(override_env_file: Optional[Path] = None) -> Settings:
    """Cached Settings instance; accepts optional env override for tests."""

    if override_env_file:
        return Settings(_env_file=str(override_env_file))
    return Settings()


__all__ = [
    "ChannelSettings",
    "RoomSettings",
    "Settings",
    "StaffAccount",
    "TokenSettings",
    "get_settings",
]
