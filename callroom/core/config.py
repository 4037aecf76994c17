"""Application configuration for the call signaling service."""
from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])
    log_level: str = Field(default="INFO")
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000)

    signaling_backend: Literal["memory", "sql"] = Field(default="memory")
    database_url: str = Field(default="sqlite+aiosqlite:///./callroom.db")
    watch_poll_interval_seconds: float = Field(default=0.5, gt=0)

    ice_servers: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["stun:stun.l.google.com:19302"]
    )
    turn_url: str = Field(default="")
    turn_username: str = Field(default="")
    turn_credential: str = Field(default="")

    default_creator: str = Field(default="Anonymous")

    camera_device: str = Field(default="/dev/video0")
    camera_format: str | None = Field(default="v4l2")
    video_size: str = Field(default="640x480")
    framerate: int = Field(default=30, ge=1)
    microphone_device: str | None = Field(default=None)
    microphone_format: str | None = Field(default="pulse")

    room_cleanup_attempts: int = Field(default=3, ge=1)
    room_cleanup_backoff_seconds: float = Field(default=0.2, ge=0)

    @field_validator("ice_servers", mode="before")
    @classmethod
    def _split_ice_servers(cls, value: object) -> object:
        """Allow comma-separated env values for STUN server URLs."""

        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
