"""Configuration management for gemchat."""

import logging
from typing import Annotated, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings, read from GEMCHAT_* environment variables or .env."""

    model_config = SettingsConfigDict(
        env_prefix="GEMCHAT_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # API Configuration
    api_keys: Annotated[List[str], NoDecode] = Field(
        default_factory=list, description="Gemini API keys, tried in rotation order"
    )
    api_base_url: Optional[str] = Field(None, description="Optional proxy base URL for the Gemini API")
    default_model: str = Field(default="gemini-2.5-flash", description="Model for chat turns")
    suggestion_model: str = Field(default="gemini-2.5-flash-lite", description="Model for suggested replies")
    title_model: str = Field(default="gemini-2.5-flash-lite", description="Model for chat titles")
    preferred_models: Annotated[List[str], NoDecode] = Field(
        default_factory=list, description="Model names to offer, in display order"
    )

    # Generation Configuration
    temperature: Optional[float] = Field(None, description="Sampling temperature")
    max_output_tokens: Optional[int] = Field(None, description="Maximum tokens per response")
    max_payload_bytes: int = Field(default=200 * 1024 * 1024, description="Request size budget")

    # Turn Configuration
    stream_inactivity_timeout: float = Field(default=60.0, gt=0, description="Watchdog window in seconds")
    publish_interval: float = Field(default=1 / 60, ge=0, description="Minimum seconds between UI updates")
    show_thoughts: bool = Field(default=False, description="Reveal model reasoning")
    generate_suggestions: bool = Field(default=True, description="Suggest replies after a turn")
    max_suggestions: int = Field(default=3, ge=1, description="Maximum suggested replies")
    suggestion_timeout: float = Field(default=20.0, gt=0, description="Suggestion sub-call timeout")
    auto_title_generation: bool = Field(default=True, description="Title new chats automatically")
    language: str = Field(default="en", description="Language of user-facing messages (en or zh)")

    # Storage / Logging Configuration
    persist_debounce: float = Field(default=1.0, ge=0, description="Seconds before session writes")
    log_level: str = Field(default="INFO", description="Log level")

    @field_validator("api_keys", "preferred_models", mode="before")
    @classmethod
    def _split_list(cls, value):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("language")
    @classmethod
    def _check_language(cls, value: str) -> str:
        value = value.lower()
        if value not in ("en", "zh"):
            raise ValueError("language must be 'en' or 'zh'")
        return value


def configure_logging(level: str = "INFO") -> None:
    """Install the root log handler once."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
    )


def get_settings() -> Settings:
    """Load settings and configure logging from them."""
    loaded = Settings()
    configure_logging(loaded.log_level)
    return loaded


settings = Settings()
