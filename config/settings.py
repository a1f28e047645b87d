"""Configuration management using pydantic-settings."""
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Data bus settings loaded from DATABUS_* environment variables."""

    # Retention applied by RequestCoalescer when the caller passes none
    # None = no caching, > 0 = seconds, <= 0 = keep until replaced
    default_retention_seconds: Optional[float] = None

    # Max seconds a coalesced caller blocks waiting for a result
    coalesce_timeout: float = 30.0

    # Executor for the global registry ("asyncio" needs a running loop)
    dispatcher: Literal["thread", "asyncio"] = "thread"

    # Level applied to the "databus" logger
    log_level: str = "WARNING"

    model_config = SettingsConfigDict(
        env_prefix="DATABUS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
