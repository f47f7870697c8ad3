from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SessionSettings(BaseSettings):
    """Manages kernel session configuration using environment variables."""

    # Startup
    LAUNCH_TIMEOUT: float = Field(
        default=60.0, gt=0, description="Seconds allowed for launch + handshake"
    )
    HANDSHAKE_INTERVAL: float = Field(
        default=1.0, gt=0, description="Seconds before a kernel_info_request is re-sent"
    )

    # Protocol acknowledgements
    INTERRUPT_TIMEOUT: float = Field(default=10.0, gt=0)
    SHUTDOWN_TIMEOUT: float = Field(default=5.0, gt=0)

    # Process supervision
    EXIT_POLL_INTERVAL: float = Field(default=1.0, gt=0)
    AUTO_RESTART: bool = False
    MAX_AUTO_RESTARTS: int = Field(default=3, ge=0)
    AUTO_RESTART_RESET_AFTER: float = Field(
        default=300.0, ge=0, description="Seconds of uptime after which the restart budget refills"
    )

    LOG_LEVEL: Literal["debug", "info", "warning", "error", "critical"] = Field(
        default="info"
    )

    model_config = SettingsConfigDict(
        env_prefix="KERNEL_SESSION_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


# Instantiate a single config object to be used across the package
settings = SessionSettings()


def load_settings(**overrides) -> SessionSettings:
    """Build a fresh settings object from the environment.

    Keyword overrides take precedence over environment values and are
    validated the same way; raises pydantic.ValidationError on bad input.
    """
    return SessionSettings(**overrides)
