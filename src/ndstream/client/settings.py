from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from ndstream.types import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_ENDPOINT,
    DEFAULT_HOST,
    DEFAULT_IDLE_TIMEOUT,
    DEFAULT_PORT,
    DEFAULT_USER_AGENT,
)


class StreamSettings(BaseSettings):
    """Stream client settings.

    All settings can be configured via environment variables with the prefix NDSTREAM_.
    For example, NDSTREAM_HOST=localhost will set host="localhost".
    """

    model_config = SettingsConfigDict(
        env_prefix="NDSTREAM_",
        env_file=".env",
        extra="ignore",
    )

    username: str | None = None
    password: SecretStr | None = None

    # Endpoint settings
    host: str = DEFAULT_HOST
    port: int = Field(default=DEFAULT_PORT, gt=0, lt=65536)
    endpoint: str = DEFAULT_ENDPOINT
    user_agent: str = DEFAULT_USER_AGENT
    tls: bool | None = None
    """Force TLS on or off; by default TLS is used only on port 443."""

    # Timeouts, in seconds
    connect_timeout: float = Field(default=DEFAULT_CONNECT_TIMEOUT, gt=0)
    idle_timeout: float = Field(default=DEFAULT_IDLE_TIMEOUT, gt=0)

    # Stop conditions; 0 disables
    max_records: int = Field(default=0, ge=0)
    max_seconds: int = Field(default=0, ge=0)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
