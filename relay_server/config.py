"""
Relay server settings.

Values come from RELAY_* environment variables, falling back to the defaults
below.
"""

import os
from typing import Mapping, Optional
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigurationError


DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000
DEFAULT_OUTBOUND_QUEUE_SIZE = 64
DEFAULT_STATIC_DIR = "public"

_ENV_FIELDS = {
    "RELAY_HOST": "host",
    "RELAY_PORT": "port",
    "RELAY_OUTBOUND_QUEUE_SIZE": "outbound_queue_size",
    "RELAY_STATIC_DIR": "static_dir",
    "RELAY_LOG_LEVEL": "log_level",
}


class RelaySettings(BaseModel):
    """Runtime configuration for the relay"""

    host: str = DEFAULT_HOST
    port: int = Field(DEFAULT_PORT, ge=1, le=65535)
    # Frames buffered per recipient before the oldest is dropped
    outbound_queue_size: int = Field(DEFAULT_OUTBOUND_QUEUE_SIZE, ge=1)
    static_dir: Optional[str] = DEFAULT_STATIC_DIR
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {value!r}")
        return level

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RelaySettings":
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read instead of os.environ

        Raises:
            ConfigurationError: If a variable holds an invalid value
        """
        environ = os.environ if environ is None else environ
        values = {
            field: environ[name]
            for name, field in _ENV_FIELDS.items()
            if environ.get(name)
        }
        try:
            return cls(**values)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid relay configuration: {exc}") from exc
