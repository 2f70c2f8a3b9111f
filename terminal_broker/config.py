"""
Terminal Broker Configuration.

Environment-driven configuration using Pydantic Settings.
Values that end up in a process command line or a filesystem path are
validated at load time so a bad environment fails startup, not a session.

Security Note:
- Never commit .env files to version control
- TOKEN_SECRET must be set in every environment; startup fails without it

Author: Backend Lead Developer
"""

import re
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = ["BrokerConfig"]

_HOSTNAME_RE = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9\-_.]*[a-zA-Z0-9])?$")
_SHELL_METACHARACTERS = ("$", "`", ";", "|", "&", ">", "<", "\n", "\r", "\0")


class BrokerConfig(BaseSettings):
    """
    Production-grade configuration for the terminal broker.

    Configuration Sources (priority order):
    1. Environment variables
    2. .env file
    3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = Field(default=3000, ge=1, le=65535)
    log_level: str = "INFO"
    cors_origins: List[str] = ["*"]

    # Chat Service (passed to the spawned CLI)
    chat_host: str = "localhost"
    chat_protocol: str = "wss"
    cli_command: str = "skychat-cli"
    token_dir_env: str = "SKYCHAT_TOKEN_DIR"
    data_dir: Path = Path("data")

    # Identity Tokens
    token_secret: Optional[str] = None
    token_ttl_seconds: int = Field(default=86400, ge=60)

    # Session Lifecycle
    session_timeout_seconds: int = Field(default=7200, ge=1, le=86400)  # 2 hours
    reaper_interval_seconds: float = Field(default=300.0, gt=0)  # 5 minutes
    kill_grace_seconds: float = Field(default=2.0, ge=0)
    force_new_on_connect: bool = False

    # Terminal
    default_cols: int = Field(default=80, ge=1, le=1000)
    default_rows: int = Field(default=24, ge=1, le=1000)
    max_input_length: int = Field(default=10000, ge=1)
    viewer_queue_chunks: int = Field(default=1024, ge=1)  # per viewer, excess output dropped

    @field_validator("chat_host")
    @classmethod
    def _validate_chat_host(cls, value: str) -> str:
        trimmed = value.strip()
        if not trimmed:
            raise ValueError("Hostname cannot be empty")
        if len(trimmed) > 253:
            raise ValueError("Hostname too long")
        if any(char in trimmed for char in _SHELL_METACHARACTERS):
            raise ValueError("Hostname contains invalid characters")
        if not _HOSTNAME_RE.match(trimmed):
            raise ValueError("Invalid hostname format")
        return trimmed

    @field_validator("chat_protocol")
    @classmethod
    def _validate_chat_protocol(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in ("ws", "wss"):
            raise ValueError('Protocol must be "ws" or "wss"')
        return normalized

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        return value.strip().upper()

    @property
    def sessions_dir(self) -> Path:
        """Root directory holding one credential directory per identity."""
        return self.data_dir / "sessions"
