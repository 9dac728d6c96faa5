"""Application configuration via pydantic-settings.

Loads all settings from environment variables (or .env file), and from
command-line flags when started with ``python -m webhook_runner``.
Invalid combinations are rejected here, at startup, so the server never
begins serving traffic with a configuration it cannot honour.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from webhook_runner.core.repository import is_ssh_url

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Central configuration for the webhook runner."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # --- Server ---
    bind_address: str = Field(
        default="0.0.0.0:80",
        description="Address to bind to; for multiple bind addresses use a reverse proxy",
    )
    log_level: str = "DEBUG"

    # --- Repository ---
    git_repository: str | None = Field(
        default=None,
        description="Remote to clone instead of the repository named in the webhook",
    )
    ssh_key: Path | None = Field(default=None, description="SSH private key for SSH remotes")
    checkout_dir: Path | None = Field(
        default=None, description="Parent directory for temporary checkouts"
    )

    # --- Policies ---
    commit_command: str | None = Field(
        default=None, description="Command to run after commits are (optionally) verified"
    )
    commit_keyring: Path | None = Field(default=None, description="OpenPGP keyring for commits")
    tag_command: str | None = Field(
        default=None, description="Command to run after tags are (optionally) verified"
    )
    tag_keyring: Path | None = Field(default=None, description="OpenPGP keyring for tags")

    # --- Timeouts (seconds) ---
    clone_timeout: float = Field(default=300.0, gt=0)
    command_timeout: float = Field(default=3600.0, gt=0)
    verify_timeout: float = Field(default=30.0, gt=0)

    # --- Webhook authentication ---
    webhook_secret_key: SecretStr | None = Field(
        default=None, description="Shared secret for X-Hub-Signature-256; unset disables auth"
    )

    @model_validator(mode="after")
    def _check_combinations(self) -> Settings:
        if self.tag_keyring is not None and self.tag_command is None:
            raise ValueError("tag keyring defined without defining tag command")
        if self.commit_keyring is not None and self.commit_command is None:
            raise ValueError("commit keyring defined without defining commit command")
        if self.git_repository is not None and is_ssh_url(self.git_repository) and self.ssh_key is None:
            raise ValueError("repository with ssh authentication defined without defining ssh key")
        self.bind_host_port()

        if self.ssh_key is not None and not self.ssh_key.exists():
            logger.warning("SSH key not found at %s; ssh clones will fail", self.ssh_key)
        if self.webhook_secret_key is None:
            logger.warning("No webhook secret configured; requests are not authenticated")
        return self

    @property
    def webhook_secret(self) -> bytes | None:
        """The HMAC key bytes, or None when authentication is disabled."""
        if self.webhook_secret_key is None:
            return None
        return self.webhook_secret_key.get_secret_value().encode("utf-8")

    def bind_host_port(self) -> tuple[str, int]:
        """Split ``bind_address`` into host and port."""
        host, sep, port = self.bind_address.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ValueError(f"bind_address must be host:port, got {self.bind_address!r}")
        return host.strip("[]"), int(port)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached application settings singleton."""
    return Settings()
