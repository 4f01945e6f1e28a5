"""Configuration management with validation.

Every setting is validated at load time so a misconfigured engine fails
before it touches any state, rather than halfway through an apply.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class StateBackend(str, Enum):
    """Supported state backends."""

    LOCAL = "local"
    MEMORY = "memory"
    AZURE_BLOB = "azure_blob"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_PARALLELISM = 10
MIN_PARALLELISM = 1
MAX_PARALLELISM = 256

DEFAULT_LOCK_TIMEOUT_SECONDS = 0  # Fail fast when the lock is held
MAX_LOCK_TIMEOUT_SECONDS = 3600
LOCK_RETRY_BACKOFF_BASE_SECONDS = 1
LOCK_RETRY_BACKOFF_MAX_SECONDS = 15

DEFAULT_STATE_DIR = ".iacengine"
DEFAULT_STATE_KEY = "terraform.tfstate"
DEFAULT_WORKSPACE_KEY_PREFIX = "env:"
DEFAULT_WORKSPACE = "default"

# Security constraints - enforced limits to prevent abuse
MAX_CONFIG_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max configuration file
MAX_STATE_SIZE_BYTES = 64 * 1024 * 1024  # 64MB max state blob
MAX_PLAN_FILE_SIZE_BYTES = 64 * 1024 * 1024

# Input validation patterns
VALID_WORKSPACE_PATTERN = r"^[a-zA-Z0-9][a-zA-Z0-9_-]{0,89}$"
VALID_STATE_KEY_PATTERN = r"^[a-zA-Z0-9._-]{1,256}$"
VALID_KEY_PREFIX_PATTERN = r"^[a-zA-Z0-9._:-]{1,64}$"
VALID_CONTAINER_PATTERN = r"^[a-z0-9](?!.*--)[a-z0-9-]{1,61}[a-z0-9]$"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class EngineConfig:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Backend selection
    backend: StateBackend = StateBackend.LOCAL
    state_dir: Path = field(default_factory=lambda: Path(DEFAULT_STATE_DIR))
    state_key: str = DEFAULT_STATE_KEY
    workspace_key_prefix: str = DEFAULT_WORKSPACE_KEY_PREFIX

    # Azure Blob backend
    storage_account_url: str | None = None
    storage_container: str | None = None
    managed_identity_client_id: str | None = None

    # Apply behavior
    parallelism: int = DEFAULT_PARALLELISM
    lock_timeout_seconds: int = DEFAULT_LOCK_TIMEOUT_SECONDS
    verify_lock_on_write: bool = True
    refresh_before_plan: bool = False

    # Logging
    log_level: str = "INFO"
    json_logging: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not re.match(VALID_STATE_KEY_PATTERN, self.state_key):
            errors.append(f"STATE_KEY must match pattern {VALID_STATE_KEY_PATTERN}: {self.state_key}")

        if not re.match(VALID_KEY_PREFIX_PATTERN, self.workspace_key_prefix):
            errors.append(
                f"WORKSPACE_KEY_PREFIX must match pattern {VALID_KEY_PREFIX_PATTERN}: "
                f"{self.workspace_key_prefix}"
            )

        # Backend-specific validation
        if self.backend == StateBackend.AZURE_BLOB:
            if not self.storage_account_url:
                errors.append("AZURE_STORAGE_ACCOUNT_URL is required when backend is azure_blob")
            elif not self.storage_account_url.startswith("https://"):
                errors.append("AZURE_STORAGE_ACCOUNT_URL must use https")
            if not self.storage_container:
                errors.append("AZURE_STORAGE_CONTAINER is required when backend is azure_blob")
            elif not re.match(VALID_CONTAINER_PATTERN, self.storage_container):
                errors.append(
                    f"AZURE_STORAGE_CONTAINER is not a valid container name: {self.storage_container}"
                )

        if self.backend == StateBackend.LOCAL and self.state_dir.exists() and not self.state_dir.is_dir():
            errors.append(f"STATE_DIR is not a directory: {self.state_dir}")

        # Apply behavior validation
        if not (MIN_PARALLELISM <= self.parallelism <= MAX_PARALLELISM):
            errors.append(f"PARALLELISM must be between {MIN_PARALLELISM} and {MAX_PARALLELISM}")

        if not (0 <= self.lock_timeout_seconds <= MAX_LOCK_TIMEOUT_SECONDS):
            errors.append(f"LOCK_TIMEOUT_SECONDS must be between 0 and {MAX_LOCK_TIMEOUT_SECONDS}")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables.

        Environment Variables:
            STATE_BACKEND: One of local, memory, azure_blob (default: local)
            STATE_DIR: Directory for local state and workspace selection (default: .iacengine)
            STATE_KEY: Blob/file name of the default workspace state (default: terraform.tfstate)
            WORKSPACE_KEY_PREFIX: Key prefix for non-default workspaces (default: env:)
            PARALLELISM: Maximum concurrent provider operations (default: 10)
            LOCK_TIMEOUT_SECONDS: Retry window when the lock is held (default: 0, fail fast)
            VERIFY_LOCK_ON_WRITE: Re-check lock ownership before each state write (default: true)
            REFRESH_BEFORE_PLAN: Read real infrastructure before diffing (default: false)
            LOG_LEVEL: Root log level (default: INFO)
            ENABLE_JSON_LOGGING: JSON log lines on stderr (default: true)

        Azure Blob Variables:
            AZURE_STORAGE_ACCOUNT_URL: e.g. https://account.blob.core.windows.net
            AZURE_STORAGE_CONTAINER: Container holding state and lock blobs
            AZURE_CLIENT_ID: Optional user-assigned managed identity client ID
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_backend(value: str | None) -> StateBackend:
            if not value:
                return StateBackend.LOCAL
            try:
                return StateBackend(value)
            except ValueError as e:
                valid = [b.value for b in StateBackend]
                raise ConfigurationError(f"STATE_BACKEND must be one of {valid}: {value}") from e

        return cls(
            backend=get_backend(os.environ.get("STATE_BACKEND")),
            state_dir=Path(os.environ.get("STATE_DIR", DEFAULT_STATE_DIR)),
            state_key=os.environ.get("STATE_KEY", DEFAULT_STATE_KEY),
            workspace_key_prefix=os.environ.get("WORKSPACE_KEY_PREFIX", DEFAULT_WORKSPACE_KEY_PREFIX),
            storage_account_url=os.environ.get("AZURE_STORAGE_ACCOUNT_URL"),
            storage_container=os.environ.get("AZURE_STORAGE_CONTAINER"),
            managed_identity_client_id=os.environ.get("AZURE_CLIENT_ID"),
            parallelism=get_int("PARALLELISM", DEFAULT_PARALLELISM),
            lock_timeout_seconds=get_int("LOCK_TIMEOUT_SECONDS", DEFAULT_LOCK_TIMEOUT_SECONDS),
            verify_lock_on_write=get_bool("VERIFY_LOCK_ON_WRITE", True),
            refresh_before_plan=get_bool("REFRESH_BEFORE_PLAN", False),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            json_logging=get_bool("ENABLE_JSON_LOGGING", True),
        )
