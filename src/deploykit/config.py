"""Configuration management with validation.

All settings are read from the CI run's environment variables once, at the
boundary, and handed to the pure resolution functions as an explicit value.
Nothing below this layer reads ``os.environ``.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum


class PermissionCheckMode(str, Enum):
    """Whether the GitHub permission gate runs.

    AUTO: Run when a GitHub token is available (default)
    ENABLED: Always run (missing token yields NO_TOKEN protection)
    DISABLED: Never run, decision is SKIPPED
    """

    AUTO = "auto"
    ENABLED = "true"
    DISABLED = "false"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Fallback registry when neither a per-environment nor a global registry is set
DEFAULT_REGISTRY = "172.16.3.0/mtw"

DEFAULT_GITHUB_API_URL = "https://api.github.com"
DEFAULT_TELEGRAM_API_URL = "https://api.telegram.org"

DEFAULT_HTTP_TIMEOUT_SECONDS = 30
MIN_HTTP_TIMEOUT_SECONDS = 1
MAX_HTTP_TIMEOUT_SECONDS = 300

# Retry policy for external HTTP calls: 4 attempts, 2s, 4s, 8s
DEFAULT_HTTP_MAX_ATTEMPTS = 4
MAX_HTTP_MAX_ATTEMPTS = 10
DEFAULT_HTTP_BACKOFF_SECONDS = 2.0

# Repository variables holding comma-separated protected branch lists
ADMIN_PROTECTION_VARIABLE = "BRANCH_PROTECT_ADMIN"
MAINTAIN_PROTECTION_VARIABLE = "BRANCH_PROTECT_MAINTAIN"

VALID_API_URL_PATTERN = r"^https?://[^\s]+$"

# Per-repository pipeline settings
DEFAULT_SETTINGS_FILE = "deploykit.yaml"
MAX_SETTINGS_FILE_SIZE_BYTES = 256 * 1024  # 256KB max settings file


def parse_list(value: str | None) -> tuple[str, ...] | None:
    """Split a comma-separated list, None when the variable is unset."""
    if value is None:
        return None
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class RegistryConfig:
    """Container registry per environment class with a global fallback."""

    beta: str | None = None
    staging: str | None = None
    prod: str | None = None
    fallback: str = DEFAULT_REGISTRY


@dataclass(frozen=True)
class TelegramConfig:
    """Telegram credentials as found in the environment.

    Each field maps an environment class suffix ("BETA", "STAGING", "PROD")
    or "" (the global value) to the raw variable value.
    """

    bot_tokens: Mapping[str, str] = field(default_factory=dict)
    chat_ids: Mapping[str, str] = field(default_factory=dict)
    thread_ids: Mapping[str, str] = field(default_factory=dict)
    api_url: str = DEFAULT_TELEGRAM_API_URL


@dataclass(frozen=True)
class HttpConfig:
    """Timeouts and retry policy shared by every HTTP adapter."""

    timeout_seconds: int = DEFAULT_HTTP_TIMEOUT_SECONDS
    max_attempts: int = DEFAULT_HTTP_MAX_ATTEMPTS
    backoff_seconds: float = DEFAULT_HTTP_BACKOFF_SECONDS


@dataclass(frozen=True)
class Config:
    """Pipeline run configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-pipeline.
    Missing Git metadata is NOT an error: identity resolution degrades to
    sentinel values instead.
    """

    # Git metadata supplied by the CI runtime
    git_url: str | None = None
    git_branch: str | None = None
    branch_name: str | None = None
    git_commit: str | None = None

    registry: RegistryConfig = field(default_factory=RegistryConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    http: HttpConfig = field(default_factory=HttpConfig)

    # GitHub
    github_token: str | None = None
    github_api_url: str = DEFAULT_GITHUB_API_URL
    permission_check: PermissionCheckMode = PermissionCheckMode.AUTO

    # Branch protection lists from the environment (None = not configured)
    protect_admin: tuple[str, ...] | None = None
    protect_maintain: tuple[str, ...] | None = None

    # Build metadata for notifications
    build_number: str | None = None
    build_url: str | None = None

    # Loop guard set once a deployment has been blocked in this run
    deployment_blocked: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not re.match(VALID_API_URL_PATTERN, self.github_api_url):
            errors.append(f"GITHUB_API_URL must be an http(s) URL: {self.github_api_url}")

        if not re.match(VALID_API_URL_PATTERN, self.telegram.api_url):
            errors.append(f"TELEGRAM_API_URL must be an http(s) URL: {self.telegram.api_url}")

        if not self.registry.fallback:
            errors.append("DOCKER_REGISTRY fallback must not be empty")

        if not (
            MIN_HTTP_TIMEOUT_SECONDS <= self.http.timeout_seconds <= MAX_HTTP_TIMEOUT_SECONDS
        ):
            errors.append(
                f"HTTP_TIMEOUT must be between {MIN_HTTP_TIMEOUT_SECONDS} "
                f"and {MAX_HTTP_TIMEOUT_SECONDS} seconds"
            )

        if not (1 <= self.http.max_attempts <= MAX_HTTP_MAX_ATTEMPTS):
            errors.append(f"HTTP_MAX_ATTEMPTS must be between 1 and {MAX_HTTP_MAX_ATTEMPTS}")

        if self.http.backoff_seconds < 0:
            errors.append("HTTP_BACKOFF_SECONDS must not be negative")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def permission_check_enabled(self) -> bool:
        """Whether the permission gate should run for this run."""
        if self.permission_check == PermissionCheckMode.ENABLED:
            return True
        if self.permission_check == PermissionCheckMode.DISABLED:
            return False
        return bool(self.github_token)

    @property
    def has_protection_lists(self) -> bool:
        """True when protected branch lists were supplied via environment."""
        return self.protect_admin is not None or self.protect_maintain is not None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Config:
        """Load configuration from environment variables.

        Args:
            environ: Variable table to read. Defaults to ``os.environ``.

        Environment Variables:
            GIT_URL: Remote URL of the checked-out repository
            GIT_BRANCH: Branch, possibly prefixed with ``origin/``
            BRANCH_NAME: Alternative branch variable (multibranch jobs)
            GIT_COMMIT: Full commit SHA
            DOCKER_REGISTRY: Global registry fallback (default: 172.16.3.0/mtw)
            REGISTRY_BETA, REGISTRY_STAGING, REGISTRY_PROD: Per-class registry
            GITHUB_TOKEN / GITHUB_APP_INSTALLATION_TOKEN: GitHub API token
            GITHUB_API_URL: GitHub API base URL (default: https://api.github.com)
            DEPLOYKIT_PERMISSION_CHECK: auto, true, false (default: auto)
            BRANCH_PROTECT_ADMIN, BRANCH_PROTECT_MAINTAIN: Protected branch lists
            TELEGRAM_BOT_TOKEN[_BETA|_STAGING|_PROD]: Bot token
            TELEGRAM_CHAT_ID[_BETA|_STAGING|_PROD]: Chat id
            TELEGRAM_THREAD_ID[_BETA|_STAGING|_PROD]: Forum thread id
            TELEGRAM_API_URL: Bot API base URL (default: https://api.telegram.org)
            HTTP_TIMEOUT: HTTP timeout in seconds (default: 30)
            HTTP_MAX_ATTEMPTS: Attempts per HTTP call (default: 4)
            HTTP_BACKOFF_SECONDS: Initial retry delay (default: 2)
            BUILD_NUMBER, BUILD_URL: Build metadata for notifications
            DEPLOYMENT_BLOCKED: "true" once a deployment was blocked this run
        """
        env: Mapping[str, str] = os.environ if environ is None else environ

        def get(key: str) -> str | None:
            # Empty variables behave as unset
            value = env.get(key)
            return value if value else None

        def get_int(key: str, default: int) -> int:
            value = get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = env.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_mode(value: str | None) -> PermissionCheckMode:
            if not value:
                return PermissionCheckMode.AUTO
            normalized = value.lower()
            if normalized in ("1", "yes"):
                normalized = "true"
            elif normalized in ("0", "no"):
                normalized = "false"
            try:
                return PermissionCheckMode(normalized)
            except ValueError as e:
                valid = [m.value for m in PermissionCheckMode]
                raise ConfigurationError(
                    f"DEPLOYKIT_PERMISSION_CHECK must be one of {valid}: {value}"
                ) from e

        def get_by_class(prefix: str) -> dict[str, str]:
            values: dict[str, str] = {}
            for suffix in ("", "BETA", "STAGING", "PROD"):
                key = f"{prefix}_{suffix}" if suffix else prefix
                value = get(key)
                if value is not None:
                    values[suffix] = value
            return values

        return cls(
            git_url=get("GIT_URL"),
            git_branch=get("GIT_BRANCH"),
            branch_name=get("BRANCH_NAME"),
            git_commit=get("GIT_COMMIT"),
            registry=RegistryConfig(
                beta=get("REGISTRY_BETA"),
                staging=get("REGISTRY_STAGING"),
                prod=get("REGISTRY_PROD"),
                fallback=get("DOCKER_REGISTRY") or DEFAULT_REGISTRY,
            ),
            telegram=TelegramConfig(
                bot_tokens=get_by_class("TELEGRAM_BOT_TOKEN"),
                chat_ids=get_by_class("TELEGRAM_CHAT_ID"),
                thread_ids=get_by_class("TELEGRAM_THREAD_ID"),
                api_url=get("TELEGRAM_API_URL") or DEFAULT_TELEGRAM_API_URL,
            ),
            http=HttpConfig(
                timeout_seconds=get_int("HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT_SECONDS),
                max_attempts=get_int("HTTP_MAX_ATTEMPTS", DEFAULT_HTTP_MAX_ATTEMPTS),
                backoff_seconds=get_float("HTTP_BACKOFF_SECONDS", DEFAULT_HTTP_BACKOFF_SECONDS),
            ),
            github_token=get("GITHUB_TOKEN") or get("GITHUB_APP_INSTALLATION_TOKEN"),
            github_api_url=(get("GITHUB_API_URL") or DEFAULT_GITHUB_API_URL).rstrip("/"),
            permission_check=get_mode(get("DEPLOYKIT_PERMISSION_CHECK")),
            protect_admin=parse_list(get(ADMIN_PROTECTION_VARIABLE)),
            protect_maintain=parse_list(get(MAINTAIN_PROTECTION_VARIABLE)),
            build_number=get("BUILD_NUMBER"),
            build_url=get("BUILD_URL"),
            deployment_blocked=get_bool("DEPLOYMENT_BLOCKED", False),
        )
