"""Pytest configuration and fixtures."""

import logging
import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from deploykit.config import RegistryConfig, TelegramConfig  # noqa: E402
from deploykit.main import HANDLER_NAME  # noqa: E402
from deploykit.shell import CommandError  # noqa: E402

# Variables a CI runner may set that would leak into Config.from_env()
CI_VARIABLES = (
    "GIT_URL",
    "GIT_BRANCH",
    "BRANCH_NAME",
    "GIT_COMMIT",
    "DOCKER_REGISTRY",
    "REGISTRY_BETA",
    "REGISTRY_STAGING",
    "REGISTRY_PROD",
    "GITHUB_TOKEN",
    "GITHUB_APP_INSTALLATION_TOKEN",
    "GITHUB_API_URL",
    "DEPLOYKIT_PERMISSION_CHECK",
    "BRANCH_PROTECT_ADMIN",
    "BRANCH_PROTECT_MAINTAIN",
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_CHAT_ID",
    "TELEGRAM_THREAD_ID",
    "TELEGRAM_API_URL",
    "HTTP_TIMEOUT",
    "HTTP_MAX_ATTEMPTS",
    "HTTP_BACKOFF_SECONDS",
    "BUILD_NUMBER",
    "BUILD_URL",
    "DEPLOYMENT_BLOCKED",
    "PIPELINE_SETUP_COMPLETE",
    "PROJECT_VARS_JSON",
)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Environment without any CI variables."""
    for name in CI_VARIABLES:
        monkeypatch.delenv(name, raising=False)
        for suffix in ("BETA", "STAGING", "PROD"):
            monkeypatch.delenv(f"{name}_{suffix}", raising=False)
    return monkeypatch


@pytest.fixture(autouse=True)
def restore_root_logging():
    """Drop handlers installed by setup_logging during a test."""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler.get_name() == HANDLER_NAME:
            root.removeHandler(handler)
    root.setLevel(level)


@pytest.fixture
def registries() -> RegistryConfig:
    return RegistryConfig(
        beta="registry.beta.local",
        staging="registry.staging.local",
        prod="registry.prod.local",
        fallback="registry.fallback.local",
    )


@pytest.fixture
def telegram() -> TelegramConfig:
    return TelegramConfig(
        bot_tokens={"": "global-token", "PROD": "prod-token"},
        chat_ids={"": "-100", "BETA": "-200"},
        thread_ids={"STAGING": "42"},
    )


@pytest.fixture(autouse=True)
def no_cluster(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the setup ingress lookup away from any real cluster."""

    def unreachable(cmd, **kwargs):
        raise CommandError(f"Command not found: {cmd[0]}")

    monkeypatch.setattr("deploykit.ingress.run_command", unreachable)
