"""Environment classification and registry selection.

A branch name maps to exactly one environment class by case-insensitive
substring rules. The rules are evaluated in order and the first match wins,
so "dev-prod-sync" is BETA and an unmatched branch (including "") is BETA too.
"""

from __future__ import annotations

import logging
from enum import Enum

from .config import RegistryConfig

logger = logging.getLogger(__name__)


class EnvironmentClass(str, Enum):
    """Deployment environment class derived from a branch name."""

    BETA = "beta"
    STAGING = "staging"
    PROD = "prod"

    @property
    def variable_suffix(self) -> str:
        """Suffix of class-specific environment variables (e.g. REGISTRY_PROD)."""
        return self.name

    @property
    def display_name(self) -> str:
        """Human-readable name used in notifications."""
        return "PRODUCTION" if self is EnvironmentClass.PROD else self.name


# Ordered (substrings, class) rules. Order is authoritative.
CLASSIFICATION_RULES: tuple[tuple[tuple[str, ...], EnvironmentClass], ...] = (
    (("dev", "beta"), EnvironmentClass.BETA),
    (("staging",), EnvironmentClass.STAGING),
    (("main", "master", "prod", "production"), EnvironmentClass.PROD),
)

DEFAULT_ENVIRONMENT_CLASS = EnvironmentClass.BETA


def classify_branch(branch_name: str | None) -> EnvironmentClass:
    """Classify a branch name into an environment class.

    Args:
        branch_name: Git branch name, any case. None is treated as "".

    Returns:
        The class of the first matching rule, BETA when nothing matches.
    """
    lower_branch = (branch_name or "").lower()

    for substrings, env_class in CLASSIFICATION_RULES:
        if any(token in lower_branch for token in substrings):
            return env_class

    return DEFAULT_ENVIRONMENT_CLASS


def select_registry(
    env_class: EnvironmentClass,
    registries: RegistryConfig,
    override: str | None = None,
) -> str:
    """Select the container registry for an environment class.

    Args:
        env_class: Environment class of the branch being built.
        registries: Per-class registries and the global fallback.
        override: Explicit registry, wins unconditionally when non-empty.

    Returns:
        Registry URL, never empty.
    """
    if override:
        return override

    per_class = {
        EnvironmentClass.BETA: registries.beta,
        EnvironmentClass.STAGING: registries.staging,
        EnvironmentClass.PROD: registries.prod,
    }[env_class]

    if per_class:
        return per_class

    logger.debug(
        "No registry configured for environment, using fallback",
        extra={"environment": env_class.value, "registry": registries.fallback},
    )
    return registries.fallback
