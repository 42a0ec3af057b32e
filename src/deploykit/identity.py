"""Project identity resolution.

Derives every name a pipeline run needs (repository, branch, Kubernetes-safe
branch, namespace, deployment, app, registry, image tag) from the Git remote
URL, the branch variables and optional overrides.

Resolution is total: a missing or unparseable Git URL, an absent branch or an
absent commit never raises, each field degrades to a documented default.
"""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import asdict, dataclass, field, fields
from typing import Any

from .config import Config, RegistryConfig
from .environment import EnvironmentClass, classify_branch, select_registry

logger = logging.getLogger(__name__)

UNKNOWN_REPO = "unknown-repo"
UNKNOWN_OWNER = "unknown"
UNKNOWN_USER = "unknown"
DEFAULT_BRANCH = "main"
DEFAULT_COMMIT_HASH = "latest"
DEFAULT_COMMIT_MESSAGE = "No commit message"

SHORT_SHA_LENGTH = 7
MAX_COMMIT_MESSAGE_LENGTH = 100
GIT_COMMAND_TIMEOUT_SECONDS = 10

# <anything>[/:]<owner>/<name>[.git] -- covers git@host:o/n.git and https://host/o/n
GIT_URL_PATTERN = re.compile(r".*[/:]([^/]+)/([^/]+?)(?:\.git)?$")
ORIGIN_PREFIX_PATTERN = re.compile(r"^origin/")
INVALID_NAME_CHARS_PATTERN = re.compile(r"[^a-zA-Z0-9-]")


def parse_git_url(git_url: str | None) -> tuple[str, str]:
    """Extract (owner, name) from an SSH or HTTPS Git remote URL.

    Returns:
        Owner and repository name, or (UNKNOWN_OWNER, UNKNOWN_REPO) when
        the URL is missing or does not look like ``.../<owner>/<name>``.
    """
    if not git_url:
        return UNKNOWN_OWNER, UNKNOWN_REPO

    match = GIT_URL_PATTERN.match(git_url.strip())
    if not match:
        logger.warning("Could not parse Git URL", extra={"git_url": git_url})
        return UNKNOWN_OWNER, UNKNOWN_REPO

    return match.group(1), match.group(2)


def strip_origin(branch_name: str) -> str:
    """Remove a leading ``origin/`` remote prefix."""
    return ORIGIN_PREFIX_PATTERN.sub("", branch_name)


def sanitize_branch(branch_name: str) -> str:
    """Make a branch name safe for Kubernetes resource names.

    ``/`` and every character outside ``[a-zA-Z0-9-]`` become ``-`` and the
    result is lowercased. Idempotent, output always matches ``^[a-z0-9-]*$``.
    """
    sanitized = branch_name.replace("/", "-")
    sanitized = INVALID_NAME_CHARS_PATTERN.sub("-", sanitized)
    return sanitized.lower()


def resolve_branch(
    override: str | None = None,
    env_branch: str | None = None,
    env_branch_alt: str | None = None,
) -> str:
    """Pick the branch: override, GIT_BRANCH minus origin/, BRANCH_NAME, "main"."""
    if override:
        return override
    if env_branch:
        stripped = strip_origin(env_branch)
        if stripped:
            return stripped
    if env_branch_alt:
        return env_branch_alt
    return DEFAULT_BRANCH


def truncate_commit_message(message: str | None) -> str:
    """Trim a commit subject for notifications."""
    if not message:
        return DEFAULT_COMMIT_MESSAGE
    message = message.strip()
    if len(message) > MAX_COMMIT_MESSAGE_LENGTH:
        return message[: MAX_COMMIT_MESSAGE_LENGTH - 3] + "..."
    return message


def normalize_git_user(author: str | None) -> str:
    """Reduce a commit author to a GitHub-style login."""
    if not author:
        return UNKNOWN_USER
    author = author.strip()
    if "@" in author:
        author = author.split("@", 1)[0]
    return author or UNKNOWN_USER


@dataclass(frozen=True)
class IdentityOverrides:
    """Explicit values that bypass computation for a single field."""

    repo_owner: str | None = None
    repo_name: str | None = None
    repo_branch: str | None = None
    sanitized_branch: str | None = None
    namespace: str | None = None
    deployment: str | None = None
    app_name: str | None = None
    registry: str | None = None
    commit_hash: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> IdentityOverrides:
        """Build overrides from a mapping, ignoring unknown keys and empty values."""
        if not data:
            return cls()
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names and v})


@dataclass(frozen=True)
class ProjectIdentity:
    """Everything a pipeline run derives once and reuses for its lifetime."""

    repo_owner: str
    repo_name: str
    branch_name: str
    sanitized_branch: str
    namespace: str
    deployment_name: str
    app_name: str
    registry: str
    commit_hash: str
    commit_message: str = DEFAULT_COMMIT_MESSAGE
    git_user: str = UNKNOWN_USER
    environment: EnvironmentClass = field(default=EnvironmentClass.BETA)

    @property
    def image(self) -> str:
        """Image repository without tag."""
        return f"{self.registry}/{self.app_name}"

    @property
    def image_ref(self) -> str:
        """Image reference including the commit tag."""
        return f"{self.image}:{self.commit_hash}"

    @property
    def repository(self) -> str:
        """``owner/name`` slug."""
        return f"{self.repo_owner}/{self.repo_name}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/export."""
        result = asdict(self)
        result["environment"] = self.environment.value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProjectIdentity:
        """Rebuild an identity exported by ``to_dict``."""
        names = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in names}
        values["environment"] = EnvironmentClass(values.get("environment", "beta"))
        return cls(**values)


def resolve_identity(
    *,
    git_url: str | None = None,
    env_branch: str | None = None,
    env_branch_alt: str | None = None,
    commit_sha: str | None = None,
    registries: RegistryConfig | None = None,
    overrides: IdentityOverrides | None = None,
    commit_message: str | None = None,
    git_user: str | None = None,
) -> ProjectIdentity:
    """Resolve the project identity for a run.

    Args:
        git_url: Remote URL (GIT_URL).
        env_branch: Branch as reported by the SCM plugin (GIT_BRANCH).
        env_branch_alt: Fallback branch variable (BRANCH_NAME).
        commit_sha: Full commit SHA (GIT_COMMIT).
        registries: Registry table used for the default registry.
        overrides: Per-field overrides; each one wins unconditionally.
        commit_message: Latest commit subject, best effort.
        git_user: Latest commit author, best effort.

    Returns:
        Complete identity. Never raises for malformed input.
    """
    overrides = overrides or IdentityOverrides()
    registries = registries or RegistryConfig()

    parsed_owner, parsed_name = parse_git_url(git_url)
    owner = overrides.repo_owner or parsed_owner
    repo_name = overrides.repo_name or parsed_name

    branch_name = resolve_branch(overrides.repo_branch, env_branch, env_branch_alt)
    sanitized = overrides.sanitized_branch or sanitize_branch(branch_name)
    env_class = classify_branch(branch_name)

    default_suffixed = f"{repo_name}-{sanitized}"

    if overrides.commit_hash:
        commit_hash = overrides.commit_hash
    elif commit_sha:
        commit_hash = commit_sha.strip()[:SHORT_SHA_LENGTH] or DEFAULT_COMMIT_HASH
    else:
        commit_hash = DEFAULT_COMMIT_HASH

    return ProjectIdentity(
        repo_owner=owner,
        repo_name=repo_name,
        branch_name=branch_name,
        sanitized_branch=sanitized,
        namespace=overrides.namespace or repo_name,
        deployment_name=overrides.deployment or default_suffixed,
        app_name=overrides.app_name or default_suffixed,
        registry=select_registry(env_class, registries, overrides.registry),
        commit_hash=commit_hash,
        commit_message=truncate_commit_message(commit_message),
        git_user=normalize_git_user(git_user),
        environment=env_class,
    )


class GitInspector:
    """Reads commit metadata from the local checkout via ``git log``.

    Every method is best effort: a missing git binary, a non-repository
    working directory or a timeout yields None instead of an exception.
    """

    def __init__(self, cwd: str | None = None) -> None:
        self._cwd = cwd

    def _log(self, pretty_format: str) -> str | None:
        try:
            result = subprocess.run(
                ["git", "log", "-1", f"--pretty=format:{pretty_format}"],
                cwd=self._cwd,
                capture_output=True,
                text=True,
                timeout=GIT_COMMAND_TIMEOUT_SECONDS,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("Could not read git metadata", extra={"error": str(e)})
            return None

        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def commit_message(self) -> str | None:
        """Subject line of the latest commit."""
        return self._log("%s")

    def author(self) -> str | None:
        """Author name of the latest commit."""
        return self._log("%an")


def resolve_identity_from_config(
    config: Config,
    overrides: IdentityOverrides | None = None,
    inspector: GitInspector | None = None,
) -> ProjectIdentity:
    """Resolve identity using the run configuration and local git metadata."""
    inspector = inspector or GitInspector()

    identity = resolve_identity(
        git_url=config.git_url,
        env_branch=config.git_branch,
        env_branch_alt=config.branch_name,
        commit_sha=config.git_commit,
        registries=config.registry,
        overrides=overrides,
        commit_message=inspector.commit_message(),
        git_user=inspector.author(),
    )

    logger.info("Project variables resolved", extra=identity.to_dict())
    return identity
