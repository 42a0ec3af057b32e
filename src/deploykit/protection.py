"""Branch protection resolution.

Protected branches are declared as two repository-level lists:

- BRANCH_PROTECT_ADMIN: deploying requires the ``admin`` role
- BRANCH_PROTECT_MAINTAIN: deploying requires ``maintain`` or ``admin``

A branch present in both lists is ADMIN protected. Lists that are absent
altogether ("no protection configured") are reported differently from lists
that exist but do not name the branch, although both resolve to NONE.

A source that cannot be reached resolves to NONE with API_EXCEPTION so the
permission engine can fail open while keeping the outcome auditable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class ProtectionLevel(str, Enum):
    """Role required to deploy a branch."""

    NONE = "none"
    MAINTAIN = "maintain"
    ADMIN = "admin"


class ProtectionReason(str, Enum):
    """Why a protection level was assigned."""

    ADMIN_REQUIRED = "ADMIN_REQUIRED"
    MAINTAIN_REQUIRED = "MAINTAIN_REQUIRED"
    NOT_PROTECTED = "NOT_PROTECTED"
    NO_PROTECTION_VARS = "NO_PROTECTION_VARS"
    NO_TOKEN = "NO_TOKEN"
    API_EXCEPTION = "API_EXCEPTION"


@dataclass(frozen=True)
class ProtectionLists:
    """Protected branch lists. None means the list is not configured."""

    admin: tuple[str, ...] | None = None
    maintain: tuple[str, ...] | None = None

    @property
    def configured(self) -> bool:
        """True when at least one list exists (even if empty)."""
        return self.admin is not None or self.maintain is not None


@dataclass(frozen=True)
class BranchProtection:
    """Resolved protection for one (owner, repo, branch)."""

    level: ProtectionLevel
    reason: ProtectionReason
    branch_name: str
    lists: ProtectionLists = field(default_factory=ProtectionLists)
    error: str | None = None

    @property
    def is_protected(self) -> bool:
        return self.level is not ProtectionLevel.NONE

    @property
    def lookup_failed(self) -> bool:
        """True when the metadata source could not be queried."""
        return self.reason in (ProtectionReason.API_EXCEPTION, ProtectionReason.NO_TOKEN)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/export."""
        return {
            "level": self.level.value,
            "reason": self.reason.value,
            "branch_name": self.branch_name,
            "admin_branches": list(self.lists.admin) if self.lists.admin is not None else None,
            "maintain_branches": (
                list(self.lists.maintain) if self.lists.maintain is not None else None
            ),
            "error": self.error,
        }


class ProtectionSource(Protocol):
    """Anything able to return the protected branch lists of a repository.

    Implementations:
    - GitHubProtectionSource: repository Actions variables via the GitHub API
    - StaticProtectionSource: lists supplied by the CI environment
    """

    def fetch_lists(self, repo_owner: str, repo_name: str) -> ProtectionLists: ...


class StaticProtectionSource:
    """Protection lists known up front (e.g. from environment variables)."""

    def __init__(self, lists: ProtectionLists) -> None:
        self._lists = lists

    def fetch_lists(self, repo_owner: str, repo_name: str) -> ProtectionLists:
        return self._lists


def classify_protection(branch_name: str, lists: ProtectionLists) -> BranchProtection:
    """Apply the protection lists to a branch.

    Membership is an exact, case-sensitive match on the branch name. The
    admin list is checked first so a branch in both lists is ADMIN.
    """
    if lists.admin and branch_name in lists.admin:
        return BranchProtection(
            level=ProtectionLevel.ADMIN,
            reason=ProtectionReason.ADMIN_REQUIRED,
            branch_name=branch_name,
            lists=lists,
        )

    if lists.maintain and branch_name in lists.maintain:
        return BranchProtection(
            level=ProtectionLevel.MAINTAIN,
            reason=ProtectionReason.MAINTAIN_REQUIRED,
            branch_name=branch_name,
            lists=lists,
        )

    reason = (
        ProtectionReason.NOT_PROTECTED if lists.configured else ProtectionReason.NO_PROTECTION_VARS
    )
    return BranchProtection(
        level=ProtectionLevel.NONE,
        reason=reason,
        branch_name=branch_name,
        lists=lists,
    )


def resolve_branch_protection(
    source: ProtectionSource | None,
    repo_owner: str,
    repo_name: str,
    branch_name: str,
) -> BranchProtection:
    """Determine the protection level of a branch.

    Args:
        source: Metadata source. None when no credentials are available.
        repo_owner: Repository owner (user or organization).
        repo_name: Repository name.
        branch_name: Branch being deployed.

    Returns:
        Protection result. Never raises: source failures yield NONE with
        reason API_EXCEPTION.
    """
    if source is None:
        logger.warning(
            "No branch protection source available, skipping protection check",
            extra={"repository": f"{repo_owner}/{repo_name}", "branch": branch_name},
        )
        return BranchProtection(
            level=ProtectionLevel.NONE,
            reason=ProtectionReason.NO_TOKEN,
            branch_name=branch_name,
            error="No branch protection source configured",
        )

    try:
        lists = source.fetch_lists(repo_owner, repo_name)
    except Exception as e:
        logger.error(
            "Failed to fetch branch protection lists",
            extra={
                "repository": f"{repo_owner}/{repo_name}",
                "branch": branch_name,
                "error": str(e),
                "error_type": type(e).__name__,
            },
        )
        return BranchProtection(
            level=ProtectionLevel.NONE,
            reason=ProtectionReason.API_EXCEPTION,
            branch_name=branch_name,
            error=str(e),
        )

    protection = classify_protection(branch_name, lists)

    logger.info(
        "Branch protection resolved",
        extra={
            "repository": f"{repo_owner}/{repo_name}",
            "branch": branch_name,
            "protection_level": protection.level.value,
            "protection_reason": protection.reason.value,
        },
    )
    return protection
