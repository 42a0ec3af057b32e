"""Deploy permission decisions for protected branches.

Combines the branch protection level with the collaborator role of the user
who triggered the run:

    NONE      -> allow
    MAINTAIN  -> allow iff role is maintain or admin
    ADMIN     -> allow iff role is admin

FAIL-OPEN: if either the protection lists or the collaborator role cannot be
fetched, the deploy is allowed. The reason code (PROTECTION_CHECK_FAILED,
PERMISSION_CHECK_FAILED) is distinct from every explicit grant so monitoring
can alert on fail-open rates without changing the default.

The engine itself only decides. Stopping the run on a deny is the caller's
job (see PermissionGate.enforce and deploykit.pipeline).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from .protection import (
    BranchProtection,
    ProtectionLevel,
    ProtectionReason,
    ProtectionSource,
    resolve_branch_protection,
)

logger = logging.getLogger(__name__)


class CollaboratorRole(str, Enum):
    """Repository role of a collaborator, highest first."""

    ADMIN = "admin"
    MAINTAIN = "maintain"
    WRITE = "write"
    TRIAGE = "triage"
    READ = "read"
    NONE = "none"

    @classmethod
    def parse(cls, value: str | None) -> CollaboratorRole:
        """Parse an API role string, unknown values count as NONE."""
        if not value:
            return cls.NONE
        try:
            return cls(value.lower())
        except ValueError:
            logger.warning(f"Unknown collaborator role: {value}, treating as none")
            return cls.NONE


class DecisionReason(str, Enum):
    """Machine-readable reason attached to every decision."""

    NO_PROTECTION_VARS = "NO_PROTECTION_VARS"
    BRANCH_NOT_PROTECTED = "BRANCH_NOT_PROTECTED"
    ADMIN_ACCESS_GRANTED = "ADMIN_ACCESS_GRANTED"
    ADMIN_REQUIRED_BUT_NOT_ADMIN = "ADMIN_REQUIRED_BUT_NOT_ADMIN"
    MAINTAIN_OR_ADMIN_ACCESS_GRANTED = "MAINTAIN_OR_ADMIN_ACCESS_GRANTED"
    MAINTAIN_OR_ADMIN_REQUIRED = "MAINTAIN_OR_ADMIN_REQUIRED"
    PROTECTION_CHECK_FAILED = "PROTECTION_CHECK_FAILED"
    PERMISSION_CHECK_FAILED = "PERMISSION_CHECK_FAILED"
    SKIPPED = "SKIPPED"


FAIL_OPEN_REASONS: frozenset[DecisionReason] = frozenset({
    DecisionReason.PROTECTION_CHECK_FAILED,
    DecisionReason.PERMISSION_CHECK_FAILED,
})

BLOCKING_REASONS: frozenset[DecisionReason] = frozenset({
    DecisionReason.ADMIN_REQUIRED_BUT_NOT_ADMIN,
    DecisionReason.MAINTAIN_OR_ADMIN_REQUIRED,
})

# Roles accepted per protection level
REQUIRED_ROLES: dict[ProtectionLevel, frozenset[CollaboratorRole]] = {
    ProtectionLevel.MAINTAIN: frozenset({CollaboratorRole.ADMIN, CollaboratorRole.MAINTAIN}),
    ProtectionLevel.ADMIN: frozenset({CollaboratorRole.ADMIN}),
}


class RoleSource(Protocol):
    """Anything able to look up a collaborator's role on a repository."""

    def get_role(self, repo_owner: str, repo_name: str, username: str) -> CollaboratorRole: ...


@dataclass(frozen=True)
class PermissionDecision:
    """Outcome of the permission check for one run."""

    can_deploy: bool
    reason: DecisionReason
    actor_role: CollaboratorRole | None = None
    protection: BranchProtection | None = None
    username: str = "unknown"
    repository: str = ""
    branch_name: str = ""
    error: str | None = None

    @property
    def is_fail_open(self) -> bool:
        """True when the deploy was allowed only because a lookup failed."""
        return self.reason in FAIL_OPEN_REASONS

    @property
    def required_role(self) -> str | None:
        """Human-readable role requirement, None for unprotected branches."""
        if self.protection is None:
            return None
        if self.protection.level is ProtectionLevel.ADMIN:
            return "admin"
        if self.protection.level is ProtectionLevel.MAINTAIN:
            return "maintain or admin"
        return None

    def blocked_message(self) -> str:
        """Explain a decision to a human, naming required and actual role."""
        actual = self.actor_role.value if self.actor_role else "unknown"
        if self.reason in BLOCKING_REASONS and self.required_role:
            required = self.required_role.upper().replace(" OR ", " or ")
            return (
                f"Branch '{self.branch_name}' requires {required} permission "
                f"but user '{self.username}' has '{actual}' permission"
            )
        return f"Permission issue: {self.reason.value}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/export."""
        return {
            "can_deploy": self.can_deploy,
            "reason": self.reason.value,
            "required_role": self.required_role,
            "actor_role": self.actor_role.value if self.actor_role else None,
            "protection": self.protection.to_dict() if self.protection else None,
            "username": self.username,
            "repository": self.repository,
            "branch_name": self.branch_name,
            "is_fail_open": self.is_fail_open,
            "error": self.error,
        }


class DeploymentBlockedError(Exception):
    """Raised when the actor may not deploy the branch."""

    def __init__(self, decision: PermissionDecision) -> None:
        self.decision = decision
        super().__init__(f"DEPLOYMENT_BLOCKED: {decision.reason.value}")


def decide(
    protection: BranchProtection,
    role_source: RoleSource | None,
    repo_owner: str,
    repo_name: str,
    username: str,
) -> PermissionDecision:
    """Decide whether ``username`` may deploy the protected branch.

    The role is only looked up for MAINTAIN or ADMIN protection.

    Args:
        protection: Resolved protection of the branch.
        role_source: Collaborator role lookup. None counts as a failed lookup.
        repo_owner: Repository owner.
        repo_name: Repository name.
        username: Actor whose role is checked.

    Returns:
        The decision. Never raises.
    """
    common: dict[str, Any] = {
        "protection": protection,
        "username": username,
        "repository": f"{repo_owner}/{repo_name}",
        "branch_name": protection.branch_name,
    }

    if protection.lookup_failed:
        return PermissionDecision(
            can_deploy=True,
            reason=DecisionReason.PROTECTION_CHECK_FAILED,
            error=protection.error,
            **common,
        )

    if not protection.is_protected:
        reason = (
            DecisionReason.BRANCH_NOT_PROTECTED
            if protection.reason is ProtectionReason.NOT_PROTECTED
            else DecisionReason.NO_PROTECTION_VARS
        )
        return PermissionDecision(can_deploy=True, reason=reason, **common)

    try:
        if role_source is None:
            raise LookupError("No collaborator role source configured")
        role = role_source.get_role(repo_owner, repo_name, username)
    except Exception as e:
        logger.error(
            "Failed to check collaborator permission",
            extra={
                "repository": common["repository"],
                "username": username,
                "error": str(e),
                "error_type": type(e).__name__,
            },
        )
        return PermissionDecision(
            can_deploy=True,
            reason=DecisionReason.PERMISSION_CHECK_FAILED,
            error=str(e),
            **common,
        )

    allowed = role in REQUIRED_ROLES[protection.level]

    if protection.level is ProtectionLevel.ADMIN:
        reason = (
            DecisionReason.ADMIN_ACCESS_GRANTED
            if allowed
            else DecisionReason.ADMIN_REQUIRED_BUT_NOT_ADMIN
        )
    else:
        reason = (
            DecisionReason.MAINTAIN_OR_ADMIN_ACCESS_GRANTED
            if allowed
            else DecisionReason.MAINTAIN_OR_ADMIN_REQUIRED
        )

    return PermissionDecision(can_deploy=allowed, reason=reason, actor_role=role, **common)


def skipped_decision(repository: str, branch_name: str, username: str) -> PermissionDecision:
    """Decision used when permission checking is turned off."""
    return PermissionDecision(
        can_deploy=True,
        reason=DecisionReason.SKIPPED,
        username=username,
        repository=repository,
        branch_name=branch_name,
    )


class PermissionGate:
    """Runs the permission check at most once per run.

    The cache lives as long as the gate, and one gate is created per
    pipeline run, so decisions are never shared between runs.
    """

    def __init__(
        self,
        protection_source: ProtectionSource | None,
        role_source: RoleSource | None,
    ) -> None:
        self._protection_source = protection_source
        self._role_source = role_source
        self._cache: dict[tuple[str, str, str, str], PermissionDecision] = {}

    def check(
        self,
        repo_owner: str,
        repo_name: str,
        branch_name: str,
        username: str,
    ) -> PermissionDecision:
        """Compute (or reuse) the decision for this run."""
        cache_key = (repo_owner, repo_name, branch_name, username)
        if cache_key in self._cache:
            logger.debug("Permission decision cache hit", extra={"branch": branch_name})
            return self._cache[cache_key]

        logger.info(
            "Validating deployment permissions",
            extra={
                "repository": f"{repo_owner}/{repo_name}",
                "branch": branch_name,
                "username": username,
            },
        )

        protection = resolve_branch_protection(
            self._protection_source, repo_owner, repo_name, branch_name
        )
        decision = decide(protection, self._role_source, repo_owner, repo_name, username)

        self._log_decision(decision)
        self._cache[cache_key] = decision
        return decision

    def enforce(
        self,
        repo_owner: str,
        repo_name: str,
        branch_name: str,
        username: str,
    ) -> PermissionDecision:
        """Check and raise DeploymentBlockedError on a deny."""
        decision = self.check(repo_owner, repo_name, branch_name, username)
        if not decision.can_deploy:
            raise DeploymentBlockedError(decision)
        return decision

    def _log_decision(self, decision: PermissionDecision) -> None:
        extra = {
            "repository": decision.repository,
            "branch": decision.branch_name,
            "username": decision.username,
            "can_deploy": decision.can_deploy,
            "reason": decision.reason.value,
            "actor_role": decision.actor_role.value if decision.actor_role else None,
        }

        if not decision.can_deploy:
            logger.warning(f"Deployment blocked: {decision.blocked_message()}", extra=extra)
        elif decision.is_fail_open:
            # Always WARNING so fail-open allows show up in audits
            logger.warning("SECURITY: permission check failed open", extra=extra)
        else:
            logger.info("Deployment permitted", extra=extra)
