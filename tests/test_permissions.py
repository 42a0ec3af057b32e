"""Tests for the deploy permission decision engine."""

from __future__ import annotations

import logging

import pytest

from deploykit.permissions import (
    CollaboratorRole,
    DecisionReason,
    DeploymentBlockedError,
    PermissionGate,
    decide,
    skipped_decision,
)
from deploykit.protection import (
    BranchProtection,
    ProtectionLevel,
    ProtectionLists,
    ProtectionReason,
    StaticProtectionSource,
    classify_protection,
)

LISTS = ProtectionLists(admin=("main",), maintain=("staging",))


class FixedRoles:
    """Role source returning one role and counting lookups."""

    def __init__(self, role: CollaboratorRole) -> None:
        self.role = role
        self.calls = 0

    def get_role(self, repo_owner: str, repo_name: str, username: str) -> CollaboratorRole:
        self.calls += 1
        return self.role


class FailingRoles:
    def get_role(self, repo_owner: str, repo_name: str, username: str) -> CollaboratorRole:
        raise TimeoutError("GitHub timed out")


def _decide(branch: str, role_source, lists: ProtectionLists = LISTS):
    return decide(classify_protection(branch, lists), role_source, "acme", "widget", "octocat")


class TestCollaboratorRole:
    def test_parse(self) -> None:
        assert CollaboratorRole.parse("MAINTAIN") is CollaboratorRole.MAINTAIN
        assert CollaboratorRole.parse(None) is CollaboratorRole.NONE
        assert CollaboratorRole.parse("owner") is CollaboratorRole.NONE


class TestDecide:
    def test_admin_branch_write_role_blocked(self) -> None:
        decision = _decide("main", FixedRoles(CollaboratorRole.WRITE))

        assert decision.can_deploy is False
        assert decision.reason is DecisionReason.ADMIN_REQUIRED_BUT_NOT_ADMIN
        assert decision.actor_role is CollaboratorRole.WRITE

    def test_admin_branch_admin_role(self) -> None:
        decision = _decide("main", FixedRoles(CollaboratorRole.ADMIN))

        assert decision.can_deploy is True
        assert decision.reason is DecisionReason.ADMIN_ACCESS_GRANTED

    def test_admin_branch_maintain_role_blocked(self) -> None:
        decision = _decide("main", FixedRoles(CollaboratorRole.MAINTAIN))
        assert decision.can_deploy is False

    @pytest.mark.parametrize("role", [CollaboratorRole.ADMIN, CollaboratorRole.MAINTAIN])
    def test_maintain_branch_granted(self, role: CollaboratorRole) -> None:
        decision = _decide("staging", FixedRoles(role))

        assert decision.can_deploy is True
        assert decision.reason is DecisionReason.MAINTAIN_OR_ADMIN_ACCESS_GRANTED

    @pytest.mark.parametrize(
        "role",
        [CollaboratorRole.WRITE, CollaboratorRole.TRIAGE, CollaboratorRole.READ, CollaboratorRole.NONE],
    )
    def test_maintain_branch_blocked(self, role: CollaboratorRole) -> None:
        decision = _decide("staging", FixedRoles(role))

        assert decision.can_deploy is False
        assert decision.reason is DecisionReason.MAINTAIN_OR_ADMIN_REQUIRED

    def test_unprotected_branch_skips_role_lookup(self) -> None:
        roles = FixedRoles(CollaboratorRole.READ)
        decision = _decide("feature/x", roles)

        assert decision.can_deploy is True
        assert decision.reason is DecisionReason.BRANCH_NOT_PROTECTED
        assert decision.actor_role is None
        assert roles.calls == 0

    def test_no_protection_configured(self) -> None:
        decision = _decide("main", FixedRoles(CollaboratorRole.READ), ProtectionLists())

        assert decision.can_deploy is True
        assert decision.reason is DecisionReason.NO_PROTECTION_VARS
        assert decision.reason is not DecisionReason.BRANCH_NOT_PROTECTED

    def test_role_lookup_failure_fails_open(self) -> None:
        decision = _decide("main", FailingRoles())

        assert decision.can_deploy is True
        assert decision.reason is DecisionReason.PERMISSION_CHECK_FAILED
        assert decision.is_fail_open is True
        assert "timed out" in (decision.error or "")

    def test_missing_role_source_fails_open(self) -> None:
        decision = _decide("staging", None)

        assert decision.can_deploy is True
        assert decision.reason is DecisionReason.PERMISSION_CHECK_FAILED

    def test_protection_failure_fails_open(self) -> None:
        protection = BranchProtection(
            level=ProtectionLevel.NONE,
            reason=ProtectionReason.API_EXCEPTION,
            branch_name="main",
            error="boom",
        )
        decision = decide(protection, FixedRoles(CollaboratorRole.READ), "acme", "widget", "u")

        assert decision.can_deploy is True
        assert decision.reason is DecisionReason.PROTECTION_CHECK_FAILED
        assert decision.is_fail_open is True

    def test_explicit_grant_is_not_fail_open(self) -> None:
        decision = _decide("main", FixedRoles(CollaboratorRole.ADMIN))
        assert decision.is_fail_open is False

    def test_blocked_message_names_roles_and_branch(self) -> None:
        decision = _decide("main", FixedRoles(CollaboratorRole.WRITE))
        message = decision.blocked_message()

        assert "main" in message
        assert "ADMIN" in message
        assert "'write'" in message
        assert "octocat" in message
        assert decision.required_role == "admin"
        assert decision.to_dict()["required_role"] == "admin"

    def test_skipped(self) -> None:
        decision = skipped_decision("acme/widget", "main", "octocat")

        assert decision.can_deploy is True
        assert decision.reason is DecisionReason.SKIPPED
        assert decision.is_fail_open is False


class TestPermissionGate:
    def test_caches_per_run(self) -> None:
        roles = FixedRoles(CollaboratorRole.ADMIN)
        gate = PermissionGate(StaticProtectionSource(LISTS), roles)

        first = gate.check("acme", "widget", "main", "octocat")
        second = gate.check("acme", "widget", "main", "octocat")

        assert first is second
        assert roles.calls == 1

    def test_enforce_raises_on_deny(self) -> None:
        gate = PermissionGate(StaticProtectionSource(LISTS), FixedRoles(CollaboratorRole.WRITE))

        with pytest.raises(DeploymentBlockedError) as exc_info:
            gate.enforce("acme", "widget", "main", "octocat")

        assert exc_info.value.decision.reason is DecisionReason.ADMIN_REQUIRED_BUT_NOT_ADMIN
        assert "DEPLOYMENT_BLOCKED" in str(exc_info.value)

    def test_enforce_returns_allow(self) -> None:
        gate = PermissionGate(StaticProtectionSource(LISTS), FixedRoles(CollaboratorRole.READ))
        decision = gate.enforce("acme", "widget", "feature/x", "octocat")
        assert decision.can_deploy is True

    def test_no_source_fails_open(self) -> None:
        gate = PermissionGate(None, None)
        decision = gate.check("acme", "widget", "main", "octocat")

        assert decision.can_deploy is True
        assert decision.reason is DecisionReason.PROTECTION_CHECK_FAILED

    def test_fail_open_logged_as_warning(self, caplog: pytest.LogCaptureFixture) -> None:
        gate = PermissionGate(StaticProtectionSource(LISTS), FailingRoles())

        with caplog.at_level(logging.INFO, logger="deploykit.permissions"):
            gate.check("acme", "widget", "main", "octocat")

        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert any("failed open" in r.getMessage() for r in warnings)
