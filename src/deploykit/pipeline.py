"""Pipeline setup: resolve once, gate, export.

``setup`` runs at the start of a CI run. It resolves the project identity,
runs the permission gate, sends a blocked notification on a deny and
returns the project variables. The variables are exported into the run
environment (``PROJECT_VARS_JSON`` plus one variable per field) so later
steps of the same run reuse them via ``load_project_vars`` instead of
recomputing or calling GitHub again.
"""

from __future__ import annotations

import contextlib
import dataclasses
import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .config import Config
from .environment import classify_branch
from .github import GitHubClient, GitHubProtectionSource, GitHubRoleSource
from .identity import (
    GitInspector,
    ProjectIdentity,
    parse_git_url,
    resolve_branch,
    resolve_identity_from_config,
)
from .ingress import IngressLookup, lookup_ingress_hosts
from .models import PipelineSettings
from .notify import (
    NotificationResult,
    TelegramNotifier,
    build_blocked_message,
    build_failure_message,
    resolve_notification_target,
)
from .permissions import (
    DeploymentBlockedError,
    PermissionDecision,
    PermissionGate,
    skipped_decision,
)
from .protection import ProtectionLists, StaticProtectionSource

logger = logging.getLogger(__name__)

SETUP_COMPLETE_VARIABLE = "PIPELINE_SETUP_COMPLETE"
PROJECT_VARS_VARIABLE = "PROJECT_VARS_JSON"
DEPLOYMENT_BLOCKED_VARIABLE = "DEPLOYMENT_BLOCKED"


class DeploymentAlreadyBlockedError(Exception):
    """Raised when setup runs again in a run whose deployment was blocked."""

    def __init__(self) -> None:
        super().__init__("DEPLOYMENT_ALREADY_BLOCKED: Multiple calls detected")


@dataclass(frozen=True)
class ProjectVars:
    """Identity plus permission outcome, as exported for later steps."""

    identity: ProjectIdentity
    can_deploy: bool
    permission_reason: str
    fail_open: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.identity.to_dict(),
            "can_deploy": self.can_deploy,
            "permission_reason": self.permission_reason,
            "fail_open": self.fail_open,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProjectVars:
        return cls(
            identity=ProjectIdentity.from_dict(data),
            can_deploy=bool(data["can_deploy"]),
            permission_reason=str(data["permission_reason"]),
            fail_open=bool(data.get("fail_open", False)),
        )

    @classmethod
    def from_decision(cls, identity: ProjectIdentity, decision: PermissionDecision) -> ProjectVars:
        return cls(
            identity=identity,
            can_deploy=decision.can_deploy,
            permission_reason=decision.reason.value,
            fail_open=decision.is_fail_open,
        )


def export_variables(project_vars: ProjectVars) -> dict[str, str]:
    """Flatten project variables into environment variables."""
    identity = project_vars.identity
    return {
        SETUP_COMPLETE_VARIABLE: "true",
        "REPO_OWNER": identity.repo_owner,
        "REPO_NAME": identity.repo_name,
        "REPO_BRANCH": identity.branch_name,
        "SANITIZED_BRANCH": identity.sanitized_branch,
        "NAMESPACE": identity.namespace,
        "DEPLOYMENT": identity.deployment_name,
        "APP_NAME": identity.app_name,
        "REGISTRY": identity.registry,
        "COMMIT_HASH": identity.commit_hash,
        "GIT_USER": identity.git_user,
        "ENVIRONMENT": identity.environment.display_name,
        "CAN_DEPLOY": str(project_vars.can_deploy).lower(),
        "PERMISSION_REASON": project_vars.permission_reason,
        PROJECT_VARS_VARIABLE: json.dumps(project_vars.to_dict(), sort_keys=True),
    }


def load_project_vars(environ: Mapping[str, str] | None = None) -> ProjectVars | None:
    """Reuse variables exported by an earlier ``setup`` in the same run.

    Returns:
        The cached variables, or None when setup has not run or the cached
        value cannot be parsed.
    """
    env: Mapping[str, str] = os.environ if environ is None else environ
    if env.get(SETUP_COMPLETE_VARIABLE) != "true" or not env.get(PROJECT_VARS_VARIABLE):
        return None

    try:
        return ProjectVars.from_dict(json.loads(env[PROJECT_VARS_VARIABLE]))
    except (ValueError, KeyError, TypeError) as e:
        logger.warning("Could not parse cached project vars", extra={"error": str(e)})
        return None


def effective_config(config: Config, settings: PipelineSettings) -> Config:
    """Apply settings that override environment configuration."""
    if settings.permission_check is None:
        return config
    return dataclasses.replace(config, permission_check=settings.permission_check)


def build_gate(config: Config, client: GitHubClient | None) -> PermissionGate:
    """Wire the permission gate to its metadata sources.

    Protection lists from the environment take precedence over repository
    variables. Without either a client or environment lists there is no
    protection source at all.
    """
    if config.has_protection_lists:
        protection_source = StaticProtectionSource(
            ProtectionLists(admin=config.protect_admin, maintain=config.protect_maintain)
        )
    elif client is not None:
        protection_source = GitHubProtectionSource(client)
    else:
        protection_source = None

    role_source = GitHubRoleSource(client) if client is not None else None
    return PermissionGate(protection_source, role_source)


def send_notification(
    config: Config,
    settings: PipelineSettings,
    identity: ProjectIdentity,
    text: str,
    *,
    notifier: TelegramNotifier | None = None,
    fail_on_error: bool | None = None,
) -> NotificationResult:
    """Route and send one message for ``identity``'s environment."""
    target = resolve_notification_target(
        identity.environment,
        config.telegram,
        bot_token=settings.notify.bot_token,
        chat_id=settings.notify.chat_id,
        thread_id=settings.notify.thread_id,
    )
    logger.info(
        "Notification routed",
        extra={"environment": identity.environment.display_name, "chat_id": target.chat_id},
    )

    if fail_on_error is None:
        fail_on_error = settings.notify.fail_on_error

    with contextlib.ExitStack() as stack:
        if notifier is None:
            notifier = stack.enter_context(TelegramNotifier.from_config(config))
        return notifier.send(
            target,
            text,
            parse_mode=settings.notify.parse_mode,
            silent=settings.notify.silent,
            fail_on_error=fail_on_error,
        )


def notification_suppressed(config: Config, project_vars: ProjectVars | None) -> bool:
    """Loop guard: after a block, only notify for explicitly known projects."""
    if config.deployment_blocked and project_vars is None:
        logger.warning("Deployment already blocked, skipping notification to prevent a loop")
        return True
    return False


def setup(
    config: Config,
    settings: PipelineSettings | None = None,
    *,
    gate: PermissionGate | None = None,
    notifier: TelegramNotifier | None = None,
    inspector: GitInspector | None = None,
    ingress_lookup: IngressLookup | None = None,
) -> ProjectVars:
    """Initialize a pipeline run.

    Args:
        config: Run configuration.
        settings: Repository settings (overrides, notify options).
        gate: Permission gate. Built from ``config`` when omitted.
        notifier: Telegram notifier. Built from ``config`` when omitted.
        inspector: Git metadata reader.
        ingress_lookup: Reads the hosts of the deployment's ingress for the
            summary. Defaults to kubectl unless turned off in settings.

    Returns:
        Project variables for the run.

    Raises:
        DeploymentAlreadyBlockedError: A previous setup in this run blocked.
        DeploymentBlockedError: The actor may not deploy this branch.
    """
    settings = settings or PipelineSettings()
    config = effective_config(config, settings)

    if config.deployment_blocked:
        logger.error("Deployment already blocked, refusing to set up again")
        raise DeploymentAlreadyBlockedError()

    try:
        identity = resolve_identity_from_config(
            config, settings.overrides.to_identity_overrides(), inspector
        )
        decision = _check_permission(config, identity, gate)
    except Exception as e:
        logger.error("Pipeline initialization failed", extra={"error": str(e)})
        _notify_setup_failure(config, settings, str(e), notifier)
        raise

    if not decision.can_deploy:
        text = build_blocked_message(
            identity,
            decision,
            build_number=config.build_number,
            build_url=config.build_url,
            parse_mode=settings.notify.parse_mode,
        )
        try:
            send_notification(
                config, settings, identity, text, notifier=notifier, fail_on_error=False
            )
        except Exception as e:
            logger.warning(
                "Failed to send blocked deployment notification", extra={"error": str(e)}
            )
        raise DeploymentBlockedError(decision)

    project_vars = ProjectVars.from_decision(identity, decision)
    domain = _lookup_domain(identity, settings, ingress_lookup)
    logger.info(
        "Pipeline initialization completed",
        extra={
            "repository": identity.repository,
            "branch": identity.branch_name,
            "environment": identity.environment.display_name,
            "user": identity.git_user,
            "can_deploy": decision.can_deploy,
            "permission_reason": decision.reason.value,
            "image": identity.image_ref,
            "deployment": identity.deployment_name,
            "namespace": identity.namespace,
            "domain": domain,
        },
    )
    return project_vars


def _lookup_domain(
    identity: ProjectIdentity,
    settings: PipelineSettings,
    ingress_lookup: IngressLookup | None,
) -> str | None:
    if ingress_lookup is None:
        if not settings.deploy.ingress_lookup:
            return None
        ingress_lookup = lookup_ingress_hosts
    hosts = ingress_lookup(identity.namespace, identity.deployment_name)
    return ", ".join(hosts) if hosts else None


def _check_permission(
    config: Config,
    identity: ProjectIdentity,
    gate: PermissionGate | None,
) -> PermissionDecision:
    if not config.permission_check_enabled:
        logger.info(
            "Permission check disabled",
            extra={"mode": config.permission_check.value, "has_token": bool(config.github_token)},
        )
        return skipped_decision(identity.repository, identity.branch_name, identity.git_user)

    with contextlib.ExitStack() as stack:
        if gate is None:
            client = GitHubClient.from_config(config)
            if client is not None:
                stack.enter_context(client)
            gate = build_gate(config, client)
        return gate.check(
            identity.repo_owner, identity.repo_name, identity.branch_name, identity.git_user
        )


def _notify_setup_failure(
    config: Config,
    settings: PipelineSettings,
    error: str,
    notifier: TelegramNotifier | None,
) -> None:
    """Best-effort failure message, never masks the original error."""
    branch = resolve_branch(settings.overrides.repo_branch, config.git_branch, config.branch_name)
    _, repo_name = parse_git_url(config.git_url)
    target = resolve_notification_target(
        classify_branch(branch),
        config.telegram,
        bot_token=settings.notify.bot_token,
        chat_id=settings.notify.chat_id,
        thread_id=settings.notify.thread_id,
    )
    text = build_failure_message(
        error,
        repo_name=settings.overrides.repo_name or repo_name,
        branch_name=branch,
        build_number=config.build_number,
        build_url=config.build_url,
        parse_mode=settings.notify.parse_mode,
    )

    try:
        with contextlib.ExitStack() as stack:
            if notifier is None:
                notifier = stack.enter_context(TelegramNotifier.from_config(config))
            notifier.send(target, text, parse_mode=settings.notify.parse_mode, fail_on_error=False)
    except Exception as e:
        logger.warning("Failed to send setup failure notification", extra={"error": str(e)})
