"""deploykit CLI.

Pipeline steps for a CI job. A Jenkinsfile or workflow only needs:

    deploykit setup --env-file "$ENV_FILE"   # resolve, gate, export
    deploykit fetch-config                   # layered ConfigMaps/Secrets
    deploykit build                          # docker build + push
    deploykit deploy                         # kubectl set image
    deploykit swarm-deploy                   # or docker service update
    deploykit notify --status SUCCESS        # Telegram

Exit codes: 0 success, 1 error, 3 deployment blocked.
"""

from __future__ import annotations

import json
import os
import shlex
from dataclasses import dataclass
from pathlib import Path

import click

from .config import Config, ConfigurationError
from .environment import classify_branch, select_registry
from .identity import resolve_branch, sanitize_branch
from .layers import KubectlConfigStore, fetch_config, materialize, plan_config_layers
from .main import setup_logging
from .models import PipelineSettings
from .notify import NotificationError, build_status_message
from .permissions import DeploymentBlockedError
from .pipeline import (
    DEPLOYMENT_BLOCKED_VARIABLE,
    DeploymentAlreadyBlockedError,
    ProjectVars,
    export_variables,
    load_project_vars,
    notification_suppressed,
    send_notification,
    setup,
)
from .settings_loader import SettingsLoadError, load_settings
from .shell import BUILD_TIMEOUT_SECONDS, CommandError, run_command
from .validation import (
    ValidationError,
    validate_container_name,
    validate_context_path,
    validate_docker_image_name,
    validate_docker_tag,
    validate_file_path,
    validate_k8s_deployment_name,
    validate_k8s_namespace,
    validate_swarm_name,
)

EXIT_BLOCKED = 3


class DeploymentBlockedExit(click.ClickException):
    """Deployment denied by the permission gate."""

    exit_code = EXIT_BLOCKED


@dataclass
class CliState:
    settings_path: Path | None
    _config: Config | None = None
    _settings: PipelineSettings | None = None

    @property
    def config(self) -> Config:
        if self._config is None:
            try:
                self._config = Config.from_env()
            except ConfigurationError as e:
                raise click.ClickException(str(e)) from e
        return self._config

    @property
    def settings(self) -> PipelineSettings:
        if self._settings is None:
            try:
                self._settings = load_settings(
                    self.settings_path, required=self.settings_path is not None
                )
            except SettingsLoadError as e:
                raise click.ClickException(str(e)) from e
        return self._settings


pass_state = click.make_pass_decorator(CliState)


def _secret_values() -> list[str]:
    return [v for k, v in os.environ.items() if v and (k.endswith("_TOKEN") or "_TOKEN_" in k)]


def _project_vars(state: CliState) -> ProjectVars:
    """Variables exported by ``setup``, or a fresh setup when there are none."""
    cached = load_project_vars()
    if cached is not None:
        return cached
    return _run_setup(state)


def _run_setup(state: CliState) -> ProjectVars:
    try:
        return setup(state.config, state.settings)
    except (DeploymentBlockedError, DeploymentAlreadyBlockedError) as e:
        raise DeploymentBlockedExit(str(e)) from e


def _require_deploy_permission(project_vars: ProjectVars, step: str) -> None:
    if not project_vars.can_deploy:
        raise DeploymentBlockedExit(
            f"{step}: deployment blocked ({project_vars.permission_reason}) "
            f"for user '{project_vars.identity.git_user}' "
            f"on branch '{project_vars.identity.branch_name}'"
        )


def _write_env_file(path: Path, variables: dict[str, str]) -> None:
    with path.open("a", encoding="utf-8") as f:
        for key, value in variables.items():
            f.write(f"{key}={value}\n")


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="deploykit")
@click.option(
    "--settings",
    "settings_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Pipeline settings file (default: ./deploykit.yaml if present).",
)
@click.option("--log-level", default="INFO", show_default=True, help="Root log level.")
@click.option("--plain-logs", is_flag=True, help="Human-readable logs instead of JSON.")
@click.pass_context
def cli(ctx: click.Context, settings_path: Path | None, log_level: str, plain_logs: bool) -> None:
    """deploykit: branch-driven build and deploy steps for CI.

    \b
    Quick start:
      deploykit setup       # Resolve project variables and check permissions
      deploykit build       # Build and push the image
      deploykit deploy      # Roll the deployment to the new image
    """
    setup_logging(log_level.upper(), json_output=not plain_logs, secrets=_secret_values())
    ctx.obj = CliState(settings_path=settings_path)


# =============================================================================
# Setup Commands
# =============================================================================


@cli.command("setup")
@click.option(
    "--env-file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Append KEY=VALUE lines here (e.g. $GITHUB_ENV). Default: print shell exports.",
)
@pass_state
def setup_cmd(state: CliState, env_file: Path | None) -> None:
    """Resolve project variables and run the permission gate."""
    try:
        project_vars = setup(state.config, state.settings)
    except DeploymentBlockedError as e:
        if env_file is not None:
            _write_env_file(env_file, {DEPLOYMENT_BLOCKED_VARIABLE: "true"})
        else:
            click.echo(f"export {DEPLOYMENT_BLOCKED_VARIABLE}=true")
        raise DeploymentBlockedExit(f"{e}: {e.decision.blocked_message()}") from e
    except DeploymentAlreadyBlockedError as e:
        raise DeploymentBlockedExit(str(e)) from e

    variables = export_variables(project_vars)
    if env_file is not None:
        _write_env_file(env_file, variables)
        click.echo(f"Wrote {len(variables)} variables to {env_file}", err=True)
    else:
        for key, value in variables.items():
            click.echo(f"export {key}={shlex.quote(value)}")


@cli.command("classify")
@click.argument("branch", required=False)
@pass_state
def classify_cmd(state: CliState, branch: str | None) -> None:
    """Show environment class, sanitized name and registry for BRANCH."""
    config = state.config
    branch_name = resolve_branch(
        branch or state.settings.overrides.repo_branch, config.git_branch, config.branch_name
    )
    env_class = classify_branch(branch_name)
    result = {
        "branch": branch_name,
        "sanitized_branch": sanitize_branch(branch_name),
        "environment": env_class.display_name,
        "registry": select_registry(
            env_class, config.registry, state.settings.overrides.registry
        ),
    }
    click.echo(json.dumps(result, indent=2))


@cli.command("plan-config")
@click.option("--branch", default=None, help="Branch (default: from CI environment).")
@pass_state
def plan_config_cmd(state: CliState, branch: str | None) -> None:
    """Print the ConfigMap/Secret layers for a branch, lowest precedence first."""
    config = state.config
    layer_settings = state.settings.config
    branch_name = resolve_branch(
        branch or state.settings.overrides.repo_branch, config.git_branch, config.branch_name
    )
    plan = plan_config_layers(
        branch_name,
        general_name=layer_settings.general,
        branch_layer=layer_settings.configmap,
        secret_name=layer_settings.secret,
        include_secret=layer_settings.include_secret,
    )
    layers = [
        {
            "name": layer.source_name,
            "kind": layer.kind.value,
            "keys": "all" if not isinstance(layer.keys, frozenset) else sorted(layer.keys),
        }
        for layer in plan
    ]
    click.echo(json.dumps({"branch": branch_name, "layers": layers}, indent=2))


@cli.command("fetch-config")
@click.option("--namespace", default=None, help="Namespace (default: project namespace).")
@click.option(
    "--workspace",
    type=click.Path(path_type=Path, file_okay=False),
    default=Path("."),
    show_default=True,
    help="Directory the files are written to.",
)
@pass_state
def fetch_config_cmd(state: CliState, namespace: str | None, workspace: Path) -> None:
    """Fetch layered configuration files into the workspace."""
    settings = state.settings
    if settings.skip.config:
        click.echo("fetch-config skipped by settings", err=True)
        return

    project_vars = _project_vars(state)
    identity = project_vars.identity
    layer_settings = settings.config

    try:
        ns = validate_k8s_namespace(namespace or identity.namespace)
        for dest in layer_settings.destinations.values():
            validate_file_path(dest)
        plan = plan_config_layers(
            identity.branch_name,
            general_name=layer_settings.general,
            branch_layer=layer_settings.configmap,
            secret_name=layer_settings.secret,
            include_secret=layer_settings.include_secret,
        )
        merged = fetch_config(KubectlConfigStore(), ns, plan)
        written = materialize(merged, workspace, layer_settings.destinations)
    except (ValidationError, CommandError, ValueError, OSError) as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"Wrote {len(written)} config files from layers {', '.join(plan.names)}", err=True)


# =============================================================================
# Build & Deploy Commands
# =============================================================================


@cli.command("build")
@click.option("--image", default=None, help="Image repository (default: REGISTRY/APP_NAME).")
@click.option("--tag", default=None, help="Image tag (default: short commit hash).")
@click.option("--dockerfile", default=None, help="Dockerfile path (default: from settings).")
@click.option("--context", "build_context", default=None, help="Build context directory.")
@click.option("--push/--no-push", default=True, show_default=True, help="Push after build.")
@pass_state
def build_cmd(
    state: CliState,
    image: str | None,
    tag: str | None,
    dockerfile: str | None,
    build_context: str | None,
    push: bool,
) -> None:
    """Build and push the Docker image."""
    settings = state.settings
    if settings.skip.build:
        click.echo("build skipped by settings", err=True)
        return

    project_vars = _project_vars(state)
    _require_deploy_permission(project_vars, "build")
    identity = project_vars.identity

    try:
        image_name = validate_docker_image_name(image or identity.image)
        image_tag = validate_docker_tag(tag or identity.commit_hash)
        dockerfile_path = validate_file_path(dockerfile or settings.build.dockerfile)
        context_path = validate_context_path(build_context or settings.build.context)
    except ValidationError as e:
        raise click.ClickException(str(e)) from e

    ref = f"{image_name}:{image_tag}"
    try:
        click.echo(f"Building {ref}...")
        run_command(
            ["docker", "build", "-t", ref, "-f", dockerfile_path, context_path],
            timeout=BUILD_TIMEOUT_SECONDS,
        )
        if push and not settings.skip.push:
            click.echo(f"Pushing {ref}...")
            run_command(["docker", "push", ref], timeout=BUILD_TIMEOUT_SECONDS)
    except CommandError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"Built {ref}")


@cli.command("deploy")
@click.option("--deployment", default=None, help="Deployment (default: project deployment).")
@click.option("--namespace", default=None, help="Namespace (default: project namespace).")
@click.option("--container", default=None, help="Container name, '*' for all.")
@click.option("--image", default=None, help="Image repository (default: REGISTRY/APP_NAME).")
@click.option("--tag", default=None, help="Image tag (default: short commit hash).")
@pass_state
def deploy_cmd(
    state: CliState,
    deployment: str | None,
    namespace: str | None,
    container: str | None,
    image: str | None,
    tag: str | None,
) -> None:
    """Roll the Kubernetes deployment to the new image."""
    settings = state.settings
    if settings.skip.deploy:
        click.echo("deploy skipped by settings", err=True)
        return

    project_vars = _project_vars(state)
    _require_deploy_permission(project_vars, "deploy")
    identity = project_vars.identity

    try:
        name = validate_k8s_deployment_name(deployment or identity.deployment_name)
        ns = validate_k8s_namespace(namespace or identity.namespace)
        selector = validate_container_name(container or settings.deploy.container)
        image_name = validate_docker_image_name(image or identity.image)
        image_tag = validate_docker_tag(tag or identity.commit_hash)
    except ValidationError as e:
        raise click.ClickException(str(e)) from e

    ref = f"{image_name}:{image_tag}"
    try:
        run_command(
            ["kubectl", "set", "image", f"deployment/{name}", f"{selector}={ref}", "-n", ns]
        )
    except CommandError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"Updated deployment/{name} in {ns} to {ref}")


@cli.command("swarm-deploy")
@click.option("--service", default=None, help="Service (default: REPO_NAME_SANITIZED_BRANCH).")
@click.option("--image", default=None, help="Image repository (default: REGISTRY/APP_NAME).")
@click.option("--tag", default=None, help="Image tag (default: short commit hash).")
@click.option(
    "--context", "docker_context", default=None, help="Docker context (default: from settings)."
)
@pass_state
def swarm_deploy_cmd(
    state: CliState,
    service: str | None,
    image: str | None,
    tag: str | None,
    docker_context: str | None,
) -> None:
    """Update the Docker Swarm service to the new image."""
    settings = state.settings
    if settings.skip.deploy:
        click.echo("swarm-deploy skipped by settings", err=True)
        return

    project_vars = _project_vars(state)
    _require_deploy_permission(project_vars, "swarm-deploy")
    identity = project_vars.identity

    try:
        name = validate_swarm_name(
            service or f"{identity.repo_name}_{identity.sanitized_branch}"
        )
        context_name = validate_swarm_name(
            docker_context or settings.deploy.swarm_context, "context name"
        )
        image_name = validate_docker_image_name(image or identity.image)
        image_tag = validate_docker_tag(tag or identity.commit_hash)
    except ValidationError as e:
        raise click.ClickException(str(e)) from e

    ref = f"{image_name}:{image_tag}"
    try:
        run_command(
            [
                "docker",
                "--context",
                context_name,
                "service",
                "update",
                "--with-registry-auth",
                "--image",
                ref,
                name,
            ]
        )
    except CommandError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"Updated service {name} on {context_name} to {ref}")


# =============================================================================
# Notification Commands
# =============================================================================


@cli.command("notify")
@click.option("--status", default="SUCCESS", show_default=True, help="Build result.")
@click.option("--message", default=None, help="Custom message instead of the build summary.")
@click.option("--duration", default=None, help="Build duration for the summary.")
@click.option(
    "--fail-on-error/--no-fail-on-error",
    default=None,
    help="Fail when Telegram delivery fails (default: from settings).",
)
@pass_state
def notify_cmd(
    state: CliState,
    status: str,
    message: str | None,
    duration: str | None,
    fail_on_error: bool | None,
) -> None:
    """Send a Telegram notification for this build."""
    settings = state.settings
    if settings.skip.notification:
        click.echo("notify skipped by settings", err=True)
        return

    config = state.config
    cached = load_project_vars()
    if notification_suppressed(config, cached):
        return

    project_vars = cached or _run_setup(state)
    identity = project_vars.identity
    text = message or build_status_message(
        identity,
        status,
        duration=duration,
        build_number=config.build_number,
        build_url=config.build_url,
        parse_mode=settings.notify.parse_mode,
    )

    try:
        result = send_notification(config, settings, identity, text, fail_on_error=fail_on_error)
    except NotificationError as e:
        raise click.ClickException(str(e)) from e

    if result.skipped:
        click.echo("Notification skipped: Telegram credentials not configured", err=True)
    elif result.sent:
        click.echo(f"Notification sent (message id {result.message_id})", err=True)


def main() -> None:
    """Console script entry point."""
    cli(prog_name="deploykit")


if __name__ == "__main__":
    main()
