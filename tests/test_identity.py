"""Tests for project identity resolution."""

from __future__ import annotations

import re
import subprocess
from unittest.mock import patch

import pytest

from deploykit.config import Config, RegistryConfig
from deploykit.environment import EnvironmentClass
from deploykit.identity import (
    DEFAULT_COMMIT_MESSAGE,
    UNKNOWN_OWNER,
    UNKNOWN_REPO,
    GitInspector,
    IdentityOverrides,
    ProjectIdentity,
    normalize_git_user,
    parse_git_url,
    resolve_branch,
    resolve_identity,
    resolve_identity_from_config,
    sanitize_branch,
    truncate_commit_message,
)

SANITIZED_PATTERN = re.compile(r"^[a-z0-9-]*$")


class TestParseGitUrl:
    @pytest.mark.parametrize(
        "url",
        [
            "git@github.com:acme/widget.git",
            "https://github.com/acme/widget.git",
            "https://github.com/acme/widget",
            "ssh://git@github.com/acme/widget.git",
        ],
    )
    def test_forms(self, url: str) -> None:
        assert parse_git_url(url) == ("acme", "widget")

    @pytest.mark.parametrize("url", [None, "", "widget"])
    def test_sentinels(self, url: str | None) -> None:
        assert parse_git_url(url) == (UNKNOWN_OWNER, UNKNOWN_REPO)


class TestSanitizeBranch:
    def test_slash_and_underscore(self) -> None:
        assert sanitize_branch("hotfix/db_connection") == "hotfix-db-connection"

    def test_lowercases(self) -> None:
        assert sanitize_branch("Feature/ABC-12") == "feature-abc-12"

    def test_non_ascii_becomes_hyphen(self) -> None:
        assert sanitize_branch("fix/über") == "fix--ber"

    @pytest.mark.parametrize(
        "branch",
        ["", "main", "beta/api", "a b.c@d", "UPPER/lower_mixed", "ünïcödé/π", "--x--", "a//b"],
    )
    def test_idempotent_and_safe(self, branch: str) -> None:
        once = sanitize_branch(branch)
        assert sanitize_branch(once) == once
        assert SANITIZED_PATTERN.match(once)


class TestResolveBranch:
    def test_override(self) -> None:
        assert resolve_branch("release", "origin/main", "dev") == "release"

    def test_strips_origin(self) -> None:
        assert resolve_branch(None, "origin/beta/api", None) == "beta/api"

    def test_alt_variable(self) -> None:
        assert resolve_branch(None, None, "staging") == "staging"

    def test_default(self) -> None:
        assert resolve_branch(None, "", "") == "main"


class TestCommitMetadata:
    def test_truncate(self) -> None:
        message = "x" * 150
        result = truncate_commit_message(message)
        assert len(result) == 100
        assert result.endswith("...")

    def test_short_message_kept(self) -> None:
        assert truncate_commit_message("Fix login") == "Fix login"

    def test_missing_message(self) -> None:
        assert truncate_commit_message(None) == DEFAULT_COMMIT_MESSAGE

    def test_git_user_email(self) -> None:
        assert normalize_git_user("octocat@users.noreply.github.com") == "octocat"
        assert normalize_git_user("Mona Lisa") == "Mona Lisa"
        assert normalize_git_user(None) == "unknown"


class TestResolveIdentity:
    def test_main_scenario(self) -> None:
        identity = resolve_identity(
            git_url="git@github.com:acme/widget.git",
            env_branch="origin/main",
            commit_sha="0123456789abcdef",
        )

        assert identity.repo_owner == "acme"
        assert identity.repo_name == "widget"
        assert identity.branch_name == "main"
        assert identity.environment is EnvironmentClass.PROD
        assert identity.namespace == "widget"
        assert identity.deployment_name == "widget-main"
        assert identity.app_name == "widget-main"
        assert identity.commit_hash == "0123456"

    def test_beta_api_scenario(self, registries: RegistryConfig) -> None:
        identity = resolve_identity(
            git_url="https://github.com/acme/widget",
            env_branch="beta/api",
            registries=registries,
        )

        assert identity.environment is EnvironmentClass.BETA
        assert identity.sanitized_branch == "beta-api"
        assert identity.registry == "registry.beta.local"
        assert identity.image == "registry.beta.local/widget-beta-api"

    def test_missing_everything_degrades(self) -> None:
        identity = resolve_identity()

        assert identity.repo_name == UNKNOWN_REPO
        assert identity.branch_name == "main"
        assert identity.commit_hash == "latest"
        assert identity.commit_message == DEFAULT_COMMIT_MESSAGE
        assert identity.deployment_name == "unknown-repo-main"

    def test_override_supremacy(self, registries: RegistryConfig) -> None:
        overrides = IdentityOverrides(
            repo_owner="other",
            repo_name="custom",
            repo_branch="staging/x",
            sanitized_branch="stg",
            namespace="ns",
            deployment="dep",
            app_name="app",
            registry="reg.example",
            commit_hash="v1.2.3",
        )

        identity = resolve_identity(
            git_url="git@github.com:acme/widget.git",
            env_branch="origin/main",
            commit_sha="0123456789",
            registries=registries,
            overrides=overrides,
        )

        assert identity.repo_owner == "other"
        assert identity.repo_name == "custom"
        assert identity.branch_name == "staging/x"
        assert identity.sanitized_branch == "stg"
        assert identity.namespace == "ns"
        assert identity.deployment_name == "dep"
        assert identity.app_name == "app"
        assert identity.registry == "reg.example"
        assert identity.commit_hash == "v1.2.3"

    def test_overrides_from_dict_ignore_unknown_and_empty(self) -> None:
        overrides = IdentityOverrides.from_dict({"namespace": "ns", "app_name": "", "bogus": "x"})
        assert overrides == IdentityOverrides(namespace="ns")

    def test_round_trip_dict(self) -> None:
        identity = resolve_identity(git_url="git@github.com:acme/widget.git", env_branch="staging")
        assert ProjectIdentity.from_dict(identity.to_dict()) == identity


class TestGitInspector:
    def test_reads_git_log(self) -> None:
        completed = subprocess.CompletedProcess(args=[], returncode=0, stdout="Fix login\n")
        with patch("deploykit.identity.subprocess.run", return_value=completed) as run:
            assert GitInspector().commit_message() == "Fix login"

        assert run.call_args.args[0] == ["git", "log", "-1", "--pretty=format:%s"]

    def test_failure_returns_none(self) -> None:
        completed = subprocess.CompletedProcess(args=[], returncode=128, stdout="")
        with patch("deploykit.identity.subprocess.run", return_value=completed):
            assert GitInspector().author() is None

    def test_missing_git_returns_none(self) -> None:
        with patch("deploykit.identity.subprocess.run", side_effect=FileNotFoundError("git")):
            assert GitInspector().commit_message() is None


class StubInspector(GitInspector):
    def commit_message(self) -> str | None:
        return "Add feature"

    def author(self) -> str | None:
        return "octocat@example.com"


class TestResolveIdentityFromConfig:
    def test_uses_config_and_inspector(self) -> None:
        config = Config(
            git_url="git@github.com:acme/widget.git",
            git_branch="origin/staging",
            git_commit="fedcba9876543210",
        )

        identity = resolve_identity_from_config(config, inspector=StubInspector())

        assert identity.branch_name == "staging"
        assert identity.environment is EnvironmentClass.STAGING
        assert identity.commit_hash == "fedcba9"
        assert identity.commit_message == "Add feature"
        assert identity.git_user == "octocat"
