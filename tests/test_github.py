"""Tests for the GitHub API adapter."""

from __future__ import annotations

import httpx
import pytest
import respx

from deploykit.config import Config
from deploykit.github import (
    GitHubApiError,
    GitHubAuthError,
    GitHubClient,
    GitHubProtectionSource,
    GitHubRoleSource,
    GitHubUnavailableError,
)
from deploykit.permissions import CollaboratorRole, DecisionReason, PermissionGate
from deploykit.protection import ProtectionLevel, ProtectionReason
from deploykit.retry import RetryPolicy

BASE = "https://api.github.com"
VARIABLES = "/repos/acme/widget/actions/variables"
PERMISSION = "/repos/acme/widget/collaborators/octocat/permission"

# No real sleeping between retries
FAST_RETRY = RetryPolicy(max_attempts=4, initial_delay_seconds=0)


def _client() -> GitHubClient:
    return GitHubClient("ghs_test", retry_policy=FAST_RETRY)


@pytest.fixture
def mock_api():
    with respx.mock(base_url=BASE) as router:
        yield router


class TestClientConstruction:
    def test_from_config_without_token(self) -> None:
        assert GitHubClient.from_config(Config()) is None

    def test_from_config_with_token(self) -> None:
        client = GitHubClient.from_config(Config(github_token="ghs_test"))
        assert isinstance(client, GitHubClient)
        client.close()

    def test_headers(self, mock_api: respx.MockRouter) -> None:
        route = mock_api.get(f"{VARIABLES}/X").mock(
            return_value=httpx.Response(200, json={"name": "X", "value": "1"})
        )

        with _client() as client:
            client.get_repository_variable("acme", "widget", "X")

        request = route.calls.last.request
        assert request.headers["Authorization"] == "token ghs_test"
        assert request.headers["Accept"] == "application/vnd.github.v3+json"


class TestRepositoryVariables:
    def test_value(self, mock_api: respx.MockRouter) -> None:
        mock_api.get(f"{VARIABLES}/BRANCH_PROTECT_ADMIN").mock(
            return_value=httpx.Response(200, json={"name": "BRANCH_PROTECT_ADMIN", "value": "main"})
        )

        with _client() as client:
            assert client.get_repository_variable("acme", "widget", "BRANCH_PROTECT_ADMIN") == "main"

    def test_missing_variable(self, mock_api: respx.MockRouter) -> None:
        mock_api.get(f"{VARIABLES}/BRANCH_PROTECT_ADMIN").mock(
            return_value=httpx.Response(404, json={"message": "Not Found"})
        )

        with _client() as client:
            assert client.get_repository_variable("acme", "widget", "BRANCH_PROTECT_ADMIN") is None

    def test_auth_error(self, mock_api: respx.MockRouter) -> None:
        mock_api.get(f"{VARIABLES}/X").mock(return_value=httpx.Response(401, text="Bad credentials"))

        with _client() as client, pytest.raises(GitHubAuthError) as exc_info:
            client.get_repository_variable("acme", "widget", "X")

        assert exc_info.value.status_code == 401

    def test_retries_server_errors(self, mock_api: respx.MockRouter) -> None:
        route = mock_api.get(f"{VARIABLES}/X").mock(
            side_effect=[
                httpx.Response(502),
                httpx.Response(503),
                httpx.Response(200, json={"name": "X", "value": "v"}),
            ]
        )

        with _client() as client:
            assert client.get_repository_variable("acme", "widget", "X") == "v"

        assert route.call_count == 3

    def test_gives_up_after_retries(self, mock_api: respx.MockRouter) -> None:
        route = mock_api.get(f"{VARIABLES}/X").mock(return_value=httpx.Response(500))

        with _client() as client, pytest.raises(GitHubApiError) as exc_info:
            client.get_repository_variable("acme", "widget", "X")

        assert exc_info.value.status_code == 500
        assert route.call_count == 4

    def test_transport_error(self, mock_api: respx.MockRouter) -> None:
        mock_api.get(f"{VARIABLES}/X").mock(side_effect=httpx.ConnectError("refused"))

        with _client() as client, pytest.raises(GitHubUnavailableError):
            client.get_repository_variable("acme", "widget", "X")


class TestCollaboratorRole:
    def test_prefers_role_name(self, mock_api: respx.MockRouter) -> None:
        mock_api.get(PERMISSION).mock(
            return_value=httpx.Response(200, json={"permission": "write", "role_name": "maintain"})
        )

        with _client() as client:
            assert client.get_collaborator_role("acme", "widget", "octocat") is CollaboratorRole.MAINTAIN

    def test_falls_back_to_permission(self, mock_api: respx.MockRouter) -> None:
        mock_api.get(PERMISSION).mock(return_value=httpx.Response(200, json={"permission": "admin"}))

        with _client() as client:
            assert client.get_collaborator_role("acme", "widget", "octocat") is CollaboratorRole.ADMIN

    def test_missing_fields(self, mock_api: respx.MockRouter) -> None:
        mock_api.get(PERMISSION).mock(return_value=httpx.Response(200, json={}))

        with _client() as client, pytest.raises(GitHubApiError):
            client.get_collaborator_role("acme", "widget", "octocat")


class TestSources:
    def test_protection_source(self, mock_api: respx.MockRouter) -> None:
        mock_api.get(f"{VARIABLES}/BRANCH_PROTECT_ADMIN").mock(
            return_value=httpx.Response(
                200, json={"name": "BRANCH_PROTECT_ADMIN", "value": "main, prod"}
            )
        )
        mock_api.get(f"{VARIABLES}/BRANCH_PROTECT_MAINTAIN").mock(
            return_value=httpx.Response(404)
        )

        with _client() as client:
            lists = GitHubProtectionSource(client).fetch_lists("acme", "widget")

        assert lists.admin == ("main", "prod")
        assert lists.maintain is None

    def test_gate_end_to_end_blocked(self, mock_api: respx.MockRouter) -> None:
        mock_api.get(f"{VARIABLES}/BRANCH_PROTECT_ADMIN").mock(
            return_value=httpx.Response(200, json={"name": "BRANCH_PROTECT_ADMIN", "value": "main"})
        )
        mock_api.get(f"{VARIABLES}/BRANCH_PROTECT_MAINTAIN").mock(
            return_value=httpx.Response(
                200, json={"name": "BRANCH_PROTECT_MAINTAIN", "value": "staging"}
            )
        )
        mock_api.get(PERMISSION).mock(
            return_value=httpx.Response(200, json={"permission": "write", "role_name": "write"})
        )

        with _client() as client:
            gate = PermissionGate(GitHubProtectionSource(client), GitHubRoleSource(client))
            decision = gate.check("acme", "widget", "main", "octocat")

        assert decision.protection is not None
        assert decision.protection.level is ProtectionLevel.ADMIN
        assert decision.can_deploy is False
        assert decision.reason is DecisionReason.ADMIN_REQUIRED_BUT_NOT_ADMIN

    def test_gate_fails_open_when_api_down(self, mock_api: respx.MockRouter) -> None:
        mock_api.get(f"{VARIABLES}/BRANCH_PROTECT_ADMIN").mock(return_value=httpx.Response(503))

        with _client() as client:
            gate = PermissionGate(GitHubProtectionSource(client), GitHubRoleSource(client))
            decision = gate.check("acme", "widget", "main", "octocat")

        assert decision.protection is not None
        assert decision.protection.reason is ProtectionReason.API_EXCEPTION
        assert decision.can_deploy is True
        assert decision.reason is DecisionReason.PROTECTION_CHECK_FAILED
