"""GitHub REST API adapter using httpx.

Only the two endpoints the permission gate needs are wrapped:

- GET /repos/{owner}/{repo}/actions/variables/{name}
- GET /repos/{owner}/{repo}/collaborators/{username}/permission

Transient failures are retried per deploykit.retry.
"""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import quote

import httpx

from .config import (
    ADMIN_PROTECTION_VARIABLE,
    DEFAULT_GITHUB_API_URL,
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    MAINTAIN_PROTECTION_VARIABLE,
    Config,
    parse_list,
)
from .permissions import CollaboratorRole
from .protection import ProtectionLists
from .retry import RETRYABLE_STATUS_CODES, RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)


class GitHubError(Exception):
    """Base exception for GitHub operations."""


class GitHubApiError(GitHubError):
    """Raised when the GitHub API returns a non-success response."""

    def __init__(self, status_code: int, status_text: str, body: str = "") -> None:
        self.status_code = status_code
        self.status_text = status_text
        self.body = body
        super().__init__(f"GitHub API Error {status_code} {status_text}: {body}")


class GitHubAuthError(GitHubApiError):
    """Raised on 401/403 authentication failures."""

    def __init__(self, status_code: int, body: str = "") -> None:
        status_text = "Unauthorized" if status_code == 401 else "Forbidden"
        super().__init__(status_code, status_text, body)


class GitHubNotFoundError(GitHubApiError):
    """Raised on 404 responses."""

    def __init__(self, body: str = "") -> None:
        super().__init__(404, "Not Found", body)


class GitHubUnavailableError(GitHubError):
    """Raised when the API could not be reached after all retries."""


class GitHubClient:
    """Synchronous client for the handful of GitHub calls a run makes."""

    def __init__(
        self,
        token: str,
        *,
        api_url: str = DEFAULT_GITHUB_API_URL,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._retry_policy = retry_policy or RetryPolicy()
        self._client = httpx.Client(
            base_url=api_url,
            headers={
                "Authorization": f"token {token}",
                "Accept": "application/vnd.github.v3+json",
            },
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: Config) -> GitHubClient | None:
        """Build a client when a token is configured, else None."""
        if not config.github_token:
            return None
        return cls(
            config.github_token,
            api_url=config.github_api_url,
            timeout=config.http.timeout_seconds,
            retry_policy=RetryPolicy.from_http_config(config.http),
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GitHubClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ── HTTP helpers ──────────────────────────────────────────────

    def _send(self, method: str, path: str) -> httpx.Response:
        resp = self._client.request(method, path)
        if resp.status_code in RETRYABLE_STATUS_CODES:
            resp.raise_for_status()
        return resp

    def _request(self, method: str, path: str) -> Any:
        """Make an API request and return parsed JSON."""
        try:
            resp = call_with_retry(
                lambda: self._send(method, path),
                policy=self._retry_policy,
                description=f"GitHub {method} {path}",
            )
        except httpx.HTTPStatusError as e:
            raise GitHubApiError(
                e.response.status_code, e.response.reason_phrase or "", e.response.text
            ) from e
        except httpx.TransportError as e:
            raise GitHubUnavailableError(f"GitHub API unreachable: {e}") from e

        if resp.status_code in (401, 403):
            raise GitHubAuthError(resp.status_code, resp.text)
        if resp.status_code == 404:
            raise GitHubNotFoundError(resp.text)
        if not resp.is_success:
            raise GitHubApiError(resp.status_code, resp.reason_phrase or "", resp.text)

        try:
            return resp.json()
        except json.JSONDecodeError as e:
            raise GitHubApiError(resp.status_code, f"JSON parse error: {e}", resp.text[:500]) from e

    @staticmethod
    def _repo_path(repo_owner: str, repo_name: str) -> str:
        return f"/repos/{quote(repo_owner, safe='')}/{quote(repo_name, safe='')}"

    # ── Repository variables ──────────────────────────────────────

    def get_repository_variable(self, repo_owner: str, repo_name: str, name: str) -> str | None:
        """Read an Actions repository variable.

        Returns:
            The variable's value, or None when the variable does not exist.
        """
        path = f"{self._repo_path(repo_owner, repo_name)}/actions/variables/{quote(name, safe='')}"
        try:
            data = self._request("GET", path)
        except GitHubNotFoundError:
            return None

        if not isinstance(data, dict) or data.get("name") != name:
            raise GitHubApiError(200, "Unexpected variable payload", str(data)[:500])
        return str(data.get("value") or "")

    # ── Collaborators ─────────────────────────────────────────────

    def get_collaborator_role(
        self, repo_owner: str, repo_name: str, username: str
    ) -> CollaboratorRole:
        """Look up a collaborator's role.

        ``role_name`` is preferred since it distinguishes maintain/triage,
        the legacy ``permission`` field is used otherwise.
        """
        path = (
            f"{self._repo_path(repo_owner, repo_name)}"
            f"/collaborators/{quote(username, safe='')}/permission"
        )
        data = self._request("GET", path)

        role = None
        if isinstance(data, dict):
            role = data.get("role_name") or data.get("permission")
        if not role:
            raise GitHubApiError(200, "Could not determine user permission", str(data)[:500])

        logger.info(
            "Collaborator permission fetched",
            extra={"repository": f"{repo_owner}/{repo_name}", "username": username, "role": role},
        )
        return CollaboratorRole.parse(role)


class GitHubProtectionSource:
    """Protected branch lists stored as repository Actions variables."""

    def __init__(
        self,
        client: GitHubClient,
        admin_variable: str = ADMIN_PROTECTION_VARIABLE,
        maintain_variable: str = MAINTAIN_PROTECTION_VARIABLE,
    ) -> None:
        self._client = client
        self._admin_variable = admin_variable
        self._maintain_variable = maintain_variable

    def fetch_lists(self, repo_owner: str, repo_name: str) -> ProtectionLists:
        admin = self._client.get_repository_variable(repo_owner, repo_name, self._admin_variable)
        maintain = self._client.get_repository_variable(
            repo_owner, repo_name, self._maintain_variable
        )
        return ProtectionLists(admin=parse_list(admin), maintain=parse_list(maintain))


class GitHubRoleSource:
    """Collaborator roles from the GitHub API."""

    def __init__(self, client: GitHubClient) -> None:
        self._client = client

    def get_role(self, repo_owner: str, repo_name: str, username: str) -> CollaboratorRole:
        return self._client.get_collaborator_role(repo_owner, repo_name, username)
