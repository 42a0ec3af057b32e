"""Telegram notifications with per-environment routing.

Each credential (bot token, chat id, thread id) is resolved independently:

    explicit override -> TELEGRAM_<FIELD>_<CLASS> -> TELEGRAM_<FIELD> -> absent

A notification is only attempted when both bot token and chat id resolved.
Otherwise it is skipped with a warning, never sent with empty credentials.
Delivery failures are logged and only raised when ``fail_on_error`` is set;
they never undo a decision that already succeeded.
"""

from __future__ import annotations

import html
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from .config import DEFAULT_HTTP_TIMEOUT_SECONDS, DEFAULT_TELEGRAM_API_URL, Config, TelegramConfig
from .environment import EnvironmentClass
from .identity import ProjectIdentity
from .permissions import PermissionDecision
from .retry import RETRYABLE_STATUS_CODES, RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

DEFAULT_PARSE_MODE = "Markdown"

STATUS_EMOJI: dict[str, str] = {
    "SUCCESS": "✅",
    "FAILURE": "❌",
    "UNSTABLE": "⚠️",
    "ABORTED": "🛑",
    "NOT_BUILT": "⭕",
}
UNKNOWN_STATUS_EMOJI = "❓"


class NotificationError(Exception):
    """Raised when a notification could not be delivered and fail_on_error is set."""

    pass


@dataclass(frozen=True)
class NotificationTarget:
    """Resolved Telegram credentials. Any field may be absent."""

    bot_token: str | None = None
    chat_id: str | None = None
    thread_id: str | None = None

    @property
    def is_deliverable(self) -> bool:
        """Both bot token and chat id are required to send anything."""
        return bool(self.bot_token) and bool(self.chat_id)


@dataclass(frozen=True)
class NotificationResult:
    """Outcome of a send attempt."""

    sent: bool
    skipped: bool = False
    message_id: int | None = None
    error: str | None = None


def _resolve_field(
    override: str | None,
    values: Mapping[str, str],
    env_class: EnvironmentClass,
) -> str | None:
    if override:
        return override
    return values.get(env_class.variable_suffix) or values.get("") or None


def resolve_notification_target(
    env_class: EnvironmentClass,
    telegram: TelegramConfig,
    *,
    bot_token: str | None = None,
    chat_id: str | None = None,
    thread_id: str | None = None,
) -> NotificationTarget:
    """Route an environment class to its Telegram credentials.

    Args:
        env_class: Environment class of the branch.
        telegram: Credentials table from the environment.
        bot_token: Explicit bot token override.
        chat_id: Explicit chat id override.
        thread_id: Explicit thread id override.

    Returns:
        Target with each field resolved independently.
    """
    return NotificationTarget(
        bot_token=_resolve_field(bot_token, telegram.bot_tokens, env_class),
        chat_id=_resolve_field(chat_id, telegram.chat_ids, env_class),
        thread_id=_resolve_field(thread_id, telegram.thread_ids, env_class),
    )


# =============================================================================
# Messages
# =============================================================================

# Characters that open an entity in each parse mode
LEGACY_MARKDOWN_SPECIAL = frozenset("_*`[")
MARKDOWN_V2_SPECIAL = frozenset("_*[]()~`>#+-=|{}.!\\")


def escape_markdown(text: str, parse_mode: str = DEFAULT_PARSE_MODE) -> str:
    """Escape untrusted text so Telegram renders it literally in ``parse_mode``."""
    if parse_mode == "HTML":
        return html.escape(text, quote=False)
    special = MARKDOWN_V2_SPECIAL if parse_mode == "MarkdownV2" else LEGACY_MARKDOWN_SPECIAL
    return "".join(f"\\{ch}" if ch in special else ch for ch in text)


class MessageFormatter:
    """Builds Telegram markup for one parse mode, escaping every value."""

    def __init__(self, parse_mode: str = DEFAULT_PARSE_MODE) -> None:
        self.parse_mode = parse_mode

    def text(self, value: str) -> str:
        return escape_markdown(value, self.parse_mode)

    def bold(self, value: str) -> str:
        if self.parse_mode == "HTML":
            return f"<b>{self.text(value)}</b>"
        return f"*{self.text(value)}*"

    def code(self, value: str) -> str:
        if self.parse_mode == "HTML":
            return f"<code>{self.text(value)}</code>"
        if self.parse_mode == "MarkdownV2":
            value = value.replace("\\", "\\\\").replace("`", "\\`")
        else:
            # Legacy Markdown has no escape inside code spans
            value = value.replace("`", "'")
        return f"`{value}`"

    def link(self, label: str, url: str | None) -> str:
        if not url:
            return self.text(label)
        if self.parse_mode == "HTML":
            return f'<a href="{html.escape(url)}">{self.text(label)}</a>'
        if self.parse_mode == "MarkdownV2":
            url = url.replace("\\", "\\\\").replace(")", "\\)")
        return f"[{self.text(label)}]({url})"

    def field(self, emoji: str, label: str, value: str) -> str:
        prefix = f"{emoji} " if emoji else ""
        return f"{prefix}{self.bold(label + ':')} {value}"


def build_status_message(
    identity: ProjectIdentity,
    status: str = "UNKNOWN",
    duration: str | None = None,
    build_number: str | None = None,
    build_url: str | None = None,
    parse_mode: str = DEFAULT_PARSE_MODE,
) -> str:
    """Default build result message."""
    fmt = MessageFormatter(parse_mode)
    status = status.upper()
    emoji = STATUS_EMOJI.get(status, UNKNOWN_STATUS_EMOJI)

    lines = [
        f"{emoji} {fmt.bold(f'Build {status}')}",
        "",
        fmt.field("📦", "Project", fmt.code(identity.repo_name)),
        fmt.field("🌿", "Branch", fmt.code(identity.branch_name)),
        fmt.field("🏷️", "Tag", fmt.code(identity.commit_hash)),
        fmt.field("📝", "Commit", fmt.text(identity.commit_message)),
        "",
        fmt.field("⏱️", "Duration", fmt.text(duration or "Unknown")),
        fmt.field("🔗", "Build", fmt.link(f"#{build_number or '?'}", build_url)),
        "",
        fmt.field("", "Deployment", fmt.code(identity.deployment_name)),
        fmt.field("", "Namespace", fmt.code(identity.namespace)),
    ]
    return "\n".join(lines)


def build_blocked_message(
    identity: ProjectIdentity,
    decision: PermissionDecision,
    build_number: str | None = None,
    build_url: str | None = None,
    parse_mode: str = DEFAULT_PARSE_MODE,
) -> str:
    """Message sent when a deploy is denied."""
    fmt = MessageFormatter(parse_mode)
    lines = [
        f"🚫 {fmt.bold('Deployment Blocked')}",
        "",
        fmt.field("📦", "Repository", fmt.code(decision.repository or identity.repository)),
        fmt.field("🌿", "Branch", fmt.code(identity.branch_name)),
        fmt.field("👤", "User", fmt.code(decision.username)),
        "",
        fmt.field("❌", "Reason", fmt.text(decision.blocked_message())),
        "",
        fmt.text("🔒 This branch requires specific permissions to deploy."),
        fmt.text("Please contact a repository administrator."),
        "",
        fmt.field("🔗", "Build", fmt.link(f"#{build_number or '?'}", build_url)),
    ]
    return "\n".join(lines)


def build_failure_message(
    error: str,
    repo_name: str | None = None,
    branch_name: str | None = None,
    git_user: str | None = None,
    build_number: str | None = None,
    build_url: str | None = None,
    parse_mode: str = DEFAULT_PARSE_MODE,
) -> str:
    """Message sent when pipeline setup itself fails."""
    fmt = MessageFormatter(parse_mode)
    lines = [
        f"❌ {fmt.bold('Pipeline Setup Failed')}",
        "",
        fmt.field("📦", "Project", fmt.code(repo_name or "Unknown")),
        fmt.field("🌿", "Branch", fmt.code(branch_name or "Unknown")),
        fmt.field("👤", "User", fmt.code(git_user or "unknown")),
        "",
        fmt.field("⚠️", "Error", fmt.text(error)),
        "",
        fmt.field("🔗", "Build", fmt.link(f"#{build_number or '?'}", build_url)),
    ]
    return "\n".join(lines)


# =============================================================================
# Telegram client
# =============================================================================


class TelegramNotifier:
    """Sends messages through the Telegram Bot API."""

    def __init__(
        self,
        *,
        api_url: str = DEFAULT_TELEGRAM_API_URL,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._retry_policy = retry_policy or RetryPolicy()
        self._client = httpx.Client(timeout=timeout)

    @classmethod
    def from_config(cls, config: Config) -> TelegramNotifier:
        return cls(
            api_url=config.telegram.api_url,
            timeout=config.http.timeout_seconds,
            retry_policy=RetryPolicy.from_http_config(config.http),
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> TelegramNotifier:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _post(self, url: str, body: dict[str, Any]) -> httpx.Response:
        resp = self._client.post(url, json=body)
        if resp.status_code in RETRYABLE_STATUS_CODES:
            resp.raise_for_status()
        return resp

    def send(
        self,
        target: NotificationTarget,
        text: str,
        *,
        parse_mode: str = DEFAULT_PARSE_MODE,
        silent: bool = False,
        fail_on_error: bool = True,
    ) -> NotificationResult:
        """Send ``text`` to the target chat.

        Args:
            target: Resolved credentials.
            text: Message body.
            parse_mode: Telegram parse mode.
            silent: Deliver without sound (disable_notification).
            fail_on_error: Raise NotificationError on delivery failure.

        Returns:
            Result describing whether the message was sent or skipped.

        Raises:
            NotificationError: Delivery failed and fail_on_error is True.
        """
        if not target.bot_token:
            logger.warning("TELEGRAM_BOT_TOKEN not found, skipping notification")
            return NotificationResult(sent=False, skipped=True)
        if not target.chat_id:
            logger.warning("TELEGRAM_CHAT_ID not found, skipping notification")
            return NotificationResult(sent=False, skipped=True)

        body: dict[str, Any] = {
            "chat_id": target.chat_id,
            "text": text,
            "parse_mode": parse_mode,
            "disable_notification": silent,
        }
        if target.thread_id:
            body["message_thread_id"] = target.thread_id

        url = f"{self._api_url}/bot{target.bot_token}/sendMessage"
        extra = {"chat_id": target.chat_id, "thread_id": target.thread_id}
        logger.info("Sending Telegram notification", extra=extra)

        try:
            resp = call_with_retry(
                lambda: self._post(url, body),
                policy=self._retry_policy,
                description="Telegram sendMessage",
            )
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            # The URL embeds the bot token, never log the raw exception text
            error = f"{type(e).__name__} while calling Telegram API"
            return self._failed(error, fail_on_error, extra)

        if not isinstance(payload, dict) or not payload.get("ok"):
            description = (
                payload.get("description", "unknown error")
                if isinstance(payload, dict)
                else "unexpected response"
            )
            return self._failed(description, fail_on_error, extra)

        message_id = (payload.get("result") or {}).get("message_id")
        logger.info(
            "Telegram notification sent",
            extra={**extra, "message_id": message_id},
        )
        return NotificationResult(sent=True, message_id=message_id)

    def _failed(
        self, error: str, fail_on_error: bool, extra: dict[str, Any]
    ) -> NotificationResult:
        logger.error("Telegram notification failed", extra={**extra, "error": error})
        if fail_on_error:
            raise NotificationError(f"Telegram notification failed: {error}")
        return NotificationResult(sent=False, error=error)
