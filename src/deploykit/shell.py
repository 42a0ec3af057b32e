"""Subprocess wrapper for the docker and kubectl CLIs."""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT_SECONDS = 300
BUILD_TIMEOUT_SECONDS = 1800


class CommandError(Exception):
    """Raised when an external command fails, times out or is missing."""

    def __init__(self, message: str, returncode: int | None = None, stderr: str = "") -> None:
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)


def run_command(
    cmd: Sequence[str],
    *,
    cwd: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: int = COMMAND_TIMEOUT_SECONDS,
    capture: bool = False,
) -> subprocess.CompletedProcess[str]:
    """Run a command with proper error handling.

    Args:
        cmd: Command and arguments. Never passed through a shell.
        cwd: Working directory.
        env: Environment variables (merged with current env).
        timeout: Command timeout in seconds.
        capture: Whether to capture output instead of streaming.

    Returns:
        CompletedProcess result.

    Raises:
        CommandError: If the command fails.
    """
    full_env = os.environ.copy()
    if env:
        full_env.update(env)

    logger.debug("Running command", extra={"command": list(cmd)})

    try:
        result = subprocess.run(
            list(cmd),
            cwd=cwd,
            env=full_env,
            timeout=timeout,
            capture_output=capture,
            text=True,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise CommandError(f"Command timed out after {timeout}s: {' '.join(cmd)}") from e
    except FileNotFoundError as e:
        raise CommandError(f"Command not found: {cmd[0]}") from e

    if result.returncode != 0:
        stderr = (result.stderr or "").strip() if capture else ""
        if stderr:
            message = f"Command failed: {stderr}"
        else:
            message = f"Command failed with exit code {result.returncode}"
        raise CommandError(message, returncode=result.returncode, stderr=stderr)
    return result
