"""
Centralized git command runner.

Runs git with an environment that tolerates repositories owned by another
user (the daemon commonly runs as a service account) and never prompts for
credentials. Failures are turned into GitCommandError and recorded in the
exception log with the full command context. Fetches go through the retry
variant since network failures are often transient.
"""

import logging
import os
import subprocess
import time
from pathlib import Path
from typing import Dict, List, Optional

from ..exceptions import GitCommandError

logger = logging.getLogger(__name__)

MAX_RETRIES = 1
RETRY_DELAY_SECONDS = 1


def get_git_environment(repo_dir: Path) -> Dict[str, str]:
    """
    Get environment variables for git commands run by the daemon.

    Marks repo_dir as a safe.directory and disables interactive prompts.
    Existing GIT_CONFIG_* entries from the calling environment are kept,
    shifted by one index to make room for ours.

    Args:
        repo_dir: Path to the repository

    Returns:
        Dictionary of environment variables for git commands
    """
    env = os.environ.copy()

    env["GIT_TERMINAL_PROMPT"] = "0"
    env["GIT_CONFIG_COUNT"] = "1"
    env["GIT_CONFIG_KEY_0"] = "safe.directory"
    env["GIT_CONFIG_VALUE_0"] = str(Path(repo_dir).resolve())

    config_count = 1
    for key in os.environ:
        if key.startswith("GIT_CONFIG_KEY_"):
            idx = key.replace("GIT_CONFIG_KEY_", "")
            if idx.isdigit():
                new_idx = int(idx) + 1
                env[f"GIT_CONFIG_KEY_{new_idx}"] = os.environ[key]
                if f"GIT_CONFIG_VALUE_{idx}" in os.environ:
                    env[f"GIT_CONFIG_VALUE_{new_idx}"] = os.environ[
                        f"GIT_CONFIG_VALUE_{idx}"
                    ]
                config_count = max(config_count, new_idx + 1)

    env["GIT_CONFIG_COUNT"] = str(config_count)

    return env


def run_git_command(
    cmd: List[str],
    cwd: Path,
    check: bool = True,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess:
    """
    Run a git command and capture its text output.

    Args:
        cmd: Git command as a list (e.g., ["git", "status"])
        cwd: Working directory for the command
        check: Whether to raise GitCommandError on non-zero exit
        timeout: Optional timeout in seconds

    Returns:
        CompletedProcess instance with the command result

    Raises:
        GitCommandError: If check=True and the command fails
        subprocess.TimeoutExpired: If timeout is exceeded
    """
    if not cmd or cmd[0] != "git":
        raise ValueError("Command must start with 'git'")

    result = subprocess.run(
        cmd,
        cwd=cwd,
        capture_output=True,
        text=True,
        timeout=timeout,
        env=get_git_environment(cwd),
    )

    if check and result.returncode != 0:
        error = GitCommandError(
            " ".join(cmd), result.returncode, result.stderr or "", str(cwd)
        )
        _log_git_failure(error, cmd, cwd, attempt=1, max_attempts=1)
        raise error

    return result


def run_git_command_with_retry(
    cmd: List[str],
    cwd: Path,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess:
    """
    Run a git command, retrying once after a short delay on failure.

    Timeouts are not retried as they are not transient.

    Raises:
        GitCommandError: If the command still fails after the retry
        subprocess.TimeoutExpired: If timeout is exceeded
    """
    attempt = 0

    while True:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=get_git_environment(cwd),
        )
        if result.returncode == 0:
            return result

        error = GitCommandError(
            " ".join(cmd), result.returncode, result.stderr or "", str(cwd)
        )
        _log_git_failure(
            error, cmd, cwd, attempt=attempt + 1, max_attempts=MAX_RETRIES + 1
        )

        if attempt >= MAX_RETRIES:
            raise error

        time.sleep(RETRY_DELAY_SECONDS)
        attempt += 1


def _log_git_failure(
    error: GitCommandError,
    cmd: List[str],
    cwd: Path,
    attempt: int,
    max_attempts: int,
) -> None:
    """Log a git command failure with full context."""
    from .exception_logger import ExceptionLogger

    logger.debug(
        f"Git command failed (attempt {attempt}/{max_attempts}): "
        f"{' '.join(cmd)} in {cwd}: {error.stderr.strip()}"
    )

    exception_logger = ExceptionLogger.get_instance()
    if exception_logger:
        exception_logger.log_exception(
            error,
            context={
                "git_command": " ".join(cmd),
                "cwd": str(cwd),
                "returncode": error.returncode,
                "stderr": error.stderr,
                "attempt": f"{attempt}/{max_attempts}",
            },
        )
