"""
Deployment action executor.

Runs one typed deployment action and reports success as a boolean. Each
DeploymentActionType maps to exactly one handler; action types without a
real implementation report failure instead of raising.
"""

import logging
import os
import shlex
import shutil
import subprocess
from typing import Callable, Dict, List, Optional, Tuple

from ..models import DeploymentActionType

logger = logging.getLogger(__name__)

ELEVATED_MODE = "ELEVATED"


class DeploymentActionExecutor:
    """Executes deployment actions: file copy, process execution."""

    def __init__(self, process_timeout_seconds: float = 300):
        """
        Initialize the executor.

        Args:
            process_timeout_seconds: How long an ExecuteFile process may run
        """
        self.process_timeout_seconds = process_timeout_seconds
        self._handlers: Dict[DeploymentActionType, Callable[[List[str]], bool]] = {
            DeploymentActionType.NONE: self._no_action,
            DeploymentActionType.EXECUTE_FILE: self.execute_file,
            DeploymentActionType.COPY_FILE: self.copy_file,
            DeploymentActionType.SEND_EMAIL: self._unsupported,
            DeploymentActionType.CHECK_UNIT_TESTS: self._unsupported,
            DeploymentActionType.RUN_DATABASE_SCRIPT: self._unsupported,
        }
        missing = set(DeploymentActionType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for action types: {sorted(m.value for m in missing)}")

    def execute(self, action_type: DeploymentActionType, *parameters: str) -> bool:
        """Run one action. Returns True on success."""
        handler = self._handlers[action_type]
        # Only the first parameter is logged, later ones may hold credentials
        target = parameters[0] if parameters else ""
        logger.info(f"Executing {action_type.value} action {target}")
        result = handler(list(parameters))
        if not result:
            logger.warning(f"{action_type.value} action failed: {target}")
        return result

    @staticmethod
    def _no_action(parameters: List[str]) -> bool:
        logger.warning("Deployment action has no type set")
        return False

    @staticmethod
    def _unsupported(parameters: List[str]) -> bool:
        return False

    @staticmethod
    def copy_file(parameters: List[str]) -> bool:
        """Copy parameters[0] over parameters[1]."""
        if len(parameters) < 2 or not parameters[0].strip() or not parameters[1].strip():
            logger.error("CopyFile needs a source and a destination")
            return False

        source, destination = parameters[0], parameters[1]
        try:
            shutil.copy2(source, destination)
        except OSError as e:
            logger.error(f"Failed to copy {source} to {destination}: {e}")
            return False

        return True

    def _build_command(self, parameters: List[str]) -> Tuple[List[str], Optional[str]]:
        """Return the command line and the text to feed on stdin, if any."""
        cmd = [parameters[0]]
        if len(parameters) > 1 and parameters[1].strip():
            cmd.extend(shlex.split(parameters[1], posix=os.name != "nt"))

        elevated = len(parameters) > 2 and parameters[2].strip().upper() == ELEVATED_MODE
        username = parameters[3].strip() if len(parameters) > 3 else ""
        password = parameters[4] if len(parameters) > 4 else ""

        if not (elevated or username):
            return cmd, None

        if os.name == "nt":
            logger.warning("Elevated or impersonated execution is not supported on Windows")
            return cmd, None

        sudo = ["sudo", "-S" if password else "-n"]
        if username:
            sudo.extend(["-u", username])
        stdin_text = f"{password}\n" if password else None
        return sudo + ["--"] + cmd, stdin_text

    def execute_file(self, parameters: List[str]) -> bool:
        """
        Run a program and wait for it.

        Parameters: [file, arguments?, "Normal"|"Elevated"?, username?, password?].
        Elevated or impersonated runs go through sudo; a password is fed on
        stdin to sudo only, never to a program run directly.
        Success means the process exited with code 0 within the timeout.
        """
        if not parameters or not parameters[0].strip():
            logger.error("ExecuteFile needs a file to run")
            return False

        cmd, stdin_text = self._build_command(parameters)

        try:
            result = subprocess.run(
                cmd,
                input=stdin_text,
                capture_output=True,
                text=True,
                timeout=self.process_timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            logger.error(
                f"{parameters[0]} did not finish within {self.process_timeout_seconds}s"
            )
            return False
        except OSError as e:
            logger.error(f"Failed to start {parameters[0]}: {e}")
            return False

        if result.returncode != 0:
            logger.error(
                f"{parameters[0]} exited with code {result.returncode}: "
                f"{(result.stderr or '').strip()}"
            )
            return False

        return True
