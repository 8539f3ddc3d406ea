"""
Project builders used by the build stage.

ProjectBuilder is the interface the deployment service depends on.
CommandProjectBuilder runs a configurable build command line.
"""

import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)


class ProjectBuilder(ABC):
    """
    Abstract interface for building a repository's project or solution.

    A solution is loaded first, then built with a configuration name.
    """

    @abstractmethod
    def load_solution_file(self, solution_file: str) -> bool:
        """
        Select the solution to build.

        Returns:
            True if the solution exists and can be read
        """
        pass

    @abstractmethod
    def build_solution(self, configuration_name: str) -> bool:
        """
        Build the loaded solution.

        Returns:
            True if the build succeeded, False if it failed or nothing is loaded
        """
        pass


class CommandProjectBuilder(ProjectBuilder):
    """
    Builds by running an external command in the solution's directory.

    The command is an argument list where "{solution}" and "{configuration}"
    are replaced by the loaded solution path and the configuration name.
    """

    def __init__(self, command: List[str], timeout_seconds: float = 1800):
        if not command:
            raise ValueError("Build command must not be empty")
        self.command = list(command)
        self.timeout_seconds = timeout_seconds
        self._loaded_solution: Optional[Path] = None

    @property
    def currently_loaded_solution_file(self) -> Optional[str]:
        return str(self._loaded_solution) if self._loaded_solution else None

    def load_solution_file(self, solution_file: str) -> bool:
        if not solution_file:
            return False

        path = Path(solution_file)
        if not path.is_file():
            logger.warning(f"Solution file not found: {solution_file}")
            return False

        # Opening proves the file is readable by the daemon's user
        with open(path, "rb"):
            pass

        self._loaded_solution = path
        return True

    def _render_command(self, configuration_name: str) -> List[str]:
        assert self._loaded_solution is not None
        return [
            part.replace("{solution}", str(self._loaded_solution)).replace(
                "{configuration}", configuration_name
            )
            for part in self.command
        ]

    def build_solution(self, configuration_name: str) -> bool:
        if self._loaded_solution is None:
            return False

        cmd = self._render_command(configuration_name)
        logger.info(f"Building {self._loaded_solution}: {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                cwd=str(self._loaded_solution.parent),
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            logger.error(
                f"Build of {self._loaded_solution} timed out after {self.timeout_seconds}s"
            )
            return False

        if result.returncode != 0:
            logger.error(
                f"Build of {self._loaded_solution} failed ({result.returncode}): "
                f"{(result.stderr or result.stdout).strip()}"
            )
            return False

        logger.info(f"Build of {self._loaded_solution} succeeded")
        return True
