"""Exception classes for Code Deployer."""

from typing import Optional


class CodeDeployerError(Exception):
    """Base exception for deployer errors."""

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self):
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class BranchDoesNotExistError(CodeDeployerError):
    """Raised when a branch cannot be found under any naming resolution."""

    pass


class BranchCannotBeRemovedError(CodeDeployerError):
    """Raised when removing a remote branch or the current repository head."""

    pass


class CheckoutConflictError(CodeDeployerError):
    """Raised when a checkout would overwrite local changes."""

    pass


class RepositoryOpenError(CodeDeployerError):
    """Raised when a path cannot be opened as a git repository."""

    pass


class GitCommandError(CodeDeployerError):
    """Raised when a git command exits with a non-zero status."""

    def __init__(
        self,
        command: str,
        returncode: int,
        stderr: str = "",
        cwd: Optional[str] = None,
    ):
        super().__init__(
            f"git command failed ({returncode}): {command}", stderr.strip() or None
        )
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        self.cwd = cwd


class ConfigurationMissingError(FileNotFoundError):
    """Raised when the repository store file does not exist."""

    pass


class ConfigurationInvalidError(CodeDeployerError):
    """Raised when the repository store or config file cannot be parsed."""

    pass
