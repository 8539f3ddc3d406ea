"""Version control layer: git backend and branch session manager."""

from .git_backend import BackendBranch, GitBackend
from .repository_manager import GitRepositoryManager

__all__ = ["BackendBranch", "GitBackend", "GitRepositoryManager"]
