"""Build runners."""

from .project_builder import CommandProjectBuilder, ProjectBuilder

__all__ = ["CommandProjectBuilder", "ProjectBuilder"]
