"""Deployment actions and token substitution."""

from .action_executor import DeploymentActionExecutor
from .tokens import build_replacements_table, replace_tokens

__all__ = ["DeploymentActionExecutor", "build_replacements_table", "replace_tokens"]
