"""Background scheduling for deployment cycles."""

from .scheduler import DeploymentScheduler

__all__ = ["DeploymentScheduler"]
