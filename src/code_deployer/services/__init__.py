"""Deployment pipeline services."""

from .deployment_service import CycleResult, DeploymentService

__all__ = ["CycleResult", "DeploymentService"]
