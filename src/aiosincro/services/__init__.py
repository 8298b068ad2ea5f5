"""Deployment and commit orchestration."""

from .commits import CommitService
from .deployments import DeploymentService

__all__ = ["CommitService", "DeploymentService"]
