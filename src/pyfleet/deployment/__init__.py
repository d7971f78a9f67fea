"""Deployment queue and the single-worker deployment processor."""

from pyfleet.deployment.processor import DeploymentProcessor
from pyfleet.deployment.queue import DeploymentQueue

__all__ = ["DeploymentProcessor", "DeploymentQueue"]
