"""
Batch deployment of migration packages.
"""

from sandbox_vault.deployment.coordinator import BatchDeploymentCoordinator

__all__ = ["BatchDeploymentCoordinator"]
