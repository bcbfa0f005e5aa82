"""
API Stack Deployer
==================

One-click provisioning of the Sub2API server together with its
PostgreSQL and Redis dependencies on a single systemd host.

Features:
- Idempotent secret generation with a persisted state record
- Reversible Redis configuration changes with automatic rollback
- Bounded health polling for units and the HTTP readiness endpoint
- Dry-run mode that logs every action without touching the host

Author: API Stack Deployer
License: MIT
"""

__version__ = "1.0.0"
__author__ = "API Stack Deployer"

from .core import StackDeployer, DeploymentResult, Stage
from .config import DeployOptions, StackConfig, StackPaths, DeploymentMode
from .configurator import ServiceConfigurator, ConfigMutation
from .health import HealthProber
from .services import ServiceManager
from .state import SecretProvisioner, StateStore

__all__ = [
    "StackDeployer",
    "DeploymentResult",
    "Stage",
    "DeployOptions",
    "StackConfig",
    "StackPaths",
    "DeploymentMode",
    "ServiceConfigurator",
    "ConfigMutation",
    "HealthProber",
    "ServiceManager",
    "SecretProvisioner",
    "StateStore",
]
