"""
Exception hierarchy for the API Stack Deployer.

Every fatal condition raised while provisioning derives from
DeploymentError. The orchestrator catches these in one place, surfaces
diagnostics for the failing service and turns them into a failed
DeploymentResult.
"""

from typing import Optional


class DeploymentError(Exception):
    """Base class for all deployment failures."""

    exit_code: int = 1
    manual_intervention: bool = False

    def __init__(self, message: str, service: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.service = service


class ValidationError(DeploymentError):
    """Invalid caller input, detected before anything is touched."""

    exit_code = 2


class HostEnvironmentError(DeploymentError):
    """Unsupported host or a required tool is missing."""


class DeploymentLocked(DeploymentError):
    """Another deployment holds the lock on this host."""


class SecretGenerationError(DeploymentError):
    """The randomness source is unavailable."""


class StateError(DeploymentError):
    """The persisted state record could not be read or written."""


class CommandError(DeploymentError):
    """An external command required by a stage failed."""


class ConfigNotFound(DeploymentError):
    """The configuration file targeted by a mutation does not exist."""


class MutationRolledBack(DeploymentError):
    """A configuration change broke its service and was reverted."""


class MutationIrrecoverable(DeploymentError):
    """A configuration change could not be reverted cleanly."""

    manual_intervention = True


class HealthTimeout(DeploymentError):
    """A service did not become healthy within its budget."""


class ServiceFailed(DeploymentError):
    """A service reported a terminal failure while being waited on."""


class CredentialSyncError(DeploymentError):
    """A dependent service did not accept the persisted credential."""
