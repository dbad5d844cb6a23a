"""Error kinds raised by the upgrade orchestrator and its collaborators."""

from __future__ import annotations


class UpgradeError(Exception):
    """Base class for every error scoped to a node-pool upgrade."""

    def __init__(self, message: str, *, node: str | None = None) -> None:
        super().__init__(message)
        self.node = node


class ConflictError(UpgradeError):
    """An upgrade is already in flight for the pool."""


class ProvisionError(UpgradeError):
    """The provisioner could not create or remove a node."""


class HealthCheckTimeout(UpgradeError):
    """A node did not become Ready within the health check timeout."""


class NodeUnhealthyError(UpgradeError):
    """A node reported Unhealthy after it had been provisioned."""


class DrainError(UpgradeError):
    """A node could not be drained before it was terminated."""


class AvailabilityViolation(UpgradeError):
    """A planned batch would take more nodes out of service than the pool allows."""


class InvalidTransitionError(UpgradeError):
    """The operation state machine does not allow the requested transition."""


class OperationNotFoundError(UpgradeError, LookupError):
    """No upgrade operation is known for the pool."""


class PoolNotFoundError(UpgradeError, LookupError):
    """The pool id does not match any configured node pool."""
