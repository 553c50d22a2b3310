"""Error hierarchy shared by every governance component."""

from __future__ import annotations


class GovernanceError(Exception):
    """Base class for errors raised by the governor."""


class ValidationError(GovernanceError):
    """Raised when a caller supplies an invalid name, stage or value."""


class InvalidTransitionError(GovernanceError):
    """Raised when a lifecycle edge is not part of the transition graph."""


class ReactivationDenied(InvalidTransitionError):
    """Raised when an archived namespace is reactivated without the capability flag."""


class UnknownStageError(GovernanceError):
    """Raised when a stage outside the closed set reaches the policy catalog."""


class BackupFailure(GovernanceError):
    """Raised when a namespace snapshot cannot be produced or verified."""


class BackupRequiredError(BackupFailure):
    """Raised when a destructive transition is aborted for lack of a backup."""


class GatewayError(GovernanceError):
    """Base class for failures reported by a cluster gateway."""


class NotFoundError(GatewayError):
    pass


class ConflictError(GatewayError):
    pass


class GatewayUnavailable(GatewayError):
    pass


class OperationCancelled(GatewayUnavailable):
    pass


__all__ = [
    "BackupFailure",
    "BackupRequiredError",
    "ConflictError",
    "GatewayError",
    "GatewayUnavailable",
    "GovernanceError",
    "InvalidTransitionError",
    "NotFoundError",
    "OperationCancelled",
    "ReactivationDenied",
    "UnknownStageError",
    "ValidationError",
]
