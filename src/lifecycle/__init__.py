"""Lifecycle stages, policy bundles and the namespace state machine."""

from .policy_catalog import PolicyBundle, PolicyCatalog
from .record import NamespaceRecord
from .stages import Stage, can_transition, parse_stage, path_to
from .state_machine import StateMachine

__all__ = [
    "NamespaceRecord",
    "PolicyBundle",
    "PolicyCatalog",
    "Stage",
    "StateMachine",
    "can_transition",
    "parse_stage",
    "path_to",
]
