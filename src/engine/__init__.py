"""Orchestration of lifecycle, diagnostics and reclamation."""

from .engine import GovernanceEngine, NamespaceSpec, build_gateway
from .locks import NameLocks

__all__ = ["GovernanceEngine", "NameLocks", "NamespaceSpec", "build_gateway"]
