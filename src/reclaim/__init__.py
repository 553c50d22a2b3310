"""Backups and expiry-driven reclamation of namespaces."""

from .backup import BackupCoordinator, BackupHandle
from .sweeper import ExpirationSweeper, ReclaimAction

__all__ = ["BackupCoordinator", "BackupHandle", "ExpirationSweeper", "ReclaimAction"]
