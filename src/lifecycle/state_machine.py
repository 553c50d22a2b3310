from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional

from src.common.clock import utcnow
from src.common.errors import (
    BackupFailure,
    BackupRequiredError,
    GovernanceError,
    InvalidTransitionError,
    ReactivationDenied,
)

from .policy_catalog import PolicyBundle, PolicyCatalog
from .record import NamespaceRecord
from .stages import DESTRUCTIVE_STAGES, REACTIVATION_EDGES, Stage, can_transition

if TYPE_CHECKING:  # pragma: no cover
    from typing import Protocol

    from src.reclaim.backup import BackupCoordinator, BackupHandle

    class Materializer(Protocol):
        def apply_policy(self, name: str, bundle: PolicyBundle) -> None: ...

        def commit(self, record: NamespaceRecord) -> NamespaceRecord: ...


LOGGER = logging.getLogger(__name__)


class StateMachine:
    """Validates lifecycle edges and applies the matching policy bundle.

    The stored stage only changes after the target bundle has been
    materialized; destructive targets additionally need a verified backup.
    """

    def __init__(
        self,
        catalog: PolicyCatalog,
        materializer: "Materializer",
        backups: "BackupCoordinator",
        *,
        allow_reactivation: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.catalog = catalog
        self.materializer = materializer
        self.backups = backups
        self.allow_reactivation = allow_reactivation
        self.clock = clock

    @staticmethod
    def can_transition(source: Stage, target: Stage) -> bool:
        return can_transition(source, target)

    def transition(
        self,
        record: NamespaceRecord,
        target: Stage,
        reason: str,
        backup: Optional["BackupHandle"] = None,
    ) -> NamespaceRecord:
        if target == record.stage:
            LOGGER.debug("%s already in %s; nothing to do", record.name, target)
            return record
        if not can_transition(record.stage, target):
            raise InvalidTransitionError(f"{record.name}: transition {record.stage} -> {target} is not allowed")
        if (record.stage, target) in REACTIVATION_EDGES and not self.allow_reactivation:
            raise ReactivationDenied(
                f"{record.name}: reactivating an archived namespace requires allow_reactivation"
            )

        bundle = self.catalog.resolve(target)
        if target in DESTRUCTIVE_STAGES:
            backup = self._require_backup(record, target, backup)

        self.materializer.apply_policy(record.name, bundle)

        now = self.clock()
        updated = record.evolve(
            stage=target,
            policy_ref=bundle.ref,
            previous_stage=record.stage,
            review_at=now.date() + timedelta(days=bundle.review_days),
            last_transition_at=now,
            last_transition_reason=reason,
        )
        if backup is not None:
            updated = updated.evolve(backup_location=backup.location, backup_checksum=backup.checksum)
        try:
            committed = self.materializer.commit(updated)
        except GovernanceError:
            self._restore_policy(record)
            raise
        LOGGER.info("%s: %s -> %s (%s), policy %s", record.name, record.stage, target, reason, bundle.ref)
        return committed

    def _require_backup(
        self, record: NamespaceRecord, target: Stage, backup: Optional["BackupHandle"]
    ) -> "BackupHandle":
        if backup is not None:
            if self.backups.verify(backup):
                return backup
            raise BackupRequiredError(f"{record.name}: backup {backup.location} failed verification")
        try:
            return self.backups.snapshot(record.name)
        except BackupFailure as exc:
            raise BackupRequiredError(f"{record.name}: backup required before moving to {target}") from exc

    def _restore_policy(self, record: NamespaceRecord) -> None:
        try:
            self.materializer.apply_policy(record.name, self.catalog.resolve(record.stage))
        except GovernanceError as exc:
            LOGGER.error("%s: could not restore %s policy after failed commit: %s", record.name, record.stage, exc)


__all__ = ["StateMachine"]
