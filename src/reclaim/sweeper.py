"""Expiry detection and the backup -> deleting -> delete reclamation sequence."""

from __future__ import annotations

import logging
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, ContextManager, Dict, List, Optional, Union

from src.common.clock import utcnow
from src.common.errors import (
    BackupFailure,
    ConflictError,
    GatewayError,
    GovernanceError,
    NotFoundError,
    ValidationError,
)
from src.gateway.base import ClusterGateway
from src.lifecycle.keys import (
    BACKUP_CHECKSUM_ANNOTATION,
    BACKUP_LOCATION_ANNOTATION,
    DELETION_MARKER_ANNOTATION,
    MANAGED_SELECTOR,
)
from src.lifecycle.record import NamespaceRecord, format_timestamp
from src.lifecycle.stages import Stage, path_to
from src.lifecycle.state_machine import StateMachine

from .backup import BackupCoordinator, BackupHandle

LOGGER = logging.getLogger(__name__)

ELIGIBLE = "eligible"
RECLAIMED = "reclaimed"
ALREADY_DELETED = "already-deleted"
IN_PROGRESS = "in-progress"
FAILED = "failed"


@dataclass(frozen=True)
class ReclaimAction:
    name: str
    stage: Optional[Stage]
    expires_at: Optional[date]
    status: str
    backup: Optional[str] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "stage": self.stage.value if self.stage else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "status": self.status,
            "backup": self.backup,
            "detail": self.detail,
        }


class ExpirationSweeper:
    def __init__(
        self,
        gateway: ClusterGateway,
        state_machine: StateMachine,
        backups: BackupCoordinator,
        *,
        locks: Optional[Any] = None,
        marker_ttl: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.gateway = gateway
        self.state_machine = state_machine
        self.backups = backups
        self.locks = locks
        self.marker_ttl = marker_ttl
        self.clock = clock

    @staticmethod
    def cutoff(now: Union[date, datetime], grace_days: int) -> date:
        today = now.date() if isinstance(now, datetime) else now
        return today - timedelta(days=grace_days)

    @staticmethod
    def is_eligible(record: NamespaceRecord, cutoff: date) -> bool:
        # Records left in "deleting" by an interrupted run are always resumed.
        return record.stage == Stage.DELETING or record.expires_at < cutoff

    def sweep(self, now: Union[date, datetime], grace_days: int, dry_run: bool = False) -> List[ReclaimAction]:
        if grace_days < 0:
            raise ValidationError("grace period must not be negative")
        cutoff = self.cutoff(now, grace_days)
        actions: List[ReclaimAction] = []
        for obj in self.gateway.list(MANAGED_SELECTOR):
            name = (obj.get("metadata") or {}).get("name", "<unnamed>")
            try:
                record = NamespaceRecord.from_object(obj)
            except ValidationError as exc:
                LOGGER.warning("Skipping %s: %s", name, exc)
                continue
            if not self.is_eligible(record, cutoff):
                continue
            if dry_run:
                actions.append(ReclaimAction(record.name, record.stage, record.expires_at, ELIGIBLE))
                continue
            actions.append(self._reclaim_quietly(record))
        LOGGER.info(
            "Sweep with cutoff %s finished: %d action(s)%s",
            cutoff.isoformat(),
            len(actions),
            " (dry run)" if dry_run else "",
        )
        return actions

    def reclaim(self, name: str, reason: str = "expired") -> ReclaimAction:
        """Back up, walk to ``deleting`` and delete ``name``.

        ``NotFoundError`` propagates; callers decide whether a missing namespace
        is an error.
        """

        with self._hold(name):
            record = NamespaceRecord.from_object(self.gateway.get(name))
            now = self.clock()
            handle = self._existing_backup(record)
            if handle is None:
                if record.reclaiming and now - record.deletion_started_at < self.marker_ttl:
                    return self._action(record, IN_PROGRESS, detail="backup already started at "
                                        f"{format_timestamp(record.deletion_started_at)}")
                try:
                    record = self._mark(record, now)
                except ConflictError:
                    return self._action(record, IN_PROGRESS, detail="another reclaimer holds the marker")
                handle = self._snapshot(record)
                record = self._remember_backup(record, handle)
            else:
                LOGGER.info("Reusing verified backup %s for %s", handle.location, name)

            for stage in path_to(record.stage, Stage.DELETING) or []:
                record = self.state_machine.transition(record, stage, reason, backup=handle)

            try:
                self.gateway.delete(name)
            except NotFoundError:
                LOGGER.info("%s disappeared before deletion; nothing left to remove", name)
            LOGGER.info("Reclaimed %s (backup %s)", name, handle.location)
            return self._action(record, RECLAIMED, backup=handle.location)

    def _reclaim_quietly(self, record: NamespaceRecord) -> ReclaimAction:
        try:
            return self.reclaim(record.name, reason="expired")
        except NotFoundError:
            LOGGER.info("%s already deleted", record.name)
            return self._action(record, ALREADY_DELETED)
        except (GatewayError, BackupFailure) as exc:
            LOGGER.warning("Could not reclaim %s: %s", record.name, exc)
            return self._action(record, FAILED, detail=f"{type(exc).__name__}: {exc}")
        except GovernanceError as exc:
            LOGGER.error("Reclamation of %s aborted: %s", record.name, exc)
            return self._action(record, FAILED, detail=f"{type(exc).__name__}: {exc}")

    def _existing_backup(self, record: NamespaceRecord) -> Optional[BackupHandle]:
        if not (record.reclaiming and record.backup_location and record.backup_checksum):
            return None
        handle = BackupHandle(record.name, record.backup_location, record.backup_checksum)
        if self.backups.verify(handle):
            return handle
        LOGGER.warning("Recorded backup %s for %s failed verification", record.backup_location, record.name)
        return None

    def _mark(self, record: NamespaceRecord, now: datetime) -> NamespaceRecord:
        obj = self.gateway.patch_metadata(
            record.name,
            annotations={DELETION_MARKER_ANNOTATION: format_timestamp(now)},
            resource_version=record.resource_version,
        )
        return NamespaceRecord.from_object(obj)

    def _snapshot(self, record: NamespaceRecord) -> BackupHandle:
        try:
            return self.backups.snapshot(record.name)
        except BackupFailure:
            try:
                self.gateway.patch_metadata(record.name, annotations={DELETION_MARKER_ANNOTATION: None})
            except GatewayError as exc:
                LOGGER.error("Could not clear deletion marker on %s: %s", record.name, exc)
            raise

    def _remember_backup(self, record: NamespaceRecord, handle: BackupHandle) -> NamespaceRecord:
        obj = self.gateway.patch_metadata(
            record.name,
            annotations={
                BACKUP_LOCATION_ANNOTATION: handle.location,
                BACKUP_CHECKSUM_ANNOTATION: handle.checksum,
            },
            resource_version=record.resource_version,
        )
        return NamespaceRecord.from_object(obj)

    def _hold(self, name: str) -> ContextManager[Any]:
        return self.locks.hold(name) if self.locks is not None else nullcontext()

    @staticmethod
    def _action(
        record: NamespaceRecord,
        status: str,
        *,
        backup: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> ReclaimAction:
        return ReclaimAction(record.name, record.stage, record.expires_at, status, backup=backup, detail=detail)


__all__ = [
    "ALREADY_DELETED",
    "ELIGIBLE",
    "ExpirationSweeper",
    "FAILED",
    "IN_PROGRESS",
    "RECLAIMED",
    "ReclaimAction",
]
