"""Content-addressed namespace snapshots taken before destructive operations."""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import yaml

from src.common.clock import utcnow
from src.common.errors import BackupFailure, GatewayError
from src.gateway.base import ClusterGateway

LOGGER = logging.getLogger(__name__)

DEFAULT_BACKUP_KINDS = (
    "ServiceAccount",
    "Role",
    "RoleBinding",
    "ConfigMap",
    "PersistentVolumeClaim",
    "Service",
    "Deployment",
    "StatefulSet",
    "DaemonSet",
    "Job",
    "CronJob",
    "NetworkPolicy",
    "ResourceQuota",
    "LimitRange",
)
_VOLATILE_METADATA = ("resourceVersion", "uid", "managedFields", "creationTimestamp", "generation", "selfLink")


@dataclass(frozen=True)
class BackupHandle:
    namespace: str
    location: str
    checksum: str
    created_at: Optional[datetime] = None
    resource_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "namespace": self.namespace,
            "location": self.location,
            "checksum": self.checksum,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "resource_count": self.resource_count,
        }


class BackupCoordinator:
    def __init__(
        self,
        gateway: ClusterGateway,
        backup_dir: Path,
        *,
        kinds: Sequence[str] = DEFAULT_BACKUP_KINDS,
        include_secrets: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.gateway = gateway
        self.clock = clock
        self.backup_dir = Path(backup_dir)
        self.kinds = tuple(kinds) + (("Secret",) if include_secrets and "Secret" not in kinds else ())

    def snapshot(self, name: str) -> BackupHandle:
        """Serialize the namespace and its resources; raise ``BackupFailure`` on any error."""

        try:
            documents = self._collect(name)
        except GatewayError as exc:
            raise BackupFailure(f"could not enumerate resources of {name}: {exc}") from exc

        try:
            payload = yaml.safe_dump_all(documents, sort_keys=True).encode("utf-8")
        except yaml.YAMLError as exc:
            raise BackupFailure(f"could not serialize resources of {name}: {exc}") from exc

        checksum = hashlib.sha256(payload).hexdigest()
        target = self.backup_dir / name / f"{checksum}.yaml"
        try:
            if target.exists() and self._digest(target) == checksum:
                LOGGER.info("Backup of %s unchanged; reusing %s", name, target)
            else:
                self._write_atomic(target, payload)
                LOGGER.info("Backed up %d object(s) of %s to %s", len(documents), name, target)
        except OSError as exc:
            raise BackupFailure(f"could not write backup of {name}: {exc}") from exc

        return BackupHandle(
            namespace=name,
            location=str(target),
            checksum=checksum,
            created_at=self.clock(),
            resource_count=len(documents),
        )

    def verify(self, handle: BackupHandle) -> bool:
        path = Path(handle.location)
        try:
            return path.is_file() and self._digest(path) == handle.checksum
        except OSError:
            return False

    def restore_documents(self, handle: BackupHandle) -> List[Dict[str, Any]]:
        if not self.verify(handle):
            raise BackupFailure(f"backup {handle.location} is missing or corrupted")
        with open(handle.location, "r", encoding="utf-8") as stream:
            return [doc for doc in yaml.safe_load_all(stream) if isinstance(doc, dict)]

    def _collect(self, name: str) -> List[Dict[str, Any]]:
        documents = [_strip(self.gateway.get(name))]
        for kind in self.kinds:
            items = self.gateway.list_resources(name, kind)
            for item in sorted(items, key=lambda obj: (obj.get("metadata") or {}).get("name", "")):
                item.setdefault("kind", kind)
                documents.append(_strip(item))
        return documents

    @staticmethod
    def _digest(path: Path) -> str:
        return hashlib.sha256(path.read_bytes()).hexdigest()

    @staticmethod
    def _write_atomic(target: Path, payload: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=".partial-", suffix=".yaml")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise


def _strip(obj: Dict[str, Any]) -> Dict[str, Any]:
    cleaned = {key: value for key, value in obj.items() if key != "status"}
    metadata = dict(cleaned.get("metadata") or {})
    for key in _VOLATILE_METADATA:
        metadata.pop(key, None)
    cleaned["metadata"] = metadata
    return cleaned


__all__ = ["BackupCoordinator", "BackupHandle", "DEFAULT_BACKUP_KINDS"]
