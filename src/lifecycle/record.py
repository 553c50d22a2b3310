"""The namespace record and its label/annotation persistence format."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

from src.common.errors import ValidationError

from .keys import (
    BACKUP_CHECKSUM_ANNOTATION,
    BACKUP_LOCATION_ANNOTATION,
    CREATED_LABEL,
    DELETION_MARKER_ANNOTATION,
    ENVIRONMENT_LABEL,
    EXPIRY_ANNOTATION,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    POLICY_REF_ANNOTATION,
    PREVIOUS_STAGE_ANNOTATION,
    RECORD_ANNOTATIONS,
    RECORD_LABELS,
    RETENTION_LABEL,
    REVIEW_ANNOTATION,
    STAGE_LABEL,
    TEAM_LABEL,
    TRANSITION_AT_ANNOTATION,
    TRANSITION_REASON_ANNOTATION,
)
from .stages import Stage

MAX_NAME_LENGTH = 63
_NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_LABEL_VALUE_PATTERN = re.compile(r"^(([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9])?$")
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def validate_name(name: str) -> str:
    if not isinstance(name, str) or not name:
        raise ValidationError("namespace name is required")
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"namespace name {name!r} exceeds {MAX_NAME_LENGTH} characters")
    if not _NAME_PATTERN.match(name):
        raise ValidationError(
            f"namespace name {name!r} must consist of lowercase alphanumerics or '-', "
            "and must start and end with an alphanumeric character"
        )
    return name


def validate_label_value(value: str, field_name: str) -> str:
    if not isinstance(value, str) or len(value) > MAX_NAME_LENGTH or not _LABEL_VALUE_PATTERN.match(value):
        raise ValidationError(f"{field_name} {value!r} is not a valid label value")
    return value


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(_TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class NamespaceRecord:
    name: str
    stage: Stage
    team: str
    environment: str
    created_at: date
    retention_days: int
    review_at: date
    expires_at: date
    policy_ref: str
    previous_stage: Optional[Stage] = None
    last_transition_at: Optional[datetime] = None
    last_transition_reason: Optional[str] = None
    deletion_started_at: Optional[datetime] = None
    backup_location: Optional[str] = None
    backup_checksum: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    resource_version: Optional[str] = field(default=None, compare=False)

    @staticmethod
    def expiry_for(created_at: date, retention_days: int) -> date:
        return created_at + timedelta(days=retention_days)

    @property
    def reclaiming(self) -> bool:
        return self.deletion_started_at is not None

    def to_metadata(self) -> Tuple[Dict[str, str], Dict[str, str]]:
        labels = dict(self.labels)
        labels.update(
            {
                MANAGED_BY_LABEL: MANAGED_BY_VALUE,
                STAGE_LABEL: self.stage.value,
                TEAM_LABEL: self.team,
                ENVIRONMENT_LABEL: self.environment,
                CREATED_LABEL: self.created_at.isoformat(),
                RETENTION_LABEL: f"{self.retention_days}d",
            }
        )
        annotations = dict(self.annotations)
        annotations.update(
            {
                REVIEW_ANNOTATION: self.review_at.isoformat(),
                EXPIRY_ANNOTATION: self.expires_at.isoformat(),
                POLICY_REF_ANNOTATION: self.policy_ref,
            }
        )
        optional = {
            PREVIOUS_STAGE_ANNOTATION: self.previous_stage.value if self.previous_stage else None,
            TRANSITION_AT_ANNOTATION: format_timestamp(self.last_transition_at) if self.last_transition_at else None,
            TRANSITION_REASON_ANNOTATION: self.last_transition_reason,
            DELETION_MARKER_ANNOTATION: format_timestamp(self.deletion_started_at) if self.deletion_started_at else None,
            BACKUP_LOCATION_ANNOTATION: self.backup_location,
            BACKUP_CHECKSUM_ANNOTATION: self.backup_checksum,
        }
        annotations.update({key: value for key, value in optional.items() if value is not None})
        return labels, annotations

    def to_patch(self) -> Tuple[Dict[str, Optional[str]], Dict[str, Optional[str]]]:
        """Record metadata with ``None`` for bookkeeping keys that are currently unset."""

        labels, annotations = self.to_metadata()
        label_patch: Dict[str, Optional[str]] = dict(labels)
        annotation_patch: Dict[str, Optional[str]] = dict(annotations)
        for key in RECORD_LABELS:
            label_patch.setdefault(key, None)
        for key in RECORD_ANNOTATIONS:
            annotation_patch.setdefault(key, None)
        return label_patch, annotation_patch

    def to_manifest(self) -> Dict[str, Any]:
        labels, annotations = self.to_metadata()
        return {
            "apiVersion": "v1",
            "kind": "Namespace",
            "metadata": {"name": self.name, "labels": labels, "annotations": annotations},
        }

    def evolve(self, **changes: Any) -> "NamespaceRecord":
        return replace(self, **changes)

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> "NamespaceRecord":
        metadata = obj.get("metadata") if isinstance(obj, Mapping) else None
        if not isinstance(metadata, Mapping) or not metadata.get("name"):
            raise ValidationError("object has no metadata.name")
        name = str(metadata["name"])
        labels = dict(metadata.get("labels") or {})
        annotations = dict(metadata.get("annotations") or {})
        try:
            stage = Stage(labels[STAGE_LABEL])
            retention = labels[RETENTION_LABEL]
            record = cls(
                name=name,
                stage=stage,
                team=labels[TEAM_LABEL],
                environment=labels[ENVIRONMENT_LABEL],
                created_at=date.fromisoformat(labels[CREATED_LABEL]),
                retention_days=int(retention[:-1] if retention.endswith("d") else retention),
                review_at=date.fromisoformat(annotations[REVIEW_ANNOTATION]),
                expires_at=date.fromisoformat(annotations[EXPIRY_ANNOTATION]),
                policy_ref=annotations[POLICY_REF_ANNOTATION],
                previous_stage=_optional(annotations, PREVIOUS_STAGE_ANNOTATION, Stage),
                last_transition_at=_optional(annotations, TRANSITION_AT_ANNOTATION, parse_timestamp),
                last_transition_reason=annotations.get(TRANSITION_REASON_ANNOTATION),
                deletion_started_at=_optional(annotations, DELETION_MARKER_ANNOTATION, parse_timestamp),
                backup_location=annotations.get(BACKUP_LOCATION_ANNOTATION),
                backup_checksum=annotations.get(BACKUP_CHECKSUM_ANNOTATION),
                labels={k: v for k, v in labels.items() if k not in RECORD_LABELS},
                annotations={k: v for k, v in annotations.items() if k not in RECORD_ANNOTATIONS},
                resource_version=metadata.get("resourceVersion"),
            )
        except KeyError as exc:
            raise ValidationError(f"namespace {name} is missing lifecycle field {exc.args[0]}") from exc
        except ValueError as exc:
            raise ValidationError(f"namespace {name} has malformed lifecycle metadata: {exc}") from exc
        return record

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "stage": self.stage.value,
            "team": self.team,
            "environment": self.environment,
            "created_at": self.created_at.isoformat(),
            "retention_days": self.retention_days,
            "review_at": self.review_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "policy_ref": self.policy_ref,
            "previous_stage": self.previous_stage.value if self.previous_stage else None,
            "last_transition_at": format_timestamp(self.last_transition_at) if self.last_transition_at else None,
            "last_transition_reason": self.last_transition_reason,
            "reclaiming": self.reclaiming,
            "labels": dict(self.labels),
            "annotations": dict(self.annotations),
        }


def _optional(annotations: Mapping[str, str], key: str, convert):
    value = annotations.get(key)
    if value is None or value == "":
        return None
    return convert(value)


__all__ = [
    "MAX_NAME_LENGTH",
    "NamespaceRecord",
    "format_timestamp",
    "parse_timestamp",
    "validate_label_value",
    "validate_name",
]
