"""Label and annotation keys under which namespace lifecycle state is persisted."""

from __future__ import annotations

ANNOTATION_PREFIX = "lifecycle.nsgovernor.io"

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "nsgovernor"
MANAGED_SELECTOR = f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE}"

STAGE_LABEL = "lifecycle-stage"
TEAM_LABEL = "team"
ENVIRONMENT_LABEL = "environment"
CREATED_LABEL = "created-date"
RETENTION_LABEL = "retention-policy"

POD_SECURITY_PREFIX = "pod-security.kubernetes.io"
POD_SECURITY_LABELS = tuple(f"{POD_SECURITY_PREFIX}/{mode}" for mode in ("enforce", "audit", "warn"))

REVIEW_ANNOTATION = f"{ANNOTATION_PREFIX}/review-date"
EXPIRY_ANNOTATION = f"{ANNOTATION_PREFIX}/expiry-date"
PREVIOUS_STAGE_ANNOTATION = f"{ANNOTATION_PREFIX}/previous-stage"
POLICY_REF_ANNOTATION = f"{ANNOTATION_PREFIX}/policy-ref"
TRANSITION_AT_ANNOTATION = f"{ANNOTATION_PREFIX}/last-transition-at"
TRANSITION_REASON_ANNOTATION = f"{ANNOTATION_PREFIX}/last-transition-reason"
DELETION_MARKER_ANNOTATION = f"{ANNOTATION_PREFIX}/deletion-started"
BACKUP_LOCATION_ANNOTATION = f"{ANNOTATION_PREFIX}/backup-location"
BACKUP_CHECKSUM_ANNOTATION = f"{ANNOTATION_PREFIX}/backup-checksum"

RECORD_LABELS = (MANAGED_BY_LABEL, STAGE_LABEL, TEAM_LABEL, ENVIRONMENT_LABEL, CREATED_LABEL, RETENTION_LABEL)
RECORD_ANNOTATIONS = (
    REVIEW_ANNOTATION,
    EXPIRY_ANNOTATION,
    PREVIOUS_STAGE_ANNOTATION,
    POLICY_REF_ANNOTATION,
    TRANSITION_AT_ANNOTATION,
    TRANSITION_REASON_ANNOTATION,
    DELETION_MARKER_ANNOTATION,
    BACKUP_LOCATION_ANNOTATION,
    BACKUP_CHECKSUM_ANNOTATION,
)
