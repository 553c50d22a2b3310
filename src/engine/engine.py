from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional, TypeVar, Union

from src.common.clock import utcnow
from src.common.config import GatewayConfig, GovernorConfig
from src.common.errors import (
    ConflictError,
    GovernanceError,
    InvalidTransitionError,
    ValidationError,
)
from src.diagnostics.scorer import DiagnosticReport, DiagnosticScorer
from src.gateway.apiserver import ApiServerGateway
from src.gateway.base import ClusterGateway
from src.gateway.kubectl import KubectlGateway
from src.gateway.memory import InMemoryGateway
from src.gateway.retry import RetryingGateway, RetryPolicy
from src.lifecycle.keys import MANAGED_SELECTOR, POD_SECURITY_LABELS
from src.lifecycle.policy_catalog import PolicyBundle, PolicyCatalog
from src.lifecycle.record import NamespaceRecord, validate_label_value, validate_name
from src.lifecycle.stages import INITIAL_STAGE, Stage, parse_stage, path_to
from src.lifecycle.state_machine import StateMachine
from src.reclaim.backup import DEFAULT_BACKUP_KINDS, BackupCoordinator
from src.reclaim.sweeper import ExpirationSweeper, ReclaimAction

from .locks import NameLocks

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class NamespaceSpec:
    name: str
    team: str
    environment: str
    stage: Union[Stage, str] = INITIAL_STAGE
    retention_days: Optional[int] = None
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)


class GovernanceEngine:
    """Entry point for creating, moving, scoring and reclaiming namespaces.

    The engine keeps no record cache: every operation re-reads the namespace
    object, whose labels and annotations are the only persisted state.
    """

    def __init__(
        self,
        gateway: ClusterGateway,
        backups: BackupCoordinator,
        *,
        catalog: Optional[PolicyCatalog] = None,
        scorer: Optional[DiagnosticScorer] = None,
        allow_reactivation: bool = False,
        lock_timeout_seconds: float = 30.0,
        marker_ttl: timedelta = timedelta(hours=1),
        grace_days: int = 7,
        pod_security_level: Optional[str] = "baseline",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.gateway = gateway
        self.backups = backups
        self.pod_security_level = pod_security_level
        self.catalog = catalog or PolicyCatalog()
        self.scorer = scorer or DiagnosticScorer(gateway)
        self.grace_days = grace_days
        self.clock = clock
        self.locks = NameLocks(lock_timeout_seconds)
        self.state_machine = StateMachine(
            self.catalog,
            self,
            backups,
            allow_reactivation=allow_reactivation,
            clock=clock,
        )
        self.sweeper = ExpirationSweeper(
            gateway,
            self.state_machine,
            backups,
            locks=self.locks,
            marker_ttl=marker_ttl,
            clock=clock,
        )

    @classmethod
    def from_config(
        cls,
        config: GovernorConfig,
        gateway: Optional[ClusterGateway] = None,
    ) -> "GovernanceEngine":
        raw_gateway = gateway or build_gateway(config.gateway)
        resilient = RetryingGateway(
            raw_gateway,
            RetryPolicy(retries=config.gateway.retries),
            timeout_seconds=config.gateway.deadline_seconds
            or config.gateway.timeout_seconds * (config.gateway.retries + 1),
        )
        catalog = PolicyCatalog.from_yaml(config.lifecycle.policies) if config.lifecycle.policies else PolicyCatalog()
        backups = BackupCoordinator(
            resilient,
            config.backups.dir,
            kinds=config.backups.kinds or DEFAULT_BACKUP_KINDS,
            include_secrets=config.backups.include_secrets,
        )
        scorer = DiagnosticScorer(
            resilient,
            threshold=config.diagnostics.threshold,
            required_labels=config.diagnostics.required_labels,
        )
        return cls(
            resilient,
            backups,
            catalog=catalog,
            scorer=scorer,
            allow_reactivation=config.lifecycle.allow_reactivation,
            lock_timeout_seconds=config.lifecycle.lock_timeout_seconds,
            marker_ttl=timedelta(minutes=config.sweeper.marker_ttl_minutes),
            grace_days=config.sweeper.grace_days,
            pod_security_level=config.lifecycle.pod_security_level,
        )

    # Materializer hooks used by the state machine.

    def apply_policy(self, name: str, bundle: PolicyBundle) -> None:
        self.gateway.apply_policy_bundle(name, bundle)

    def commit(self, record: NamespaceRecord) -> NamespaceRecord:
        labels, annotations = record.to_patch()
        obj = self.gateway.patch_metadata(
            record.name,
            labels=labels,
            annotations=annotations,
            resource_version=record.resource_version,
        )
        return NamespaceRecord.from_object(obj)

    # Operations.

    def create(self, spec: NamespaceSpec) -> NamespaceRecord:
        name = validate_name(spec.name)
        validate_label_value(spec.team, "team")
        validate_label_value(spec.environment, "environment")
        target = parse_stage(spec.stage)
        if target == Stage.DELETING:
            raise ValidationError("a namespace cannot be created in the deleting stage")
        retention = spec.retention_days
        if retention is None:
            retention = self.catalog.resolve(target).retention_days
        if retention < 1:
            raise ValidationError("retention must be at least one day")

        bundle = self.catalog.resolve(INITIAL_STAGE)
        now = self.clock()
        today = now.date()
        record = NamespaceRecord(
            name=name,
            stage=INITIAL_STAGE,
            team=spec.team,
            environment=spec.environment,
            created_at=today,
            retention_days=retention,
            review_at=today + timedelta(days=bundle.review_days),
            expires_at=NamespaceRecord.expiry_for(today, retention),
            policy_ref=bundle.ref,
            last_transition_at=now,
            last_transition_reason="created",
            labels=self._initial_labels(spec),
            annotations=dict(spec.annotations),
        )

        with self.locks.hold(name):
            created = self.gateway.create(record.to_manifest())
            try:
                self.gateway.apply_policy_bundle(name, bundle)
            except GovernanceError:
                self._rollback_create(name)
                raise
            record = NamespaceRecord.from_object(created)
            LOGGER.info("Created %s for team %s (expires %s)", name, spec.team, record.expires_at)
            try:
                for stage in path_to(INITIAL_STAGE, target) or []:
                    record = self.state_machine.transition(record, stage, "initial-stage")
            except GovernanceError:
                self._rollback_create(name)
                raise
        return record

    def transition(self, name: str, target: Union[Stage, str], reason: str = "manual") -> NamespaceRecord:
        stage = parse_stage(target)
        if stage == Stage.DELETING:
            # Entering deleting removes the namespace; that only happens through delete.
            raise InvalidTransitionError(f"{name}: use delete to reclaim a namespace")
        with self.locks.hold(name):
            return self._retry_on_conflict(
                name, lambda: self.state_machine.transition(self.get(name), stage, reason)
            )

    def diagnose(self, name: str) -> DiagnosticReport:
        self.gateway.get(name)
        return self.scorer.score(name)

    def sweep(
        self,
        now: Optional[Union[date, datetime]] = None,
        grace_days: Optional[int] = None,
        dry_run: bool = False,
    ) -> List[ReclaimAction]:
        return self.sweeper.sweep(
            now or self.clock(),
            self.grace_days if grace_days is None else grace_days,
            dry_run=dry_run,
        )

    def delete(self, name: str) -> ReclaimAction:
        return self.sweeper.reclaim(name, reason="deleted")

    def renew(self, name: str, retention_days: Optional[int] = None) -> NamespaceRecord:
        """Re-provision the retention window so the namespace expires ``retention_days`` from today."""

        if retention_days is not None and retention_days < 1:
            raise ValidationError("retention must be at least one day")

        def renew_once() -> NamespaceRecord:
            record = self.get(name)
            if record.stage == Stage.DELETING or record.reclaiming:
                raise InvalidTransitionError(f"{name} is being reclaimed and cannot be renewed")
            window = retention_days or self.catalog.resolve(record.stage).retention_days
            today = self.clock().date()
            retention = (today - record.created_at).days + window
            updated = record.evolve(
                retention_days=retention,
                expires_at=NamespaceRecord.expiry_for(record.created_at, retention),
            )
            LOGGER.info("Renewed %s until %s", name, updated.expires_at)
            return self.commit(updated)

        with self.locks.hold(name):
            return self._retry_on_conflict(name, renew_once)

    def get(self, name: str) -> NamespaceRecord:
        return NamespaceRecord.from_object(self.gateway.get(name))

    def list(self, stage: Optional[Union[Stage, str]] = None) -> List[NamespaceRecord]:
        wanted = parse_stage(stage) if stage is not None else None
        records: List[NamespaceRecord] = []
        for obj in self.gateway.list(MANAGED_SELECTOR):
            try:
                record = NamespaceRecord.from_object(obj)
            except ValidationError as exc:
                LOGGER.warning("Ignoring unmanaged or corrupt namespace: %s", exc)
                continue
            if wanted is None or record.stage == wanted:
                records.append(record)
        return records

    def due_for_review(self, now: Optional[Union[date, datetime]] = None) -> List[NamespaceRecord]:
        moment = now or self.clock()
        today = moment.date() if isinstance(moment, datetime) else moment
        return [
            record
            for record in self.list()
            if record.stage != Stage.DELETING and record.review_at <= today
        ]

    def _retry_on_conflict(self, name: str, operation: Callable[[], T]) -> T:
        try:
            return operation()
        except ConflictError as exc:
            LOGGER.info("%s changed underneath us (%s); re-reading once", name, exc)
            return operation()

    def _initial_labels(self, spec: NamespaceSpec) -> Dict[str, str]:
        labels: Dict[str, str] = {}
        if self.pod_security_level:
            labels.update((key, self.pod_security_level) for key in POD_SECURITY_LABELS)
        labels.update(spec.labels)
        return labels

    def _rollback_create(self, name: str) -> None:
        try:
            self.gateway.delete(name)
            LOGGER.warning("Rolled back creation of %s after provisioning failed", name)
        except GovernanceError as exc:
            LOGGER.error("Rollback of %s failed; namespace left without policy: %s", name, exc)


def build_gateway(config: GatewayConfig) -> ClusterGateway:
    if config.kind == "memory" or config.state_file is not None:
        return InMemoryGateway(state_file=config.state_file)
    if config.kind == "apiserver":
        return ApiServerGateway(
            config.api_url,
            token_env=config.token_env,
            ca_path=config.ca_path,
            timeout_seconds=config.timeout_seconds,
        )
    return KubectlGateway(
        config.kubectl_cmd,
        context=config.context,
        timeout_seconds=config.timeout_seconds,
    )


__all__ = ["GovernanceEngine", "NamespaceSpec", "build_gateway"]
