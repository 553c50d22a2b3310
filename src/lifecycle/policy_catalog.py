"""Stage-keyed resource policy bundles (ResourceQuota + LimitRange profiles)."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Union

import yaml

from src.common.errors import UnknownStageError, ValidationError
from src.common.quantities import parse_quantity
from src.common.stage_ids import normalise_stage_id

from .keys import MANAGED_BY_LABEL, MANAGED_BY_VALUE, POLICY_REF_ANNOTATION
from .stages import Stage

LOGGER = logging.getLogger(__name__)

QUOTA_OBJECT_NAME = "nsgovernor-quota"
LIMITS_OBJECT_NAME = "nsgovernor-limits"


DEFAULT_POLICIES: Dict[str, Dict[str, Any]] = {
    "development": {
        "retention_days": 90,
        "review_days": 30,
        "quota": {
            "cpu_requests": "2",
            "memory_requests": "4Gi",
            "cpu_limits": "4",
            "memory_limits": "8Gi",
            "max_pods": 20,
            "max_services": 10,
            "max_pvcs": 5,
            "max_secrets": 20,
            "max_configmaps": 20,
        },
        "limits": {
            "default_request": {"cpu": "100m", "memory": "128Mi"},
            "default_limit": {"cpu": "500m", "memory": "512Mi"},
            "container_min": {"cpu": "50m", "memory": "64Mi"},
            "container_max": {"cpu": "1", "memory": "2Gi"},
            "pod_min": {"cpu": "50m", "memory": "64Mi"},
            "pod_max": {"cpu": "2", "memory": "4Gi"},
        },
    },
    "testing": {
        "retention_days": 60,
        "review_days": 14,
        "quota": {
            "cpu_requests": "4",
            "memory_requests": "8Gi",
            "cpu_limits": "8",
            "memory_limits": "16Gi",
            "max_pods": 50,
            "max_services": 20,
            "max_pvcs": 10,
            "max_secrets": 50,
            "max_configmaps": 50,
        },
        "limits": {
            "default_request": {"cpu": "200m", "memory": "256Mi"},
            "default_limit": {"cpu": "1", "memory": "1Gi"},
            "container_min": {"cpu": "50m", "memory": "64Mi"},
            "container_max": {"cpu": "2", "memory": "4Gi"},
            "pod_min": {"cpu": "50m", "memory": "64Mi"},
            "pod_max": {"cpu": "4", "memory": "8Gi"},
        },
    },
    "production": {
        "retention_days": 365,
        "review_days": 90,
        "quota": {
            "cpu_requests": "16",
            "memory_requests": "32Gi",
            "cpu_limits": "32",
            "memory_limits": "64Gi",
            "max_pods": 200,
            "max_services": 50,
            "max_pvcs": 30,
            "max_secrets": 100,
            "max_configmaps": 100,
        },
        "limits": {
            "default_request": {"cpu": "250m", "memory": "256Mi"},
            "default_limit": {"cpu": "1", "memory": "1Gi"},
            "container_min": {"cpu": "100m", "memory": "128Mi"},
            "container_max": {"cpu": "4", "memory": "8Gi"},
            "pod_min": {"cpu": "100m", "memory": "128Mi"},
            "pod_max": {"cpu": "8", "memory": "16Gi"},
        },
    },
    "deprecated": {
        "retention_days": 30,
        "review_days": 7,
        "quota": {
            "cpu_requests": "1",
            "memory_requests": "2Gi",
            "cpu_limits": "2",
            "memory_limits": "4Gi",
            "max_pods": 10,
            "max_services": 5,
            "max_pvcs": 5,
            "max_secrets": 20,
            "max_configmaps": 20,
        },
        "limits": {
            "default_request": {"cpu": "100m", "memory": "128Mi"},
            "default_limit": {"cpu": "250m", "memory": "256Mi"},
            "container_min": {"cpu": "50m", "memory": "64Mi"},
            "container_max": {"cpu": "500m", "memory": "1Gi"},
            "pod_min": {"cpu": "50m", "memory": "64Mi"},
            "pod_max": {"cpu": "1", "memory": "2Gi"},
        },
    },
    "archived": {
        "retention_days": 90,
        "review_days": 30,
        "quota": {
            "cpu_requests": "0",
            "memory_requests": "0",
            "cpu_limits": "0",
            "memory_limits": "0",
            "max_pods": 0,
            "max_services": 0,
            "max_pvcs": 5,
            "max_secrets": 20,
            "max_configmaps": 20,
        },
        "limits": {
            "default_request": {"cpu": "50m", "memory": "64Mi"},
            "default_limit": {"cpu": "100m", "memory": "128Mi"},
            "container_min": {"cpu": "50m", "memory": "64Mi"},
            "container_max": {"cpu": "100m", "memory": "128Mi"},
            "pod_min": {"cpu": "50m", "memory": "64Mi"},
            "pod_max": {"cpu": "100m", "memory": "128Mi"},
        },
    },
    "deleting": {
        "retention_days": 0,
        "review_days": 0,
        "quota": {
            "cpu_requests": "0",
            "memory_requests": "0",
            "cpu_limits": "0",
            "memory_limits": "0",
            "max_pods": 0,
            "max_services": 0,
            "max_pvcs": 0,
            "max_secrets": 0,
            "max_configmaps": 0,
        },
        "limits": {
            "default_request": {"cpu": "50m", "memory": "64Mi"},
            "default_limit": {"cpu": "100m", "memory": "128Mi"},
            "container_min": {"cpu": "50m", "memory": "64Mi"},
            "container_max": {"cpu": "100m", "memory": "128Mi"},
            "pod_min": {"cpu": "50m", "memory": "64Mi"},
            "pod_max": {"cpu": "100m", "memory": "128Mi"},
        },
    },
}


@dataclass(frozen=True)
class ResourcePair:
    cpu: str
    memory: str

    def dominates(self, other: "ResourcePair") -> bool:
        return parse_quantity(self.cpu) >= parse_quantity(other.cpu) and parse_quantity(
            self.memory
        ) >= parse_quantity(other.memory)

    def to_manifest(self) -> Dict[str, str]:
        return {"cpu": self.cpu, "memory": self.memory}


@dataclass(frozen=True)
class QuotaLimits:
    cpu_requests: str
    memory_requests: str
    cpu_limits: str
    memory_limits: str
    max_pods: int
    max_services: int
    max_pvcs: int
    max_secrets: int
    max_configmaps: int

    def to_hard(self) -> Dict[str, str]:
        return {
            "requests.cpu": self.cpu_requests,
            "requests.memory": self.memory_requests,
            "limits.cpu": self.cpu_limits,
            "limits.memory": self.memory_limits,
            "pods": str(self.max_pods),
            "services": str(self.max_services),
            "persistentvolumeclaims": str(self.max_pvcs),
            "secrets": str(self.max_secrets),
            "configmaps": str(self.max_configmaps),
        }


@dataclass(frozen=True)
class LimitProfile:
    default_request: ResourcePair
    default_limit: ResourcePair
    container_min: ResourcePair
    container_max: ResourcePair
    pod_min: ResourcePair
    pod_max: ResourcePair

    def violations(self) -> List[str]:
        problems: List[str] = []
        if not self.pod_min.dominates(self.container_min):
            problems.append("pod_min must be >= container_min")
        if not self.pod_max.dominates(self.container_max):
            problems.append("pod_max must be >= container_max")
        if not self.default_request.dominates(self.container_min):
            problems.append("default_request must be >= container_min")
        if not self.default_limit.dominates(self.default_request):
            problems.append("default_limit must be >= default_request")
        if not self.container_max.dominates(self.default_limit):
            problems.append("container_max must be >= default_limit")
        return problems


@dataclass(frozen=True)
class PolicyBundle:
    stage: Stage
    retention_days: int
    review_days: int
    quota: QuotaLimits
    limits: LimitProfile

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["stage"] = self.stage.value
        return data

    @property
    def ref(self) -> str:
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        return f"{self.stage.value}-{digest[:10]}"

    def to_manifests(self, namespace: str) -> List[Dict[str, Any]]:
        metadata = {
            "namespace": namespace,
            "labels": {MANAGED_BY_LABEL: MANAGED_BY_VALUE},
            "annotations": {POLICY_REF_ANNOTATION: self.ref},
        }
        quota = {
            "apiVersion": "v1",
            "kind": "ResourceQuota",
            "metadata": dict(metadata, name=QUOTA_OBJECT_NAME),
            "spec": {"hard": self.quota.to_hard()},
        }
        limit_range = {
            "apiVersion": "v1",
            "kind": "LimitRange",
            "metadata": dict(metadata, name=LIMITS_OBJECT_NAME),
            "spec": {
                "limits": [
                    {
                        "type": "Container",
                        "default": self.limits.default_limit.to_manifest(),
                        "defaultRequest": self.limits.default_request.to_manifest(),
                        "min": self.limits.container_min.to_manifest(),
                        "max": self.limits.container_max.to_manifest(),
                    },
                    {
                        "type": "Pod",
                        "min": self.limits.pod_min.to_manifest(),
                        "max": self.limits.pod_max.to_manifest(),
                    },
                ]
            },
        }
        return [quota, limit_range]


class PolicyCatalog:
    """Immutable lookup from lifecycle stage to its policy bundle."""

    def __init__(self, policies: Mapping[str, Mapping[str, Any]] = DEFAULT_POLICIES) -> None:
        bundles: Dict[Stage, PolicyBundle] = {}
        for raw_stage, entry in policies.items():
            stage = self._stage_key(raw_stage)
            bundles[stage] = _build_bundle(stage, entry)
        missing = [stage.value for stage in Stage if stage not in bundles]
        if missing:
            raise UnknownStageError(f"policy catalog has no bundle for: {', '.join(missing)}")
        self._bundles = bundles

    def resolve(self, stage: Union[Stage, str]) -> PolicyBundle:
        try:
            key = stage if isinstance(stage, Stage) else Stage(stage)
            return self._bundles[key]
        except (KeyError, ValueError) as exc:
            LOGGER.critical("Policy requested for unknown stage %r", stage)
            raise UnknownStageError(f"no policy bundle for stage {stage!r}") from exc

    def refs(self) -> Dict[Stage, str]:
        return {stage: bundle.ref for stage, bundle in self._bundles.items()}

    @classmethod
    def from_yaml(cls, path: Path) -> "PolicyCatalog":
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ValidationError(f"Failed to read policy catalog {path}: {exc}") from exc
        stages = data.get("stages") if isinstance(data, dict) else None
        if not isinstance(stages, dict):
            raise ValidationError(f"Policy catalog {path} must contain a 'stages' mapping")
        return cls(stages)

    @staticmethod
    def _stage_key(raw_stage: Any) -> Stage:
        try:
            return Stage(normalise_stage_id(str(raw_stage)))
        except ValueError as exc:
            raise UnknownStageError(f"policy catalog names unknown stage {raw_stage!r}") from exc


def _pair(entry: Mapping[str, Any], field: str, stage: Stage) -> ResourcePair:
    value = entry.get(field)
    if not isinstance(value, Mapping) or "cpu" not in value or "memory" not in value:
        raise ValidationError(f"{stage.value}: limits.{field} needs cpu and memory")
    pair = ResourcePair(cpu=str(value["cpu"]), memory=str(value["memory"]))
    parse_quantity(pair.cpu)
    parse_quantity(pair.memory)
    return pair


def _build_bundle(stage: Stage, entry: Mapping[str, Any]) -> PolicyBundle:
    quota_raw = entry.get("quota")
    limits_raw = entry.get("limits")
    if not isinstance(quota_raw, Mapping) or not isinstance(limits_raw, Mapping):
        raise ValidationError(f"{stage.value}: policy needs 'quota' and 'limits' sections")
    try:
        quota = QuotaLimits(
            cpu_requests=str(quota_raw["cpu_requests"]),
            memory_requests=str(quota_raw["memory_requests"]),
            cpu_limits=str(quota_raw["cpu_limits"]),
            memory_limits=str(quota_raw["memory_limits"]),
            max_pods=int(quota_raw["max_pods"]),
            max_services=int(quota_raw["max_services"]),
            max_pvcs=int(quota_raw["max_pvcs"]),
            max_secrets=int(quota_raw["max_secrets"]),
            max_configmaps=int(quota_raw["max_configmaps"]),
        )
        retention_days = int(entry["retention_days"])
        review_days = int(entry.get("review_days", 0))
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError(f"{stage.value}: invalid quota entry: {exc}") from exc
    for quantity in (quota.cpu_requests, quota.memory_requests, quota.cpu_limits, quota.memory_limits):
        parse_quantity(quantity)
    if retention_days < 0 or review_days < 0:
        raise ValidationError(f"{stage.value}: retention_days and review_days must be non-negative")

    limits = LimitProfile(
        default_request=_pair(limits_raw, "default_request", stage),
        default_limit=_pair(limits_raw, "default_limit", stage),
        container_min=_pair(limits_raw, "container_min", stage),
        container_max=_pair(limits_raw, "container_max", stage),
        pod_min=_pair(limits_raw, "pod_min", stage),
        pod_max=_pair(limits_raw, "pod_max", stage),
    )
    problems = limits.violations()
    if problems:
        raise ValidationError(f"{stage.value}: {'; '.join(problems)}")
    return PolicyBundle(
        stage=stage,
        retention_days=retention_days,
        review_days=review_days,
        quota=quota,
        limits=limits,
    )


__all__ = [
    "DEFAULT_POLICIES",
    "LIMITS_OBJECT_NAME",
    "LimitProfile",
    "PolicyBundle",
    "PolicyCatalog",
    "QUOTA_OBJECT_NAME",
    "QuotaLimits",
    "ResourcePair",
]
