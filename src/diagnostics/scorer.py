"""Best-practice health scoring for governed namespaces."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from src.common.errors import GatewayError
from src.gateway.base import ClusterGateway
from src.gateway.kinds import WORKLOAD_KINDS

LOGGER = logging.getLogger(__name__)

SECURITY = "security"
RESOURCE_MANAGEMENT = "resource-management"
OPERATIONAL = "operational"
CATEGORY_ORDER = (SECURITY, RESOURCE_MANAGEMENT, OPERATIONAL)
PRIORITIES = {SECURITY: "high", RESOURCE_MANAGEMENT: "medium", OPERATIONAL: "low"}

BUCKETS = ((90, "excellent"), (70, "good"), (50, "fair"))
DEFAULT_THRESHOLD = 0.8
DEFAULT_REQUIRED_LABELS = ("app.kubernetes.io/name",)
POD_SECURITY_LABEL = "pod-security.kubernetes.io/enforce"
SERVING_KINDS = ("Deployment", "StatefulSet", "DaemonSet")


def bucket_for(percentage: float) -> str:
    for threshold, name in BUCKETS:
        if percentage >= threshold:
            return name
    return "poor"


class Inventory:
    """Per-run cache of the objects a namespace exposes through the gateway.

    A failed read is cached as well, so every check depending on that kind
    fails with the same error instead of re-querying the cluster.
    """

    def __init__(
        self,
        gateway: ClusterGateway,
        namespace: str,
        *,
        threshold: float = DEFAULT_THRESHOLD,
        required_labels: Sequence[str] = DEFAULT_REQUIRED_LABELS,
    ) -> None:
        self.gateway = gateway
        self.name = namespace
        self.threshold = threshold
        self.required_labels = tuple(required_labels)
        self._cache: Dict[str, Any] = {}

    def namespace(self) -> Dict[str, Any]:
        return self._cached("Namespace", lambda: self.gateway.get(self.name))

    def objects(self, kind: str) -> List[Dict[str, Any]]:
        return self._cached(kind, lambda: self.gateway.list_resources(self.name, kind))

    def workloads(self, kinds: Iterable[str] = WORKLOAD_KINDS) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        for kind in kinds:
            items.extend(self.objects(kind))
        return items

    def covered(self, items: Sequence[Dict[str, Any]], predicate: Callable[[Dict[str, Any]], bool]) -> bool:
        # No items means nothing can violate the rule.
        if not items:
            return True
        satisfied = sum(1 for item in items if predicate(item))
        return satisfied / len(items) >= self.threshold

    def _cached(self, key: str, loader: Callable[[], Any]) -> Any:
        if key not in self._cache:
            try:
                self._cache[key] = loader()
            except GatewayError as exc:
                self._cache[key] = exc
        value = self._cache[key]
        if isinstance(value, GatewayError):
            raise value
        return value


def pod_containers(workload: Dict[str, Any]) -> List[Dict[str, Any]]:
    containers: List[Dict[str, Any]] = []

    def visit(spec: Any) -> None:
        if not isinstance(spec, dict):
            return
        raw_containers = spec.get("containers")
        if isinstance(raw_containers, list):
            containers.extend([c for c in raw_containers if isinstance(c, dict)])
        template = spec.get("template")
        if isinstance(template, dict):
            visit(template.get("spec"))
        job_template = spec.get("jobTemplate")
        if isinstance(job_template, dict):
            visit(job_template.get("spec"))

    visit(workload.get("spec"))
    return containers


def _declares(section: str) -> Callable[[Dict[str, Any]], bool]:
    def predicate(workload: Dict[str, Any]) -> bool:
        containers = pod_containers(workload)
        if not containers:
            return False
        for container in containers:
            resources = container.get("resources")
            values = resources.get(section) if isinstance(resources, dict) else None
            if not isinstance(values, dict) or "cpu" not in values or "memory" not in values:
                return False
        return True

    return predicate


def _has_probes(workload: Dict[str, Any]) -> bool:
    containers = pod_containers(workload)
    if not containers:
        return False
    return all(
        isinstance(c.get("livenessProbe"), dict) or isinstance(c.get("readinessProbe"), dict)
        for c in containers
    )


def _labels(obj: Dict[str, Any]) -> Dict[str, Any]:
    metadata = obj.get("metadata")
    labels = metadata.get("labels") if isinstance(metadata, dict) else None
    return labels if isinstance(labels, dict) else {}


def _network_policy(inv: Inventory) -> bool:
    return bool(inv.objects("NetworkPolicy"))


def _pod_security(inv: Inventory) -> bool:
    return _labels(inv.namespace()).get(POD_SECURITY_LABEL) in {"baseline", "restricted"}


def _rbac_binding(inv: Inventory) -> bool:
    return bool(inv.objects("RoleBinding"))


def _resource_quota(inv: Inventory) -> bool:
    return bool(inv.objects("ResourceQuota"))


def _limit_range(inv: Inventory) -> bool:
    return bool(inv.objects("LimitRange"))


def _resource_requests(inv: Inventory) -> bool:
    return inv.covered(inv.workloads(), _declares("requests"))


def _resource_limits(inv: Inventory) -> bool:
    return inv.covered(inv.workloads(), _declares("limits"))


def _consistent_labels(inv: Inventory) -> bool:
    resources = inv.workloads() + inv.objects("Service")
    return inv.covered(resources, lambda obj: all(key in _labels(obj) for key in inv.required_labels))


def _monitoring(inv: Inventory) -> bool:
    if inv.objects("ServiceMonitor") or inv.objects("PodMonitor"):
        return True
    for service in inv.objects("Service"):
        annotations = (service.get("metadata") or {}).get("annotations") or {}
        if str(annotations.get("prometheus.io/scrape", "")).lower() == "true":
            return True
    return False


def _health_probes(inv: Inventory) -> bool:
    return inv.covered(inv.workloads(SERVING_KINDS), _has_probes)


@dataclass(frozen=True)
class Check:
    id: str
    category: str
    description: str
    recommendation: str
    predicate: Callable[[Inventory], bool] = field(compare=False, repr=False)


DEFAULT_CHECKS: Tuple[Check, ...] = (
    Check("network-policy", SECURITY, "NetworkPolicy present",
          "Add a default-deny NetworkPolicy and allow only required traffic", _network_policy),
    Check("pod-security", SECURITY, "Pod security baseline enforced",
          f"Label the namespace with {POD_SECURITY_LABEL}=baseline or restricted", _pod_security),
    Check("rbac-binding", SECURITY, "RoleBinding present",
          "Grant team access through a namespaced RoleBinding", _rbac_binding),
    Check("resource-quota", RESOURCE_MANAGEMENT, "ResourceQuota present",
          "Apply the stage ResourceQuota", _resource_quota),
    Check("limit-range", RESOURCE_MANAGEMENT, "LimitRange present",
          "Apply the stage LimitRange", _limit_range),
    Check("resource-requests", RESOURCE_MANAGEMENT, "Workloads declare resource requests",
          "Set cpu and memory requests on every container", _resource_requests),
    Check("resource-limits", RESOURCE_MANAGEMENT, "Workloads declare resource limits",
          "Set cpu and memory limits on every container", _resource_limits),
    Check("consistent-labels", OPERATIONAL, "Resources carry consistent labels",
          "Label workloads and services with the recommended app labels", _consistent_labels),
    Check("monitoring", OPERATIONAL, "Monitoring endpoint registered",
          "Register a ServiceMonitor or annotate a Service for scraping", _monitoring),
    Check("health-probes", OPERATIONAL, "Workloads declare health probes",
          "Add liveness or readiness probes to every container", _health_probes),
)


@dataclass(frozen=True)
class CheckResult:
    check: str
    category: str
    description: str
    passed: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class Recommendation:
    priority: str
    check: str
    message: str


@dataclass(frozen=True)
class DiagnosticReport:
    namespace: str
    results: Tuple[CheckResult, ...]
    recommendations: Tuple[Recommendation, ...]

    @property
    def score(self) -> int:
        return sum(1 for result in self.results if result.passed)

    @property
    def max_score(self) -> int:
        return len(self.results)

    @property
    def percentage(self) -> float:
        if not self.results:
            return 0.0
        return round(self.score * 100 / self.max_score, 1)

    @property
    def bucket(self) -> str:
        return bucket_for(self.percentage)

    @property
    def errors(self) -> List[str]:
        return [f"{result.check}: {result.error}" for result in self.results if result.error]

    def by_category(self) -> Dict[str, Dict[str, bool]]:
        grouped: Dict[str, Dict[str, bool]] = {category: {} for category in CATEGORY_ORDER}
        for result in self.results:
            grouped.setdefault(result.category, {})[result.check] = result.passed
        return grouped

    def to_dict(self) -> Dict[str, Any]:
        return {
            "namespace": self.namespace,
            "score": self.score,
            "max_score": self.max_score,
            "percentage": self.percentage,
            "bucket": self.bucket,
            "checks": self.by_category(),
            "recommendations": [
                {"priority": rec.priority, "check": rec.check, "message": rec.message}
                for rec in self.recommendations
            ],
            "errors": self.errors,
        }


class DiagnosticScorer:
    def __init__(
        self,
        gateway: ClusterGateway,
        *,
        checks: Sequence[Check] = DEFAULT_CHECKS,
        threshold: float = DEFAULT_THRESHOLD,
        required_labels: Sequence[str] = DEFAULT_REQUIRED_LABELS,
    ) -> None:
        unknown = {check.category for check in checks} - set(CATEGORY_ORDER)
        if unknown:
            raise ValueError(f"unknown check categories: {', '.join(sorted(unknown))}")
        self.gateway = gateway
        self.checks = tuple(checks)
        self.threshold = threshold
        self.required_labels = tuple(required_labels)

    def score(self, namespace: str) -> DiagnosticReport:
        inventory = Inventory(
            self.gateway,
            namespace,
            threshold=self.threshold,
            required_labels=self.required_labels,
        )
        results: List[CheckResult] = []
        for check in self.checks:
            try:
                passed = bool(check.predicate(inventory))
                error = None
            except GatewayError as exc:
                LOGGER.warning("%s: check %s could not be evaluated: %s", namespace, check.id, exc)
                passed, error = False, str(exc)
            results.append(CheckResult(check.id, check.category, check.description, passed, error))
        return DiagnosticReport(
            namespace=namespace,
            results=tuple(results),
            recommendations=tuple(self._recommend(results)),
        )

    def _recommend(self, results: Sequence[CheckResult]) -> List[Recommendation]:
        by_id = {check.id: check for check in self.checks}
        recommendations: List[Recommendation] = []
        for category in CATEGORY_ORDER:
            for result in results:
                if result.category != category or result.passed:
                    continue
                recommendations.append(
                    Recommendation(PRIORITIES[category], result.check, by_id[result.check].recommendation)
                )
        return recommendations


__all__ = [
    "Check",
    "CheckResult",
    "DEFAULT_CHECKS",
    "DiagnosticReport",
    "DiagnosticScorer",
    "Inventory",
    "Recommendation",
    "bucket_for",
]
