"""Resource kinds the governor reads inside a namespace."""

from __future__ import annotations

from typing import Dict, NamedTuple

from src.common.errors import GatewayError


class ResourceKind(NamedTuple):
    kind: str
    api_version: str
    plural: str

    @property
    def kubectl_name(self) -> str:
        group = self.api_version.rpartition("/")[0]
        return f"{self.plural}.{group}" if group else self.plural

    def collection_path(self, namespace: str) -> str:
        prefix = "/api" if "/" not in self.api_version else "/apis"
        return f"{prefix}/{self.api_version}/namespaces/{namespace}/{self.plural}"


RESOURCE_KINDS: Dict[str, ResourceKind] = {
    kind.kind: kind
    for kind in (
        ResourceKind("Pod", "v1", "pods"),
        ResourceKind("Service", "v1", "services"),
        ResourceKind("ConfigMap", "v1", "configmaps"),
        ResourceKind("Secret", "v1", "secrets"),
        ResourceKind("ServiceAccount", "v1", "serviceaccounts"),
        ResourceKind("PersistentVolumeClaim", "v1", "persistentvolumeclaims"),
        ResourceKind("ResourceQuota", "v1", "resourcequotas"),
        ResourceKind("LimitRange", "v1", "limitranges"),
        ResourceKind("Deployment", "apps/v1", "deployments"),
        ResourceKind("StatefulSet", "apps/v1", "statefulsets"),
        ResourceKind("DaemonSet", "apps/v1", "daemonsets"),
        ResourceKind("Job", "batch/v1", "jobs"),
        ResourceKind("CronJob", "batch/v1", "cronjobs"),
        ResourceKind("NetworkPolicy", "networking.k8s.io/v1", "networkpolicies"),
        ResourceKind("Role", "rbac.authorization.k8s.io/v1", "roles"),
        ResourceKind("RoleBinding", "rbac.authorization.k8s.io/v1", "rolebindings"),
        ResourceKind("ServiceMonitor", "monitoring.coreos.com/v1", "servicemonitors"),
        ResourceKind("PodMonitor", "monitoring.coreos.com/v1", "podmonitors"),
    )
}

WORKLOAD_KINDS = ("Deployment", "StatefulSet", "DaemonSet", "Job", "CronJob")


def lookup_kind(kind: str) -> ResourceKind:
    try:
        return RESOURCE_KINDS[kind]
    except KeyError as exc:
        raise GatewayError(f"unsupported resource kind: {kind}") from exc


__all__ = ["RESOURCE_KINDS", "ResourceKind", "WORKLOAD_KINDS", "lookup_kind"]
