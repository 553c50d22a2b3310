from __future__ import annotations

import copy
import threading
from collections import defaultdict
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

import yaml

from src.common.errors import ConflictError, GatewayError, NotFoundError

from .base import ClusterGateway, matches_selector, parse_selector
from .patches import apply_metadata_patch, metadata_patch_ops

if TYPE_CHECKING:  # pragma: no cover
    from src.lifecycle.policy_catalog import PolicyBundle


class InMemoryGateway(ClusterGateway):
    """Dictionary-backed gateway used for simulation runs and tests.

    ``failures`` maps a method name to an exception instance raised on every
    call to that method; ``calls`` records ``(method, name)`` pairs in order.
    """

    def __init__(self, state_file: Optional[Path] = None) -> None:
        self.state_file = state_file
        self.failures: Dict[str, Exception] = {}
        self.calls: List[Tuple[str, str]] = []
        self._namespaces: Dict[str, Dict[str, Any]] = {}
        self._resources: Dict[Tuple[str, str], Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self._version = 0
        self._lock = threading.RLock()
        if state_file is not None and state_file.exists():
            self._load(state_file)

    def get(self, name: str) -> Dict[str, Any]:
        self._enter("get", name)
        with self._lock:
            return copy.deepcopy(self._require(name))

    def list(self, selector: Optional[str] = None) -> List[Dict[str, Any]]:
        self._enter("list", selector or "")
        requirements = parse_selector(selector)
        with self._lock:
            return [
                copy.deepcopy(obj)
                for _, obj in sorted(self._namespaces.items())
                if matches_selector(obj, requirements)
            ]

    def create(self, manifest: Mapping[str, Any]) -> Dict[str, Any]:
        name = str((manifest.get("metadata") or {}).get("name") or "")
        self._enter("create", name)
        if not name:
            raise GatewayError("manifest has no metadata.name")
        with self._lock:
            if name in self._namespaces:
                raise ConflictError(f"namespace {name} already exists")
            obj = copy.deepcopy(dict(manifest))
            obj["metadata"]["resourceVersion"] = self._next_version()
            self._namespaces[name] = obj
            self._save()
            return copy.deepcopy(obj)

    def patch_metadata(
        self,
        name: str,
        labels: Optional[Mapping[str, Optional[str]]] = None,
        annotations: Optional[Mapping[str, Optional[str]]] = None,
        resource_version: Optional[str] = None,
    ) -> Dict[str, Any]:
        self._enter("patch_metadata", name)
        with self._lock:
            current = self._require(name)
            ops = metadata_patch_ops(current, labels, annotations, resource_version)
            updated = apply_metadata_patch(current, ops)
            updated["metadata"]["resourceVersion"] = self._next_version()
            self._namespaces[name] = updated
            self._save()
            return copy.deepcopy(updated)

    def delete(self, name: str) -> None:
        self._enter("delete", name)
        with self._lock:
            self._require(name)
            del self._namespaces[name]
            for key in [key for key in self._resources if key[0] == name]:
                del self._resources[key]
            self._save()

    def apply_policy_bundle(self, name: str, bundle: "PolicyBundle") -> None:
        self._enter("apply_policy_bundle", name)
        with self._lock:
            self._require(name)
            for manifest in bundle.to_manifests(name):
                self._store(manifest)
            self._save()

    def list_resources(self, namespace: str, kind: str) -> List[Dict[str, Any]]:
        self._enter("list_resources", f"{namespace}/{kind}")
        with self._lock:
            self._require(namespace)
            items = self._resources.get((namespace, kind), {})
            return [copy.deepcopy(items[key]) for key in sorted(items)]

    def add_resource(self, manifest: Mapping[str, Any]) -> None:
        """Seed an object inside an existing namespace."""

        with self._lock:
            self._store(manifest)
            self._save()

    def policy_calls(self, name: str) -> int:
        return sum(1 for method, target in self.calls if method == "apply_policy_bundle" and target == name)

    def _enter(self, method: str, target: str) -> None:
        self.calls.append((method, target))
        failure = self.failures.get(method)
        if failure is not None:
            raise failure

    def _require(self, name: str) -> Dict[str, Any]:
        obj = self._namespaces.get(name)
        if obj is None:
            raise NotFoundError(f"namespace {name} not found")
        return obj

    def _store(self, manifest: Mapping[str, Any]) -> None:
        obj = copy.deepcopy(dict(manifest))
        metadata = obj.setdefault("metadata", {})
        namespace = metadata.get("namespace")
        if namespace not in self._namespaces:
            raise NotFoundError(f"namespace {namespace} not found")
        metadata["resourceVersion"] = self._next_version()
        self._resources[(namespace, obj.get("kind", ""))][metadata.get("name", "")] = obj

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _load(self, path: Path) -> None:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            raise GatewayError(f"state file {path} must contain a mapping")
        self._version = int(data.get("version", 0))
        for obj in data.get("namespaces") or []:
            self._namespaces[obj["metadata"]["name"]] = obj
        for obj in data.get("resources") or []:
            metadata = obj.get("metadata") or {}
            self._resources[(metadata.get("namespace"), obj.get("kind", ""))][metadata.get("name", "")] = obj

    def _save(self) -> None:
        if self.state_file is None:
            return
        data = {
            "version": self._version,
            "namespaces": [self._namespaces[name] for name in sorted(self._namespaces)],
            "resources": [
                items[key]
                for _, items in sorted(self._resources.items())
                for key in sorted(items)
            ],
        }
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self.state_file.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")


__all__ = ["InMemoryGateway"]
