from __future__ import annotations

import json
import subprocess
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence

import yaml

from src.common.errors import ConflictError, GatewayError, GatewayUnavailable, NotFoundError

from .base import ClusterGateway
from .kinds import lookup_kind

if TYPE_CHECKING:  # pragma: no cover
    from src.lifecycle.policy_catalog import PolicyBundle

_NOT_FOUND_MARKERS = ("(NotFound)", "not found")
_CONFLICT_MARKERS = ("(Conflict)", "(AlreadyExists)", "already exists", "the object has been modified")
_UNAVAILABLE_MARKERS = (
    "Unable to connect to the server",
    "connection refused",
    "i/o timeout",
    "(ServiceUnavailable)",
    "TLS handshake timeout",
    "(InternalError)",
)
_MISSING_TYPE_MARKER = "the server doesn't have a resource type"


class KubectlGateway(ClusterGateway):
    """Cluster gateway that shells out to ``kubectl`` and parses its JSON output."""

    def __init__(
        self,
        kubectl_cmd: str = "kubectl",
        *,
        context: Optional[str] = None,
        timeout_seconds: float = 30.0,
        field_manager: str = "nsgovernor",
    ) -> None:
        self.kubectl_cmd = kubectl_cmd
        self.context = context
        self.timeout_seconds = timeout_seconds
        self.field_manager = field_manager

    def get(self, name: str) -> Dict[str, Any]:
        return json.loads(self._run_command(["get", "namespace", name, "-o", "json"]))

    def list(self, selector: Optional[str] = None) -> List[Dict[str, Any]]:
        command = ["get", "namespaces", "-o", "json"]
        if selector:
            command.extend(["-l", selector])
        return self._items(self._run_command(command))

    def create(self, manifest: Mapping[str, Any]) -> Dict[str, Any]:
        payload = json.dumps(manifest)
        return json.loads(self._run_command(["create", "-f", "-", "-o", "json"], stdin=payload))

    def patch_metadata(
        self,
        name: str,
        labels: Optional[Mapping[str, Optional[str]]] = None,
        annotations: Optional[Mapping[str, Optional[str]]] = None,
        resource_version: Optional[str] = None,
    ) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {}
        if labels:
            metadata["labels"] = dict(labels)
        if annotations:
            metadata["annotations"] = dict(annotations)
        if resource_version is not None:
            metadata["resourceVersion"] = resource_version
        patch = json.dumps({"metadata": metadata})
        return json.loads(
            self._run_command(["patch", "namespace", name, "--type=merge", "-p", patch, "-o", "json"])
        )

    def delete(self, name: str) -> None:
        self._run_command(["delete", "namespace", name, "--wait=false"])

    def apply_policy_bundle(self, name: str, bundle: "PolicyBundle") -> None:
        payload = yaml.safe_dump_all(bundle.to_manifests(name), sort_keys=False)
        self._run_command(
            ["apply", "-n", name, "--field-manager", self.field_manager, "-f", "-"],
            stdin=payload,
        )

    def list_resources(self, namespace: str, kind: str) -> List[Dict[str, Any]]:
        resource = lookup_kind(kind)
        try:
            output = self._run_command(["get", resource.kubectl_name, "-n", namespace, "-o", "json"])
        except GatewayError as exc:
            if _MISSING_TYPE_MARKER in str(exc):
                return []
            raise
        return self._items(output)

    def _run_command(self, args: Sequence[str], stdin: Optional[str] = None) -> str:
        command = [self.kubectl_cmd]
        if self.context:
            command.extend(["--context", self.context])
        command.extend(args)
        try:
            completed = subprocess.run(
                command,
                input=stdin,
                check=True,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except FileNotFoundError as exc:
            raise GatewayUnavailable(f"kubectl executable not found: {self.kubectl_cmd}") from exc
        except subprocess.TimeoutExpired as exc:
            raise GatewayUnavailable(f"kubectl timed out after {self.timeout_seconds}s: {' '.join(args)}") from exc
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or "").strip()
            detail = stderr or (exc.stdout or "").strip() or str(exc)
            raise _classify(detail) from exc
        return completed.stdout

    @staticmethod
    def _items(output: str) -> List[Dict[str, Any]]:
        data = json.loads(output) if output.strip() else {}
        items = data.get("items") if isinstance(data, dict) else None
        return [item for item in items or [] if isinstance(item, dict)]


def _classify(detail: str) -> GatewayError:
    if _MISSING_TYPE_MARKER in detail:
        return GatewayError(detail)
    if any(marker in detail for marker in _UNAVAILABLE_MARKERS):
        return GatewayUnavailable(detail)
    if any(marker in detail for marker in _CONFLICT_MARKERS):
        return ConflictError(detail)
    if any(marker in detail for marker in _NOT_FOUND_MARKERS):
        return NotFoundError(detail)
    return GatewayError(detail)


__all__ = ["KubectlGateway"]
