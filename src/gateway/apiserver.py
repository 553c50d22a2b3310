from __future__ import annotations

import json
import os
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Union

import httpx
import yaml

from src.common.errors import ConflictError, GatewayError, GatewayUnavailable, NotFoundError

from .base import ClusterGateway
from .kinds import lookup_kind
from .patches import metadata_patch_ops

if TYPE_CHECKING:  # pragma: no cover
    from src.lifecycle.policy_catalog import PolicyBundle

NAMESPACES_PATH = "/api/v1/namespaces"
JSON_PATCH = "application/json-patch+json"
APPLY_PATCH = "application/apply-patch+yaml"


class ApiServerGateway(ClusterGateway):
    """Cluster gateway speaking to the Kubernetes API server over HTTP.

    Works against ``kubectl proxy`` (no credentials) or directly against the
    API server with a bearer token read from ``token_env``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token_env: Optional[str] = None,
        ca_path: Optional[str] = None,
        timeout_seconds: float = 30.0,
        field_manager: str = "nsgovernor",
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        if not base_url or not base_url.startswith("http"):
            raise ValueError("API server URL must start with http or https")
        self.field_manager = field_manager
        verify: Union[bool, str] = ca_path if ca_path else True
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=self._build_headers(token_env),
            timeout=timeout_seconds,
            verify=verify,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ApiServerGateway":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def get(self, name: str) -> Dict[str, Any]:
        return self._request("GET", f"{NAMESPACES_PATH}/{name}").json()

    def list(self, selector: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"labelSelector": selector} if selector else None
        data = self._request("GET", NAMESPACES_PATH, params=params).json()
        return [item for item in data.get("items") or [] if isinstance(item, dict)]

    def create(self, manifest: Mapping[str, Any]) -> Dict[str, Any]:
        return self._request("POST", NAMESPACES_PATH, json=dict(manifest)).json()

    def patch_metadata(
        self,
        name: str,
        labels: Optional[Mapping[str, Optional[str]]] = None,
        annotations: Optional[Mapping[str, Optional[str]]] = None,
        resource_version: Optional[str] = None,
    ) -> Dict[str, Any]:
        current = self.get(name)
        ops = metadata_patch_ops(current, labels, annotations, resource_version)
        if not ops or all(op["op"] == "test" for op in ops):
            stored = (current.get("metadata") or {}).get("resourceVersion")
            if resource_version is not None and stored != resource_version:
                raise ConflictError(f"namespace {name} was modified concurrently")
            return current
        response = self._request(
            "PATCH",
            f"{NAMESPACES_PATH}/{name}",
            content=json.dumps(ops).encode("utf-8"),
            headers={"Content-Type": JSON_PATCH},
            conflict_statuses=(409, 422),
        )
        return response.json()

    def delete(self, name: str) -> None:
        self._request("DELETE", f"{NAMESPACES_PATH}/{name}")

    def apply_policy_bundle(self, name: str, bundle: "PolicyBundle") -> None:
        for manifest in bundle.to_manifests(name):
            resource = lookup_kind(manifest["kind"])
            path = f"{resource.collection_path(name)}/{manifest['metadata']['name']}"
            self._request(
                "PATCH",
                path,
                params={"fieldManager": self.field_manager, "force": "true"},
                content=yaml.safe_dump(manifest, sort_keys=False).encode("utf-8"),
                headers={"Content-Type": APPLY_PATCH},
            )

    def list_resources(self, namespace: str, kind: str) -> List[Dict[str, Any]]:
        resource = lookup_kind(kind)
        try:
            data = self._request("GET", resource.collection_path(namespace)).json()
        except NotFoundError:
            if "/" not in resource.api_version:
                raise
            # API group not served (CRD not installed).
            return []
        items = [item for item in data.get("items") or [] if isinstance(item, dict)]
        for item in items:
            item.setdefault("kind", resource.kind)
            item.setdefault("apiVersion", resource.api_version)
        return items

    def _request(
        self,
        method: str,
        path: str,
        *,
        conflict_statuses: tuple = (409,),
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise GatewayUnavailable(f"{method} {path} timed out") from exc
        except httpx.TransportError as exc:
            raise GatewayUnavailable(f"{method} {path} failed: {exc}") from exc
        if response.is_success:
            return response
        detail = _status_message(response)
        if response.status_code == 404:
            raise NotFoundError(detail)
        if response.status_code in conflict_statuses:
            raise ConflictError(detail)
        if response.status_code == 429 or response.status_code >= 500:
            raise GatewayUnavailable(detail)
        raise GatewayError(detail)

    @staticmethod
    def _build_headers(token_env: Optional[str]) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if token_env:
            token = os.getenv(token_env)
            if not token:
                raise RuntimeError(f"Environment variable {token_env} not set")
            headers["Authorization"] = f"Bearer {token}"
        return headers


def _status_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return f"{response.status_code} {body.get('reason', '')}: {body['message']}".strip()
    return f"{response.status_code}: {response.text.strip()}"


__all__ = ["ApiServerGateway"]
