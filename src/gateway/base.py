from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

if TYPE_CHECKING:  # pragma: no cover
    from src.lifecycle.policy_catalog import PolicyBundle


class ClusterGateway(ABC):
    """Synchronous access to namespace objects and the resources inside them.

    Implementations raise ``NotFoundError``, ``ConflictError`` or
    ``GatewayUnavailable`` from :mod:`src.common.errors`.
    """

    @abstractmethod
    def get(self, name: str) -> Dict[str, Any]:
        """Return the namespace object called ``name``."""

    @abstractmethod
    def list(self, selector: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return namespace objects matching an equality label selector."""

    @abstractmethod
    def create(self, manifest: Mapping[str, Any]) -> Dict[str, Any]:
        """Create a namespace object; ``ConflictError`` when it already exists."""

    @abstractmethod
    def patch_metadata(
        self,
        name: str,
        labels: Optional[Mapping[str, Optional[str]]] = None,
        annotations: Optional[Mapping[str, Optional[str]]] = None,
        resource_version: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Merge labels/annotations into the object; ``None`` values remove keys.

        When ``resource_version`` is given and no longer current the write is
        rejected with ``ConflictError``.
        """

    @abstractmethod
    def delete(self, name: str) -> None:
        """Delete the namespace and everything inside it."""

    @abstractmethod
    def apply_policy_bundle(self, name: str, bundle: "PolicyBundle") -> None:
        """Create or replace the quota and limit objects rendered from ``bundle``."""

    @abstractmethod
    def list_resources(self, namespace: str, kind: str) -> List[Dict[str, Any]]:
        """Return every object of ``kind`` inside ``namespace``."""


def parse_selector(selector: Optional[str]) -> Dict[str, str]:
    requirements: Dict[str, str] = {}
    for part in (selector or "").split(","):
        part = part.strip()
        if not part:
            continue
        key, sep, value = part.partition("=")
        if not sep:
            raise ValueError(f"unsupported selector requirement: {part!r}")
        requirements[key.strip()] = value.lstrip("=").strip()
    return requirements


def matches_selector(obj: Mapping[str, Any], requirements: Mapping[str, str]) -> bool:
    labels = (obj.get("metadata") or {}).get("labels") or {}
    return all(labels.get(key) == value for key, value in requirements.items())


__all__ = ["ClusterGateway", "matches_selector", "parse_selector"]
