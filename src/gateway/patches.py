"""RFC 6902 patch construction for namespace metadata updates."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import jsonpatch

from src.common.errors import ConflictError, GatewayError


def _escape(key: str) -> str:
    return key.replace("~", "~0").replace("/", "~1")


def metadata_patch_ops(
    obj: Mapping[str, Any],
    labels: Optional[Mapping[str, Optional[str]]] = None,
    annotations: Optional[Mapping[str, Optional[str]]] = None,
    resource_version: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Build JSON patch operations that merge ``labels``/``annotations`` into ``obj``.

    A ``test`` operation on ``/metadata/resourceVersion`` is prepended when a
    resource version is supplied so that stale writes fail as a unit.
    """

    metadata = obj.get("metadata") or {}
    ops: List[Dict[str, Any]] = []
    if resource_version is not None:
        ops.append({"op": "test", "path": "/metadata/resourceVersion", "value": resource_version})
    for section, changes in (("labels", labels), ("annotations", annotations)):
        if not changes:
            continue
        current = metadata.get(section)
        if not isinstance(current, Mapping):
            additions = {key: value for key, value in changes.items() if value is not None}
            if additions:
                ops.append({"op": "add", "path": f"/metadata/{section}", "value": additions})
            continue
        for key, value in changes.items():
            path = f"/metadata/{section}/{_escape(key)}"
            if value is None:
                if key in current:
                    ops.append({"op": "remove", "path": path})
            elif key in current:
                if current[key] != value:
                    ops.append({"op": "replace", "path": path, "value": value})
            else:
                ops.append({"op": "add", "path": path, "value": value})
    return ops


def apply_metadata_patch(obj: Mapping[str, Any], ops: List[Dict[str, Any]]) -> Dict[str, Any]:
    try:
        return jsonpatch.apply_patch(obj, ops, in_place=False)
    except jsonpatch.JsonPatchTestFailed as exc:
        name = (obj.get("metadata") or {}).get("name")
        raise ConflictError(f"namespace {name} was modified concurrently") from exc
    except jsonpatch.JsonPatchException as exc:
        raise GatewayError(f"invalid metadata patch: {exc}") from exc


__all__ = ["apply_metadata_patch", "metadata_patch_ops"]
