"""Shared helpers for normalising lifecycle stage identifiers across components."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional


_STAGE_NORMALISATION_MAP = {
    # Development
    "dev": "development",
    "develop": "development",
    "development": "development",
    "sandbox": "development",
    # Testing
    "test": "testing",
    "testing": "testing",
    "qa": "testing",
    "staging": "testing",
    "stage": "testing",
    "uat": "testing",
    # Production
    "prod": "production",
    "production": "production",
    "live": "production",
    # Retirement
    "deprecate": "deprecated",
    "deprecated": "deprecated",
    "archive": "archived",
    "archived": "archived",
    "delete": "deleting",
    "deleting": "deleting",
}


@lru_cache(maxsize=None)
def normalise_stage_id(stage: Optional[str]) -> str:
    """Map a raw stage identifier to the canonical name used in labels."""

    key = (stage or "").strip().lower().replace("_", "-")
    if not key:
        return ""
    return _STAGE_NORMALISATION_MAP.get(key, key)


__all__ = ["normalise_stage_id"]
