from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time truncated to whole seconds, the precision stored in annotations."""

    return datetime.now(timezone.utc).replace(microsecond=0)


__all__ = ["utcnow"]
