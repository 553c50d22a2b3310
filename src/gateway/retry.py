from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, TypeVar

from src.common.errors import GatewayUnavailable, OperationCancelled

from .base import ClusterGateway

if TYPE_CHECKING:  # pragma: no cover
    from src.lifecycle.policy_catalog import PolicyBundle

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for transient gateway failures."""

    retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 10.0
    seed: Optional[int] = None
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def __post_init__(self) -> None:
        self.retries = max(0, int(self.retries))
        self._rng = random.Random(self.seed) if self.seed is not None else random.Random()

    def backoff_seconds(self, attempt: int) -> float:
        base = min(self.max_delay, self.base_delay * (2 ** attempt))
        jitter = self._rng.uniform(0, base)
        return min(self.max_delay, base + jitter)

    def call(
        self,
        operation: Callable[[], T],
        *,
        description: str = "gateway call",
        deadline: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> T:
        """Run ``operation``, retrying ``GatewayUnavailable`` until the budget is spent.

        ``deadline`` is an absolute ``time.monotonic()`` value; ``cancel`` aborts
        the wait between attempts.
        """

        attempt = 0
        while True:
            if cancel is not None and cancel.is_set():
                raise OperationCancelled(f"{description} cancelled")
            try:
                return operation()
            except GatewayUnavailable as exc:
                if isinstance(exc, OperationCancelled) or attempt >= self.retries:
                    raise
                delay = self.backoff_seconds(attempt)
                if deadline is not None and time.monotonic() + delay > deadline:
                    raise GatewayUnavailable(f"{description} exceeded its deadline") from exc
                LOGGER.warning("%s unavailable (%s); retrying in %.2fs", description, exc, delay)
                if cancel is not None:
                    if cancel.wait(delay):
                        raise OperationCancelled(f"{description} cancelled") from exc
                else:
                    self.sleep(delay)
                attempt += 1


class RetryingGateway(ClusterGateway):
    """Wraps a gateway so idempotent calls are retried under a ``RetryPolicy``.

    ``create`` is passed through untouched: a retried create could observe its
    own first attempt as a conflict.
    """

    def __init__(
        self,
        inner: ClusterGateway,
        policy: Optional[RetryPolicy] = None,
        *,
        timeout_seconds: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self.inner = inner
        self.policy = policy or RetryPolicy()
        self.timeout_seconds = timeout_seconds
        self.cancel = cancel

    def get(self, name: str) -> Dict[str, Any]:
        return self._retry(f"get {name}", lambda: self.inner.get(name))

    def list(self, selector: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._retry("list namespaces", lambda: self.inner.list(selector))

    def create(self, manifest: Mapping[str, Any]) -> Dict[str, Any]:
        return self.inner.create(manifest)

    def patch_metadata(
        self,
        name: str,
        labels: Optional[Mapping[str, Optional[str]]] = None,
        annotations: Optional[Mapping[str, Optional[str]]] = None,
        resource_version: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self._retry(
            f"patch {name}",
            lambda: self.inner.patch_metadata(name, labels, annotations, resource_version),
        )

    def delete(self, name: str) -> None:
        self._retry(f"delete {name}", lambda: self.inner.delete(name))

    def apply_policy_bundle(self, name: str, bundle: "PolicyBundle") -> None:
        self._retry(f"apply policy to {name}", lambda: self.inner.apply_policy_bundle(name, bundle))

    def list_resources(self, namespace: str, kind: str) -> List[Dict[str, Any]]:
        return self._retry(
            f"list {kind} in {namespace}",
            lambda: self.inner.list_resources(namespace, kind),
        )

    def _retry(self, description: str, operation: Callable[[], T]) -> T:
        deadline = time.monotonic() + self.timeout_seconds if self.timeout_seconds else None
        return self.policy.call(operation, description=description, deadline=deadline, cancel=self.cancel)


__all__ = ["RetryPolicy", "RetryingGateway"]
