"""Cluster gateway implementations used by the governance engine."""

from .apiserver import ApiServerGateway
from .base import ClusterGateway
from .kubectl import KubectlGateway
from .memory import InMemoryGateway
from .retry import RetryingGateway, RetryPolicy

__all__ = [
    "ApiServerGateway",
    "ClusterGateway",
    "InMemoryGateway",
    "KubectlGateway",
    "RetryPolicy",
    "RetryingGateway",
]
