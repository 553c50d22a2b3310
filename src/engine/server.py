from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, status
from pydantic import BaseModel, Field

from src.common.config import GovernorConfig
from src.common.errors import (
    BackupFailure,
    ConflictError,
    GatewayUnavailable,
    GovernanceError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)

from .engine import GovernanceEngine, NamespaceSpec


class CreatePayload(BaseModel):
    name: str = Field(..., description="Namespace name (DNS label, at most 63 characters)")
    team: str = Field(..., description="Owning team label value")
    environment: str = Field(..., description="Environment label value")
    stage: str = Field(default="development", description="Stage to provision up to")
    retention_days: Optional[int] = Field(default=None, description="Retention override in days")
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)


class TransitionPayload(BaseModel):
    target_stage: str = Field(..., description="Stage to move the namespace to")
    reason: str = Field(default="manual", description="Audit reason stored on the namespace")


class SweepPayload(BaseModel):
    grace_days: Optional[int] = Field(default=None, ge=0)
    dry_run: bool = Field(default=True, description="Only report eligible namespaces")


def _http_error(exc: GovernanceError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ValidationError):
        code = 422
    elif isinstance(exc, (InvalidTransitionError, ConflictError)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, BackupFailure):
        code = status.HTTP_424_FAILED_DEPENDENCY
    elif isinstance(exc, GatewayUnavailable):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_502_BAD_GATEWAY
    return HTTPException(status_code=code, detail=f"{type(exc).__name__}: {exc}")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Namespace Governor",
        description="Lifecycle, policy and expiry governance for Kubernetes namespaces.",
        version="0.1.0",
    )

    @app.post("/namespaces", status_code=status.HTTP_201_CREATED)
    def create_namespace(
        payload: CreatePayload,
        engine: GovernanceEngine = Depends(get_engine),
    ) -> Dict[str, Any]:
        spec = NamespaceSpec(
            name=payload.name,
            team=payload.team,
            environment=payload.environment,
            stage=payload.stage,
            retention_days=payload.retention_days,
            labels=payload.labels,
            annotations=payload.annotations,
        )
        try:
            return engine.create(spec).to_dict()
        except GovernanceError as exc:
            raise _http_error(exc) from exc

    @app.get("/namespaces")
    def list_namespaces(
        stage: Optional[str] = None,
        engine: GovernanceEngine = Depends(get_engine),
    ) -> List[Dict[str, Any]]:
        try:
            return [record.to_dict() for record in engine.list(stage)]
        except GovernanceError as exc:
            raise _http_error(exc) from exc

    @app.get("/namespaces/{name}")
    def get_namespace(name: str, engine: GovernanceEngine = Depends(get_engine)) -> Dict[str, Any]:
        try:
            return engine.get(name).to_dict()
        except GovernanceError as exc:
            raise _http_error(exc) from exc

    @app.post("/namespaces/{name}/transition")
    def transition_namespace(
        name: str,
        payload: TransitionPayload,
        engine: GovernanceEngine = Depends(get_engine),
    ) -> Dict[str, Any]:
        try:
            return engine.transition(name, payload.target_stage, payload.reason).to_dict()
        except GovernanceError as exc:
            raise _http_error(exc) from exc

    @app.get("/namespaces/{name}/diagnosis")
    def diagnose_namespace(name: str, engine: GovernanceEngine = Depends(get_engine)) -> Dict[str, Any]:
        try:
            return engine.diagnose(name).to_dict()
        except GovernanceError as exc:
            raise _http_error(exc) from exc

    @app.delete("/namespaces/{name}")
    def delete_namespace(name: str, engine: GovernanceEngine = Depends(get_engine)) -> Dict[str, Any]:
        try:
            return engine.delete(name).to_dict()
        except GovernanceError as exc:
            raise _http_error(exc) from exc

    @app.post("/sweep")
    def sweep(payload: SweepPayload, engine: GovernanceEngine = Depends(get_engine)) -> List[Dict[str, Any]]:
        try:
            actions = engine.sweep(grace_days=payload.grace_days, dry_run=payload.dry_run)
        except GovernanceError as exc:
            raise _http_error(exc) from exc
        return [action.to_dict() for action in actions]

    return app


@lru_cache()
def get_engine() -> GovernanceEngine:
    return GovernanceEngine.from_config(GovernorConfig.load())


app = create_app()


__all__ = [
    "CreatePayload",
    "SweepPayload",
    "TransitionPayload",
    "app",
    "create_app",
    "get_engine",
]
