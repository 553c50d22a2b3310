"""Governor configuration loaded from YAML with environment overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .errors import ValidationError

DEFAULT_CONFIG_PATH = Path("configs/governor.yaml")
CONFIG_ENV = "NSGOV_CONFIG"
POD_SECURITY_LEVELS = (None, "privileged", "baseline", "restricted")


@dataclass
class GatewayConfig:
    kind: str = "kubectl"
    kubectl_cmd: str = "kubectl"
    context: Optional[str] = None
    api_url: str = "http://127.0.0.1:8001"
    token_env: Optional[str] = None
    ca_path: Optional[str] = None
    timeout_seconds: float = 30.0
    retries: int = 3
    state_file: Optional[Path] = None
    deadline_seconds: Optional[float] = None


@dataclass
class BackupConfig:
    dir: Path = Path("data/backups")
    kinds: Optional[List[str]] = None
    include_secrets: bool = False


@dataclass
class LifecycleConfig:
    allow_reactivation: bool = False
    policies: Optional[Path] = None
    lock_timeout_seconds: float = 30.0
    pod_security_level: Optional[str] = "baseline"


@dataclass
class SweeperConfig:
    grace_days: int = 7
    marker_ttl_minutes: int = 60


@dataclass
class DiagnosticsConfig:
    threshold: float = 0.8
    required_labels: List[str] = field(default_factory=lambda: ["app.kubernetes.io/name"])


@dataclass
class GovernorConfig:
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    backups: BackupConfig = field(default_factory=BackupConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    sweeper: SweeperConfig = field(default_factory=SweeperConfig)
    diagnostics: DiagnosticsConfig = field(default_factory=DiagnosticsConfig)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "GovernorConfig":
        gateway = _section(data, "gateway")
        backups = _section(data, "backups")
        lifecycle = _section(data, "lifecycle")
        sweeper = _section(data, "sweeper")
        diagnostics = _section(data, "diagnostics")
        try:
            config = cls(
                gateway=GatewayConfig(
                    kind=str(gateway.get("kind", "kubectl")).lower(),
                    kubectl_cmd=str(gateway.get("kubectl_cmd", "kubectl")),
                    context=gateway.get("context"),
                    api_url=str(gateway.get("api_url", "http://127.0.0.1:8001")),
                    token_env=gateway.get("token_env"),
                    ca_path=gateway.get("ca_path"),
                    timeout_seconds=float(gateway.get("timeout_seconds", 30)),
                    retries=int(gateway.get("retries", 3)),
                    state_file=_path(gateway.get("state_file")),
                    deadline_seconds=_float(gateway.get("deadline_seconds")),
                ),
                backups=BackupConfig(
                    dir=Path(backups.get("dir", "data/backups")),
                    kinds=list(backups["kinds"]) if backups.get("kinds") else None,
                    include_secrets=bool(backups.get("include_secrets", False)),
                ),
                lifecycle=LifecycleConfig(
                    allow_reactivation=bool(lifecycle.get("allow_reactivation", False)),
                    policies=_path(lifecycle.get("policies")),
                    lock_timeout_seconds=float(lifecycle.get("lock_timeout_seconds", 30)),
                    pod_security_level=lifecycle.get("pod_security_level", "baseline") or None,
                ),
                sweeper=SweeperConfig(
                    grace_days=int(sweeper.get("grace_days", 7)),
                    marker_ttl_minutes=int(sweeper.get("marker_ttl_minutes", 60)),
                ),
                diagnostics=DiagnosticsConfig(
                    threshold=float(diagnostics.get("threshold", 0.8)),
                    required_labels=[str(label) for label in diagnostics.get("required_labels", ["app.kubernetes.io/name"])],
                ),
            )
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid configuration value: {exc}") from exc
        if config.gateway.kind not in {"kubectl", "apiserver", "memory"}:
            raise ValidationError(f"Unknown gateway kind: {config.gateway.kind}")
        if config.lifecycle.pod_security_level not in POD_SECURITY_LEVELS:
            raise ValidationError(f"Unknown pod security level: {config.lifecycle.pod_security_level}")
        if config.gateway.deadline_seconds is not None and config.gateway.deadline_seconds <= 0:
            raise ValidationError("gateway.deadline_seconds must be positive")
        if not 0.0 <= config.diagnostics.threshold <= 1.0:
            raise ValidationError("diagnostics.threshold must be between 0 and 1")
        return config

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "GovernorConfig":
        """Load ``path`` (or ``$NSGOV_CONFIG``, or the default file if present)."""

        candidate = path or _path(os.getenv(CONFIG_ENV))
        data: Dict[str, Any] = {}
        if candidate is not None or DEFAULT_CONFIG_PATH.exists():
            data = _load_yaml(candidate or DEFAULT_CONFIG_PATH)
        config = cls.from_mapping(data)
        config.apply_env()
        return config

    def apply_env(self) -> None:
        kubectl = os.getenv("NSGOV_KUBECTL")
        if kubectl:
            self.gateway.kubectl_cmd = kubectl
        api_url = os.getenv("NSGOV_API_URL")
        if api_url:
            self.gateway.api_url = api_url
        backup_dir = os.getenv("NSGOV_BACKUP_DIR")
        if backup_dir:
            self.backups.dir = Path(backup_dir)


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, Mapping):
        raise ValidationError(f"Config section '{key}' must be a mapping")
    return value


def _path(value: Any) -> Optional[Path]:
    return Path(value) if value else None


def _float(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


def _load_yaml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except FileNotFoundError as exc:
        raise ValidationError(f"Config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ValidationError(f"Config file {path} is not valid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError("Config file must contain a mapping")
    return data


__all__ = [
    "BackupConfig",
    "DiagnosticsConfig",
    "GatewayConfig",
    "GovernorConfig",
    "LifecycleConfig",
    "SweeperConfig",
]
