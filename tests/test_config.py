import unittest
from pathlib import Path

import pytest

from src.common.config import GovernorConfig
from src.common.errors import ValidationError
from src.engine.engine import GovernanceEngine, build_gateway
from src.gateway.apiserver import ApiServerGateway
from src.gateway.kubectl import KubectlGateway
from src.gateway.memory import InMemoryGateway
from src.gateway.retry import RetryingGateway

REPO_ROOT = Path(__file__).resolve().parents[1]


class GovernorConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        config = GovernorConfig.from_mapping({})
        self.assertEqual(config.gateway.kind, "kubectl")
        self.assertEqual(config.sweeper.grace_days, 7)
        self.assertFalse(config.lifecycle.allow_reactivation)
        self.assertEqual(config.diagnostics.threshold, 0.8)
        self.assertIsNone(config.backups.kinds)

    def test_shipped_config_parses(self) -> None:
        config = GovernorConfig.load(REPO_ROOT / "configs" / "governor.yaml")
        self.assertIn(config.gateway.kind, {"kubectl", "apiserver", "memory"})
        self.assertIsNotNone(config.lifecycle.policies)

    def test_rejects_bad_values(self) -> None:
        with self.assertRaises(ValidationError):
            GovernorConfig.from_mapping({"gateway": {"kind": "ssh"}})
        with self.assertRaises(ValidationError):
            GovernorConfig.from_mapping({"diagnostics": {"threshold": 1.5}})
        with self.assertRaises(ValidationError):
            GovernorConfig.from_mapping({"sweeper": {"grace_days": "a week"}})
        with self.assertRaises(ValidationError):
            GovernorConfig.from_mapping({"gateway": ["kubectl"]})

    def test_build_gateway_by_kind(self) -> None:
        self.assertIsInstance(build_gateway(GovernorConfig.from_mapping({}).gateway), KubectlGateway)
        memory = GovernorConfig.from_mapping({"gateway": {"kind": "memory"}})
        self.assertIsInstance(build_gateway(memory.gateway), InMemoryGateway)
        api = GovernorConfig.from_mapping({"gateway": {"kind": "apiserver", "api_url": "http://127.0.0.1:8001"}})
        self.assertIsInstance(build_gateway(api.gateway), ApiServerGateway)


def test_load_reads_env(tmp_path, monkeypatch):
    path = tmp_path / "governor.yaml"
    path.write_text("gateway:\n  kind: apiserver\nsweeper:\n  grace_days: 3\n", encoding="utf-8")
    monkeypatch.setenv("NSGOV_CONFIG", str(path))
    monkeypatch.setenv("NSGOV_API_URL", "https://k8s.internal:6443")
    monkeypatch.setenv("NSGOV_BACKUP_DIR", str(tmp_path / "backups"))
    config = GovernorConfig.load()
    assert config.gateway.kind == "apiserver"
    assert config.gateway.api_url == "https://k8s.internal:6443"
    assert config.sweeper.grace_days == 3
    assert config.backups.dir == tmp_path / "backups"


def test_load_reports_missing_and_malformed_files(tmp_path):
    with pytest.raises(ValidationError, match="not found"):
        GovernorConfig.load(tmp_path / "absent.yaml")
    broken = tmp_path / "broken.yaml"
    broken.write_text("gateway: [unclosed\n", encoding="utf-8")
    with pytest.raises(ValidationError, match="not valid YAML"):
        GovernorConfig.load(broken)


def test_engine_from_config_wraps_gateway(tmp_path):
    config = GovernorConfig.from_mapping(
        {
            "gateway": {"kind": "memory"},
            "backups": {"dir": str(tmp_path)},
            "lifecycle": {"allow_reactivation": True, "policies": str(REPO_ROOT / "configs" / "policies.yaml")},
            "sweeper": {"grace_days": 14, "marker_ttl_minutes": 5},
        }
    )
    engine = GovernanceEngine.from_config(config)
    assert isinstance(engine.gateway, RetryingGateway)
    assert isinstance(engine.gateway.inner, InMemoryGateway)
    assert engine.grace_days == 14
    assert engine.state_machine.allow_reactivation
    assert engine.sweeper.marker_ttl.total_seconds() == 300
    assert engine.catalog.resolve("production").retention_days == 365


def test_pod_security_level_and_deadline(tmp_path):
    assert GovernorConfig.from_mapping({}).lifecycle.pod_security_level == "baseline"
    assert GovernorConfig.from_mapping({"lifecycle": {"pod_security_level": None}}).lifecycle.pod_security_level is None
    with pytest.raises(ValidationError):
        GovernorConfig.from_mapping({"lifecycle": {"pod_security_level": "strict"}})
    with pytest.raises(ValidationError):
        GovernorConfig.from_mapping({"gateway": {"deadline_seconds": -1}})

    config = GovernorConfig.from_mapping(
        {
            "gateway": {"kind": "memory", "retries": 2, "deadline_seconds": 12.5},
            "backups": {"dir": str(tmp_path)},
            "lifecycle": {"pod_security_level": "restricted"},
        }
    )
    engine = GovernanceEngine.from_config(config)
    assert engine.gateway.timeout_seconds == 12.5
    assert engine.pod_security_level == "restricted"
    config.gateway.deadline_seconds = None
    assert GovernanceEngine.from_config(config).gateway.timeout_seconds == 90.0
