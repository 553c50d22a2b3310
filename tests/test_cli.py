import json
from datetime import datetime, timezone
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from src.common.errors import BackupRequiredError, GatewayUnavailable, NotFoundError, ValidationError
from src.engine.cli import (
    EXIT_BACKUP,
    EXIT_GATEWAY,
    EXIT_INVALID,
    _State,
    app,
    describe_error,
    exit_code_for,
)
from src.engine.engine import GovernanceEngine, NamespaceSpec
from src.gateway.memory import InMemoryGateway
from src.reclaim.backup import BackupCoordinator

runner = CliRunner()


def _write_config(tmp_path: Path, **overrides) -> Path:
    data = {
        "gateway": {"kind": "memory", "state_file": str(tmp_path / "cluster.yaml"), "retries": 0},
        "backups": {"dir": str(tmp_path / "backups")},
    }
    for section, values in overrides.items():
        data.setdefault(section, {}).update(values)
    path = tmp_path / "governor.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


def _invoke(config: Path, *args: str):
    return runner.invoke(app, ["--config", str(config), *args])


def _json(output: str):
    starts = [index for index, line in enumerate(output.splitlines()) if line.startswith(("{", "["))]
    assert starts, output
    text = "\n".join(output.splitlines()[starts[0]:])
    value, _ = json.JSONDecoder().raw_decode(text)
    return value


def _seed_expired(tmp_path: Path, name: str = "team-old-dev") -> None:
    gateway = InMemoryGateway(state_file=tmp_path / "cluster.yaml")
    engine = GovernanceEngine(
        gateway,
        BackupCoordinator(gateway, tmp_path / "backups"),
        clock=lambda: datetime(2020, 1, 1, tzinfo=timezone.utc),
    )
    engine.create(NamespaceSpec(name, "team-old", "dev", retention_days=30))


def test_create_show_and_transition(tmp_path):
    config = _write_config(tmp_path)
    created = _invoke(config, "create", "team-x-dev", "team-x", "dev", "--json")
    assert created.exit_code == 0, created.output
    assert _json(created.output)["stage"] == "development"

    moved = _invoke(config, "transition", "team-x-dev", "testing", "qa passed")
    assert moved.exit_code == 0, moved.output
    assert "stage=testing" in moved.output

    shown = _invoke(config, "show", "team-x-dev")
    record = _json(shown.output)
    assert record["stage"] == "testing"
    assert record["previous_stage"] == "development"

    listed = _invoke(config, "list", "--stage", "testing")
    assert "team-x-dev" in listed.output


def test_create_at_later_stage(tmp_path):
    config = _write_config(tmp_path)
    result = _invoke(config, "create", "team-x-prod", "team-x", "prod", "production", "--json")
    assert result.exit_code == 0, result.output
    record = _json(result.output)
    assert record["stage"] == "production"
    assert record["retention_days"] == 365


@pytest.mark.parametrize(
    "args",
    [
        ("create", "Team_X", "team-x", "dev"),
        ("create", "team-x-dev", "team-x", "dev", "nonsense"),
        ("show", "ghost"),
        ("transition", "ghost", "testing"),
    ],
)
def test_invalid_requests_exit_1(tmp_path, args):
    result = _invoke(_write_config(tmp_path), *args)
    assert result.exit_code == EXIT_INVALID


def test_disallowed_transition_exits_1(tmp_path):
    config = _write_config(tmp_path)
    _invoke(config, "create", "team-x-dev", "team-x", "dev")
    result = _invoke(config, "transition", "team-x-dev", "production")
    assert result.exit_code == EXIT_INVALID
    assert "InvalidTransitionError" in result.output


def test_unreachable_cluster_exits_2(tmp_path):
    config = _write_config(
        tmp_path,
        gateway={"kind": "kubectl", "state_file": None, "kubectl_cmd": str(tmp_path / "no-kubectl")},
    )
    result = _invoke(config, "list")
    assert result.exit_code == EXIT_GATEWAY
    assert "GatewayUnavailable" in result.output


def test_backup_failure_exits_3(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    config = _write_config(tmp_path, backups={"dir": str(blocker / "backups")})
    assert _invoke(config, "create", "team-x-dev", "team-x", "dev").exit_code == 0

    moved = _invoke(config, "transition", "team-x-dev", "deprecated")
    assert moved.exit_code == EXIT_BACKUP
    deleted = _invoke(config, "delete", "team-x-dev", "--yes")
    assert deleted.exit_code == EXIT_BACKUP
    assert "stage=development" in _invoke(config, "list").output

    provisioned = _invoke(config, "create", "team-x-old", "team-x", "dev", "deprecated")
    assert provisioned.exit_code == EXIT_BACKUP
    assert "team-x-old" not in _invoke(config, "list").output


def test_sweep_dry_run_then_reclaim(tmp_path):
    config = _write_config(tmp_path)
    _seed_expired(tmp_path)
    _invoke(config, "create", "team-x-dev", "team-x", "dev")

    preview = _invoke(config, "sweep", "--dry-run", "--json")
    assert preview.exit_code == 0, preview.output
    assert [(a["name"], a["status"]) for a in _json(preview.output)] == [("team-old-dev", "eligible")]

    reclaimed = _invoke(config, "sweep", "7")
    assert reclaimed.exit_code == 0, reclaimed.output
    assert "reclaimed" in reclaimed.output
    assert list((tmp_path / "backups" / "team-old-dev").glob("*.yaml"))

    assert "team-old-dev" not in _invoke(config, "list").output
    assert "No namespaces eligible" in _invoke(config, "sweep").output


def test_diagnose_renew_and_review(tmp_path):
    config = _write_config(tmp_path)
    _invoke(config, "create", "team-x-dev", "team-x", "dev")

    report = _json(_invoke(config, "diagnose", "team-x-dev", "--json").output)
    assert report["max_score"] == 10
    assert report["bucket"] in {"excellent", "good", "fair", "poor"}

    verbose = _invoke(config, "diagnose", "team-x-dev", "-v")
    assert "[x]" in verbose.output

    renewed = _invoke(config, "renew", "team-x-dev", "10")
    assert renewed.exit_code == 0, renewed.output
    assert "No namespaces due for review." in _invoke(config, "review").output

    assert _invoke(config, "delete", "team-x-dev", "-y").exit_code == 0
    assert _invoke(config, "diagnose", "team-x-dev").exit_code == EXIT_INVALID


def test_exit_code_mapping_and_error_chain():
    assert exit_code_for(ValidationError("bad")) == EXIT_INVALID
    assert exit_code_for(NotFoundError("gone")) == EXIT_INVALID
    assert exit_code_for(GatewayUnavailable("down")) == EXIT_GATEWAY
    assert exit_code_for(BackupRequiredError("no backup")) == EXIT_BACKUP

    try:
        try:
            raise OSError("disk full")
        except OSError as exc:
            raise BackupRequiredError("backup required") from exc
    except BackupRequiredError as exc:
        error = exc
    assert describe_error(error, verbose=False) == "BackupRequiredError: backup required"
    assert "caused by OSError: disk full" in describe_error(error, verbose=True)


def test_delete_asks_for_confirmation(tmp_path):
    config = _write_config(tmp_path)
    _invoke(config, "create", "team-x-dev", "team-x", "dev")

    declined = runner.invoke(app, ["--config", str(config), "delete", "team-x-dev"], input="n\n")
    assert declined.exit_code == 1
    assert "Aborted" in declined.output
    assert "team-x-dev" in _invoke(config, "list").output

    accepted = runner.invoke(app, ["--config", str(config), "delete", "team-x-dev"], input="y\n")
    assert accepted.exit_code == 0, accepted.output
    assert "Deleted team-x-dev" in accepted.output
    assert "team-x-dev" not in _invoke(config, "list").output


def test_transition_to_deleting_is_refused(tmp_path):
    config = _write_config(tmp_path)
    _invoke(config, "create", "team-x-dev", "team-x", "dev")
    _invoke(config, "transition", "team-x-dev", "deprecated")
    _invoke(config, "transition", "team-x-dev", "archived")

    result = _invoke(config, "transition", "team-x-dev", "deleting")
    assert result.exit_code == EXIT_INVALID
    assert "use delete" in result.output
    assert "stage=archived" in _invoke(config, "list").output


def test_timeout_option_bounds_gateway_calls(tmp_path):
    config = _write_config(tmp_path)
    state = _State(config, None, False, timeout=2.5)
    assert state.engine().gateway.timeout_seconds == 2.5
    assert _State(config, None, False).engine().gateway.timeout_seconds == 30.0

    result = runner.invoke(app, ["--config", str(config), "--timeout", "2.5", "list"])
    assert result.exit_code == 0, result.output
