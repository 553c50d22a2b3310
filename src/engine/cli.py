from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, List, NoReturn, Optional

import typer

from src.common.config import GovernorConfig
from src.common.errors import (
    BackupFailure,
    GatewayError,
    GovernanceError,
    InvalidTransitionError,
    NotFoundError,
    UnknownStageError,
    ValidationError,
)
from src.diagnostics.scorer import DiagnosticReport
from src.lifecycle.record import NamespaceRecord

from .engine import GovernanceEngine, NamespaceSpec

app = typer.Typer(help="Govern namespace lifecycle stages, policies and expiry.")

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_GATEWAY = 2
EXIT_BACKUP = 3


def exit_code_for(exc: BaseException) -> int:
    if isinstance(exc, BackupFailure):
        return EXIT_BACKUP
    if isinstance(exc, (ValidationError, InvalidTransitionError, NotFoundError, UnknownStageError)):
        return EXIT_INVALID
    return EXIT_GATEWAY


def describe_error(exc: BaseException, verbose: bool) -> str:
    lines = [f"{type(exc).__name__}: {exc}"]
    if verbose:
        cause = exc.__cause__ or exc.__context__
        while cause is not None:
            lines.append(f"  caused by {type(cause).__name__}: {cause}")
            cause = cause.__cause__ or cause.__context__
    return "\n".join(lines)


class _State:
    def __init__(
        self,
        config_path: Optional[Path],
        state_file: Optional[Path],
        verbose: bool,
        timeout: Optional[float] = None,
    ) -> None:
        self.config_path = config_path
        self.state_file = state_file
        self.verbose = verbose
        self.timeout = timeout
        self._engine: Optional[GovernanceEngine] = None

    def engine(self) -> GovernanceEngine:
        if self._engine is None:
            config = GovernorConfig.load(self.config_path)
            if self.state_file is not None:
                config.gateway.kind = "memory"
                config.gateway.state_file = self.state_file
            if self.timeout is not None:
                config.gateway.deadline_seconds = self.timeout
            self._engine = GovernanceEngine.from_config(config)
        return self._engine


def _fail(ctx: typer.Context, exc: BaseException, verbose: bool = False) -> NoReturn:
    state: _State = ctx.obj
    typer.echo(describe_error(exc, verbose or state.verbose), err=True)
    raise typer.Exit(code=exit_code_for(exc))


def _emit(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2))


def _print_record(record: NamespaceRecord) -> None:
    typer.echo(
        f"{record.name}: stage={record.stage} team={record.team} environment={record.environment} "
        f"policy={record.policy_ref} review={record.review_at} expires={record.expires_at}"
    )


def _print_report(report: DiagnosticReport, verbose: bool) -> None:
    typer.echo(f"Namespace {report.namespace}: {report.score}/{report.max_score} ({report.percentage:g}%) {report.bucket}")
    if verbose:
        for category, checks in report.by_category().items():
            typer.echo(f"  {category}:")
            for check, passed in checks.items():
                typer.echo(f"    [{'x' if passed else ' '}] {check}")
        for error in report.errors:
            typer.echo(f"  error: {error}")
    for rec in report.recommendations:
        typer.echo(f"  ({rec.priority}) {rec.message}")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Governor YAML configuration."),
    state_file: Optional[Path] = typer.Option(
        None,
        "--state-file",
        help="Simulate against a YAML cluster state file instead of a live cluster.",
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Debug logging and full error chains."),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        min=0.1,
        help="Seconds each cluster call may take, retries included.",
    ),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    ctx.obj = _State(config, state_file, verbose, timeout)


@app.command()
def create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Namespace name (DNS label)."),
    team: str = typer.Argument(..., help="Owning team."),
    environment: str = typer.Argument(..., help="Environment classification."),
    stage: str = typer.Argument("development", help="Stage to provision up to."),
    retention_days: Optional[int] = typer.Argument(None, help="Override the stage retention."),
    json_output: bool = typer.Option(False, "--json", help="Print the record as JSON."),
) -> None:
    try:
        spec = NamespaceSpec(name, team, environment, stage=stage, retention_days=retention_days)
        record = ctx.obj.engine().create(spec)
    except GovernanceError as exc:
        _fail(ctx, exc)
    if json_output:
        _emit(record.to_dict())
    else:
        _print_record(record)


@app.command()
def transition(
    ctx: typer.Context,
    name: str = typer.Argument(...),
    target_stage: str = typer.Argument(..., help="Stage to move to."),
    reason: str = typer.Argument("manual", help="Reason stored in the audit annotation."),
    json_output: bool = typer.Option(False, "--json"),
) -> None:
    try:
        record = ctx.obj.engine().transition(name, target_stage, reason)
    except GovernanceError as exc:
        _fail(ctx, exc)
    if json_output:
        _emit(record.to_dict())
    else:
        _print_record(record)


@app.command()
def diagnose(
    ctx: typer.Context,
    name: str = typer.Argument(...),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show every check."),
    json_output: bool = typer.Option(False, "--json"),
) -> None:
    try:
        report = ctx.obj.engine().diagnose(name)
    except GovernanceError as exc:
        _fail(ctx, exc, verbose)
    if json_output:
        _emit(report.to_dict())
    else:
        _print_report(report, verbose)


@app.command()
def sweep(
    ctx: typer.Context,
    grace_days: Optional[int] = typer.Argument(None, help="Days past expiry before reclamation."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only report eligible namespaces."),
    json_output: bool = typer.Option(False, "--json"),
) -> None:
    try:
        actions = ctx.obj.engine().sweep(grace_days=grace_days, dry_run=dry_run)
    except GovernanceError as exc:
        _fail(ctx, exc)
    if json_output:
        _emit([action.to_dict() for action in actions])
        return
    if not actions:
        typer.echo("No namespaces eligible for reclamation.")
    for action in actions:
        detail = f" ({action.detail})" if action.detail else ""
        typer.echo(f"{action.status:<16} {action.name} expired {action.expires_at}{detail}")


@app.command()
def delete(
    ctx: typer.Context,
    name: str = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    if not yes:
        typer.confirm(f"Back up and DELETE namespace {name}?", abort=True)
    try:
        action = ctx.obj.engine().delete(name)
    except GovernanceError as exc:
        _fail(ctx, exc)
    if action.status != "reclaimed":
        typer.echo(f"{name}: {action.status} ({action.detail})", err=True)
        raise typer.Exit(code=EXIT_GATEWAY)
    typer.echo(f"Deleted {name}; backup at {action.backup}")


@app.command()
def renew(
    ctx: typer.Context,
    name: str = typer.Argument(...),
    retention_days: Optional[int] = typer.Argument(None, help="New window counted from today."),
) -> None:
    try:
        record = ctx.obj.engine().renew(name, retention_days)
    except GovernanceError as exc:
        _fail(ctx, exc)
    _print_record(record)


@app.command()
def show(ctx: typer.Context, name: str = typer.Argument(...)) -> None:
    try:
        record = ctx.obj.engine().get(name)
    except GovernanceError as exc:
        _fail(ctx, exc)
    _emit(record.to_dict())


@app.command("list")
def list_namespaces(
    ctx: typer.Context,
    stage: Optional[str] = typer.Option(None, "--stage", help="Only namespaces in this stage."),
) -> None:
    try:
        records: List[NamespaceRecord] = ctx.obj.engine().list(stage)
    except GovernanceError as exc:
        _fail(ctx, exc)
    for record in records:
        _print_record(record)


@app.command()
def review(ctx: typer.Context) -> None:
    """List namespaces whose review date has passed."""

    try:
        records = ctx.obj.engine().due_for_review()
    except GovernanceError as exc:
        _fail(ctx, exc)
    if not records:
        typer.echo("No namespaces due for review.")
    for record in records:
        _print_record(record)


if __name__ == "__main__":  # pragma: no cover
    app()
