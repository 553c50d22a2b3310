#!/usr/bin/env python3
"""
Summarise governed namespaces by stage and team.

Writes a per-namespace CSV (days until expiry, overdue reviews) and a JSON
summary that operators can attach to capacity reviews.
"""

from __future__ import annotations

import argparse
import json
from datetime import date
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import pandas as pd

from src.common.clock import utcnow
from src.common.config import GovernorConfig
from src.engine.engine import GovernanceEngine
from src.lifecycle.record import NamespaceRecord

COLUMNS = [
    "name",
    "team",
    "environment",
    "stage",
    "created_at",
    "retention_days",
    "expires_at",
    "days_to_expiry",
    "review_overdue",
    "reclaiming",
]


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Namespace fleet report.")
    parser.add_argument("--config", type=Path, default=None, help="Governor YAML configuration.")
    parser.add_argument(
        "--state-file",
        type=Path,
        default=None,
        help="Read from a simulated cluster state file instead of a live cluster.",
    )
    parser.add_argument(
        "--out-csv",
        type=Path,
        default=Path("data/reports/namespaces.csv"),
        help="Per-namespace CSV output.",
    )
    parser.add_argument(
        "--summary-json",
        type=Path,
        default=Path("data/reports/fleet_summary.json"),
        help="Aggregated JSON output.",
    )
    parser.add_argument(
        "--horizon-days",
        type=int,
        default=14,
        help="Count namespaces expiring within this many days.",
    )
    return parser.parse_args()


def build_frame(records: Iterable[NamespaceRecord], today: date) -> pd.DataFrame:
    rows = [
        {
            "name": record.name,
            "team": record.team,
            "environment": record.environment,
            "stage": record.stage.value,
            "created_at": record.created_at.isoformat(),
            "retention_days": record.retention_days,
            "expires_at": record.expires_at.isoformat(),
            "days_to_expiry": (record.expires_at - today).days,
            "review_overdue": record.review_at <= today,
            "reclaiming": record.reclaiming,
        }
        for record in records
    ]
    frame = pd.DataFrame(rows, columns=COLUMNS)
    return frame.sort_values(["days_to_expiry", "name"]).reset_index(drop=True)


def summarize(frame: pd.DataFrame, horizon_days: int) -> Dict[str, Any]:
    if frame.empty:
        return {"total": 0, "by_stage": {}, "by_team": {}, "expiring_soon": [], "expired": [], "reviews_overdue": 0}
    by_team = (
        frame.groupby("team")
        .agg(namespaces=("name", "count"), min_days_to_expiry=("days_to_expiry", "min"))
        .sort_index()
    )
    expiring = frame[(frame["days_to_expiry"] >= 0) & (frame["days_to_expiry"] <= horizon_days)]
    return {
        "total": int(len(frame)),
        "by_stage": {stage: int(count) for stage, count in frame["stage"].value_counts().sort_index().items()},
        "by_team": {
            team: {"namespaces": int(row["namespaces"]), "min_days_to_expiry": int(row["min_days_to_expiry"])}
            for team, row in by_team.iterrows()
        },
        "expiring_soon": expiring["name"].tolist(),
        "expired": frame.loc[frame["days_to_expiry"] < 0, "name"].tolist(),
        "reviews_overdue": int(frame["review_overdue"].sum()),
    }


def load_engine(config_path: Optional[Path], state_file: Optional[Path]) -> GovernanceEngine:
    config = GovernorConfig.load(config_path)
    if state_file is not None:
        config.gateway.kind = "memory"
        config.gateway.state_file = state_file
    return GovernanceEngine.from_config(config)


def main() -> None:
    args = parse_args()
    engine = load_engine(args.config, args.state_file)
    frame = build_frame(engine.list(), utcnow().date())

    args.out_csv.parent.mkdir(parents=True, exist_ok=True)
    frame.to_csv(args.out_csv, index=False)

    summary = summarize(frame, args.horizon_days)
    args.summary_json.parent.mkdir(parents=True, exist_ok=True)
    args.summary_json.write_text(json.dumps(summary, indent=2), encoding="utf-8")
    print(f"{summary['total']} namespace(s); {len(summary['expired'])} expired; CSV at {args.out_csv}")


if __name__ == "__main__":
    main()
