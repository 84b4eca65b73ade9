import argparse
import csv
import json
import logging
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from .alliance_opr import FuelOPRTeamResult
from .lambda_selection import (
    DEFAULT_HYBRID_FALLBACK_LAMBDA,
    DEFAULT_HYBRID_MAX_LAMBDA,
    DEFAULT_HYBRID_MIN_LAMBDA,
    DEFAULT_HYBRID_MIN_MATCHES_FOR_SWEEP,
    DEFAULT_HYBRID_SMOOTHING,
    DEFAULT_HYBRID_UPDATE_EVERY_MATCHES,
    DEFAULT_SWEEP_LAMBDAS,
    FuelOPRHybridResult,
)
from .scouting_matches import (
    build_matches_from_scouting,
    calculate_hybrid_by_event,
    load_scouting_entries_csv,
)


logger = logging.getLogger(__name__)


def parse_lambdas(raw: str) -> List[float]:
    values = []
    for part in raw.split(","):
        part = part.strip()
        if part:
            values.append(float(part))
    return values


def parse_args(argv: Optional[Sequence[str]] = None):
    parser = argparse.ArgumentParser(
        description="Estimate per-team fuel OPR from alliance totals with an adaptive ridge lambda."
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument(
        "--matches-json",
        help="Path to a JSON list of match records (The Blue Alliance match format).",
    )
    source.add_argument(
        "--scouting-csv",
        help="Path to per-robot scouting CSV; alliance totals are rebuilt from it.",
    )
    parser.add_argument(
        "--output-dir",
        default="reports",
        help="Directory for team, timeline and sweep outputs.",
    )
    parser.add_argument(
        "--include-playoffs",
        action="store_true",
        help="Use playoff matches as well as qualification matches.",
    )
    parser.add_argument("--fallback-lambda", type=float, default=DEFAULT_HYBRID_FALLBACK_LAMBDA)
    parser.add_argument("--min-matches-for-sweep", type=int, default=DEFAULT_HYBRID_MIN_MATCHES_FOR_SWEEP)
    parser.add_argument("--update-every-matches", type=int, default=DEFAULT_HYBRID_UPDATE_EVERY_MATCHES)
    parser.add_argument("--smoothing", type=float, default=DEFAULT_HYBRID_SMOOTHING)
    parser.add_argument("--min-lambda", type=float, default=DEFAULT_HYBRID_MIN_LAMBDA)
    parser.add_argument("--max-lambda", type=float, default=DEFAULT_HYBRID_MAX_LAMBDA)
    parser.add_argument(
        "--lambdas",
        type=parse_lambdas,
        default=list(DEFAULT_SWEEP_LAMBDAS),
        help="Comma-separated candidate lambdas for the holdout sweep.",
    )
    parser.add_argument(
        "--top",
        type=int,
        default=10,
        help="Number of teams to print.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def load_matches_json(path: str) -> List[dict]:
    with open(path) as f:
        payload = json.load(f)
    if not isinstance(payload, list):
        raise ValueError(f"Expected a JSON list of matches in {path}")
    for idx, item in enumerate(payload):
        if not isinstance(item, dict):
            raise ValueError(f"Match record {idx} in {path} is not an object")
    return payload


def rank_teams(teams: Sequence[FuelOPRTeamResult]) -> List[FuelOPRTeamResult]:
    return sorted(teams, key=lambda team: (-team.total_fuel_opr, team.team_number))


def write_team_rows(path: str, hybrids: Mapping[str, FuelOPRHybridResult]):
    """One row per (event_key, team_number); ranks restart within each event."""
    with open(path, "w", newline="") as f:
        writer = csv.DictWriter(
            f,
            fieldnames=[
                "event_key",
                "rank",
                "team_number",
                "matches_played",
                "auto_fuel_opr",
                "teleop_fuel_opr",
                "total_fuel_opr",
                "ridge_lambda",
            ],
        )
        writer.writeheader()
        for event_key, hybrid in hybrids.items():
            for rank, team in enumerate(rank_teams(hybrid.opr.teams), start=1):
                writer.writerow(
                    {
                        "event_key": event_key,
                        "rank": rank,
                        "team_number": team.team_number,
                        "matches_played": team.matches_played,
                        "auto_fuel_opr": round(team.auto_fuel_opr, 4),
                        "teleop_fuel_opr": round(team.teleop_fuel_opr, 4),
                        "total_fuel_opr": round(team.total_fuel_opr, 4),
                        "ridge_lambda": round(hybrid.selected_lambda, 6),
                    }
                )


def write_timeline_rows(path: str, hybrids: Mapping[str, FuelOPRHybridResult]):
    with open(path, "w", newline="") as f:
        writer = csv.DictWriter(
            f, fieldnames=["event_key", "match_count", "mode", "ridge_lambda", "swept_lambda"]
        )
        writer.writeheader()
        for event_key, hybrid in hybrids.items():
            for point in hybrid.timeline:
                writer.writerow(
                    {
                        "event_key": event_key,
                        "match_count": point.match_count,
                        "mode": point.mode,
                        "ridge_lambda": round(point.ridge_lambda, 6),
                        "swept_lambda": "" if point.swept_lambda is None else point.swept_lambda,
                    }
                )


def write_sweep_rows(path: str, hybrids: Mapping[str, FuelOPRHybridResult]):
    with open(path, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=["event_key", "ridge_lambda", "holdout_rmse", "is_best"])
        writer.writeheader()
        for event_key, hybrid in hybrids.items():
            sweep = hybrid.latest_sweep
            if sweep is None:
                continue
            for row in sweep.rows:
                writer.writerow(
                    {
                        "event_key": event_key,
                        "ridge_lambda": row.ridge_lambda,
                        "holdout_rmse": round(row.holdout_rmse, 4),
                        "is_best": row.ridge_lambda == sweep.best_lambda,
                    }
                )


def main(argv: Optional[Sequence[str]] = None) -> Dict[str, FuelOPRHybridResult]:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.matches_json:
        matches = load_matches_json(args.matches_json)
    else:
        matches = build_matches_from_scouting(load_scouting_entries_csv(args.scouting_csv))
    logger.info("Loaded %d match records", len(matches))

    hybrids = calculate_hybrid_by_event(
        matches,
        include_playoffs=args.include_playoffs,
        fallback_lambda=args.fallback_lambda,
        min_matches_for_sweep=args.min_matches_for_sweep,
        update_every_matches=args.update_every_matches,
        smoothing=args.smoothing,
        min_lambda=args.min_lambda,
        max_lambda=args.max_lambda,
        lambdas=args.lambdas,
    )
    if not hybrids:
        logger.warning("No event had enough matches to fit")

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    write_team_rows(str(output_dir / "fuel_opr_teams.csv"), hybrids)
    write_timeline_rows(str(output_dir / "fuel_opr_timeline.csv"), hybrids)
    write_sweep_rows(str(output_dir / "fuel_opr_sweep.csv"), hybrids)

    for event_key, hybrid in hybrids.items():
        summary = hybrid.opr.fit_summary
        print(
            f"{event_key}: lambda={hybrid.selected_lambda:.4f} mode={hybrid.mode} "
            f"matches={hybrid.opr.match_count} alliances={hybrid.opr.alliance_samples} "
            f"rmse_total={summary.rmse.total_fuel:.3f} mae_total={summary.mae.total_fuel:.3f}"
        )
        for rank, team in enumerate(rank_teams(hybrid.opr.teams)[: args.top], start=1):
            print(
                f"{rank:>3}. {team.team_number}: total={team.total_fuel_opr:.2f} "
                f"auto={team.auto_fuel_opr:.2f} teleop={team.teleop_fuel_opr:.2f} "
                f"matches={team.matches_played}"
            )
    return hybrids


if __name__ == "__main__":
    main()
