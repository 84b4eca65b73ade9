import logging
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from .alliance_opr import ALLIANCE_SIZE, QUALIFICATION_LEVEL
from .lambda_selection import FuelOPRHybridResult, calculate_fuel_opr_hybrid


logger = logging.getLogger(__name__)

UNKNOWN_EVENT = "Unknown"
MIN_EVENT_MATCHES = 2
SCOUTING_COLUMNS = [
    "event_key",
    "match_number",
    "alliance_color",
    "team_number",
    "auto_fuel",
    "teleop_fuel",
    "timestamp",
    "scaled_auto_fuel",
    "scaled_teleop_fuel",
]


@dataclass(frozen=True)
class EventTeamFuelOPR:
    event_key: str
    team_number: int
    auto_fuel_opr: float
    teleop_fuel_opr: float
    total_fuel_opr: float
    ridge_lambda: float


def load_scouting_entries_csv(path: Optional[str]) -> pd.DataFrame:
    if not path or not Path(path).exists():
        return pd.DataFrame(columns=SCOUTING_COLUMNS)

    frame = pd.read_csv(path)
    for column in SCOUTING_COLUMNS:
        if column not in frame.columns:
            frame[column] = None

    frame["event_key"] = frame["event_key"].fillna(UNKNOWN_EVENT).astype(str).str.strip()
    frame.loc[frame["event_key"] == "", "event_key"] = UNKNOWN_EVENT
    frame["alliance_color"] = frame["alliance_color"].astype(str).str.strip().str.lower()
    for column in ("match_number", "team_number"):
        frame[column] = pd.to_numeric(frame[column], errors="coerce")
    for column in ("auto_fuel", "teleop_fuel", "timestamp", "scaled_auto_fuel", "scaled_teleop_fuel"):
        frame[column] = pd.to_numeric(frame[column], errors="coerce")

    before = len(frame)
    frame = frame.dropna(subset=["match_number", "team_number"])
    if len(frame) < before:
        logger.debug("Dropped %d scouting rows without match or team number", before - len(frame))
    frame["match_number"] = frame["match_number"].astype(int)
    frame["team_number"] = frame["team_number"].astype(int)
    return frame[SCOUTING_COLUMNS].reset_index(drop=True)


def _scaled_fuel(entry: Mapping) -> Tuple[float, float]:
    auto = entry.get("scaled_auto_fuel")
    if pd.isna(auto):
        auto = entry.get("auto_fuel")
    teleop = entry.get("scaled_teleop_fuel")
    if pd.isna(teleop):
        teleop = entry.get("teleop_fuel")
    auto = 0.0 if pd.isna(auto) else float(auto)
    teleop = 0.0 if pd.isna(teleop) else float(teleop)
    return auto, teleop


def _alliance_record(entries: Sequence[Mapping]) -> Tuple[dict, dict]:
    auto_total = 0.0
    teleop_total = 0.0
    for entry in entries:
        auto, teleop = _scaled_fuel(entry)
        auto_total += auto
        teleop_total += teleop

    alliance = {
        "score": auto_total + teleop_total,
        "team_keys": [f"frc{int(entry['team_number'])}" for entry in entries],
        "dq_team_keys": [],
        "surrogate_team_keys": [],
    }
    breakdown = {
        "hubScore": {
            "autoCount": auto_total,
            "teleopCount": teleop_total,
            "totalCount": auto_total + teleop_total,
        }
    }
    return alliance, breakdown


def build_matches_from_scouting(entries: pd.DataFrame) -> List[dict]:
    """
    Rebuild alliance-level match records from per-robot scouting rows.

    The latest entry per robot slot wins; matches without a full roster on
    both alliances are dropped.
    """
    if entries.empty:
        return []

    frame = entries.copy()
    frame["_order"] = range(len(frame))
    frame["_timestamp"] = frame["timestamp"].fillna(0.0)
    frame = frame.sort_values(["_timestamp", "_order"], kind="mergesort")
    latest = frame.drop_duplicates(
        subset=["event_key", "match_number", "alliance_color", "team_number"],
        keep="last",
    )
    latest = latest.sort_values(["_order"], kind="mergesort")

    matches = []
    for (event_key, match_number), group in latest.groupby(["event_key", "match_number"], sort=True):
        rows = group.to_dict("records")
        red_entries = [row for row in rows if row["alliance_color"] == "red"]
        blue_entries = [row for row in rows if row["alliance_color"] == "blue"]
        if len(red_entries) != ALLIANCE_SIZE or len(blue_entries) != ALLIANCE_SIZE:
            continue

        red_alliance, red_breakdown = _alliance_record(red_entries)
        blue_alliance, blue_breakdown = _alliance_record(blue_entries)
        red_score = red_alliance["score"]
        blue_score = blue_alliance["score"]
        if red_score > blue_score:
            winner = "red"
        elif blue_score > red_score:
            winner = "blue"
        else:
            winner = ""

        matches.append(
            {
                "key": f"{event_key}_qm{int(match_number)}",
                "event_key": event_key,
                "comp_level": QUALIFICATION_LEVEL,
                "match_number": int(match_number),
                "set_number": 1,
                "alliances": {"red": red_alliance, "blue": blue_alliance},
                "score_breakdown": {"red": red_breakdown, "blue": blue_breakdown},
                "winning_alliance": winner,
            }
        )

    logger.debug("Rebuilt %d complete matches from %d scouting rows", len(matches), len(entries))
    return matches


def group_matches_by_event(matches: Sequence[Mapping]) -> Dict[str, List[Mapping]]:
    matches_by_event: Dict[str, List[Mapping]] = defaultdict(list)
    for match in matches:
        if not isinstance(match, Mapping):
            continue
        event_key = match.get("event_key") or UNKNOWN_EVENT
        matches_by_event[str(event_key)].append(match)
    return matches_by_event


def calculate_hybrid_by_event(
    matches: Sequence[Mapping],
    include_playoffs: bool = False,
    **hybrid_options,
) -> Dict[str, FuelOPRHybridResult]:
    """Run the hybrid scheduler once per event; events with fewer than two matches are skipped."""
    matches_by_event = group_matches_by_event(matches)

    results: Dict[str, FuelOPRHybridResult] = {}
    for event_key in sorted(matches_by_event.keys()):
        event_matches = matches_by_event[event_key]
        if len(event_matches) < MIN_EVENT_MATCHES:
            logger.info("Skipping event %s with %d match(es)", event_key, len(event_matches))
            continue
        results[event_key] = calculate_fuel_opr_hybrid(
            event_matches,
            include_playoffs=include_playoffs,
            **hybrid_options,
        )
    return results


def calculate_fuel_opr_by_event(
    matches: Sequence[Mapping],
    include_playoffs: bool = False,
    **hybrid_options,
) -> Dict[Tuple[str, int], EventTeamFuelOPR]:
    hybrids = calculate_hybrid_by_event(matches, include_playoffs=include_playoffs, **hybrid_options)

    results: Dict[Tuple[str, int], EventTeamFuelOPR] = {}
    for event_key, hybrid in hybrids.items():
        for team in hybrid.opr.teams:
            results[(event_key, team.team_number)] = EventTeamFuelOPR(
                event_key=event_key,
                team_number=team.team_number,
                auto_fuel_opr=team.auto_fuel_opr,
                teleop_fuel_opr=team.teleop_fuel_opr,
                total_fuel_opr=team.total_fuel_opr,
                ridge_lambda=hybrid.selected_lambda,
            )
    return results
