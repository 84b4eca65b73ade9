import logging
import math
import numbers
import re
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np


logger = logging.getLogger(__name__)

DEFAULT_LAMBDA = 0.75
PIVOT_EPSILON = 1e-12
QUALIFICATION_LEVEL = "qm"
ALLIANCE_COLORS = ("red", "blue")
ALLIANCE_SIZE = 3

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


@dataclass(frozen=True)
class AllianceSample:
    teams: Tuple[int, ...]
    auto_fuel: float
    teleop_fuel: float
    total_fuel: float


@dataclass(frozen=True)
class FuelCounts:
    auto_fuel: float = 0.0
    teleop_fuel: float = 0.0
    total_fuel: float = 0.0


@dataclass(frozen=True)
class FuelOPRFitSample:
    teams: Tuple[int, ...]
    observed: FuelCounts
    modeled: FuelCounts
    residual: FuelCounts


@dataclass(frozen=True)
class FuelOPRFitSummary:
    sample_count: int = 0
    mae: FuelCounts = FuelCounts()
    rmse: FuelCounts = FuelCounts()


@dataclass(frozen=True)
class FuelOPRTeamResult:
    team_number: int
    matches_played: int
    auto_fuel_opr: float
    teleop_fuel_opr: float
    total_fuel_opr: float


@dataclass(frozen=True)
class FuelOPRResult:
    ridge_lambda: float
    teams: Tuple[FuelOPRTeamResult, ...]
    match_count: int
    alliance_samples: int
    fit_samples: Tuple[FuelOPRFitSample, ...]
    fit_summary: FuelOPRFitSummary

    def team_map(self) -> Dict[int, FuelOPRTeamResult]:
        return {team.team_number: team for team in self.teams}


def to_number(value) -> float:
    # bool is an int subclass but never a score count.
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        return 0.0
    value = float(value)
    if not math.isfinite(value):
        return 0.0
    return value


def parse_team_key(team_key) -> Optional[int]:
    """Parse ``frc254`` style keys; anything without a leading integer yields None."""
    if isinstance(team_key, bool):
        return None
    if isinstance(team_key, int):
        return team_key
    if not isinstance(team_key, str):
        return None
    match = _LEADING_INT.match(team_key.replace("frc", "", 1))
    if match is None:
        return None
    return int(match.group(1))


def _mapping_or_none(value) -> Optional[Mapping]:
    return value if isinstance(value, Mapping) else None


def _alliance_breakdown(match: Mapping, alliance: str) -> Optional[Mapping]:
    score_breakdown = _mapping_or_none(match.get("score_breakdown"))
    if score_breakdown is None:
        return None
    return _mapping_or_none(score_breakdown.get(alliance))


def _hub_score(match: Mapping, alliance: str) -> Optional[Mapping]:
    breakdown = _alliance_breakdown(match, alliance)
    if breakdown is None:
        return None
    return _mapping_or_none(breakdown.get("hubScore"))


def alliance_team_numbers(match: Mapping, alliance: str) -> List[int]:
    alliances = _mapping_or_none(match.get("alliances")) or {}
    side = _mapping_or_none(alliances.get(alliance)) or {}
    team_keys = side.get("team_keys") or []
    if not isinstance(team_keys, (list, tuple)):
        return []

    teams = []
    for key in team_keys:
        number = parse_team_key(key)
        if number is not None:
            teams.append(number)
    return teams


def resolve_alliance_roster(match: Mapping, alliance: str) -> Optional[Tuple[int, ...]]:
    teams = alliance_team_numbers(match, alliance)
    if len(teams) != ALLIANCE_SIZE or len(set(teams)) != ALLIANCE_SIZE:
        return None
    return tuple(teams)


def observed_alliance_total(match: Mapping, alliance: str) -> float:
    hub_score = _hub_score(match, alliance) or {}
    return to_number(hub_score.get("totalCount"))


def passes_level_filter(match: Mapping, include_playoffs: bool) -> bool:
    return include_playoffs or match.get("comp_level") == QUALIFICATION_LEVEL


def get_eligible_matches(matches: Iterable[Mapping], include_playoffs: bool) -> List[Mapping]:
    eligible = []
    for match in matches:
        if not isinstance(match, Mapping):
            continue
        if not passes_level_filter(match, include_playoffs):
            continue
        if _hub_score(match, "red") is None or _hub_score(match, "blue") is None:
            continue
        eligible.append(match)
    return eligible


def build_alliance_sample(match: Mapping, alliance: str) -> Optional[AllianceSample]:
    hub_score = _hub_score(match, alliance)
    if hub_score is None:
        return None

    teams = resolve_alliance_roster(match, alliance)
    if teams is None:
        return None

    return AllianceSample(
        teams=teams,
        auto_fuel=to_number(hub_score.get("autoCount")),
        teleop_fuel=to_number(hub_score.get("teleopCount")),
        total_fuel=to_number(hub_score.get("totalCount")),
    )


def build_alliance_samples(
    matches: Iterable[Mapping],
    include_playoffs: bool = False,
) -> Tuple[List[AllianceSample], int]:
    samples: List[AllianceSample] = []
    match_count = 0
    skipped = 0

    for match in matches:
        if not isinstance(match, Mapping):
            skipped += 1
            continue
        if not passes_level_filter(match, include_playoffs):
            continue
        if _alliance_breakdown(match, "red") is None or _alliance_breakdown(match, "blue") is None:
            skipped += 1
            continue

        built = [build_alliance_sample(match, alliance) for alliance in ALLIANCE_COLORS]
        match_samples = [sample for sample in built if sample is not None]
        if not match_samples:
            skipped += 1
            continue

        samples.extend(match_samples)
        match_count += 1

    if skipped:
        logger.debug("Skipped %d match records without usable alliance data", skipped)
    return samples, match_count


def build_normal_equations(
    rows: Sequence[Sequence[int]],
    targets: Sequence[float],
    num_columns: int,
    ridge_lambda: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Assemble ``(A^T A + lambda I, A^T b)`` for a 0/1 design matrix.

    ``rows`` holds the column indices of the ones in each row, so only the
    nonzero entries are visited.
    """
    ata = np.zeros((num_columns, num_columns), dtype=float)
    atb = np.zeros(num_columns, dtype=float)

    for columns, target in zip(rows, targets):
        for i in columns:
            atb[i] += target
            for j in columns:
                ata[i, j] += 1.0

    for i in range(num_columns):
        ata[i, i] += ridge_lambda
    return ata, atb


def gaussian_elimination_solve(matrix: np.ndarray, vector: np.ndarray) -> np.ndarray:
    a = np.array(matrix, dtype=float, copy=True)
    b = np.array(vector, dtype=float, copy=True)
    n = a.shape[0]

    for pivot in range(n):
        max_row = pivot
        max_abs = abs(a[pivot, pivot])
        for row in range(pivot + 1, n):
            value = abs(a[row, pivot])
            # Strict comparison keeps the first maximum on ties.
            if value > max_abs:
                max_abs = value
                max_row = row

        if max_abs < PIVOT_EPSILON:
            logger.debug("Pivot %d below %g; returning zero solution", pivot, PIVOT_EPSILON)
            return np.zeros(n, dtype=float)

        if max_row != pivot:
            a[[pivot, max_row]] = a[[max_row, pivot]]
            b[pivot], b[max_row] = b[max_row], b[pivot]

        pivot_value = a[pivot, pivot]
        a[pivot, pivot:] = a[pivot, pivot:] / pivot_value
        b[pivot] = b[pivot] / pivot_value

        for row in range(pivot + 1, n):
            factor = a[row, pivot]
            if factor == 0:
                continue
            a[row, pivot:] = a[row, pivot:] - factor * a[pivot, pivot:]
            b[row] = b[row] - factor * b[pivot]

    x = np.zeros(n, dtype=float)
    for row in range(n - 1, -1, -1):
        total = b[row]
        for col in range(row + 1, n):
            total -= a[row, col] * x[col]
        x[row] = total
    return x


def solve_ridge_least_squares(
    rows: Sequence[Sequence[int]],
    targets: Sequence[float],
    num_columns: int,
    ridge_lambda: float,
) -> np.ndarray:
    if num_columns == 0:
        return np.zeros(0, dtype=float)
    ata, atb = build_normal_equations(rows, targets, num_columns, ridge_lambda)
    return gaussian_elimination_solve(ata, atb)


def _modeled_total(columns: Sequence[int], coefficients: np.ndarray) -> float:
    total = 0.0
    for index in columns:
        total += float(coefficients[index])
    return total


def build_fit_summary(fit_samples: Sequence[FuelOPRFitSample]) -> FuelOPRFitSummary:
    if not fit_samples:
        return FuelOPRFitSummary()

    abs_auto = abs_teleop = abs_total = 0.0
    sq_auto = sq_teleop = sq_total = 0.0
    for sample in fit_samples:
        residual = sample.residual
        abs_auto += abs(residual.auto_fuel)
        abs_teleop += abs(residual.teleop_fuel)
        abs_total += abs(residual.total_fuel)
        sq_auto += residual.auto_fuel ** 2
        sq_teleop += residual.teleop_fuel ** 2
        sq_total += residual.total_fuel ** 2

    count = len(fit_samples)
    return FuelOPRFitSummary(
        sample_count=count,
        mae=FuelCounts(abs_auto / count, abs_teleop / count, abs_total / count),
        rmse=FuelCounts(
            math.sqrt(sq_auto / count),
            math.sqrt(sq_teleop / count),
            math.sqrt(sq_total / count),
        ),
    )


def calculate_fuel_opr(
    matches: Iterable[Mapping],
    ridge_lambda: float = DEFAULT_LAMBDA,
    include_playoffs: bool = False,
) -> FuelOPRResult:
    samples, match_count = build_alliance_samples(matches, include_playoffs)

    matches_by_team: Dict[int, int] = defaultdict(int)
    for sample in samples:
        for team in sample.teams:
            matches_by_team[team] += 1

    team_numbers = sorted(matches_by_team.keys())
    if not team_numbers or not samples:
        return FuelOPRResult(
            ridge_lambda=ridge_lambda,
            teams=(),
            match_count=0,
            alliance_samples=0,
            fit_samples=(),
            fit_summary=FuelOPRFitSummary(),
        )

    team_index = {team: idx for idx, team in enumerate(team_numbers)}
    rows = [[team_index[team] for team in sample.teams] for sample in samples]
    num_teams = len(team_numbers)

    auto_opr = solve_ridge_least_squares(rows, [s.auto_fuel for s in samples], num_teams, ridge_lambda)
    teleop_opr = solve_ridge_least_squares(rows, [s.teleop_fuel for s in samples], num_teams, ridge_lambda)
    total_opr = solve_ridge_least_squares(rows, [s.total_fuel for s in samples], num_teams, ridge_lambda)

    teams = tuple(
        FuelOPRTeamResult(
            team_number=team,
            matches_played=matches_by_team[team],
            auto_fuel_opr=float(auto_opr[idx]),
            teleop_fuel_opr=float(teleop_opr[idx]),
            total_fuel_opr=float(total_opr[idx]),
        )
        for idx, team in enumerate(team_numbers)
    )

    fit_samples = []
    for sample, columns in zip(samples, rows):
        modeled = FuelCounts(
            _modeled_total(columns, auto_opr),
            _modeled_total(columns, teleop_opr),
            _modeled_total(columns, total_opr),
        )
        fit_samples.append(
            FuelOPRFitSample(
                teams=sample.teams,
                observed=FuelCounts(sample.auto_fuel, sample.teleop_fuel, sample.total_fuel),
                modeled=modeled,
                residual=FuelCounts(
                    sample.auto_fuel - modeled.auto_fuel,
                    sample.teleop_fuel - modeled.teleop_fuel,
                    sample.total_fuel - modeled.total_fuel,
                ),
            )
        )

    return FuelOPRResult(
        ridge_lambda=ridge_lambda,
        teams=teams,
        match_count=match_count,
        alliance_samples=len(samples),
        fit_samples=tuple(fit_samples),
        fit_summary=build_fit_summary(fit_samples),
    )
