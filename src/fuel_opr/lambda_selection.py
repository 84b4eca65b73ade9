import logging
import math
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from .alliance_opr import (
    ALLIANCE_COLORS,
    FuelOPRResult,
    calculate_fuel_opr,
    get_eligible_matches,
    observed_alliance_total,
    resolve_alliance_roster,
)


logger = logging.getLogger(__name__)

DEFAULT_SWEEP_LAMBDAS = (0.001, 0.003, 0.01, 0.03, 0.1, 0.3, 0.75, 1.0)
DEFAULT_HOLDOUT_FRACTION = 0.25
MIN_DEFAULT_HOLDOUT_MATCHES = 2

DEFAULT_HYBRID_FALLBACK_LAMBDA = 0.3
DEFAULT_HYBRID_MIN_MATCHES_FOR_SWEEP = 7
DEFAULT_HYBRID_UPDATE_EVERY_MATCHES = 3
DEFAULT_HYBRID_SMOOTHING = 0.35
DEFAULT_HYBRID_MIN_LAMBDA = 0.01
DEFAULT_HYBRID_MAX_LAMBDA = 0.75

MODE_FIXED = "fixed"
MODE_CARRY = "carry"
MODE_SWEPT = "swept"


@dataclass(frozen=True)
class FuelOPRLambdaSweepRow:
    ridge_lambda: float
    holdout_rmse: float


@dataclass(frozen=True)
class FuelOPRLambdaSweepResult:
    train_match_count: int
    holdout_match_count: int
    rows: Tuple[FuelOPRLambdaSweepRow, ...]
    best_lambda: Optional[float]


@dataclass(frozen=True)
class FuelOPRHybridTimelinePoint:
    match_count: int
    mode: str
    ridge_lambda: float
    swept_lambda: Optional[float]


@dataclass(frozen=True)
class FuelOPRHybridResult:
    opr: FuelOPRResult
    selected_lambda: float
    mode: str
    timeline: Tuple[FuelOPRHybridTimelinePoint, ...]
    latest_sweep: Optional[FuelOPRLambdaSweepResult]


def usable_lambdas(lambdas: Optional[Iterable[float]]) -> List[float]:
    if lambdas is None:
        lambdas = DEFAULT_SWEEP_LAMBDAS
    return [float(value) for value in lambdas if math.isfinite(value) and value > 0]


def holdout_rmse(trained: FuelOPRResult, holdout_matches: Sequence[Mapping]) -> float:
    """Root-mean-square error of summed total OPR against held-out alliance totals."""
    by_team = trained.team_map()
    squared_error_sum = 0.0
    sample_count = 0

    for match in holdout_matches:
        for alliance in ALLIANCE_COLORS:
            teams = resolve_alliance_roster(match, alliance)
            if teams is None:
                continue
            predicted = 0.0
            for team in teams:
                row = by_team.get(team)
                predicted += row.total_fuel_opr if row is not None else 0.0
            error = observed_alliance_total(match, alliance) - predicted
            squared_error_sum += error * error
            sample_count += 1

    if sample_count == 0:
        return math.inf
    return math.sqrt(squared_error_sum / sample_count)


def sweep_fuel_opr_lambda(
    matches: Iterable[Mapping],
    lambdas: Optional[Iterable[float]] = None,
    include_playoffs: bool = False,
    holdout_match_count: Optional[int] = None,
) -> FuelOPRLambdaSweepResult:
    candidates = usable_lambdas(lambdas)
    eligible = get_eligible_matches(matches, include_playoffs)

    if len(eligible) < 2 or not candidates:
        return FuelOPRLambdaSweepResult(
            train_match_count=len(eligible),
            holdout_match_count=0,
            rows=(),
            best_lambda=None,
        )

    if holdout_match_count is None:
        holdout_match_count = max(
            MIN_DEFAULT_HOLDOUT_MATCHES,
            int(math.floor(len(eligible) * DEFAULT_HOLDOUT_FRACTION)),
        )
    holdout_count = min(max(1, holdout_match_count), len(eligible) - 1)
    train_count = len(eligible) - holdout_count

    # Chronological split: later matches are predicted from earlier ones.
    train_matches = eligible[:train_count]
    holdout_matches = eligible[train_count:]

    rows = []
    for ridge_lambda in candidates:
        trained = calculate_fuel_opr(train_matches, ridge_lambda=ridge_lambda, include_playoffs=True)
        rows.append(FuelOPRLambdaSweepRow(ridge_lambda, holdout_rmse(trained, holdout_matches)))

    best: Optional[FuelOPRLambdaSweepRow] = None
    for row in rows:
        if not math.isfinite(row.holdout_rmse):
            continue
        if best is None or row.holdout_rmse < best.holdout_rmse:
            best = row

    best_lambda = best.ridge_lambda if best is not None else None
    logger.debug(
        "Lambda sweep over %d train / %d holdout matches chose %s",
        train_count,
        holdout_count,
        best_lambda,
    )
    return FuelOPRLambdaSweepResult(
        train_match_count=train_count,
        holdout_match_count=holdout_count,
        rows=tuple(rows),
        best_lambda=best_lambda,
    )


def calculate_fuel_opr_hybrid(
    matches: Sequence[Mapping],
    include_playoffs: bool = False,
    fallback_lambda: float = DEFAULT_HYBRID_FALLBACK_LAMBDA,
    min_matches_for_sweep: int = DEFAULT_HYBRID_MIN_MATCHES_FOR_SWEEP,
    update_every_matches: int = DEFAULT_HYBRID_UPDATE_EVERY_MATCHES,
    smoothing: float = DEFAULT_HYBRID_SMOOTHING,
    min_lambda: float = DEFAULT_HYBRID_MIN_LAMBDA,
    max_lambda: float = DEFAULT_HYBRID_MAX_LAMBDA,
    lambdas: Optional[Iterable[float]] = None,
) -> FuelOPRHybridResult:
    """
    Replay the event one match at a time and adapt the ridge strength.

    Before ``min_matches_for_sweep`` eligible matches the fallback lambda is
    used as-is. From then on a holdout sweep runs every
    ``update_every_matches`` matches and the current lambda moves
    ``smoothing`` of the way toward the sweep's choice, clamped to
    ``[min_lambda, max_lambda]``. The final fit uses every match passed in.

    The replay restarts from the first match on every call; nothing is
    carried between calls.
    """
    matches = list(matches)
    candidates = usable_lambdas(lambdas)
    step = max(1, update_every_matches)

    def clamp_lambda(value: float) -> float:
        return max(min_lambda, min(max_lambda, value))

    current_lambda = clamp_lambda(fallback_lambda)
    timeline: List[FuelOPRHybridTimelinePoint] = []
    latest_sweep: Optional[FuelOPRLambdaSweepResult] = None

    eligible = get_eligible_matches(matches, include_playoffs)

    for match_count in range(1, len(eligible) + 1):
        if match_count < min_matches_for_sweep or not candidates:
            timeline.append(FuelOPRHybridTimelinePoint(match_count, MODE_FIXED, current_lambda, None))
            continue

        if (match_count - min_matches_for_sweep) % step != 0:
            timeline.append(FuelOPRHybridTimelinePoint(match_count, MODE_CARRY, current_lambda, None))
            continue

        latest_sweep = sweep_fuel_opr_lambda(
            eligible[:match_count],
            lambdas=candidates,
            include_playoffs=True,
        )
        sweep_choice = latest_sweep.best_lambda if latest_sweep.best_lambda is not None else current_lambda
        blended = current_lambda * (1 - smoothing) + sweep_choice * smoothing
        current_lambda = clamp_lambda(blended)
        timeline.append(
            FuelOPRHybridTimelinePoint(match_count, MODE_SWEPT, current_lambda, latest_sweep.best_lambda)
        )

    opr = calculate_fuel_opr(matches, ridge_lambda=current_lambda, include_playoffs=include_playoffs)
    mode = timeline[-1].mode if timeline else MODE_FIXED
    logger.debug(
        "Hybrid lambda %.4f (%s) after %d eligible matches",
        current_lambda,
        mode,
        len(eligible),
    )
    return FuelOPRHybridResult(
        opr=opr,
        selected_lambda=current_lambda,
        mode=mode,
        timeline=tuple(timeline),
        latest_sweep=latest_sweep,
    )
