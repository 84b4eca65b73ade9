import math

import numpy as np
from sklearn.linear_model import Ridge

from src.fuel_opr.alliance_opr import (
    AllianceSample,
    FuelOPRFitSummary,
    build_alliance_samples,
    build_normal_equations,
    calculate_fuel_opr,
    gaussian_elimination_solve,
    get_eligible_matches,
    parse_team_key,
    to_number,
)


def _sum_values(source, teams):
    return sum(source.get(team, 0) for team in teams)


def _build_match(key, red_teams, blue_teams, auto_by_team, teleop_by_team, comp_level="qm"):
    red_auto = _sum_values(auto_by_team, red_teams)
    blue_auto = _sum_values(auto_by_team, blue_teams)
    red_teleop = _sum_values(teleop_by_team, red_teams)
    blue_teleop = _sum_values(teleop_by_team, blue_teams)
    return {
        "key": key,
        "event_key": "test2026",
        "comp_level": comp_level,
        "alliances": {
            "red": {"score": red_auto + red_teleop, "team_keys": [f"frc{t}" for t in red_teams]},
            "blue": {"score": blue_auto + blue_teleop, "team_keys": [f"frc{t}" for t in blue_teams]},
        },
        "score_breakdown": {
            "red": {
                "hubScore": {
                    "autoCount": red_auto,
                    "teleopCount": red_teleop,
                    "totalCount": red_auto + red_teleop,
                }
            },
            "blue": {
                "hubScore": {
                    "autoCount": blue_auto,
                    "teleopCount": blue_teleop,
                    "totalCount": blue_auto + blue_teleop,
                }
            },
        },
    }


def _offset_hub_counts(match, red_auto, red_teleop, blue_auto, blue_teleop):
    out = {
        "key": match["key"],
        "event_key": match["event_key"],
        "comp_level": match["comp_level"],
        "alliances": match["alliances"],
        "score_breakdown": {},
    }
    offsets = {"red": (red_auto, red_teleop), "blue": (blue_auto, blue_teleop)}
    for alliance, (auto_offset, teleop_offset) in offsets.items():
        hub = match["score_breakdown"][alliance]["hubScore"]
        auto = hub["autoCount"] + auto_offset
        teleop = hub["teleopCount"] + teleop_offset
        out["score_breakdown"][alliance] = {
            "hubScore": {"autoCount": auto, "teleopCount": teleop, "totalCount": auto + teleop}
        }
    return out


DETERMINISTIC_AUTO = {1: 20, 2: 25, 3: 15, 4: 14, 5: 13, 6: 18}
DETERMINISTIC_TELEOP = {1: 30, 2: 20, 3: 10, 4: 40, 5: 35, 6: 25}

REALISTIC_AUTO = {101: 46, 102: 38, 103: 34, 104: 29, 105: 24, 106: 18}
REALISTIC_TELEOP = {101: 180, 102: 150, 103: 132, 104: 120, 105: 98, 106: 84}

FIVE_MATCH_ROTATION = [
    ([1, 2, 3], [4, 5, 6]),
    ([1, 4, 5], [2, 3, 6]),
    ([1, 2, 6], [3, 4, 5]),
    ([1, 3, 5], [2, 4, 6]),
    ([1, 4, 6], [2, 3, 5]),
]

FIVE_MATCH_NOISE = [
    (1, -3, -1, 4),
    (-2, 5, 1, -4),
    (2, -2, -1, 3),
    (-1, 4, 2, -3),
    (1, 3, -2, -2),
]


def _deterministic_matches():
    return [
        _build_match(f"test2026_qm{idx + 1}", red, blue, DETERMINISTIC_AUTO, DETERMINISTIC_TELEOP)
        for idx, (red, blue) in enumerate(FIVE_MATCH_ROTATION)
    ]


def _realistic_teams(teams):
    return [team + 100 for team in teams]


def _noisy_realistic_matches():
    matches = []
    for idx, (red, blue) in enumerate(FIVE_MATCH_ROTATION):
        base = _build_match(
            f"test2026_qm{idx + 20}",
            _realistic_teams(red),
            _realistic_teams(blue),
            REALISTIC_AUTO,
            REALISTIC_TELEOP,
        )
        matches.append(_offset_hub_counts(base, *FIVE_MATCH_NOISE[idx]))
    return matches


def test_tiny_lambda_reconstructs_alliance_totals():
    result = calculate_fuel_opr(_deterministic_matches(), ridge_lambda=1e-6)

    assert result.ridge_lambda == 1e-6
    assert result.match_count == 5
    assert result.alliance_samples == 10
    assert len(result.teams) == 6
    assert len(result.fit_samples) == 10
    assert result.fit_summary.sample_count == 10

    by_team = result.team_map()
    for team in range(1, 7):
        assert by_team[team].matches_played == 5

    for red, blue in FIVE_MATCH_ROTATION:
        for alliance in (red, blue):
            expected_auto = _sum_values(DETERMINISTIC_AUTO, alliance)
            expected_teleop = _sum_values(DETERMINISTIC_TELEOP, alliance)
            predicted_auto = sum(by_team[t].auto_fuel_opr for t in alliance)
            predicted_teleop = sum(by_team[t].teleop_fuel_opr for t in alliance)
            predicted_total = sum(by_team[t].total_fuel_opr for t in alliance)
            assert abs(predicted_auto - expected_auto) < 0.01
            assert abs(predicted_teleop - expected_teleop) < 0.01
            assert abs(predicted_total - (expected_auto + expected_teleop)) < 0.02

    for row in result.teams:
        assert abs(row.total_fuel_opr - (row.auto_fuel_opr + row.teleop_fuel_opr)) < 1e-7

    assert result.fit_summary.mae.auto_fuel < 0.01
    assert result.fit_summary.mae.teleop_fuel < 0.01
    assert result.fit_summary.mae.total_fuel < 0.02
    assert by_team[2].auto_fuel_opr > by_team[5].auto_fuel_opr
    assert by_team[4].teleop_fuel_opr > by_team[3].teleop_fuel_opr


def test_teams_sorted_and_fit_samples_follow_match_order():
    result = calculate_fuel_opr(_deterministic_matches(), ridge_lambda=0.75)
    assert [row.team_number for row in result.teams] == [1, 2, 3, 4, 5, 6]
    assert result.fit_samples[0].teams == (1, 2, 3)
    assert result.fit_samples[1].teams == (4, 5, 6)
    first = result.fit_samples[0]
    assert first.observed.total_fuel == 60 + 60
    assert math.isclose(first.residual.total_fuel, first.observed.total_fuel - first.modeled.total_fuel)


def test_playoff_matches_excluded_unless_requested():
    auto_by_team = {1: 8, 2: 9, 3: 10, 4: 7, 5: 6, 6: 5}
    teleop_by_team = {1: 18, 2: 19, 3: 20, 4: 17, 5: 16, 6: 15}
    qual = _build_match("test2026_qm4", [1, 2, 3], [4, 5, 6], auto_by_team, teleop_by_team, "qm")
    playoff = _build_match("test2026_sf1m1", [1, 4, 5], [2, 3, 6], auto_by_team, teleop_by_team, "sf")

    without_playoffs = calculate_fuel_opr([qual, playoff], ridge_lambda=0.75, include_playoffs=False)
    with_playoffs = calculate_fuel_opr([qual, playoff], ridge_lambda=0.75, include_playoffs=True)

    assert without_playoffs.match_count == 1
    assert without_playoffs.alliance_samples == 2
    assert with_playoffs.match_count == 2
    assert with_playoffs.alliance_samples == 4


def test_noisy_observations_keep_wide_ranking_gaps():
    result = calculate_fuel_opr(_noisy_realistic_matches(), ridge_lambda=0.75)

    assert result.match_count == 5
    assert result.alliance_samples == 10
    assert result.fit_summary.mae.total_fuel > 0
    assert result.fit_summary.rmse.total_fuel > 0
    assert result.fit_summary.mae.auto_fuel < 6
    assert result.fit_summary.mae.teleop_fuel < 25
    assert result.fit_summary.mae.total_fuel < 30

    by_team = result.team_map()
    assert by_team[102].auto_fuel_opr > by_team[106].auto_fuel_opr
    assert by_team[101].total_fuel_opr > by_team[106].total_fuel_opr
    assert by_team[102].teleop_fuel_opr > by_team[105].teleop_fuel_opr


def test_solver_matches_sklearn_ridge_without_intercept():
    matches = _noisy_realistic_matches()
    ridge_lambda = 0.3
    result = calculate_fuel_opr(matches, ridge_lambda=ridge_lambda)

    samples, _ = build_alliance_samples(matches)
    team_numbers = [row.team_number for row in result.teams]
    design = np.zeros((len(samples), len(team_numbers)))
    for row_idx, sample in enumerate(samples):
        for team in sample.teams:
            design[row_idx, team_numbers.index(team)] = 1.0

    for attribute, target in (
        ("auto_fuel_opr", [s.auto_fuel for s in samples]),
        ("teleop_fuel_opr", [s.teleop_fuel for s in samples]),
        ("total_fuel_opr", [s.total_fuel for s in samples]),
    ):
        reference = Ridge(alpha=ridge_lambda, fit_intercept=False).fit(design, np.array(target))
        ours = np.array([getattr(row, attribute) for row in result.teams])
        assert np.allclose(ours, reference.coef_, atol=1e-6)


def test_normal_equations_only_count_alliance_members():
    ata, atb = build_normal_equations([[0, 1, 2], [1, 2, 3]], [10.0, 20.0], 4, 0.5)
    assert ata[1, 2] == 2.0
    assert ata[0, 3] == 0.0
    assert ata[0, 0] == 1.5
    assert ata[1, 1] == 2.5
    assert list(atb) == [10.0, 30.0, 30.0, 20.0]


def test_gaussian_elimination_matches_numpy_solve():
    matrix = np.array([[2.0, 1.0, -1.0], [-3.0, -1.0, 2.0], [-2.0, 1.0, 2.0]])
    vector = np.array([8.0, -11.0, -3.0])
    solution = gaussian_elimination_solve(matrix, vector)
    assert np.allclose(solution, [2.0, 3.0, -1.0])
    # Inputs are left untouched.
    assert matrix[0, 0] == 2.0
    assert vector[0] == 8.0


def test_gaussian_elimination_keeps_first_row_on_pivot_tie():
    # |1| and |-1| tie in the first column, so row 0 stays the pivot row.
    solution = gaussian_elimination_solve(np.array([[1.0, 2.0], [-1.0, 3.0]]), np.array([1.0, 0.0]))

    # Without a swap: row 1 becomes [0, 5 | 1], x1 = 1 / 5, x0 = 1 - 2 * x1.
    x1 = 1.0 / 5.0
    unswapped_x0 = 1.0 - 2.0 * x1
    # With a swap the first row would be [1, -3 | -0.0] and x0 = 0 + 3 * x1.
    swapped_x0 = -0.0 + 3.0 * x1
    assert unswapped_x0 != swapped_x0

    assert solution[1] == x1
    assert solution[0] == unswapped_x0


def test_singular_system_falls_back_to_zero_vector():
    solution = gaussian_elimination_solve(np.ones((3, 3)), np.array([1.0, 2.0, 3.0]))
    assert list(solution) == [0.0, 0.0, 0.0]

    match = _build_match("test2026_qm1", [1, 2, 3], [4, 5, 6], DETERMINISTIC_AUTO, DETERMINISTIC_TELEOP)
    result = calculate_fuel_opr([match], ridge_lambda=0.0)
    assert all(row.total_fuel_opr == 0.0 for row in result.teams)


def test_empty_and_single_appearance_inputs_are_safe():
    empty = calculate_fuel_opr([])
    assert empty.teams == ()
    assert empty.match_count == 0
    assert empty.alliance_samples == 0
    assert empty.fit_samples == ()
    assert empty.fit_summary == FuelOPRFitSummary()
    assert empty.fit_summary.rmse.total_fuel == 0.0

    single = calculate_fuel_opr(_deterministic_matches()[:1], ridge_lambda=0.75)
    assert single.match_count == 1
    assert len(single.teams) == 6
    for row in single.teams:
        assert row.matches_played == 1
        assert math.isfinite(row.auto_fuel_opr)
        assert math.isfinite(row.teleop_fuel_opr)
        assert math.isfinite(row.total_fuel_opr)


def test_malformed_records_are_skipped():
    good = _build_match("test2026_qm1", [1, 2, 3], [4, 5, 6], DETERMINISTIC_AUTO, DETERMINISTIC_TELEOP)

    bad_keys = _build_match("test2026_qm2", [1, 4, 5], [2, 3, 6], DETERMINISTIC_AUTO, DETERMINISTIC_TELEOP)
    bad_keys["alliances"]["red"]["team_keys"] = ["frc1", "frcABC", "frc5"]

    one_sided = _build_match("test2026_qm3", [1, 2, 6], [3, 4, 5], DETERMINISTIC_AUTO, DETERMINISTIC_TELEOP)
    one_sided["score_breakdown"]["blue"] = {}

    no_breakdown = _build_match("test2026_qm4", [1, 3, 5], [2, 4, 6], DETERMINISTIC_AUTO, DETERMINISTIC_TELEOP)
    no_breakdown["score_breakdown"] = None

    duplicate_team = _build_match("test2026_qm5", [1, 1, 6], [2, 3, 5], DETERMINISTIC_AUTO, DETERMINISTIC_TELEOP)

    samples, match_count = build_alliance_samples(
        [good, bad_keys, one_sided, no_breakdown, duplicate_team, "not a match"]
    )
    assert match_count == 4
    assert [sample.teams for sample in samples] == [
        (1, 2, 3),
        (4, 5, 6),
        (2, 3, 6),
        (1, 2, 6),
        (2, 3, 5),
    ]

    eligible = get_eligible_matches([good, bad_keys, one_sided, no_breakdown], include_playoffs=False)
    assert [match["key"] for match in eligible] == ["test2026_qm1", "test2026_qm2"]


def test_non_numeric_counts_read_as_zero():
    match = _build_match("test2026_qm1", [1, 2, 3], [4, 5, 6], DETERMINISTIC_AUTO, DETERMINISTIC_TELEOP)
    match["score_breakdown"]["red"]["hubScore"] = {"autoCount": "12", "teleopCount": None, "totalCount": True}
    samples, _ = build_alliance_samples([match])
    assert samples[0] == AllianceSample(teams=(1, 2, 3), auto_fuel=0.0, teleop_fuel=0.0, total_fuel=0.0)
    assert to_number(float("nan")) == 0.0
    assert to_number(7) == 7.0


def test_parse_team_key():
    assert parse_team_key("frc254") == 254
    assert parse_team_key("frc254B") == 254
    assert parse_team_key("frcABC") is None
    assert parse_team_key("frc") is None
    assert parse_team_key(None) is None


def test_repeated_calls_are_identical():
    matches = _noisy_realistic_matches()
    first = calculate_fuel_opr(matches, ridge_lambda=0.3)
    second = calculate_fuel_opr(matches, ridge_lambda=0.3)
    assert first == second
