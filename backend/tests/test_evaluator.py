from __future__ import annotations

import pytest

from app.domain import FinalScore
from app.models import LegStatus
from pipelines.evaluator import evaluate


def _score(home_score: int, away_score: int) -> FinalScore:
    return FinalScore(
        home_team="Arsenal", away_team="Chelsea", home_score=home_score, away_score=away_score
    )


def test_home_team_selection_wins():
    assert evaluate("Arsenal", _score(2, 1)) is LegStatus.WON


@pytest.mark.parametrize(
    ("selection", "home", "away", "expected"),
    [
        ("Arsenal", 0, 1, LegStatus.LOST),
        ("Arsenal", 1, 1, LegStatus.LOST),
        ("Chelsea", 0, 1, LegStatus.WON),
        ("chelsea ", 3, 1, LegStatus.LOST),
        ("Draw", 1, 1, LegStatus.WON),
        ("Empate", 2, 1, LegStatus.LOST),
        ("tie", 0, 0, LegStatus.WON),
    ],
)
def test_moneyline_and_draw(selection, home, away, expected):
    assert evaluate(selection, _score(home, away)) is expected


def test_over_line_on_combined_score():
    assert evaluate("Over 2.5", _score(2, 1)) is LegStatus.WON
    assert evaluate("Over 2.5", _score(1, 0)) is LegStatus.LOST


@pytest.mark.parametrize(
    ("selection", "home", "away", "expected"),
    [
        ("Más de 1.5 goles", 1, 1, LegStatus.WON),
        ("Under 2.5", 1, 0, LegStatus.WON),
        ("Under 2.5 Goals", 2, 2, LegStatus.LOST),
        ("Menos de 3,5", 3, 1, LegStatus.LOST),
    ],
)
def test_total_line_variants(selection, home, away, expected):
    assert evaluate(selection, _score(home, away)) is expected


@pytest.mark.parametrize(
    "selection",
    [
        "Over 3",  # push on a whole-number line
        "Arsenal -1.5",
        "Both teams to score",
        "Arsenal Over 1.5 team goals",
        "Double chance 1X",
        "",
    ],
)
def test_undecidable_shapes_are_deferred(selection):
    assert evaluate(selection, _score(2, 1)) is None


@pytest.mark.parametrize(
    ("selection", "score"),
    [("Arsenal", _score(2, 1)), ("Over 2.5", _score(1, 0)), ("Arsenal -1.5", _score(3, 0))],
)
def test_evaluate_is_deterministic(selection, score):
    first = evaluate(selection, score)
    second = evaluate(selection, score)
    assert first == second
    assert score == _score(score.home_score, score.away_score)
