"""Rule-based settlement for selections that can be checked mechanically."""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

from app.domain import FinalScore
from app.models import LegStatus
from feeds.normalize import normalize_name

_DRAW_SELECTIONS = frozenset({"draw", "tie", "empate"})
_TOTAL_PATTERN = re.compile(
    r"^(?P<side>over|under|mas de|menos de)\s+(?P<line>\d+(?:[.,]\d+)?)"
    r"(?:\s+(?:goals?|goles|points|puntos|runs|carreras|total))?$"
)


def _parse_line(raw: str) -> Decimal | None:
    try:
        return Decimal(raw.replace(",", "."))
    except InvalidOperation:
        return None


def _evaluate_total(selection: str, total: int) -> LegStatus | None:
    match = _TOTAL_PATTERN.match(selection)
    if match is None:
        return None
    line = _parse_line(match.group("line"))
    if line is None or line <= 0:
        return None
    if total == line:
        # Push on a whole-number line; refund rules vary, so the judge decides.
        return None
    over = match.group("side") in {"over", "mas de"}
    return LegStatus.WON if (total > line) == over else LegStatus.LOST


def evaluate(selection: str, score: FinalScore) -> LegStatus | None:
    """Settle ``selection`` against a final score, or return ``None`` when undecided.

    Decidable shapes are a participant name (moneyline), an explicit draw, and
    an over/under line on the combined score. Anything else is left to the
    natural-language judge. The function has no side effects.
    """

    normalized = normalize_name(selection or "")
    if not normalized:
        return None

    home = normalize_name(score.home_team)
    away = normalize_name(score.away_team)

    if normalized == home:
        return LegStatus.WON if score.home_score > score.away_score else LegStatus.LOST
    if normalized == away:
        return LegStatus.WON if score.away_score > score.home_score else LegStatus.LOST
    if normalized in _DRAW_SELECTIONS:
        return LegStatus.WON if score.home_score == score.away_score else LegStatus.LOST
    return _evaluate_total(normalized, score.total)


__all__ = ["evaluate"]
