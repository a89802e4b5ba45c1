from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any

from dateutil import parser as date_parser

from app.domain import EvidenceRecord, FinalScore, ensure_utc


def normalize_name(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value)
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    return " ".join(stripped.casefold().split())


def matchup_key(label: str) -> str:
    """Return the join key used to match a leg's matchup against feed events.

    Labels are stored as ``"Home vs Away"``; the key is case-folded, stripped of
    accents and whitespace-collapsed so cosmetic differences do not break the join.
    """

    home, sep, away = label.partition(" vs ")
    if not sep:
        return normalize_name(label)
    return f"{normalize_name(home)} vs {normalize_name(away)}"


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str) and value:
        try:
            return ensure_utc(date_parser.isoparse(value))
        except ValueError:
            return None
    return None


def _team_score(scores: list[Any], team: str, *, completed: bool) -> int | None:
    """Score listed for ``team``; unlisted or blank counts as 0 only before the final."""

    for entry in scores:
        if not isinstance(entry, dict) or entry.get("name") != team:
            continue
        raw = entry.get("score")
        if raw in (None, ""):
            return None if completed else 0
        try:
            return int(str(raw).strip())
        except ValueError:
            return None
    return None if completed else 0


def normalize_score_event(
    payload: dict[str, Any], *, competition_key: str
) -> EvidenceRecord | None:
    """Convert a raw scores payload into an evidence record.

    Returns ``None`` when the payload cannot be trusted: missing team names,
    non-numeric scores, or an event flagged complete without a numeric score
    for both teams.
    """

    home = payload.get("home_team")
    away = payload.get("away_team")
    if not isinstance(home, str) or not isinstance(away, str) or not home or not away:
        return None

    completed = bool(payload.get("completed"))
    scores = payload.get("scores")
    if not isinstance(scores, list):
        if completed:
            return None
        scores = []

    home_score = _team_score(scores, home, completed=completed)
    away_score = _team_score(scores, away, completed=completed)
    if home_score is None or away_score is None:
        return None

    event_id = payload.get("id")
    return EvidenceRecord(
        event_id=str(event_id) if event_id is not None else None,
        competition_key=competition_key,
        score=FinalScore(
            home_team=home,
            away_team=away,
            home_score=home_score,
            away_score=away_score,
        ),
        completed=completed,
        commence_time=_parse_datetime(payload.get("commence_time")),
    )
