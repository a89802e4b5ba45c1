"""Typed domain representations shared by the feeds and the settlement engine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum


class JudgeVerdict(str, Enum):
    """Closed vocabulary accepted from the natural-language judge."""

    WON = "WON"
    LOST = "LOST"
    VOID = "VOID"
    PENDING = "PENDING"


@dataclass(slots=True, frozen=True)
class FinalScore:
    """Score pair for a concluded (or in-progress) event."""

    home_team: str
    away_team: str
    home_score: int
    away_score: int

    @property
    def total(self) -> int:
        return self.home_score + self.away_score

    @property
    def label(self) -> str:
        return f"{self.home_score}-{self.away_score}"


@dataclass(slots=True, frozen=True)
class EvidenceRecord:
    """Authoritative feed snapshot for one event, built fresh every pass."""

    event_id: str | None
    competition_key: str
    score: FinalScore
    completed: bool
    commence_time: datetime | None = None

    @property
    def matchup(self) -> str:
        return f"{self.score.home_team} vs {self.score.away_team}"

    @property
    def state_label(self) -> str:
        return "Final" if self.completed else "In progress / not started"


def ensure_utc(value: datetime | None) -> datetime | None:
    """Treat naive timestamps (SQLite round-trips) as UTC."""

    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
