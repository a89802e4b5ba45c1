"""Decide which pending legs are due for another look.

Everything here is a pure function of the clock and the leg's own fields, so
the schedule can be exercised without a database.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Protocol, Sequence

from loguru import logger

from app.core.config import Settings
from app.domain import ensure_utc
from app.models import LegStatus, TicketStatus

from .errors import RetryCeilingExceeded
from .policy import SettlementPolicy


class SkipReason(str, Enum):
    NOT_FINISHED = "not_finished"
    BACKOFF = "backoff"
    RETRY_CEILING = "retry_ceiling"
    SETTLED = "settled"
    TICKET_CLOSED = "ticket_closed"


class _TicketLike(Protocol):
    status: str


class _LegLike(Protocol):
    status: str
    competition: str | None
    matchup: str
    starts_at: datetime
    last_checked_at: datetime | None
    review_attempts: int
    ticket: _TicketLike


@dataclass(frozen=True, slots=True)
class BackoffSchedule:
    """Minutes to wait between checks, keyed by how many checks already failed."""

    steps: tuple[tuple[int, int], ...] = ((3, 30), (8, 60))
    ceiling_minutes: int = 120

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackoffSchedule":
        return cls(
            steps=tuple(sorted(tuple(step) for step in settings.backoff_schedule_minutes)),
            ceiling_minutes=settings.backoff_ceiling_minutes,
        )

    def interval(self, attempts: int) -> int:
        for max_attempts, minutes in self.steps:
            if attempts <= max_attempts:
                return minutes
        return self.ceiling_minutes


def estimated_end(starts_at: datetime, duration_hours: float) -> datetime:
    return ensure_utc(starts_at) + timedelta(hours=duration_hours)


@dataclass(frozen=True, slots=True)
class ScheduleState:
    now: datetime
    starts_at: datetime
    duration_hours: float
    last_checked_at: datetime | None
    attempts: int
    backoff: BackoffSchedule
    max_attempts: int

    @property
    def estimated_end(self) -> datetime:
        return estimated_end(self.starts_at, self.duration_hours)

    @property
    def interval_minutes(self) -> int:
        return self.backoff.interval(self.attempts)

    @property
    def next_check_at(self) -> datetime:
        earliest = self.estimated_end
        if self.last_checked_at is None:
            return earliest
        backoff_until = ensure_utc(self.last_checked_at) + timedelta(
            minutes=self.interval_minutes
        )
        return max(earliest, backoff_until)

    def reason(
        self, *, enforce_backoff: bool = True, enforce_ceiling: bool = True
    ) -> SkipReason | None:
        now = ensure_utc(self.now)
        if now < self.estimated_end:
            return SkipReason.NOT_FINISHED
        if enforce_backoff and self.last_checked_at is not None:
            elapsed = now - ensure_utc(self.last_checked_at)
            if elapsed < timedelta(minutes=self.interval_minutes):
                return SkipReason.BACKOFF
        if enforce_ceiling:
            try:
                self.ensure_within_ceiling()
            except RetryCeilingExceeded:
                return SkipReason.RETRY_CEILING
        return None

    def ensure_within_ceiling(self) -> None:
        if self.attempts > self.max_attempts:
            raise RetryCeilingExceeded(self.attempts, self.max_attempts)

    @property
    def is_due(self) -> bool:
        return self.reason() is None


def schedule_state(
    leg: _LegLike,
    *,
    now: datetime,
    settings: Settings,
    backoff: BackoffSchedule | None = None,
) -> ScheduleState:
    return ScheduleState(
        now=now,
        starts_at=leg.starts_at,
        duration_hours=settings.duration_hours(leg.competition),
        last_checked_at=leg.last_checked_at,
        attempts=leg.review_attempts or 0,
        backoff=backoff or BackoffSchedule.from_settings(settings),
        max_attempts=settings.max_review_attempts,
    )


def select_candidates(
    legs: Iterable[_LegLike],
    *,
    now: datetime,
    settings: Settings,
    policy: SettlementPolicy,
) -> list[_LegLike]:
    """Return the legs due for evaluation in this pass."""

    backoff = BackoffSchedule.from_settings(settings)
    due: list[_LegLike] = []
    skipped: dict[SkipReason, int] = {}
    for leg in legs:
        reason: SkipReason | None
        if leg.status != LegStatus.PENDING.value:
            reason = SkipReason.SETTLED
        elif leg.ticket.status != TicketStatus.PENDING.value:
            reason = SkipReason.TICKET_CLOSED
        else:
            state = schedule_state(leg, now=now, settings=settings, backoff=backoff)
            reason = state.reason(
                enforce_backoff=policy.enforce_backoff,
                enforce_ceiling=policy.enforce_attempt_ceiling,
            )
            if reason is SkipReason.BACKOFF:
                wait = state.next_check_at - ensure_utc(now)
                logger.debug(
                    "Backoff skip {} (attempt {}): {} min left",
                    leg.matchup,
                    state.attempts,
                    round(wait.total_seconds() / 60),
                )
            elif reason is SkipReason.RETRY_CEILING:
                logger.debug(
                    "Retry ceiling skip {} after {} attempts; left for audit",
                    leg.matchup,
                    state.attempts,
                )
        if reason is None:
            due.append(leg)
        else:
            skipped[reason] = skipped.get(reason, 0) + 1

    logger.info(
        "Scheduler selected {} legs; skipped={}",
        len(due),
        {reason.value: count for reason, count in skipped.items()},
    )
    return due


def select_audit_tickets(tickets: Sequence, *, now: datetime, grace_hours: float) -> list:
    """Tickets with a pending leg whose latest leg started ``grace_hours`` ago."""

    ready = []
    cutoff = ensure_utc(now) - timedelta(hours=grace_hours)
    for ticket in tickets:
        legs = list(ticket.legs)
        if not legs:
            continue
        if not any(leg.status == LegStatus.PENDING.value for leg in legs):
            continue
        latest_start = max(ensure_utc(leg.starts_at) for leg in legs)
        if latest_start < cutoff:
            ready.append(ticket)
    return ready


__all__ = [
    "BackoffSchedule",
    "ScheduleState",
    "SkipReason",
    "estimated_end",
    "schedule_state",
    "select_audit_tickets",
    "select_candidates",
]
