from __future__ import annotations

from dataclasses import dataclass

from app.core.config import Settings


@dataclass(frozen=True, slots=True)
class SettlementPolicy:
    """Knobs separating the timer-driven pass from the audit sweep."""

    name: str
    window_days: int
    enforce_backoff: bool
    enforce_attempt_ceiling: bool
    research_enabled: bool
    ticket_level_judge: bool
    pending_is_terminal: bool
    include_dead_tickets: bool
    ticket_delay_seconds: float = 0.0
    grace_hours: float = 0.0

    @classmethod
    def primary(cls, settings: Settings) -> "SettlementPolicy":
        return cls(
            name="primary",
            window_days=settings.settlement_window_days,
            enforce_backoff=True,
            enforce_attempt_ceiling=True,
            research_enabled=False,
            ticket_level_judge=False,
            pending_is_terminal=False,
            include_dead_tickets=False,
            ticket_delay_seconds=settings.ticket_delay_seconds,
        )

    @classmethod
    def audit(cls, settings: Settings) -> "SettlementPolicy":
        return cls(
            name="audit",
            window_days=settings.audit_window_days,
            enforce_backoff=False,
            enforce_attempt_ceiling=False,
            research_enabled=True,
            ticket_level_judge=True,
            pending_is_terminal=True,
            include_dead_tickets=True,
            ticket_delay_seconds=settings.ticket_delay_seconds,
            grace_hours=settings.audit_grace_hours,
        )


__all__ = ["SettlementPolicy"]
