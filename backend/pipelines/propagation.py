"""Turn leg outcomes into ticket status under parlay rules."""

from __future__ import annotations

from typing import Iterable

from loguru import logger

from app.models import Leg, LegStatus, TicketStatus
from app.repositories import SettlementRepository

_WINNING = frozenset({LegStatus.WON.value, LegStatus.VOID.value})


def derive_ticket_status(leg_statuses: Iterable[str]) -> TicketStatus:
    """Ticket status implied by its legs: any loss kills it, all won/void pays it."""

    statuses = list(leg_statuses)
    if any(status == LegStatus.LOST.value for status in statuses):
        return TicketStatus.LOST
    if statuses and all(status in _WINNING for status in statuses):
        return TicketStatus.WON
    return TicketStatus.PENDING


class StatePropagator:
    def __init__(self, repo: SettlementRepository) -> None:
        self._repo = repo

    def apply(self, leg: Leg) -> TicketStatus:
        """Propagate ``leg``'s current status to its ticket."""

        if leg.status == LegStatus.LOST.value:
            if self._repo.set_ticket_status(leg.ticket_id, TicketStatus.LOST):
                logger.info(
                    "Ticket #{} marked LOST by leg {}; remaining legs leave the queue",
                    leg.ticket_id,
                    leg.id,
                )
            return TicketStatus.LOST
        return self.reconcile(leg.ticket_id)

    def reconcile(self, ticket_id: int) -> TicketStatus:
        """Re-derive the ticket from all of its legs; safe to replay."""

        legs = self._repo.legs_for_ticket(ticket_id)
        status = derive_ticket_status(leg.status for leg in legs)
        if self._repo.set_ticket_status(ticket_id, status):
            logger.info("Ticket #{} now {}", ticket_id, status.value.upper())
        return status


__all__ = ["StatePropagator", "derive_ticket_status"]
