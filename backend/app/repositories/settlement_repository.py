"""Ticket and leg persistence used by the settlement engine."""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import exists, or_, select
from sqlalchemy.orm import Session, aliased, selectinload

from app.models import Leg, LegStatus, Ticket, TicketStatus


class SettlementRepository:
    """Encapsulate the reads and partial writes the settlement engine needs.

    Methods flush but never commit; callers own the transaction boundary so a
    failed ticket write cannot roll back an already-committed leg write.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Queries

    def pending_legs_of_live_tickets(self, *, starts_after: datetime) -> list[Leg]:
        """Pending legs whose ticket is still pending, started after ``starts_after``."""

        query = (
            select(Leg)
            .join(Ticket, Leg.ticket_id == Ticket.id)
            .where(
                Leg.status == LegStatus.PENDING.value,
                Ticket.status == TicketStatus.PENDING.value,
                Leg.starts_at >= starts_after,
            )
            .options(selectinload(Leg.ticket))
            .order_by(Leg.starts_at, Leg.id)
        )
        return list(self._session.execute(query).scalars().all())

    def audit_tickets(
        self, *, created_since: date, include_lost: bool = True
    ) -> list[Ticket]:
        """Recent tickets holding at least one pending leg."""

        pending_leg = aliased(Leg)
        statuses = [TicketStatus.PENDING.value]
        if include_lost:
            statuses.append(TicketStatus.LOST.value)
        query = (
            select(Ticket)
            .where(
                Ticket.created_on >= created_since,
                Ticket.status.in_(statuses),
                exists().where(
                    pending_leg.ticket_id == Ticket.id,
                    pending_leg.status == LegStatus.PENDING.value,
                ),
            )
            .options(selectinload(Ticket.legs))
            .order_by(Ticket.id)
        )
        return list(self._session.execute(query).scalars().all())

    def legs_for_ticket(self, ticket_id: int) -> list[Leg]:
        query = select(Leg).where(Leg.ticket_id == ticket_id).order_by(Leg.id)
        return list(self._session.execute(query).scalars().all())

    def inconsistent_ticket_ids(self) -> list[int]:
        """Pending tickets that already hold a lost leg or have no pending leg left."""

        lost_leg = aliased(Leg)
        open_leg = aliased(Leg)
        any_leg = aliased(Leg)
        query = (
            select(Ticket.id)
            .where(
                Ticket.status == TicketStatus.PENDING.value,
                exists().where(any_leg.ticket_id == Ticket.id),
                or_(
                    exists().where(
                        lost_leg.ticket_id == Ticket.id,
                        lost_leg.status == LegStatus.LOST.value,
                    ),
                    ~exists().where(
                        open_leg.ticket_id == Ticket.id,
                        open_leg.status == LegStatus.PENDING.value,
                    ),
                ),
            )
            .order_by(Ticket.id)
        )
        return list(self._session.execute(query).scalars().all())

    # ------------------------------------------------------------------
    # Mutations

    def record_check(self, leg: Leg, *, checked_at: datetime, increment: bool) -> Leg:
        leg.last_checked_at = checked_at
        if increment:
            leg.review_attempts = (leg.review_attempts or 0) + 1
        self._session.flush()
        return leg

    def record_outcome(
        self,
        leg: Leg,
        *,
        status: LegStatus,
        result: str | None,
        checked_at: datetime,
    ) -> Leg:
        leg.status = status.value
        if result:
            leg.result = result
        leg.last_checked_at = checked_at
        self._session.flush()
        return leg

    def set_ticket_status(self, ticket_id: int, status: TicketStatus) -> bool:
        """Persist ``status``; return True when the stored value changed."""

        ticket = self._session.get(Ticket, ticket_id)
        if ticket is None:
            return False
        if ticket.status == status.value:
            return False
        ticket.status = status.value
        self._session.flush()
        return True
