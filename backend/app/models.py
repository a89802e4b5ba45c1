from __future__ import annotations

from datetime import date, datetime
from enum import Enum

from sqlalchemy import Date, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


class LegStatus(str, Enum):
    PENDING = "pending"
    WON = "won"
    LOST = "lost"
    VOID = "void"


class TicketStatus(str, Enum):
    PENDING = "pending"
    WON = "won"
    LOST = "lost"


class Ticket(Base):
    """A parlay: every leg must win (or be voided) for the ticket to pay."""

    __tablename__ = "tickets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_on: Mapped[date] = mapped_column("fecha", Date, nullable=False)
    category: Mapped[str | None] = mapped_column("categoria", String, nullable=True)
    total_price: Mapped[float | None] = mapped_column("cuota_total", Numeric(10, 2), nullable=True)
    stake: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rationale: Mapped[str | None] = mapped_column("analisis", Text, nullable=True)
    status: Mapped[str] = mapped_column(
        "estado", String, nullable=False, default=TicketStatus.PENDING.value
    )

    legs: Mapped[list["Leg"]] = relationship(
        "Leg", back_populates="ticket", order_by="Leg.id"
    )


class Leg(Base):
    """A single event and selection inside a ticket."""

    __tablename__ = "partidos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ticket_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tickets.id"), nullable=False, index=True
    )
    external_event_id: Mapped[str | None] = mapped_column("id_externo", String, nullable=True)
    competition: Mapped[str | None] = mapped_column("deporte", String, nullable=True)
    matchup: Mapped[str] = mapped_column("partido", String, nullable=False)
    starts_at: Mapped[datetime] = mapped_column("hora", DateTime(timezone=True), nullable=False)
    selection: Mapped[str] = mapped_column("seleccion", String, nullable=False)
    price: Mapped[float | None] = mapped_column("cuota", Numeric(10, 2), nullable=True)
    status: Mapped[str] = mapped_column(
        "estado", String, nullable=False, default=LegStatus.PENDING.value
    )
    result: Mapped[str | None] = mapped_column("resultado", String, nullable=True)
    last_checked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    review_attempts: Mapped[int] = mapped_column(
        "intentos_revision", Integer, nullable=False, default=0
    )

    ticket: Mapped[Ticket] = relationship("Ticket", back_populates="legs")
