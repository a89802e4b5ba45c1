from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from app.core.config import Settings
from app.db import build_engine, build_session_factory, init_db
from app.models import Leg, Ticket

NOW = datetime(2025, 3, 8, 22, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path/'tickets.db'}",
        odds_api_key="test-odds-key",
        openai_api_key="test-openai-key",
        tavily_api_key=None,
        ticket_delay_seconds=0.0,
    )


@pytest.fixture
def session_factory(test_settings):
    engine = build_engine(test_settings)
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def make_ticket(session_factory):
    """Persist a ticket with legs; leg dicts override the defaults below."""

    def _make(
        legs: list[dict[str, Any]],
        *,
        status: str = "pending",
        created_on=None,
    ) -> int:
        with session_factory() as session:
            ticket = Ticket(
                created_on=created_on or NOW.date(),
                category="segura",
                total_price=1.85,
                stake=5,
                rationale="Low-variance favourites",
                status=status,
            )
            session.add(ticket)
            session.flush()
            for overrides in legs:
                values: dict[str, Any] = {
                    "competition": "Premier League",
                    "matchup": "Arsenal vs Chelsea",
                    "starts_at": NOW - timedelta(hours=4),
                    "selection": "Arsenal",
                    "price": 1.3,
                    "status": "pending",
                    "review_attempts": 0,
                }
                values.update(overrides)
                session.add(Leg(ticket_id=ticket.id, **values))
            session.commit()
            return ticket.id

    return _make


@pytest.fixture
def load_ticket(session_factory):
    """Return a detached snapshot of a ticket and its legs."""

    def _load(ticket_id: int) -> tuple[Ticket, list[Leg]]:
        with session_factory() as session:
            ticket = session.get(Ticket, ticket_id)
            legs = list(ticket.legs)
            session.expunge_all()
            return ticket, legs

    return _load
