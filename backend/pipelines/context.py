from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from app.core.config import Settings
from app.repositories import SettlementRepository

from .policy import SettlementPolicy
from .propagation import StatePropagator


@dataclass(slots=True)
class RunContext:
    """State shared by every unit of work within one settlement pass."""

    run_id: str
    now: datetime
    policy: SettlementPolicy
    settings: Settings
    session: Session
    repo: SettlementRepository
    propagator: StatePropagator
