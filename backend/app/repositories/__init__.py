"""Repository abstractions for database interactions."""

from .settlement_repository import SettlementRepository

__all__ = ["SettlementRepository"]
