"""Failure taxonomy for the settlement engine.

Each error is scoped to a single unit of work (a competition lookup, a leg, a
ticket). The orchestrator catches them, records them in the run summary and
moves on; none of them is allowed to abort a pass.
"""

from __future__ import annotations


class SettlementError(Exception):
    """Base class for settlement failures."""


class EvidenceUnavailable(SettlementError):
    """Raised when a competition's score lookup fails."""

    def __init__(self, competition_key: str, reason: str) -> None:
        super().__init__(f"scores for '{competition_key}' unavailable: {reason}")
        self.competition_key = competition_key
        self.reason = reason


class ResearchUnavailable(SettlementError):
    """Raised when the supplementary search cannot be reached."""


class NoMatchFound(SettlementError):
    """Raised when the feed has no event matching a leg's matchup."""


class EventInProgress(SettlementError):
    """Raised when the matched event has not concluded yet."""


class RetryCeilingExceeded(SettlementError):
    """Raised when a leg has spent more checks than the primary pass allows."""

    def __init__(self, attempts: int, max_attempts: int) -> None:
        super().__init__(
            f"{attempts} checks exceed the ceiling of {max_attempts}; left to the audit sweep"
        )
        self.attempts = attempts
        self.max_attempts = max_attempts


class JudgeContractViolation(SettlementError):
    """Raised when the judge answers outside its allowed vocabulary or coverage."""

    def __init__(self, message: str, *, raw_output: str | None = None) -> None:
        super().__init__(message)
        self.raw_output = raw_output


class JudgeUnavailable(JudgeContractViolation):
    """Raised when the judge API keeps failing after retries."""


class PersistenceFailure(SettlementError):
    """Raised when a unit of work cannot be written to the store."""


__all__ = [
    "EventInProgress",
    "EvidenceUnavailable",
    "JudgeContractViolation",
    "JudgeUnavailable",
    "NoMatchFound",
    "PersistenceFailure",
    "ResearchUnavailable",
    "RetryCeilingExceeded",
    "SettlementError",
]
