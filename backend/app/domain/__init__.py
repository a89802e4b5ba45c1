"""Domain models describing evidence and judge verdicts."""

from .models import EvidenceRecord, FinalScore, JudgeVerdict, ensure_utc

__all__ = [
    "EvidenceRecord",
    "FinalScore",
    "JudgeVerdict",
    "ensure_utc",
]
