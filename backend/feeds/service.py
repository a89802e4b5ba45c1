from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Protocol

from loguru import logger

from app.core.config import Settings
from app.domain import EvidenceRecord
from pipelines.errors import EventInProgress, EvidenceUnavailable, NoMatchFound

from .normalize import matchup_key, normalize_score_event


class ScoresSource(Protocol):
    def fetch_scores(self, sport_key: str) -> list[dict]: ...


@dataclass(slots=True)
class EvidenceIndex:
    """Evidence gathered for one pass, keyed by normalized matchup label."""

    records: dict[str, EvidenceRecord] = field(default_factory=dict)
    failed_competitions: set[str] = field(default_factory=set)
    unknown_competitions: set[str] = field(default_factory=set)
    feed_keys: dict[str, str | None] = field(default_factory=dict)

    def add(self, record: EvidenceRecord) -> None:
        self.records[matchup_key(record.matchup)] = record

    def lookup(self, matchup: str) -> EvidenceRecord | None:
        return self.records.get(matchup_key(matchup))

    def competition_failed(self, competition: str | None) -> bool:
        key = self.feed_keys.get(competition or "")
        return key is not None and key in self.failed_competitions

    def require_completed(self, matchup: str) -> EvidenceRecord:
        """Return completed evidence or raise the matching skip condition."""

        record = self.lookup(matchup)
        if record is None:
            raise NoMatchFound(matchup)
        if not record.completed:
            raise EventInProgress(matchup)
        return record

    def __len__(self) -> int:
        return len(self.records)


class EvidenceCollector:
    """Batch score lookups so each competition is fetched at most once per pass."""

    def __init__(self, settings: Settings, source: ScoresSource) -> None:
        self._settings = settings
        self._source = source

    def collect(self, competitions: Iterable[str | None]) -> EvidenceIndex:
        index = EvidenceIndex()
        feed_keys: list[str] = []
        for competition in sorted({name for name in competitions if name}):
            key = self._settings.feed_key_for(competition)
            index.feed_keys[competition] = key
            if key is None:
                index.unknown_competitions.add(competition)
                logger.warning(
                    "Competition '{}' has no scores feed mapping; its legs get no evidence",
                    competition,
                )
                continue
            if key not in feed_keys:
                feed_keys.append(key)

        if feed_keys:
            logger.info("Fetching scores for competitions: {}", ", ".join(feed_keys))

        for key in feed_keys:
            try:
                payloads = self._source.fetch_scores(key)
            except EvidenceUnavailable as exc:
                index.failed_competitions.add(key)
                logger.warning("Skipping competition {}: {}", key, exc.reason)
                continue

            added = 0
            for payload in payloads:
                record = normalize_score_event(payload, competition_key=key)
                if record is None:
                    continue
                index.add(record)
                added += 1
            logger.debug("Competition {} contributed {} events", key, added)

        logger.info(
            "Evidence loaded: events={} failed={} unknown={}",
            len(index),
            len(index.failed_competitions),
            len(index.unknown_competitions),
        )
        return index
