from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from pipelines.errors import EvidenceUnavailable


class OddsApiScoresClient:
    """Thin wrapper around The Odds API scores endpoint."""

    scores_path = "/v4/sports/{sport_key}/scores"

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.the-odds-api.com",
        days_from: int = 3,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("ODDS_API_KEY is not configured")
        self.api_key = api_key
        self.base_url = base_url
        self.days_from = days_from
        self.timeout = timeout
        client_kwargs: dict[str, Any] = {"base_url": base_url, "timeout": timeout}
        if transport is not None:
            client_kwargs["transport"] = transport
        self.client = httpx.Client(**client_kwargs)

    def fetch_scores(self, sport_key: str) -> list[dict[str, Any]]:
        """Return raw score payloads for ``sport_key`` over the trailing window."""

        path = self.scores_path.format(sport_key=sport_key)
        params = {
            "apiKey": self.api_key,
            "daysFrom": self.days_from,
            "dateFormat": "iso",
        }
        logger.info("Scores GET {} daysFrom={}", path, self.days_from)
        try:
            response = self.client.get(path, params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise EvidenceUnavailable(
                sport_key, f"HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise EvidenceUnavailable(sport_key, exc.__class__.__name__) from exc
        except ValueError as exc:
            raise EvidenceUnavailable(sport_key, "invalid JSON payload") from exc

        if not isinstance(payload, list):
            raise EvidenceUnavailable(sport_key, "unexpected payload shape")

        remaining = response.headers.get("x-requests-remaining")
        if remaining is not None:
            logger.debug("Scores quota remaining for {}: {}", sport_key, remaining)
        return [item for item in payload if isinstance(item, dict)]

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "OddsApiScoresClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
