from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_COMPETITION_FEED_KEYS: dict[str, str] = {
    "Premier League": "soccer_epl",
    "La Liga": "soccer_spain_la_liga",
    "Serie A": "soccer_italy_serie_a",
    "Bundesliga": "soccer_germany_bundesliga",
    "Ligue 1": "soccer_france_ligue_one",
    "Champions League": "soccer_uefa_champs_league",
    "NBA": "basketball_nba",
    "NFL": "americanfootball_nfl",
    "MLB": "baseball_mlb",
    "NHL": "icehockey_nhl",
    "Eredivisie": "soccer_netherlands_eredivisie",
    "Primeira Liga": "soccer_portugal_primeira_liga",
}

DEFAULT_SPORT_DURATION_HOURS: dict[str, float] = {
    "soccer": 2.0,
    "basketball": 2.5,
    "baseball": 3.5,
    "americanfootball": 3.5,
    "icehockey": 2.5,
    "tennis": 2.0,
    "default": 3.0,
}

_SPORT_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("americanfootball", ("nfl", "americanfootball")),
    ("soccer", ("soccer", "football", "league", "liga", "serie")),
    ("basketball", ("nba", "basketball")),
    ("baseball", ("baseball", "mlb")),
    ("icehockey", ("hockey", "nhl")),
    ("tennis", ("tennis",)),
)


def _ensure_sqlalchemy_postgres_scheme(value: str) -> str:
    if not value.lower().startswith("postgres"):
        return value

    parsed = urlparse(value)
    scheme = parsed.scheme.lower()

    if scheme == "postgres":
        scheme = "postgresql"

    if scheme == "postgresql":
        scheme = "postgresql+psycopg"

    if scheme not in {"postgresql+psycopg", "postgresql+asyncpg"}:
        scheme = "postgresql+psycopg"

    query_params = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query_params.setdefault("sslmode", "require")
    query_params.setdefault("target_session_attrs", "read-write")
    new_query = urlencode(query_params, doseq=True)

    normalized = urlunparse(
        parsed._replace(
            scheme=scheme,
            query=new_query,
        )
    )
    return normalized


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Echo SQL statements")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    database_url: AnyUrl | str = Field(
        default="sqlite:///../data/tickets.db",
        description="SQLAlchemy compatible database URL",
    )
    supabase_db_url: AnyUrl | str | None = Field(
        default=None,
        description="Supabase pooled Postgres connection string for production runs",
    )
    odds_api_key: str | None = Field(
        default=None,
        description="API key for The Odds API scores endpoint",
    )
    odds_api_base_url: AnyUrl = Field(
        default="https://api.the-odds-api.com",
        description="Base URL for The Odds API",
    )
    odds_api_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout applied to each scores request",
        gt=0,
    )
    scores_days_from: int = Field(
        default=3,
        description="Trailing window (days) requested from the scores feed",
        ge=1,
        le=3,
    )
    tavily_api_key: str | None = Field(
        default=None,
        description="API key for the Tavily search API used by the audit sweep",
    )
    tavily_api_url: AnyUrl = Field(
        default="https://api.tavily.com/search",
        description="Tavily search endpoint",
    )
    research_max_results: int = Field(
        default=3,
        description="Maximum number of search results folded into research text",
        ge=1,
    )
    openai_api_key: str | None = Field(
        default=None,
        description="API key for the OpenAI-compatible endpoint serving the judge model",
    )
    openai_api_base: AnyUrl | str | None = Field(
        default=None,
        description="Optional override for the OpenAI API base URL (Groq/proxy support)",
    )
    judge_model: str = Field(
        default="llama-3.3-70b-versatile",
        description="Model used to resolve selections the rule evaluator cannot decide",
    )
    judge_temperature: float = Field(
        default=0.0,
        description="Sampling temperature for judge calls",
        ge=0.0,
    )
    judge_max_attempts: int = Field(
        default=3,
        description="Attempts per judge call when the API fails transiently",
        ge=1,
    )
    competition_feed_keys: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_COMPETITION_FEED_KEYS),
        description="Competition display name to scores feed key",
    )
    sport_duration_hours: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_SPORT_DURATION_HOURS),
        description="Estimated event duration per sport category (hours)",
    )
    settlement_window_days: int = Field(
        default=5,
        description="Trailing window (days, by event start) scanned by the primary pass",
        ge=1,
    )
    audit_window_days: int = Field(
        default=7,
        description="Trailing window (days, by ticket date) scanned by the audit sweep",
        ge=1,
    )
    audit_grace_hours: float = Field(
        default=3.0,
        description="Hours after a ticket's latest leg start before the audit sweep picks it up",
        ge=0,
    )
    max_review_attempts: int = Field(
        default=12,
        description="Retry ceiling above which the primary pass leaves a leg to the audit sweep",
        ge=0,
    )
    backoff_schedule_minutes: list[tuple[int, int]] | str = Field(
        default_factory=lambda: [(3, 30), (8, 60)],
        description=(
            "Backoff steps as (max_attempts, minutes) pairs, e.g. '3:30,8:60'; "
            "attempts beyond the last step wait backoff_ceiling_minutes"
        ),
    )
    backoff_ceiling_minutes: int = Field(
        default=120,
        description="Backoff interval once attempts exceed the last schedule step",
        gt=0,
    )
    ticket_delay_seconds: float = Field(
        default=0.5,
        description="Pause between tickets within a settlement pass",
        ge=0,
    )

    @field_validator("competition_feed_keys", mode="after")
    @classmethod
    def _strip_feed_keys(cls, value: dict[str, str]) -> dict[str, str]:
        cleaned: dict[str, str] = {}
        for name, key in value.items():
            name = str(name).strip()
            key = str(key).strip()
            if not name or not key:
                raise ValueError("COMPETITION_FEED_KEYS entries must be non-empty")
            cleaned[name] = key
        return cleaned

    @field_validator("sport_duration_hours", mode="after")
    @classmethod
    def _require_default_duration(cls, value: dict[str, float]) -> dict[str, float]:
        for category, hours in value.items():
            if hours <= 0:
                raise ValueError(
                    f"SPORT_DURATION_HOURS entry '{category}' must be positive"
                )
        if "default" not in value:
            value = {**value, "default": DEFAULT_SPORT_DURATION_HOURS["default"]}
        return value

    @field_validator("backoff_schedule_minutes", mode="before")
    @classmethod
    def _parse_backoff_schedule(cls, value: Any) -> list[tuple[int, int]]:
        if value in (None, "", []):
            return [(3, 30), (8, 60)]
        if isinstance(value, str):
            tokens = [token.strip() for token in value.split(",") if token.strip()]
            pairs: list[Any] = []
            for token in tokens:
                if ":" not in token:
                    raise ValueError(
                        "BACKOFF_SCHEDULE_MINUTES entries must be formatted as attempts:minutes"
                    )
                pairs.append(tuple(part.strip() for part in token.split(":", 1)))
            value = pairs
        if isinstance(value, (list, tuple)):
            schedule: list[tuple[int, int]] = []
            for item in value:
                try:
                    attempts, minutes = (int(part) for part in item)
                except (TypeError, ValueError) as exc:
                    raise ValueError(
                        "BACKOFF_SCHEDULE_MINUTES entries must be numeric pairs"
                    ) from exc
                if attempts < 0 or minutes <= 0:
                    raise ValueError(
                        "BACKOFF_SCHEDULE_MINUTES attempts must be >= 0 and minutes positive"
                    )
                schedule.append((attempts, minutes))
            if not schedule:
                raise ValueError("BACKOFF_SCHEDULE_MINUTES must contain at least one step")
            schedule.sort()
            for (_, earlier), (_, later) in zip(schedule, schedule[1:]):
                if later < earlier:
                    raise ValueError("BACKOFF_SCHEDULE_MINUTES intervals must be non-decreasing")
            return schedule
        raise ValueError(
            "BACKOFF_SCHEDULE_MINUTES must be provided as 'attempts:minutes' pairs"
        )

    @field_validator("database_url", "supabase_db_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value

        if value.startswith("postgresql+psycopg://") or value.startswith(
            "postgresql+asyncpg://"
        ):
            return value

        normalized = value
        if normalized.startswith("postgres://"):
            normalized = "postgresql://" + normalized[len("postgres://") :]

        return normalized

    @field_validator("supabase_db_url")
    @classmethod
    def _require_postgres_scheme(cls, value: Any) -> Any:
        if value is None:
            return value
        url_str = str(value)
        scheme = url_str.split(":", 1)[0].lower()
        valid_schemes = {
            "postgres",
            "postgresql",
            "postgresql+psycopg",
            "postgresql+asyncpg",
        }
        if scheme not in valid_schemes:
            raise ValueError(
                "SUPABASE_DB_URL must be a PostgreSQL connection string (e.g. postgresql://...)."
            )
        return value

    @property
    def resolved_database_url(self) -> str:
        environment = self.environment.lower()
        if environment == "production":
            if not self.supabase_db_url:
                raise ValueError(
                    "SUPABASE_DB_URL must be set when ENVIRONMENT=production"
                )
            return _ensure_sqlalchemy_postgres_scheme(str(self.supabase_db_url))
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))

    def feed_key_for(self, competition: str | None) -> str | None:
        """Return the scores feed key for a competition display name."""

        if not competition:
            return None
        name = competition.strip()
        mapped = self.competition_feed_keys.get(name)
        if mapped:
            return mapped
        # Legs may already store the raw feed key (e.g. ``soccer_epl``).
        if "_" in name and " " not in name:
            return name.lower()
        return None

    def sport_category(self, competition: str | None) -> str:
        if not competition:
            return "default"
        key = (self.competition_feed_keys.get(competition.strip()) or competition).lower()
        for category, keywords in _SPORT_KEYWORDS:
            if any(keyword in key for keyword in keywords):
                return category
        return "default"

    def duration_hours(self, competition: str | None) -> float:
        category = self.sport_category(competition)
        return self.sport_duration_hours.get(
            category, self.sport_duration_hours["default"]
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
