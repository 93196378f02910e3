from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


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

    debug: bool = Field(False, description="Enable FastAPI debug mode")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    database_url: AnyUrl | str = Field(
        default="sqlite:///../data/markets.db",
        description="SQLAlchemy compatible database URL",
    )
    supabase_db_url: AnyUrl | str | None = Field(
        default=None,
        description="Supabase pooled Postgres connection string for production runs",
    )
    resolution_creator_fee_rate: float = Field(
        default=0.0,
        description="Fraction of the bettor payout pool paid to the market creator on resolution",
        ge=0.0,
        le=1.0,
    )
    sale_creator_fee_rate: float = Field(
        default=0.04,
        description="Fraction of a sale's profit routed to the market creator",
        ge=0.0,
        le=1.0,
    )
    transaction_retry_attempts: int = Field(
        default=5,
        description="Attempts made for a conflicting transaction before giving up",
        ge=1,
    )
    transaction_retry_backoff_seconds: list[float] | tuple[float, ...] | str = Field(
        default_factory=lambda: [0.05, 0.1, 0.2, 0.4],
        description="Comma-separated list or array of backoff delays (seconds) between transaction retries",
    )
    batch_write_size: int = Field(
        default=500,
        description="Maximum number of document writes committed together",
        ge=1,
        le=500,
    )
    portfolio_history_days: int = Field(
        default=31,
        description="Days of portfolio history loaded by the metrics job",
        ge=1,
    )
    metrics_interval_minutes: int = Field(
        default=15,
        description="Schedule interval of the metrics job",
        ge=1,
    )
    metrics_lock_ttl_minutes: int = Field(
        default=30,
        description="Age after which an abandoned metrics run-lock may be taken over",
        ge=1,
    )
    leaderboard_size: int = Field(
        default=50,
        description="Number of entries retained in each group leaderboard",
        ge=1,
    )
    loan_weekly_rate: float = Field(
        default=0.05,
        description="Fraction of open investment value offered as a loan each cycle",
        ge=0.0,
        le=1.0,
    )
    notification_webhook_url: AnyUrl | str | None = Field(
        default=None,
        description="Endpoint receiving resolution notifications; notifications are only logged when unset",
    )
    notification_max_workers: int = Field(
        default=8,
        description="Concurrent notification deliveries per resolution",
        ge=1,
    )
    notification_timeout_seconds: float = Field(
        default=10.0,
        description="HTTP timeout for webhook notification delivery",
        gt=0,
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

    @field_validator("transaction_retry_backoff_seconds", mode="before")
    @classmethod
    def _parse_retry_backoff(cls, value: Any) -> list[float]:
        if value in (None, "", []):
            return [0.05, 0.1, 0.2, 0.4]
        if isinstance(value, str):
            tokens = [token.strip() for token in value.split(",") if token.strip()]
            if not tokens:
                raise ValueError("TRANSACTION_RETRY_BACKOFF_SECONDS must contain at least one value")
            value = tokens
        if isinstance(value, (list, tuple)):
            backoff: list[float] = []
            for item in value:
                try:
                    delay = float(item)
                except (TypeError, ValueError) as exc:
                    raise ValueError("TRANSACTION_RETRY_BACKOFF_SECONDS entries must be numeric") from exc
                if delay < 0:
                    raise ValueError("TRANSACTION_RETRY_BACKOFF_SECONDS entries must not be negative")
                backoff.append(delay)
            if not backoff:
                raise ValueError("TRANSACTION_RETRY_BACKOFF_SECONDS must contain at least one value")
            return backoff
        raise ValueError(
            "TRANSACTION_RETRY_BACKOFF_SECONDS must be provided as a comma-separated string or list of numbers"
        )

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

    @property
    def transaction_retry_backoff_schedule(self) -> tuple[float, ...]:
        sequence = tuple(float(value) for value in self.transaction_retry_backoff_seconds)
        if not sequence:
            return (0.05,)
        return sequence


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
