"""
Backend Configuration Module

Centralized settings management using Pydantic.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings

from flyer_wizard.models import ScoringWeights, WizardConfig


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App Info
    app_name: str = Field(default="Flyer Wizard", alias="APP_NAME")
    app_version: str = Field(default="1.0.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")

    # Server
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8080, alias="PORT")

    # CORS (for frontend)
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
        alias="CORS_ORIGINS",
    )

    # Redis (sessions, list locks, idempotency, dataset version)
    redis_host: str = Field(default="127.0.0.1", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_password: str = Field(default="", alias="REDIS_PASSWORD")
    redis_db: int = Field(default=0, alias="REDIS_DB")

    # Elasticsearch (flyer offer index)
    es_host: str = Field(default="localhost", alias="ES_HOST")
    es_port: int = Field(default=9200, alias="ES_PORT")
    es_scheme: str = Field(default="http", alias="ES_SCHEME")
    es_user: str = Field(default="", alias="ES_USER")
    es_password: str = Field(default="", alias="ES_PASSWORD")
    es_index: str = Field(default="flyer_offers", alias="ES_INDEX")

    # SQLite (shopping lists + offer snapshots)
    database_path: str = Field(default="data/flyer_wizard.db", alias="DATABASE_PATH")

    # Session lifecycle
    wizard_session_ttl_minutes: int = Field(default=30, alias="WIZARD_SESSION_TTL_MINUTES")
    wizard_idempotency_ttl_hours: int = Field(default=24, alias="WIZARD_IDEMPOTENCY_TTL_HOURS")
    wizard_lock_ttl_seconds: int = Field(default=30, alias="WIZARD_LOCK_TTL_SECONDS")
    wizard_retention_hours: int = Field(default=24, alias="WIZARD_RETENTION_HOURS")

    # Search + ranking
    wizard_max_stores: int = Field(default=2, alias="WIZARD_MAX_STORES")
    wizard_top_k: int = Field(default=5, alias="WIZARD_TOP_K")
    wizard_min_candidates: int = Field(default=3, alias="WIZARD_MIN_CANDIDATES")
    wizard_pass1_limit: int = Field(default=20, alias="WIZARD_PASS1_LIMIT")
    wizard_pass2_limit: int = Field(default=30, alias="WIZARD_PASS2_LIMIT")
    wizard_loose_penalty: float = Field(default=0.8, alias="WIZARD_LOOSE_PENALTY")
    wizard_size_tolerance: float = Field(default=0.2, alias="WIZARD_SIZE_TOLERANCE")

    # Scoring weights
    weight_same_brand: float = Field(default=3.0, alias="WEIGHT_SAME_BRAND")
    weight_original_store: float = Field(default=2.0, alias="WEIGHT_ORIGINAL_STORE")
    weight_preferred_store: float = Field(default=2.0, alias="WEIGHT_PREFERRED_STORE")
    weight_size: float = Field(default=1.0, alias="WEIGHT_SIZE")
    weight_cheaper: float = Field(default=1.0, alias="WEIGHT_CHEAPER")

    # Store selection thresholds
    wizard_min_additional_coverage: int = Field(default=2, alias="WIZARD_MIN_ADDITIONAL_COVERAGE")
    wizard_min_savings: float = Field(default=5.0, alias="WIZARD_MIN_SAVINGS")
    currency_symbol: str = Field(default="€", alias="CURRENCY_SYMBOL")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    def wizard_config(self) -> WizardConfig:
        return WizardConfig(
            session_ttl_minutes=self.wizard_session_ttl_minutes,
            idempotency_ttl_hours=self.wizard_idempotency_ttl_hours,
            lock_ttl_seconds=self.wizard_lock_ttl_seconds,
            retention_hours=self.wizard_retention_hours,
            max_stores=self.wizard_max_stores,
            top_k=self.wizard_top_k,
            min_candidates=self.wizard_min_candidates,
            pass1_limit=self.wizard_pass1_limit,
            pass2_limit=self.wizard_pass2_limit,
            loose_penalty=self.wizard_loose_penalty,
            size_tolerance=self.wizard_size_tolerance,
            weights=ScoringWeights(
                same_brand=self.weight_same_brand,
                original_store=self.weight_original_store,
                preferred_store=self.weight_preferred_store,
                size=self.weight_size,
                cheaper=self.weight_cheaper,
            ),
            min_additional_coverage=self.wizard_min_additional_coverage,
            min_savings=self.wizard_min_savings,
            currency_symbol=self.currency_symbol,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
