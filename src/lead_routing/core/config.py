"""Configuration via environment variables.

Database settings follow the individual POSTGRES_* variable pattern; SQLite is
used for local runs and tests.
"""

from __future__ import annotations

from pydantic_settings import BaseSettings

from lead_routing.core.models import AgentTier


class Settings(BaseSettings):
    # --- Database ---
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "lead_routing"
    postgres_user: str = "postgres"
    postgres_password: str = ""

    # SQLite backend for local dev and tests (set USE_SQLITE=false for Postgres)
    use_sqlite: bool = True
    sqlite_path: str = "lead_routing.db"

    @property
    def database_url(self) -> str:
        if self.use_sqlite:
            return f"sqlite:///{self.sqlite_path}"
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # Offers
    offer_response_window_minutes: int = 60
    max_offers_per_lead: int = 1

    # Eligibility
    activity_recency_hours: int = 48
    default_radius_km: float = 100.0
    require_verification: bool = True

    # Open-lead capacity per tier
    capacity_bronze: int = 3
    capacity_silver: int = 5
    capacity_gold: int = 8
    capacity_platinum: int = 12

    # Industries counted as relevant experience for every lead, on top of the
    # lead's own category
    relevant_industry_keywords: list[str] = ["food", "agriculture"]

    # Retry at the orchestration boundary
    retry_attempts: int = 3
    retry_backoff_seconds: float = 0.5
    retry_backoff_max_seconds: float = 5.0

    # Worker
    expiry_sweep_interval: int = 30

    # --- External collaborators ---
    agent_directory_url: str = ""
    agent_directory_api_key: str = ""

    notification_webhook_url: str = ""
    notification_api_key: str = ""

    http_timeout: float = 10.0

    model_config = {"env_prefix": ""}

    def capacity_for(self, tier: AgentTier | str | None) -> int:
        """Maximum concurrent open leads for a tier (unknown tiers get bronze)."""
        limits = {
            AgentTier.BRONZE: self.capacity_bronze,
            AgentTier.SILVER: self.capacity_silver,
            AgentTier.GOLD: self.capacity_gold,
            AgentTier.PLATINUM: self.capacity_platinum,
        }
        try:
            return limits[AgentTier(tier)]
        except ValueError:
            return self.capacity_bronze
