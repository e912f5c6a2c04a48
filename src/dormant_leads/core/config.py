"""Configuration via environment variables.

Individual POSTGRES_* variables for the production database, plus the rule
constants of the dormant detector (MIN_DAYS_AFTER_SWAP etc).
"""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # --- Database ---
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "postgres"
    postgres_user: str = "postgres"
    postgres_password: str = ""

    # SQLite fallback for local dev (set USE_SQLITE=true)
    use_sqlite: bool = False
    sqlite_path: str = "dormant_leads.db"

    @property
    def database_url(self) -> str:
        if self.use_sqlite:
            return f"sqlite:///{self.sqlite_path}"
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # Dormant detector rules (days)
    min_days_after_swap: int = 3
    max_activation_window_days: int = 14
    lead_ttl_days: int = 30
    max_swaps_30d_threshold: int = 2
    min_days_between_contacts: int = 14

    # Batch detection over raw network events
    detection_score_threshold: float = 0.6
    detection_decay_days: int = 90
    detection_batch_limit: int = 1000
    max_prior_contacts: int = 3
    recontact_hold_days: int = 7

    # Leads with this many contacts drop out of the eligible pool
    max_contacts_per_lead: int = 2

    # Daily refresh
    refresh_batch_limit: int = 500
    refresh_hour: int = 3
    refresh_minute: int = 0
    event_retention_days: int = 90

    # --- Signal sources ---
    signal_mode: str = "stub"  # stub, live
    camara_base_url: str = "http://localhost:9091"
    camara_access_token: str = ""
    camara_timeout: float = 15.0
    msisdn_hash_salt: str = ""

    # --- Campaign dispatch ---
    dispatch_mode: str = "mock"  # mock, live
    mock_success_rate: float = 0.9
    default_max_per_hour: int = 100
    default_batch_size: int = 10
    target_lead_cap: int = 1000
    frontend_base_url: str = "http://localhost:3000"
    sms_api_url: str = "https://api.orange.com/smsmessaging/v1"
    sms_api_key: str = ""
    sms_sender_name: str = "Orange"

    model_config = {"env_prefix": ""}
