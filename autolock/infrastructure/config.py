from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = "sqlite+pysqlite:///:memory:"
    openapi_path: Path = Path(__file__).resolve().parents[1] / "openapi/openapi.yaml"
    log_level: str = "INFO"

    # Paystack (M-Pesa mobile money)
    paystack_secret_key: str = "sk_test_change-me"
    paystack_base_url: str = "https://api.paystack.co"
    paystack_timeout_seconds: float = 10.0
    currency: str = "KES"
    email_domain: str = "autolock-storage.com"

    # Unlock codes
    otp_secret: str = "dev-otp-secret-change-me"
    otp_length: int = 4

    # Billing, whole currency units
    rate_per_minute: int = 5
    retrieve_flat_rate: int = 10
    prepay_amount: int = 10

    # Staleness windows
    pending_payment_ttl_seconds: int = 10 * 60
    paid_ttl_seconds: int = 60 * 60
    active_ttl_seconds: int = 7 * 24 * 60 * 60

    @field_validator("database_url", mode="before")
    @classmethod
    def _normalize_database_url(cls, v: str) -> str:
        # Neon / Heroku style URLs use a scheme SQLAlchemy rejects.
        if isinstance(v, str) and v.startswith("postgres://"):
            return "postgresql+psycopg://" + v[len("postgres://"):]
        return v


settings = Settings()
