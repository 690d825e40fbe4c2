from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./perkhub.db"
    secret_key: str = "change-me"

    # Admin surface (batch linking, parked event replay, checkout purge)
    admin_api_key: str = ""

    # Voucher lifecycle
    voucher_default_cooldown_hours: float = 24.0
    voucher_default_expiration_hours: float = 24.0
    voucher_code_length: int = 6
    voucher_code_alphabet: str = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
    voucher_code_max_attempts: int = 5

    # Checkout intents
    checkout_initiated_ttl_minutes: int = 60

    # Payment event ledger
    payment_event_replay_max_attempts: int = 5

    # Public listing cache
    public_listing_cache_ttl_seconds: int = 30 * 60
    public_listing_limit: int = 100

    # Stripe configuration
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""

    # Lastlink configuration
    lastlink_webhook_token: str = ""

    # Plan fallback when neither the local catalog nor the provider knows the price
    default_plan_name: str = "Plano Premium"
    default_plan_interval: Literal["day", "week", "month", "year"] = "month"
    default_plan_interval_count: int = 1
    default_plan_providers: list[str] = ["lastlink"]

    @field_validator("voucher_code_alphabet", mode="before")
    @classmethod
    def _normalize_alphabet(cls, value: object) -> str:
        if not isinstance(value, str) or not value.strip():
            return "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
        return "".join(dict.fromkeys(value.strip()))


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
