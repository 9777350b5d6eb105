import json
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./mysterybox.db"
    database_echo: bool = False

    # Internal API security (operator tooling, cron triggers)
    internal_api_key: str = ""

    # Box economy
    box_tier_prices: Annotated[dict[int, int], NoDecode] = Field(default_factory=lambda: {1: 1, 2: 2, 3: 3})
    box_retention_days: int = 7
    box_cash_reward_auto_credit: bool = False
    box_conflict_retry_attempts: int = 3
    box_conflict_retry_backoff_seconds: float = 0.05
    box_default_page_size: int = 50

    # Expiry sweep worker
    box_expiry_worker_enabled: bool = False
    box_expiry_interval_seconds: int = 300
    box_expiry_batch_size: int = 500
    box_expiry_trigger_label: str = "worker"

    @field_validator("box_tier_prices", mode="before")
    @classmethod
    def _parse_tier_prices(cls, value: object) -> object:
        if not isinstance(value, str):
            return value
        raw = value.strip()
        if not raw:
            return {}
        if raw.startswith("{"):
            return json.loads(raw)
        prices: dict[int, int] = {}
        for pair in raw.split(","):
            if not pair.strip():
                continue
            tier, _, price = pair.partition(":")
            prices[int(tier.strip())] = int(price.strip())
        return prices

    @field_validator("box_tier_prices")
    @classmethod
    def _check_tier_prices(cls, value: dict[int, int]) -> dict[int, int]:
        for tier, price in value.items():
            if tier <= 0 or price <= 0:
                raise ValueError("box tiers and prices must be positive integers")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
