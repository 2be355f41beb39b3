"""Application settings and configuration."""

from decimal import Decimal
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Ledger settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="LEDGER_",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = Field(
        default="sqlite:///./commission_ledger.db",
        description="Database connection URL",
    )
    database_echo: bool = False

    # Logging
    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"

    # Transactions
    transaction_max_attempts: int = Field(default=3, ge=1)
    transaction_retry_base_delay: float = Field(default=0.05, ge=0)
    transaction_retry_max_delay: float = Field(default=1.0, ge=0)

    # Payouts
    payout_min_amount: Decimal = Decimal("20.00")
    payout_max_amount: Decimal = Decimal("100000.00")

    # Agents and referral codes
    default_commission_rate: Decimal = Field(default=Decimal("10.00"), ge=0, le=100)
    referral_code_prefix: str = "REF"
    referral_code_length: int = Field(default=6, ge=4, le=16)

    currency: str = "USD"


# Global settings instance
settings = Settings()
