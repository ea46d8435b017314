"""
Commission and referral settings loaded from the environment.
"""

from decimal import Decimal
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Rates are decimal percentages; amounts are minor currency units."""

    # Commission policy
    PARTNER_INITIAL_COMMISSION_RATE: Decimal = Decimal("20.00")
    PARTNER_LIFETIME_COMMISSION_RATE: Decimal = Decimal("5.00")
    CUSTOMER_CREDIT_RATE: Decimal = Decimal("10.00")
    FIRST_ORDER_DISCOUNT_PERCENT: Decimal = Decimal("20.00")

    # Referral codes
    REFERRAL_EXPIRY_DAYS: int = 90
    REFERRAL_CODE_LENGTH: int = 8
    MAX_ATTRIBUTION_DEPTH: int = 10

    CURRENCY: str = "GBP"

    # API
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = ["*"]

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")


settings = Settings()
