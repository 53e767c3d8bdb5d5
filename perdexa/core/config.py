import json
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings


def _parse_allowed_origins(v: str) -> List[str]:
    """Parse comma-separated origins string; strip whitespace; keep non-empty."""
    if not v or not v.strip():
        return []
    return [o.strip() for o in v.split(",") if o.strip()]


_DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "postgresql://postgres:postgres@db:5432/perdexa"

    # CORS: comma-separated extra origins for production (e.g. https://perdexa.com)
    ALLOWED_ORIGINS_EXTRA: str = ""

    def get_allowed_origins(self) -> List[str]:
        """Return CORS allowed origins: default localhost + ALLOWED_ORIGINS_EXTRA."""
        return _DEFAULT_CORS_ORIGINS + _parse_allowed_origins(self.ALLOWED_ORIGINS_EXTRA)

    # Auth
    SECRET_KEY: str = "supersecret_jwt_key_change_in_production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None  # whsec_... signing secret
    # JSON object: {"price_123": "PRO"}. Unmapped prices never change the plan.
    PRICE_PLAN_MAP: Dict[str, str] = {}

    # Billing
    MONTHLY_PRICE: Decimal = Decimal("2000.00")
    BILLING_CURRENCY: str = "TRY"
    GRACE_PERIOD_DAYS: int = 3
    FREE_TRIAL_DAYS: int = 14
    DEFAULT_PERIOD_DAYS: int = 30  # period length for resume and manual PRO activation
    CRON_SECRET: Optional[str] = None

    # Brevo (operator notifications)
    BREVO_API_KEY: Optional[str] = None
    BILLING_ALERT_EMAIL: Optional[str] = None
    SENDER_EMAIL: str = "billing@perdexa.local"

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

    @field_validator("PRICE_PLAN_MAP", mode="before")
    @classmethod
    def parse_price_plan_map(cls, v):
        """Accept the price map as a JSON string (env var) or a dict."""
        if v is None or v == "":
            return {}
        if isinstance(v, str):
            return json.loads(v)
        return v

    @field_validator("PRICE_PLAN_MAP")
    @classmethod
    def validate_price_plans(cls, v):
        allowed = {"FREE", "PRO"}
        bad = {price: plan for price, plan in v.items() if plan not in allowed}
        if bad:
            raise ValueError(f"PRICE_PLAN_MAP plans must be one of {sorted(allowed)}: {bad}")
        return v

    @property
    def webhook_configured(self) -> bool:
        return bool(self.STRIPE_WEBHOOK_SECRET)


settings = Settings()
