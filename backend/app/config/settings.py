"""
Application Settings for Escuela Segura

Centralized configuration using Pydantic Settings with .env support.
All environment variables are validated at startup.
"""

from functools import lru_cache
from typing import Literal, Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    PAYMENT_PROVIDER controls which processor handles subscriptions:
    - stripe: Stripe Billing (card tokens + recurring prices)
    - mercadopago: MercadoPago preapprovals (ARS recurring charges)
    """

    # Supabase Configuration
    supabase_url: str
    supabase_anon_key: Optional[str] = None
    supabase_service_role_key: str
    supabase_jwt_secret: Optional[str] = None

    # Application Settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # CORS Configuration
    frontend_url: str = "http://localhost:5173"
    allowed_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]

    # Compliance thresholds (days)
    expiring_threshold_days: int = 31
    notification_window_days: int = 31
    urgency_threshold_days: int = 10
    qr_validity_years: int = 1
    display_locale: str = "es-AR"

    # Trial
    trial_days: int = 14

    # Payment processor selection
    payment_provider: Literal["stripe", "mercadopago"] = "stripe"

    # Stripe Configuration (for payment_provider=stripe)
    stripe_secret_key: Optional[str] = None
    stripe_price_id_basic: Optional[str] = None
    stripe_price_id_standard: Optional[str] = None
    stripe_price_id_premium: Optional[str] = None

    # MercadoPago Configuration (for payment_provider=mercadopago)
    mercadopago_access_token: Optional[str] = None
    mercadopago_base_url: str = "https://api.mercadopago.com"
    mercadopago_mode: Literal["sandbox", "production"] = "sandbox"
    mercadopago_plan_id_basic: Optional[str] = None
    mercadopago_plan_id_standard: Optional[str] = None
    mercadopago_plan_id_premium: Optional[str] = None
    payment_timeout_seconds: float = 30.0

    # Database Configuration (SQLModel/SQLAlchemy)
    supabase_password: Optional[str] = None
    database_url: Optional[str] = None
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_echo: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_payment_credentials(self) -> "Settings":
        """Validate processor credentials based on selected payment_provider."""
        if self.payment_provider == "stripe":
            if not self.stripe_secret_key:
                raise ValueError(
                    "STRIPE_SECRET_KEY required when PAYMENT_PROVIDER=stripe"
                )

        elif self.payment_provider == "mercadopago":
            if not self.mercadopago_access_token:
                raise ValueError(
                    "MERCADOPAGO_ACCESS_TOKEN required when PAYMENT_PROVIDER=mercadopago"
                )

        if self.expiring_threshold_days < 0 or self.notification_window_days < 0:
            raise ValueError("Expiration thresholds must be non-negative")

        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment.lower() == "development"

    @property
    def stripe_price_ids(self) -> dict[str, Optional[str]]:
        """Stripe price id per plan key."""
        return {
            "basic": self.stripe_price_id_basic,
            "standard": self.stripe_price_id_standard,
            "premium": self.stripe_price_id_premium,
        }

    @property
    def mercadopago_plan_ids(self) -> dict[str, Optional[str]]:
        """MercadoPago preapproval plan id per plan key."""
        return {
            "basic": self.mercadopago_plan_id_basic,
            "standard": self.mercadopago_plan_id_standard,
            "premium": self.mercadopago_plan_id_premium,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export for direct import
settings = get_settings()
