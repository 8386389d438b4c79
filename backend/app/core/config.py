from decimal import Decimal
from typing import List
import os

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    env: str = "dev"
    log_level: str = "INFO"
    backend_cors_origins: str = "http://localhost:5173"

    # Hosting platforms hand us the listen port through PORT
    port: int = int(os.getenv("PORT", "8000"))

    # Control plane store
    database_url: str = "postgresql+psycopg2://nexus:nexus@db:5432/nexus"
    db_pool_timeout: int = 10
    db_statement_timeout_ms: int = 15000

    # Identity tokens are issued elsewhere, we only verify them
    secret_key: str = "change_me_super_secret"
    jwt_algorithm: str = "HS256"

    # Credential vault
    encryption_key: str = "fallback-encryption-key-32-chars"
    encryption_salt: str = "nexus-credential-vault"

    tenant_header: str = "X-Project-ID"
    s3_region: str = "us-east-1"

    default_user_price: Decimal = Decimal("10.00")
    default_application_price: Decimal = Decimal("0.00")

    billing_cutoff_hour: int = 23
    billing_cutoff_minute: int = 59
    billing_timezone: str = "UTC"
    overdue_check_interval_seconds: int = 60 * 60
    billing_scheduler_enabled: bool = True
    billing_workers: int = 4
    tenant_billing_timeout_seconds: float = 30.0
    recent_invoice_limit: int = 5

    stripe_secret_key: str = ""
    payment_currency: str = "usd"

    @property
    def cors_origins(self) -> List[str]:
        """Parse CORS origins from comma-separated string"""
        origins = self.backend_cors_origins
        return [origin.strip() for origin in origins.split(",") if origin.strip()]


settings = Settings()
