"""Core configuration with Pydantic v2 Settings."""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    app_env: str = "development"
    database_url: str = "sqlite:///./emission.db"
    log_level: str = "INFO"
    enable_metrics: bool = True

    # External e-invoicing service (Factus)
    FACTUS_BASE_URL: str = "https://api-sandbox.factus.com.co"
    FACTUS_CLIENT_ID: str = ""
    FACTUS_CLIENT_SECRET: str = ""
    FACTUS_USERNAME: str = ""
    FACTUS_PASSWORD: str = ""
    FACTUS_ENVIRONMENT: str = "sandbox"  # sandbox|production

    # Transmission
    FACTUS_TIMEOUT_MS: int = 30_000
    FACTUS_RETRY_MAX: int = 2
    FACTUS_RETRY_DELAY_MS: int = 2_000

    # Token lifecycle
    FACTUS_TOKEN_LEAD_MINUTES: int = 10
    FACTUS_DEFAULT_EXPIRES_IN: int = 3600  # seconds

    # Fallback numbering when no active range can be resolved
    FACTUS_NUMBERING_RANGE_ID: int = 8
    FACTUS_NUMBERING_RANGE_ID_CREDIT_NOTE: Optional[int] = None
    FACTUS_DEFAULT_CONSECUTIVE: int = 8
    FACTUS_INVOICE_PREFIX: str = "FV"

    # Establishment block
    COMPANY_NAME: str = "Mi Empresa"
    COMPANY_ADDRESS: str = "Direccion no especificada"
    COMPANY_PHONE: str = "0000000"
    COMPANY_EMAIL: str = "contacto@empresa.com"
    COMPANY_MUNICIPALITY_ID: str = "980"

    # Numbering alert tiers (remaining numbers)
    NUMBERING_WARNING_REMAINING: int = 500
    NUMBERING_CRITICAL_REMAINING: int = 100

    # Ops API
    ADMIN_TOKENS: str = ""  # CSV; tokens allowed on token endpoints
    SECRET_HASH_KEY: str = "dev-secret-key-change"


# Global settings instance
settings = Settings()
