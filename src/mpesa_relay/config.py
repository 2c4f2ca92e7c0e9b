"""
Application configuration module using Pydantic BaseSettings v2.

Settings are loaded once from environment variables and the optional .env
file, then passed explicitly into the gateway client, the ledger store and
the HTTP layer. Business logic never reads the environment itself.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Relay settings loaded from environment variables.

    All settings can be configured via environment variables or a .env file.
    Environment variable names are case-insensitive. Instances are frozen.
    """

    # M-PESA Daraja credentials and STK push parameters
    mpesa_consumer_key: str
    mpesa_consumer_secret: str
    mpesa_shortcode: str
    mpesa_passkey: str
    mpesa_callback_url: str
    mpesa_environment: str = "sandbox"  # "sandbox" or "production"
    mpesa_base_url: str | None = None  # Overrides the environment default
    mpesa_transaction_type: str = "CustomerPayBillOnline"
    mpesa_account_reference: str = "Deposit"
    mpesa_transaction_desc: str = "Wallet deposit"
    mpesa_timeout_seconds: float = 30.0
    mpesa_token_cache_enabled: bool = True

    # Circuit breaker around gateway transport calls
    mpesa_breaker_fail_max: int = 5
    mpesa_breaker_reset_timeout: int = 60

    # Phone normalization: ISO 3166-1 region whose calling code is canonical
    phone_default_region: str = "KE"

    # Prefix for gateway ids assigned before the gateway has responded
    provisional_id_prefix: str = "pending"

    # Ledger store
    database_url: str = "sqlite+aiosqlite:///./mpesa_relay.db"

    # Application Configuration
    app_name: str = "M-PESA Deposit Relay"
    debug: bool = False
    environment: str = "development"
    host: str = "0.0.0.0"
    port: int = 10000
    cors_allow_origins: list[str] = ["*"]
    stkpush_rate_limit: str = "30/minute"
    rate_limit_enabled: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
    )


@lru_cache
def get_settings() -> Settings:
    """
    Build the process-wide Settings instance on first use.

    Returns:
        The cached Settings object.
    """
    return Settings()  # type: ignore[call-arg]
