"""Application configuration loaded from environment variables.

Settings for the database connection and the credit ledger. Uses
pydantic-settings for validation and .env file support.
"""

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Known insecure default password that must not be used in production
# Security: Runtime check in check_ledger_settings() prevents use in production
_INSECURE_DEFAULT_PASSWORD = "promptflow_dev_password"  # nosec B105


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_host: str = "localhost"
    database_port: int = 5432
    database_name: str = "promptflow_ledger"
    database_user: str = "promptflow_user"
    database_password: str = _INSECURE_DEFAULT_PASSWORD

    # Application
    environment: str = "development"
    log_level: str = "INFO"

    # Ledger
    ledger_burn_max_attempts: int = 3
    ledger_retry_backoff_seconds: float = 0.01
    ledger_creator_share_percent: int = 80
    ledger_creator_payout_expiry_days: int = 90
    ledger_purchase_expiry_days: int = 365
    ledger_bundle_bonus_expiry_days: int = 90
    ledger_history_max_page_size: int = 100

    @property
    def database_url(self) -> str:
        """Async database URL for SQLAlchemy."""
        return (
            f"postgresql+asyncpg://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @property
    def database_url_sync(self) -> str:
        """Sync database URL for Alembic."""
        return (
            f"postgresql://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @model_validator(mode="after")
    def check_ledger_settings(self) -> "Settings":
        """Validate ledger invariants and production security requirements.

        Checks:
        - At least one burn attempt is allowed
        - Retry backoff is non-negative
        - Creator share is a percentage (0-100)
        - Creator payout, purchase and bundle bonus expiries are positive
        - History page size is positive
        - Database password must not be the default in production
        """
        if self.ledger_burn_max_attempts < 1:
            msg = (
                "LEDGER_BURN_MAX_ATTEMPTS must be at least 1. "
                f"Got: {self.ledger_burn_max_attempts}"
            )
            raise ValueError(msg)
        if self.ledger_retry_backoff_seconds < 0:
            msg = (
                "LEDGER_RETRY_BACKOFF_SECONDS cannot be negative. "
                f"Got: {self.ledger_retry_backoff_seconds}"
            )
            raise ValueError(msg)
        if not 0 <= self.ledger_creator_share_percent <= 100:
            msg = (
                "LEDGER_CREATOR_SHARE_PERCENT must be between 0 and 100. "
                f"Got: {self.ledger_creator_share_percent}"
            )
            raise ValueError(msg)
        if self.ledger_creator_payout_expiry_days < 1:
            msg = (
                "LEDGER_CREATOR_PAYOUT_EXPIRY_DAYS must be positive. "
                f"Got: {self.ledger_creator_payout_expiry_days}"
            )
            raise ValueError(msg)
        for name in (
            "ledger_purchase_expiry_days",
            "ledger_bundle_bonus_expiry_days",
        ):
            if getattr(self, name) < 1:
                msg = f"{name.upper()} must be positive. Got: {getattr(self, name)}"
                raise ValueError(msg)
        if self.ledger_history_max_page_size < 1:
            msg = (
                "LEDGER_HISTORY_MAX_PAGE_SIZE must be positive. "
                f"Got: {self.ledger_history_max_page_size}"
            )
            raise ValueError(msg)

        if (
            self.environment == "production"
            and self.database_password == _INSECURE_DEFAULT_PASSWORD
        ):
            msg = (
                "Cannot use default database password in production. "
                "Set DATABASE_PASSWORD environment variable to a secure value."
            )
            raise ValueError(msg)

        return self


settings = Settings()
