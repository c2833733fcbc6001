"""Configuration management for SplitLedger."""

from decimal import Decimal
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SPLITLEDGER_",
        case_sensitive=False,
        extra="ignore",
    )

    # Database path
    database_path: Path = Path.home() / ".splitledger" / "splitledger.db"

    # User directory (empty = offline static directory)
    directory_base_url: str = ""
    directory_timeout: float = 10.0

    # Settlement rules
    min_settlement_amount: Decimal = Decimal("0.01")
    auto_settle_threshold: Decimal = Decimal("0.01")  # Clamp to zero at or below
    settled_tolerance: Decimal = Decimal("0.01")  # Active if abs(amount) above

    # Expense rules
    min_transaction_amount: Decimal = Decimal("0.01")
    max_transaction_amount: Decimal = Decimal("100000.00")
    max_participants: int = 20

    # Optimistic concurrency
    max_retries: int = 3
    retry_backoff_seconds: float = 0.05

    def __init__(self, **kwargs):
        """Initialize settings and create database directory if needed."""
        super().__init__(**kwargs)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)


def load_settings() -> Settings:
    """Load application settings from environment variables."""
    try:
        return Settings()
    except Exception as e:
        raise ConfigurationError(
            f"Failed to load settings. Check the SPLITLEDGER_* variables "
            f"in your environment or .env file.\n"
            f"Error: {e}"
        ) from e
