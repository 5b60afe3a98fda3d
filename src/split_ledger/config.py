"""Configuration management for SplitLedger."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SPLIT_LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Rounding tolerance for monetary sums (1 cent = 0.01 currency unit)
    tolerance_cents: int = 1

    # Peer-to-peer settlements need an accepted relationship
    require_relationship: bool = True

    # Refuse settlements larger than the outstanding pairwise debt
    reject_overpayment: bool = False

    # Display only
    currency_symbol: str = "$"

    # Database path
    database_path: Path = Path.home() / ".split_ledger" / "split_ledger.db"

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
            f"Failed to load settings. Check the SPLIT_LEDGER_* environment "
            f"variables or your .env file.\n"
            f"Error: {e}"
        ) from e
