"""
config.py - Environment-driven settings.

Values are read once from the process environment (after loading a local
.env file, if any) into a validated `Settings` model. Modules receive the
settings object explicitly; nothing reads os.environ at call time.
"""

from __future__ import annotations

import os
from decimal import Decimal
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from logging_config import get_logger

logger = get_logger(__name__)

try:
    load_dotenv()
except UnicodeDecodeError:
    # Legacy Windows-encoded .env files.
    load_dotenv(encoding="cp1252")


class Settings(BaseModel):
    """Runtime configuration for the import engine and its HTTP/CLI shells."""

    database_url: Optional[str] = Field(
        default=None,
        description="PostgreSQL DSN. When set, the Postgres store is used.",
    )
    store_file: Optional[str] = Field(
        default=None,
        description="JSON snapshot path for the file store (used when no DATABASE_URL).",
    )
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False)

    max_bank_csv_bytes: int = Field(default=5 * 1024 * 1024, gt=0)
    max_bank_csv_rows: int = Field(default=1000, gt=0)
    max_square_csv_bytes: int = Field(default=10_000_000, gt=0)
    max_square_csv_rows: int = Field(default=10_000, gt=0)

    match_window_days: int = Field(default=5, ge=0)
    match_amount_tolerance: Decimal = Field(default=Decimal("0.01"), ge=0)
    auto_match_confidence: float = Field(default=0.85, ge=0.0, le=1.0)

    bulk_update_batch_size: int = Field(default=25, gt=0)
    max_reported_errors: int = Field(default=10, gt=0)

    port: int = Field(default=8000)

    @field_validator("database_url", "store_file", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        text = str(value or "").strip()
        return text or None


_ENV_FIELDS: dict[str, str] = {
    "DATABASE_URL": "database_url",
    "RECON_STORE_FILE": "store_file",
    "LOG_LEVEL": "log_level",
    "LOG_JSON": "log_json",
    "MAX_BANK_CSV_BYTES": "max_bank_csv_bytes",
    "MAX_BANK_CSV_ROWS": "max_bank_csv_rows",
    "MAX_SQUARE_CSV_BYTES": "max_square_csv_bytes",
    "MAX_SQUARE_CSV_ROWS": "max_square_csv_rows",
    "MATCH_WINDOW_DAYS": "match_window_days",
    "MATCH_AMOUNT_TOLERANCE": "match_amount_tolerance",
    "AUTO_MATCH_CONFIDENCE": "auto_match_confidence",
    "BULK_UPDATE_BATCH_SIZE": "bulk_update_batch_size",
    "PORT": "port",
}


def load_settings(environ: Optional[dict[str, str]] = None) -> Settings:
    """Build Settings from environment variables (unset variables keep defaults)."""
    source = os.environ if environ is None else environ
    values = {
        field: source[env_name]
        for env_name, field in _ENV_FIELDS.items()
        if source.get(env_name, "").strip() != ""
    }
    settings = Settings.model_validate(values)
    logger.debug(
        "settings_loaded | store=%s | window_days=%s | tolerance=%s",
        "postgres" if settings.database_url else ("file" if settings.store_file else "memory"),
        settings.match_window_days,
        settings.match_amount_tolerance,
    )
    return settings
