"""
test_config.py - Settings loading and logging helper tests.

Usage: pytest test_config.py
"""

from __future__ import annotations

import logging
import os
import sys
from decimal import Decimal

import pytest
from pydantic import ValidationError

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config import load_settings
from logging_config import graceful, setup_logging


def test_defaults_when_environment_is_empty():
    settings = load_settings({})
    assert settings.database_url is None
    assert settings.store_file is None
    assert settings.match_window_days == 5
    assert settings.match_amount_tolerance == Decimal("0.01")
    assert settings.auto_match_confidence == pytest.approx(0.85)
    assert settings.max_bank_csv_rows == 1000
    assert settings.max_square_csv_rows == 10_000
    assert settings.bulk_update_batch_size == 25


def test_environment_overrides():
    settings = load_settings(
        {
            "MATCH_WINDOW_DAYS": "3",
            "MATCH_AMOUNT_TOLERANCE": "0.05",
            "RECON_STORE_FILE": "data/x.json",
            "LOG_JSON": "true",
            "DATABASE_URL": "   ",
        }
    )
    assert settings.match_window_days == 3
    assert settings.match_amount_tolerance == Decimal("0.05")
    assert settings.store_file == "data/x.json"
    assert settings.log_json is True
    assert settings.database_url is None


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        load_settings({"AUTO_MATCH_CONFIDENCE": "1.5"})


def test_graceful_returns_default_and_logs(caplog):
    @graceful(default_factory=list)
    def explode():
        raise RuntimeError("nope")

    with caplog.at_level(logging.ERROR):
        assert explode() == []
    assert "explode failed: RuntimeError: nope" in caplog.text


def test_graceful_does_not_swallow_keyboard_interrupt():
    @graceful(default_factory=lambda: None)
    def interrupted():
        raise KeyboardInterrupt

    with pytest.raises(KeyboardInterrupt):
        interrupted()


def test_setup_logging_accepts_level_names():
    setup_logging("debug")
    assert logging.getLogger().level == logging.DEBUG
    setup_logging("not-a-level")
    assert logging.getLogger().level == logging.INFO
