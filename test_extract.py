"""
test_extract.py - Extraction boundary tests with a fake extraction service.

Usage: pytest test_extract.py
"""

from __future__ import annotations

import os
import sys
from datetime import date
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from errors import AdapterError, MalformedInput
from extract import clean_hints, extract_receipt, normalize_category, receipt_from_extraction
from models import UNCATEGORIZED

ALLOWED = ["Restaurant Food & Supplies", "Cleaning Supplies", "Fuel", "Other"]
TODAY = date(2024, 6, 15)


def _fake_extractor(payload):
    calls = []

    def extractor(image: bytes, content_type: str, hints: dict) -> dict:
        calls.append((len(image), content_type, hints))
        return payload

    extractor.calls = calls
    return extractor


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("Fuel", "Fuel"),
        ("fuel", "Fuel"),
        ("  cleaning  ", "Cleaning Supplies"),
        ("Food and Supplies", "Restaurant Food & Supplies"),
        ("gas station", "Fuel"),
        ("Tools & Equipment", UNCATEGORIZED),
        ("Crypto", UNCATEGORIZED),
        ("", UNCATEGORIZED),
        (None, UNCATEGORIZED),
    ],
)
def test_normalize_category(raw, expected):
    assert normalize_category(raw, ALLOWED) == expected


def test_extracted_receipt_is_coerced_and_clamped():
    extractor = _fake_extractor(
        {
            "vendor": "=HYPERLINK(\"x\")",
            "date": "03/04/2024",
            "total": "$1,020.50",
            "tax": 20.5,
            "category": "Made Up Category",
            "source": "cash",
            "items": [{"name": "ignored"}],
        }
    )
    receipt = extract_receipt(extractor, b"\x89PNG...", "image/png", "t1", ALLOWED, image_ref="img/1.png", today=TODAY)

    assert extractor.calls == [(7, "image/png", {})]
    assert receipt.tenant_id == "t1"
    assert receipt.vendor.startswith("'=")
    assert receipt.receipt_date == date(2024, 3, 4)
    assert receipt.total == Decimal("1020.50")
    assert receipt.tax == Decimal("20.5")
    assert receipt.category == UNCATEGORIZED
    assert receipt.is_cash
    assert receipt.image_ref == "img/1.png"


def test_bad_values_degrade_instead_of_failing():
    receipt = receipt_from_extraction(
        "t1",
        {"vendor": None, "date": "sometime", "total": "-15", "tax": "99"},
        ALLOWED,
        today=TODAY,
    )
    assert receipt.vendor == ""
    assert receipt.receipt_date == TODAY
    assert receipt.total == Decimal("15")
    assert receipt.tax == Decimal("0")


def test_extractor_failure_is_an_adapter_error():
    def broken(image, content_type, hints):
        raise TimeoutError("vision service timed out")

    with pytest.raises(AdapterError):
        extract_receipt(broken, b"img", "image/jpeg", "t1", ALLOWED)


def test_non_object_answer_is_malformed():
    with pytest.raises(MalformedInput):
        extract_receipt(_fake_extractor(["not", "an", "object"]), b"img", "image/jpeg", "t1", ALLOWED)
    with pytest.raises(MalformedInput):
        extract_receipt(_fake_extractor({}), b"", "image/jpeg", "t1", ALLOWED)


def test_hints_reach_the_extractor():
    extractor = _fake_extractor({"vendor": "Shell", "date": "2024-01-02", "total": "40"})
    receipt = extract_receipt(
        extractor,
        b"img",
        "image/jpeg",
        "t1",
        ALLOWED,
        hints={"vendor": " Shell ", "amount": Decimal("40.00"), "date": date(2024, 1, 2), "source": "cash", "tip": "5"},
    )

    assert extractor.calls == [
        (3, "image/jpeg", {"vendor": "Shell", "amount": "40.00", "date": "2024-01-02", "source": "cash"})
    ]
    assert receipt.source == "cash"
    assert receipt.is_cash


def test_answer_source_wins_over_hint():
    extractor = _fake_extractor({"vendor": "Shell", "total": "40", "source": "Visa"})
    receipt = extract_receipt(extractor, b"img", "image/jpeg", "t1", ALLOWED, hints={"source": "cash"}, today=TODAY)
    assert receipt.source == "Visa"


def test_empty_hints_are_dropped():
    assert clean_hints(None) == {}
    assert clean_hints({"vendor": "", "amount": None, "date": "  "}) == {}
