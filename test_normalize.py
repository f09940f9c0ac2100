"""
test_normalize.py - Row normalizer and field coercer tests.

Covers:
- parse_csv_rows (quoting, blank lines, header handling, malformed input)
- parse_amount
- parse_date
- clean_vendor
- sanitize_cell

Usage: pytest test_normalize.py
"""

from __future__ import annotations

import os
import sys
from datetime import date
from decimal import Decimal

import pytest

# Ensure we can import from project root
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from errors import MalformedInput
from normalize import clean_vendor, parse_amount, parse_csv_rows, parse_date, sanitize_cell

TODAY = date(2024, 6, 15)


# -- parse_csv_rows --


def test_csv_quoted_fields_keep_delimiters_and_quotes():
    text = 'Date,Description,Amount\n2024-01-02,"ACME, Inc. ""West""",-12.50\n'
    rows = parse_csv_rows(text)
    assert rows == [{"Date": "2024-01-02", "Description": 'ACME, Inc. "West"', "Amount": "-12.50"}]


def test_csv_quoted_field_with_newline():
    text = 'Date,Description,Amount\n2024-01-02,"line one\nline two",5\n'
    rows = parse_csv_rows(text)
    assert rows[0]["Description"] == "line one\nline two"


def test_csv_skips_blank_lines_and_trims():
    text = "\n\n  Date , Description , Amount \n\n 2024-01-02 ,  Coffee  , 3.00 \n\n"
    rows = parse_csv_rows(text)
    assert rows == [{"Date": "2024-01-02", "Description": "Coffee", "Amount": "3.00"}]


def test_csv_short_rows_are_padded():
    rows = parse_csv_rows("a,b,c\n1\n")
    assert rows == [{"a": "1", "b": "", "c": ""}]


def test_csv_strips_byte_order_mark():
    rows = parse_csv_rows("﻿Date,Amount\n2024-01-01,1\n")
    assert list(rows[0].keys()) == ["Date", "Amount"]


def test_csv_cells_stay_text_and_unnamed_columns_drop():
    rows = parse_csv_rows("Date,,Amount,Ref\n2024-01-01,x,3.00,0012\n")
    assert rows == [{"Date": "2024-01-01", "Amount": "3.00", "Ref": "0012"}]


def test_csv_unterminated_quote_is_malformed():
    with pytest.raises(MalformedInput):
        parse_csv_rows('Date,Description\n2024-01-01,"never closed\n')


@pytest.mark.parametrize("text", ["", "   ", None, "Date,Amount\n", "\n\nDate,Amount\n\n"])
def test_csv_without_data_rows_is_malformed(text):
    with pytest.raises(MalformedInput):
        parse_csv_rows(text)


# -- parse_amount --


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("$1,234.56", Decimal("1234.56")),
        ("1234.56", Decimal("1234.56")),
        ("-45.00", Decimal("-45.00")),
        ("(45.00)", Decimal("-45.00")),
        ("($1,000.10)", Decimal("-1000.10")),
        ("+7", Decimal("7")),
        ("€ 9.99", Decimal("9.99")),
        ("$-2.50", Decimal("-2.50")),
        ("", Decimal("0")),
        ("garbage", Decimal("0")),
        ("N/A", Decimal("0")),
        ("NaN", Decimal("0")),
        ("Infinity", Decimal("0")),
        (None, Decimal("0")),
        (12, Decimal("12")),
        (2.5, Decimal("2.5")),
    ],
)
def test_parse_amount(raw, expected):
    assert parse_amount(raw) == expected


@pytest.mark.parametrize("value", ["0.01", "999999.99", "1234567.89", "42"])
def test_parse_amount_currency_formatting(value):
    amount = Decimal(value)
    formatted = "$" + f"{amount:,.2f}"
    assert parse_amount(formatted) == amount


# -- parse_date --


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("2024-01-31", date(2024, 1, 31)),
        ("01/31/2024", date(2024, 1, 31)),
        ("Jan 31, 2024", date(2024, 1, 31)),
        ("2024-01-31T23:59:59Z", date(2024, 1, 31)),
        ("2024-01-31 10:15:00", date(2024, 1, 31)),
    ],
)
def test_parse_date_formats(raw, expected):
    assert parse_date(raw, today=TODAY) == expected


@pytest.mark.parametrize(
    "raw",
    ["", None, "not a date", "2024-13-45", "99/99/9999", "%%%", "null", "0000-00-00", "1e400", "\x00"],
)
def test_parse_date_never_raises(raw):
    result = parse_date(raw, today=TODAY)
    assert isinstance(result, date)
    assert result.isoformat()


def test_parse_date_falls_back_to_today():
    assert parse_date("garbage", today=TODAY) == TODAY


# -- clean_vendor / sanitize_cell --


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("SQ *JOE'S PIZZA #1234", "JOE'S PIZZA"),
        ("AMZN MKTP US*2K4RF83J0", "AMZN MKTP US"),
        ("TST* Blue Bottle", "Blue Bottle"),
        ("Staples", "Staples"),
        ("", None),
        (None, None),
    ],
)
def test_clean_vendor(raw, expected):
    assert clean_vendor(raw) == expected


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("=SUM(A1:A2)", "'=SUM(A1:A2)"),
        ("+cmd", "'+cmd"),
        ("@evil", "'@evil"),
        ("-foo", "'-foo"),
        ("-12.50", "-12.50"),
        ("-$5", "-$5"),
        ("Coffee", "Coffee"),
        (None, ""),
    ],
)
def test_sanitize_cell(raw, expected):
    assert sanitize_cell(raw) == expected
