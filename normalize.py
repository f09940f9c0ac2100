"""
normalize.py - Row normalizer and field coercers.

Row normalizer:
    parse_csv_rows(text)   -> list of header-keyed string maps

Field coercers (pure, never raise):
    parse_amount(value)    -> Decimal, written sign preserved, 0 on failure
    parse_date(value)      -> date, today on failure
    clean_vendor(text)     -> vendor name without processor noise
    sanitize_cell(text)    -> text safe to re-export into spreadsheets

Design principles:
    - Invalid input degrades to neutral defaults instead of raising.
    - Only structural problems with the whole file raise (MalformedInput).
"""

from __future__ import annotations

import io
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import pandas as pd
from dateutil import parser as dateparser

from errors import MalformedInput
from logging_config import get_logger

logger = get_logger(__name__)

CURRENCY_SYMBOLS = ("$", "€", "£", "¥")
FORMULA_PREFIXES = ("=", "+", "@", "\t", "\r")
NULL_TOKENS = {"n/a", "na", "none", "null", "nan", "unknown", "-", "--"}

PROCESSOR_PREFIXES: list[str] = [
    "sq *",
    "sq*",
    "pp*",
    "pp *",
    "tst*",
    "tst *",
    "grub*",
    "dd *",
    "ue *",
    "pos ",
    "pos purchase ",
    "debit card purchase ",
]


def parse_csv_rows(text: Optional[str], delimiter: str = ",") -> list[dict[str, str]]:
    """Split delimited text into header-keyed rows.

    Quoted fields may contain the delimiter, newlines and doubled quotes.
    Blank lines are ignored; the first non-blank line is the header. Every
    header and value is trimmed and read as text. Short rows are padded with
    "" and columns with an empty header are dropped.

    Raises:
        MalformedInput: no header or no data row, or text pandas cannot parse.
    """
    if text is None or not str(text).strip():
        raise MalformedInput("CSV file is empty")

    content = str(text).lstrip("\ufeff").lstrip()
    try:
        df = pd.read_csv(
            io.StringIO(content),
            sep=delimiter,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            skipinitialspace=True,
            index_col=False,
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        raise MalformedInput(f"CSV could not be parsed: {exc}") from exc

    # Normalize column names and remove fully empty rows.
    df.columns = [str(col).strip() for col in df.columns]
    df = df.loc[:, [bool(col) and not col.startswith("Unnamed:") for col in df.columns]]
    if df.empty:
        raise MalformedInput("CSV file needs a header row and at least one data row")
    df = df.fillna("").apply(lambda column: column.astype(str).str.strip())
    df = df[(df != "").any(axis=1)]

    if df.empty:
        raise MalformedInput("CSV file needs a header row and at least one data row")

    rows = df.to_dict(orient="records")
    logger.debug("csv_parsed | headers=%s | rows=%s", list(df.columns), len(rows))
    return rows


def sanitize_cell(value: Optional[str]) -> str:
    """Neutralize spreadsheet formula prefixes in free-text cells.

    A leading '-' is only treated as a formula when it is not the sign of a
    number, so negative amounts stay readable.
    """
    if value is None:
        return ""
    text = str(value).strip()
    if not text:
        return text
    if text.startswith(FORMULA_PREFIXES):
        return "'" + text
    if text.startswith("-") and not re.match(r"^-\s*[\d.$]", text):
        return "'" + text
    return text


def parse_amount(value: Any) -> Decimal:
    """Parse a currency string into a Decimal.

    Currency symbols, thousands separators and whitespace are removed.
    Accounting parentheses mean negative. Empty, unparseable or non-finite
    input returns Decimal("0").
    """
    if value is None:
        return Decimal("0")

    if isinstance(value, bool):
        return Decimal("0")

    if isinstance(value, Decimal):
        return value if value.is_finite() else Decimal("0")

    if isinstance(value, (int, float)):
        try:
            parsed = Decimal(str(value))
        except InvalidOperation:
            return Decimal("0")
        return parsed if parsed.is_finite() else Decimal("0")

    cleaned = str(value).strip()
    if not cleaned or cleaned.lower() in NULL_TOKENS:
        return Decimal("0")

    negative = False
    if cleaned.startswith("(") and cleaned.endswith(")"):
        negative = True
        cleaned = cleaned[1:-1]

    for symbol in CURRENCY_SYMBOLS:
        cleaned = cleaned.replace(symbol, "")
    cleaned = cleaned.replace(",", "").replace(" ", "").replace("'", "")

    if cleaned.startswith("-"):
        negative = not negative
        cleaned = cleaned[1:]
    elif cleaned.startswith("+"):
        cleaned = cleaned[1:]

    if not cleaned:
        return Decimal("0")

    try:
        parsed = Decimal(cleaned)
    except InvalidOperation:
        logger.debug("parse_amount | parse_failed | raw=%r | fallback=0", value)
        return Decimal("0")

    if not parsed.is_finite():
        logger.debug("parse_amount | non_finite | raw=%r | fallback=0", value)
        return Decimal("0")

    return -parsed if negative else parsed


def parse_date(value: Any, today: Optional[date] = None) -> date:
    """Parse a loose date string into a calendar date.

    Falls back to `today` (default: the local clock's date) when the input is
    empty or unparseable. Time components are discarded.
    """
    fallback = today or date.today()

    if value is None:
        return fallback
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    if not text or text.lower() in NULL_TOKENS:
        return fallback

    try:
        parsed = dateparser.parse(text, dayfirst=False)
    except (ValueError, TypeError, OverflowError) as exc:
        logger.warning(
            "parse_date | parse_error=%s | raw=%r | fallback=%s",
            type(exc).__name__,
            text,
            fallback.isoformat(),
        )
        return fallback

    if parsed is None:
        return fallback
    return parsed.date()


def clean_vendor(text: Optional[str]) -> Optional[str]:
    """Derive a readable vendor name from a bank descriptor.

    "SQ *JOE'S PIZZA #1234"  -> "JOE'S PIZZA"
    "AMZN MKTP US*2K4RF83J0" -> "AMZN MKTP US"
    """
    if text is None:
        return None
    name = str(text).strip()
    if not name:
        return None

    lowered = name.lower()
    for prefix in PROCESSOR_PREFIXES:
        if lowered.startswith(prefix):
            name = name[len(prefix) :].strip()
            break

    if "*" in name:
        name = name.split("*", 1)[0].strip() or name.split("*", 1)[1].strip()

    name = re.sub(r"#\s*\d+", "", name)
    name = re.sub(r"\s+", " ", name).strip(" -")
    return name or None
