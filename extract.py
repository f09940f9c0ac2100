"""
extract.py - Boundary to the AI receipt-extraction service.

The vision model itself lives outside this code base. It is consumed through
an injected callable:

    extractor(image_bytes, content_type, hints) -> dict

`hints` carries what the operator already knows about the receipt (vendor,
amount, date, payment source) as plain strings; only known keys with a value
are passed on.

Whatever comes back is untrusted: it is validated into `ExtractedReceipt`,
amounts are coerced with the same parsers the CSV adapters use, and the
category is folded onto the tenant's allow-list so the model can never invent
a category.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from pydantic import ValidationError

from categorize import clamp_category
from errors import AdapterError, MalformedInput
from logging_config import get_logger
from models import UNCATEGORIZED, ExtractedReceipt, Receipt
from normalize import parse_amount, parse_date, sanitize_cell

logger = get_logger(__name__)

Extractor = Callable[[bytes, str, dict[str, str]], dict]

HINT_FIELDS = ("vendor", "amount", "date", "source")

# Common near-miss spellings returned by the model, lowercased.
CATEGORY_MERGES: dict[str, str] = {
    "food & supplies": "Restaurant Food & Supplies",
    "food and supplies": "Restaurant Food & Supplies",
    "restaurant food and supplies": "Restaurant Food & Supplies",
    "supplies": "Restaurant Supplies",
    "cleaning": "Cleaning Supplies",
    "tools": "Tools & Equipment",
    "equipment": "Tools & Equipment",
    "tools and equipment": "Tools & Equipment",
    "building": "Building Supplies",
    "materials": "Building Supplies",
}

CATEGORY_KEYWORDS: list[tuple[tuple[str, ...], str]] = [
    (("clean",), "Cleaning Supplies"),
    (("tool", "equip"), "Tools & Equipment"),
    (("build", "reno", "material"), "Building Supplies"),
    (("bank fee",), "Bank Fees"),
    (("util",), "Utilities"),
    (("insur",), "Insurance"),
    (("fuel", "gas"), "Fuel"),
]


def normalize_category(raw: Optional[str], allowed: Iterable[str]) -> str:
    """Map a model-proposed category onto an allowed name, else "Uncategorized"."""
    allowed_names = list(allowed)
    text = (raw or "").strip()
    if not text:
        return UNCATEGORIZED

    lowered = text.lower()
    for name in allowed_names:
        if name.lower() == lowered:
            return name

    merged = CATEGORY_MERGES.get(lowered)
    if merged is None and "food" in lowered and "suppl" in lowered:
        merged = "Restaurant Food & Supplies"
    if merged is None:
        for needles, target in CATEGORY_KEYWORDS:
            if any(needle in lowered for needle in needles):
                merged = target
                break

    result = clamp_category(merged, allowed_names)
    if result == UNCATEGORIZED:
        logger.debug("extract_category_rejected | raw=%r", text)
    return result


def clean_hints(hints: Optional[Mapping[str, Any]]) -> dict[str, str]:
    """Keep the known hint fields that carry a value, as strings."""
    cleaned: dict[str, str] = {}
    for field in HINT_FIELDS:
        value = (hints or {}).get(field)
        if value is None:
            continue
        text = value.isoformat() if isinstance(value, date) else str(value).strip()
        if text:
            cleaned[field] = text
    return cleaned


def receipt_from_extraction(
    tenant_id: str,
    extracted: Union[ExtractedReceipt, dict[str, Any]],
    allowed: Iterable[str],
    image_ref: Optional[str] = None,
    today: Optional[date] = None,
) -> Receipt:
    """Build a Receipt from one extraction result.

    Negative amounts are taken as magnitudes; a tax larger than the total is
    dropped.

    Raises:
        MalformedInput: the payload is not an object of the expected shape.
    """
    if not isinstance(extracted, ExtractedReceipt):
        try:
            extracted = ExtractedReceipt.model_validate(extracted)
        except ValidationError as exc:
            raise MalformedInput(f"extraction result is malformed: {exc}") from exc

    total = abs(parse_amount(extracted.total))
    tax = abs(parse_amount(extracted.tax))
    if tax > total:
        logger.warning(
            "extract_tax_dropped | tenant=%s | vendor=%r | total=%s | tax=%s",
            tenant_id,
            extracted.vendor,
            total,
            tax,
        )
        tax = Decimal("0")

    receipt = Receipt(
        tenant_id=tenant_id,
        vendor=sanitize_cell(extracted.vendor),
        receipt_date=parse_date(extracted.date, today=today),
        total=total,
        tax=tax,
        category=normalize_category(extracted.category, allowed),
        source=sanitize_cell(extracted.source) or None,
        notes=sanitize_cell(extracted.notes) or None,
        image_ref=image_ref,
    )
    logger.info(
        "receipt_extracted | tenant=%s | vendor=%r | date=%s | total=%s | category=%s",
        tenant_id,
        receipt.vendor,
        receipt.receipt_date.isoformat(),
        receipt.total,
        receipt.category,
    )
    return receipt


def extract_receipt(
    extractor: Extractor,
    image: bytes,
    content_type: str,
    tenant_id: str,
    allowed: Iterable[str],
    image_ref: Optional[str] = None,
    today: Optional[date] = None,
    hints: Optional[Mapping[str, Any]] = None,
) -> Receipt:
    """Run the injected extractor over one image and clamp its answer.

    A payment source given as a hint is used when the answer names none.
    """
    if not image:
        raise MalformedInput("receipt image is empty")

    passed = clean_hints(hints)
    try:
        payload = extractor(image, content_type, passed)
    except Exception as exc:
        logger.error(
            "extract_failed | tenant=%s | content_type=%s | error_type=%s | error=%s",
            tenant_id,
            content_type,
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        raise AdapterError(f"receipt extraction failed: {exc}") from exc

    if not isinstance(payload, dict):
        raise MalformedInput("extraction result must be a JSON object")
    if passed.get("source") and not payload.get("source"):
        payload = {**payload, "source": passed["source"]}
    return receipt_from_extraction(tenant_id, payload, allowed, image_ref=image_ref, today=today)
