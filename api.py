"""
api.py - FastAPI HTTP layer for the reconciliation engine.

Thin request/response shell around pipeline, match, categorize, extract and
ledger. No business rules live here.

Error mapping:
    MalformedInput / validation problems -> 400
    NotFound                             -> 404
    MatchConflict                        -> 409
    anything else                        -> 500 (logged with traceback)
"""

from __future__ import annotations

from datetime import date
from typing import Any, Callable, Optional, TypeVar

import uvicorn
from fastapi import FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from categorize import bulk_categorize
from config import load_settings
from errors import MatchConflict, NotFound
from extract import receipt_from_extraction
from ledger import build_ledger, ledger_frame
from logging_config import get_logger, setup_logging
from match import delete_receipt, edit_receipt, manual_match, unmatch
from models import (
    BulkCategorizeRequest,
    CategoryRequest,
    CsvImportRequest,
    ExtractedReceiptRequest,
    FallbackRule,
    FallbackRuleRequest,
    ManualMatchRequest,
    OrgCategory,
    Receipt,
    ReceiptCreateRequest,
    ReceiptUpdateRequest,
    SquareImportRequest,
    VendorRule,
    VendorRuleRequest,
)
from pipeline import import_bank_csv, import_square_csv
from store import create_store

logger = get_logger("recon-api")

T = TypeVar("T")

app = FastAPI(
    title="Transaction Reconciliation API",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

settings = load_settings()
store = create_store(settings)


def _call(event: str, func: Callable[[], T]) -> T:
    """Run one operation and translate domain errors into HTTP errors."""
    try:
        return func()
    except HTTPException:
        raise
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except MatchConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except (ValueError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        logger.error(
            "%s_error | error_type=%s | error=%s",
            event,
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail=f"Unexpected server error during {event}.") from exc


def _decode_upload(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        return content.decode("latin-1")


@app.get("/health")
def health() -> dict[str, str]:
    """Service health check."""
    return {"status": "ok"}


@app.post("/imports/csv")
def import_csv(payload: CsvImportRequest) -> dict[str, Any]:
    """Import a bank/card statement CSV sent as text."""
    report = _call("import_csv", lambda: import_bank_csv(store, payload, settings))
    return report.model_dump(mode="json")


@app.post("/imports/csv/upload")
async def import_csv_upload(
    file: UploadFile = File(...),
    tenant_id: str = Form(..., alias="tenantId"),
    account_id: Optional[str] = Form(default=None, alias="accountId"),
    source_label: Optional[str] = Form(default=None, alias="sourceLabel"),
    account_name: Optional[str] = Form(default=None, alias="accountName"),
) -> dict[str, Any]:
    """Import a bank/card statement CSV sent as a multipart file."""
    try:
        content = await file.read(settings.max_bank_csv_bytes + 1)
    finally:
        await file.close()

    if len(content) > settings.max_bank_csv_bytes:
        raise HTTPException(
            status_code=400,
            detail=f"Bank CSV is too large (limit {settings.max_bank_csv_bytes} bytes).",
        )

    def _import():
        request = CsvImportRequest(
            csv_content=_decode_upload(content),
            tenant_id=tenant_id,
            account_id=account_id,
            source_label=source_label,
            account_name=account_name,
        )
        return import_bank_csv(store, request, settings)

    return _call("import_csv_upload", _import).model_dump(mode="json")


@app.post("/imports/square")
def import_square(payload: SquareImportRequest) -> dict[str, Any]:
    """Import a Square payments, deposits or loan report."""
    report = _call("import_square", lambda: import_square_csv(store, payload, settings))
    return report.model_dump(mode="json")


@app.post("/categorize")
def categorize_bulk(payload: BulkCategorizeRequest) -> dict[str, int]:
    """Re-run the rules over uncategorized transactions."""
    updated = _call(
        "categorize",
        lambda: bulk_categorize(
            store,
            payload.tenant_id,
            start=payload.start_date,
            end=payload.end_date,
            batch_size=settings.bulk_update_batch_size,
        ),
    )
    return {"updated": updated}


@app.post("/receipts")
def create_receipt(payload: ReceiptCreateRequest) -> dict[str, Any]:
    """Record a receipt entered by an operator."""
    receipt = Receipt(
        tenant_id=payload.tenant_id,
        vendor=payload.vendor,
        receipt_date=payload.receipt_date,
        total=payload.total,
        tax=payload.tax,
        category=payload.category,
        source=payload.source,
        notes=payload.notes,
        image_ref=payload.image_ref,
    )
    stored = _call("create_receipt", lambda: store.add_receipt(receipt))
    return stored.model_dump(mode="json")


@app.post("/receipts/extracted")
def create_extracted_receipt(payload: ExtractedReceiptRequest) -> dict[str, Any]:
    """Record a receipt from the extraction service's JSON answer."""

    def _create() -> Receipt:
        allowed = [c.name for c in store.list_categories(payload.tenant_id)]
        receipt = receipt_from_extraction(
            payload.tenant_id,
            payload.extraction,
            allowed,
            image_ref=payload.image_ref,
        )
        return store.add_receipt(receipt)

    return _call("create_extracted_receipt", _create).model_dump(mode="json")


@app.patch("/receipts/{receipt_id}")
def update_receipt(receipt_id: str, payload: ReceiptUpdateRequest) -> dict[str, Any]:
    """Edit the fields of a receipt sent in the request."""
    stored = _call(
        "edit_receipt",
        lambda: edit_receipt(store, payload.tenant_id, receipt_id, payload.changes()),
    )
    return stored.model_dump(mode="json")


@app.delete("/receipts/{receipt_id}")
def remove_receipt(receipt_id: str, tenant_id: str = Query(..., alias="tenantId")) -> dict[str, Any]:
    """Delete a receipt and the matches that point at it."""
    removed = _call("delete_receipt", lambda: delete_receipt(store, tenant_id, receipt_id))
    return {"receipt_id": receipt_id, "matches_removed": removed}


@app.post("/matches")
def create_match(payload: ManualMatchRequest) -> dict[str, Any]:
    """Link a transaction to a receipt by hand."""
    match = _call(
        "manual_match",
        lambda: manual_match(store, payload.tenant_id, payload.transaction_id, payload.receipt_id),
    )
    return match.model_dump(mode="json")


@app.delete("/matches/{transaction_id}")
def remove_match(transaction_id: str, tenant_id: str = Query(..., alias="tenantId")) -> dict[str, str]:
    """Remove the match of a transaction."""
    _call("unmatch", lambda: unmatch(store, tenant_id, transaction_id))
    return {"transaction_id": transaction_id, "status": "unmatched"}


@app.post("/rules/vendor")
def create_vendor_rule(payload: VendorRuleRequest) -> dict[str, Any]:
    rule = VendorRule(
        tenant_id=payload.tenant_id,
        vendor_pattern=payload.vendor_pattern,
        category=payload.category,
        direction_filter=payload.direction_filter,
    )
    return _call("create_vendor_rule", lambda: store.add_vendor_rule(rule)).model_dump(mode="json")


@app.post("/rules/fallback")
def create_fallback_rule(payload: FallbackRuleRequest) -> dict[str, Any]:
    rule = FallbackRule(
        tenant_id=payload.tenant_id,
        match_pattern=payload.match_pattern,
        default_category=payload.default_category,
        enabled=payload.enabled,
    )
    return _call("create_fallback_rule", lambda: store.add_fallback_rule(rule)).model_dump(mode="json")


@app.post("/categories")
def upsert_category(payload: CategoryRequest) -> dict[str, Any]:
    category = OrgCategory(
        tenant_id=payload.tenant_id,
        name=payload.name,
        sort=payload.sort,
        is_active=payload.is_active,
    )
    return _call("upsert_category", lambda: store.upsert_category(category)).model_dump(mode="json")


@app.get("/ledger")
def get_ledger(
    tenant_id: str = Query(..., alias="tenantId"),
    start_date: Optional[date] = Query(default=None, alias="startDate"),
    end_date: Optional[date] = Query(default=None, alias="endDate"),
    output: str = Query(default="json", alias="format"),
):
    """Unified ledger as JSON rows, or as CSV with `format=csv`."""
    entries = _call("ledger", lambda: build_ledger(store, tenant_id, start=start_date, end=end_date))
    if output == "csv":
        csv_text = ledger_frame(entries).to_csv(index=False)
        return PlainTextResponse(content=csv_text, media_type="text/csv")
    return [entry.model_dump(mode="json") for entry in entries]


if __name__ == "__main__":
    setup_logging(settings.log_level, json_format=settings.log_json)
    uvicorn.run("api:app", host="0.0.0.0", port=settings.port, reload=False)
