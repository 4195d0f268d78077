from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException

from ..db import Database
from ..deps import get_db, get_idempotency_key
from ..jsonlog import json_log
from ..reconciliation import (
    PURCHASE_RETURN,
    SALE_RETURN,
    ReturnPolicy,
    ReturnRequestLine,
    parse_invoice_id,
    process_return,
)
from ..validation import CamelModel, OptionalText

router = APIRouter(tags=["returns"])


class ReturnItemIn(CamelModel):
    item_id: int
    quantity: Decimal


class ReturnIn(CamelModel):
    items: List[ReturnItemIn] = []
    reason: OptionalText = None
    processed_by: OptionalText = None
    # Header wins when both are sent.
    idempotency_key: Optional[str] = None


def _run_return(db: Database, policy: ReturnPolicy, event: str, invoice_id: str, data: ReturnIn, header_key: Optional[str]):
    key = header_key or ((data.idempotency_key or "").strip() or None)
    if key and len(key) > 128:
        raise HTTPException(status_code=400, detail="Idempotency-Key is too long (max 128 chars)")
    lines = [ReturnRequestLine(item_id=it.item_id, quantity=it.quantity) for it in data.items]
    with db.connection() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                result = process_return(
                    cur,
                    policy,
                    invoice_id,
                    lines,
                    reason=data.reason,
                    processed_by=data.processed_by,
                    idempotency_key=key,
                )
    if not result.get("replayed"):
        json_log(
            "info",
            event,
            original_invoice_id=parse_invoice_id(invoice_id),
            return_invoice_id=result["returnInvoiceId"],
            total_amount=result["totalAmount"],
            original_closed=result["originalClosed"],
        )
    return result


@router.post("/sales/{invoice_id}/return")
def create_sale_return(
    invoice_id: str,
    data: ReturnIn,
    db: Database = Depends(get_db),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
):
    return _run_return(db, SALE_RETURN, "sales.return.created", invoice_id, data, idempotency_key)


@router.post("/purchases/{invoice_id}/return")
def create_purchase_return(
    invoice_id: str,
    data: ReturnIn,
    db: Database = Depends(get_db),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
):
    return _run_return(db, PURCHASE_RETURN, "purchases.return.created", invoice_id, data, idempotency_key)


# Older UI builds post returns under /invoices.
@router.post("/invoices/{invoice_id}/sale-return")
def create_sale_return_alias(
    invoice_id: str,
    data: ReturnIn,
    db: Database = Depends(get_db),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
):
    return create_sale_return(invoice_id, data, db, idempotency_key)


@router.post("/invoices/{invoice_id}/purchase-return")
def create_purchase_return_alias(
    invoice_id: str,
    data: ReturnIn,
    db: Database = Depends(get_db),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
):
    return create_purchase_return(invoice_id, data, db, idempotency_key)
