from datetime import date
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from fastapi import APIRouter, Body, Depends, HTTPException
from fastapi.exceptions import RequestValidationError
from pydantic import AliasChoices, Field, TypeAdapter, ValidationError

from ..calculator import InvoiceTotals, LineInput, ZERO, compute_totals, split_gst, to_decimal
from ..config import settings
from ..db import Database
from ..deps import get_db
from ..jsonlog import json_log
from ..ledger import (
    INVOICE_NO_PREFIX,
    PURCHASE_TYPES,
    apply_balance_delta,
    apply_stock_delta,
    balance_delta,
    counterparty_table,
    new_invoice_no,
    stock_delta,
)
from ..payment_guards import assert_not_overpaid, matches_within
from ..reconciliation import parse_invoice_id
from ..validation import CamelModel, GstSplit, InvoiceType, OptionalText, PaymentMode, TaxMode

router = APIRouter(prefix="/invoices", tags=["invoices"])


class InvoiceLineIn(CamelModel):
    item_id: Optional[int] = None
    item_name: OptionalText = None
    # Quantity columns are numeric(14,3).
    quantity: Decimal = Field(gt=0, decimal_places=3)
    price: Decimal = Field(ge=0)
    tax_rate: Decimal = Field(default=Decimal("0"), ge=0)
    mrp: Optional[Decimal] = Field(default=None, ge=0)


class _InvoiceBase(CamelModel):
    invoice_date: Optional[date] = Field(default=None, validation_alias=AliasChoices("date", "invoiceDate", "invoice_date"))
    invoice_no: OptionalText = None
    notes: OptionalText = None
    payment_mode: PaymentMode = "CASH"
    tax_mode: TaxMode = "EXCLUSIVE"
    gst_split: GstSplit = "CGST_SGST"
    items: List[InvoiceLineIn] = []
    # Client-side totals are a display hint; the server recomputes and compares.
    total_amount: Optional[Decimal] = None
    total_tax: Optional[Decimal] = None
    round_off: Optional[Decimal] = None
    amount_paid: Decimal = Decimal("0")


class SaleInvoiceIn(_InvoiceBase):
    type: Literal["SALE"]
    # Absent / "CASH" / "" books the sale against the Cash Customer.
    party_id: Optional[Union[int, str]] = None


class ReturnInvoiceIn(_InvoiceBase):
    type: Literal["RETURN"]
    party_id: Optional[Union[int, str]] = None


class PurchaseInvoiceIn(_InvoiceBase):
    type: Literal["PURCHASE"]
    party_id: int = Field(validation_alias=AliasChoices("partyId", "party_id", "supplierId", "supplier_id"))


class PurchaseReturnInvoiceIn(_InvoiceBase):
    type: Literal["PURCHASE_RETURN"]
    party_id: int = Field(validation_alias=AliasChoices("partyId", "party_id", "supplierId", "supplier_id"))


InvoiceIn = Annotated[
    Union[SaleInvoiceIn, ReturnInvoiceIn, PurchaseInvoiceIn, PurchaseReturnInvoiceIn],
    Field(discriminator="type"),
]
_invoice_adapter = TypeAdapter(InvoiceIn)


def parse_invoice_payload(payload: Dict[str, Any]):
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="invoice payload must be an object")
    body = dict(payload)
    if isinstance(body.get("type"), str):
        body["type"] = body["type"].strip().upper().replace("-", "_")
    try:
        return _invoice_adapter.validate_python(body)
    except ValidationError as ex:
        raise RequestValidationError(ex.errors(include_url=False, include_context=False))


def _resolve_party_id(cur, invoice_type: str, raw) -> int:
    if invoice_type in PURCHASE_TYPES:
        cur.execute("SELECT id FROM suppliers WHERE id = %s", (raw,))
        if not cur.fetchone():
            raise HTTPException(status_code=404, detail="Supplier not found")
        return raw
    if raw is None or (isinstance(raw, str) and raw.strip().upper() in {"", "CASH"}):
        return settings.cash_party_id
    try:
        party_id = int(raw)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="Invalid partyId")
    cur.execute("SELECT id FROM parties WHERE id = %s", (party_id,))
    if not cur.fetchone():
        raise HTTPException(status_code=404, detail="Party not found")
    return party_id


def _resolve_total(data, totals: InvoiceTotals) -> tuple[Decimal, Decimal]:
    """(stored total_amount, stored round_off) for the client's totalAmount."""
    eps = settings.totals_tolerance
    if data.total_amount is None:
        return totals.payable_total, totals.round_off
    client = to_decimal(data.total_amount)
    if matches_within(client, totals.payable_total, eps):
        return totals.payable_total, totals.round_off
    if matches_within(client, totals.total, eps):
        return totals.total, ZERO
    raise HTTPException(
        status_code=400,
        detail=f"totalAmount does not match computed total ({totals.payable_total})",
    )


def _due_status(total: Decimal, paid: Decimal) -> str:
    if total - paid <= 0:
        return "PAID"
    if paid > 0:
        return "PARTIAL"
    return "UNPAID"


def _compute(data) -> InvoiceTotals:
    if not data.items:
        raise HTTPException(status_code=400, detail="items must be a non-empty list")
    try:
        return compute_totals(
            [LineInput(price=ln.price, quantity=ln.quantity, tax_rate=ln.tax_rate, mrp=ln.mrp) for ln in data.items],
            data.tax_mode,
            data.gst_split,
        )
    except ValueError as ex:
        raise HTTPException(status_code=400, detail=str(ex))


def _header_values(cur, data) -> Dict[str, Any]:
    totals = _compute(data)
    total_amount, round_off = _resolve_total(data, totals)
    paid = to_decimal(data.amount_paid)
    assert_not_overpaid(total_amount, paid, eps=settings.totals_tolerance)
    amount_due = max(total_amount - paid, ZERO)
    counterparty_id = _resolve_party_id(cur, data.type, data.party_id)
    is_purchase = data.type in PURCHASE_TYPES
    return {
        "type": data.type,
        "invoice_date": data.invoice_date or date.today(),
        "party_id": None if is_purchase else counterparty_id,
        "supplier_id": counterparty_id if is_purchase else None,
        "subtotal": totals.subtotal,
        "total_tax": totals.total_tax,
        "round_off": round_off,
        "total_amount": total_amount,
        "amount_paid": paid,
        "amount_due": amount_due,
        "due_status": _due_status(total_amount, paid),
        "payment_mode": data.payment_mode,
        "tax_mode": data.tax_mode,
        "gst_split": data.gst_split,
        "notes": data.notes,
        "_lines": totals.lines,
    }


def _insert_lines(cur, invoice_id: int, data, line_amounts) -> None:
    for ln, amounts in zip(data.items, line_amounts):
        cur.execute(
            """
            INSERT INTO invoice_items (invoice_id, item_id, name, quantity, mrp, price, tax_rate, total)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (invoice_id, ln.item_id, ln.item_name, ln.quantity, ln.mrp, ln.price, ln.tax_rate, amounts.line_total),
        )


def _apply_effects(cur, invoice_type: str, lines, counterparty_id, total: Decimal, sign: int = 1) -> None:
    """Stock per line and the invoice total on the counterparty; sign=-1 reverses."""
    for item_id, qty in lines:
        if item_id is None:
            continue
        apply_stock_delta(cur, item_id, sign * stock_delta(invoice_type, to_decimal(qty)))
    table, _col = counterparty_table(invoice_type)
    apply_balance_delta(cur, table, counterparty_id, sign * balance_delta(invoice_type, to_decimal(total)))


def _lock_invoice(cur, invoice_id: int) -> Dict[str, Any]:
    cur.execute(
        """
        SELECT id, type, party_id, supplier_id, total_amount, is_closed, original_invoice_id
        FROM invoices
        WHERE id = %s
        FOR UPDATE
        """,
        (invoice_id,),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Invoice not found")
    return row


def _assert_editable(cur, row: Dict[str, Any], action: str) -> None:
    if row["original_invoice_id"] is not None:
        raise HTTPException(status_code=400, detail=f"Return invoices cannot be {action}; they are managed by the return flow")
    cur.execute("SELECT COUNT(*)::int AS n FROM invoices WHERE original_invoice_id = %s", (row["id"],))
    n = int((cur.fetchone() or {}).get("n") or 0)
    if n:
        raise HTTPException(status_code=409, detail=f"Invoice has {n} return(s) and cannot be {action}")


def _reverse_invoice(cur, row: Dict[str, Any]) -> None:
    cur.execute("SELECT item_id, quantity FROM invoice_items WHERE invoice_id = %s ORDER BY id", (row["id"],))
    old_lines = [(r["item_id"], r["quantity"]) for r in cur.fetchall()]
    col = counterparty_table(row["type"])[1]
    _apply_effects(cur, row["type"], old_lines, row[col], row["total_amount"], sign=-1)
    cur.execute("DELETE FROM invoice_items WHERE invoice_id = %s", (row["id"],))


def _fmt_id(v) -> Optional[str]:
    return None if v is None else str(v)


def invoice_out(row: Dict[str, Any], lines: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    cgst, sgst, igst = split_gst(row.get("total_tax") or ZERO, row.get("gst_split") or "CGST_SGST")
    counterparty_id = row.get("supplier_id") if row["type"] in PURCHASE_TYPES else row.get("party_id")
    out = {
        "id": str(row["id"]),
        "type": row["type"],
        "invoiceNo": row["invoice_no"],
        "date": row["invoice_date"],
        "partyId": _fmt_id(counterparty_id),
        "supplierId": _fmt_id(row.get("supplier_id")),
        "partyName": row.get("party_name"),
        "subtotal": row["subtotal"],
        "totalTax": row["total_tax"],
        "roundOff": row["round_off"],
        "totalAmount": row["total_amount"],
        "amountPaid": row["amount_paid"],
        "amountDue": row["amount_due"],
        "dueStatus": row["due_status"],
        "paymentMode": row["payment_mode"],
        "taxMode": row["tax_mode"],
        "gstSplit": row["gst_split"],
        "cgst": cgst.quantize(Decimal("0.01")),
        "sgst": sgst.quantize(Decimal("0.01")),
        "igst": igst.quantize(Decimal("0.01")),
        "notes": row.get("notes"),
        "originalInvoiceId": _fmt_id(row.get("original_invoice_id")),
        "originalRefNumber": row.get("original_ref_number"),
        "isClosed": bool(row.get("is_closed")),
        "createdAt": row.get("created_at"),
    }
    if lines is not None:
        out["items"] = [
            {
                "id": str(ln["id"]),
                "itemId": _fmt_id(ln["item_id"]),
                "itemName": ln["name"],
                "quantity": ln["quantity"],
                "mrp": ln["mrp"],
                "price": ln["price"],
                "taxRate": ln["tax_rate"],
                "total": ln["total"],
            }
            for ln in lines
        ]
    return out


_INVOICE_SELECT = """
    SELECT i.id, i.type, i.invoice_no, i.invoice_date, i.party_id, i.supplier_id,
           COALESCE(p.name, s.name) AS party_name,
           i.subtotal, i.total_tax, i.round_off, i.total_amount,
           i.amount_paid, i.amount_due, i.due_status,
           i.payment_mode, i.tax_mode, i.gst_split, i.notes,
           i.original_invoice_id, o.invoice_no AS original_ref_number,
           i.is_closed, i.created_at
    FROM invoices i
    LEFT JOIN parties p ON p.id = i.party_id
    LEFT JOIN suppliers s ON s.id = i.supplier_id
    LEFT JOIN invoices o ON o.id = i.original_invoice_id
"""


def load_invoice(cur, invoice_id: int) -> Dict[str, Any]:
    cur.execute(_INVOICE_SELECT + " WHERE i.id = %s", (invoice_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Invoice not found")
    cur.execute(
        """
        SELECT id, item_id, name, quantity, mrp, price, tax_rate, total
        FROM invoice_items
        WHERE invoice_id = %s
        ORDER BY id
        """,
        (invoice_id,),
    )
    return invoice_out(row, cur.fetchall())


@router.get("")
def list_invoices(type: Optional[InvoiceType] = None, db: Database = Depends(get_db)):
    sql = _INVOICE_SELECT
    params: list = []
    if type:
        sql += " WHERE i.type = %s"
        params.append(type)
    sql += " ORDER BY i.invoice_date DESC, i.id DESC"
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return {"data": [invoice_out(r) for r in cur.fetchall()]}


@router.get("/{invoice_id}")
def get_invoice(invoice_id: str, db: Database = Depends(get_db)):
    iid = parse_invoice_id(invoice_id)
    with db.connection() as conn:
        with conn.cursor() as cur:
            return load_invoice(cur, iid)


@router.get("/{invoice_id}/returns")
def list_invoice_returns(invoice_id: str, db: Database = Depends(get_db)):
    iid = parse_invoice_id(invoice_id)
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT id FROM invoices WHERE id = %s", (iid,))
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="Invoice not found")
            cur.execute(_INVOICE_SELECT + " WHERE i.original_invoice_id = %s ORDER BY i.id", (iid,))
            returns = [invoice_out(r) for r in cur.fetchall()]
            cur.execute(
                """
                SELECT id, original_invoice_id, return_invoice_id, item_id, quantity, reason,
                       processed_by, return_type, created_at
                FROM sale_return_audit
                WHERE original_invoice_id = %s
                ORDER BY id
                """,
                (iid,),
            )
            return {"returns": returns, "audit": cur.fetchall()}


@router.post("", status_code=201)
def create_invoice(payload: Dict[str, Any] = Body(...), db: Database = Depends(get_db)):
    data = parse_invoice_payload(payload)
    with db.connection() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                hv = _header_values(cur, data)
                line_amounts = hv.pop("_lines")
                hv["invoice_no"] = data.invoice_no or new_invoice_no(INVOICE_NO_PREFIX[data.type])
                cols = list(hv.keys())
                cur.execute(
                    f"""
                    INSERT INTO invoices ({', '.join(cols)})
                    VALUES ({', '.join(['%s'] * len(cols))})
                    RETURNING id
                    """,
                    [hv[c] for c in cols],
                )
                invoice_id = cur.fetchone()["id"]
                _insert_lines(cur, invoice_id, data, line_amounts)
                counterparty_id = hv["supplier_id"] if data.type in PURCHASE_TYPES else hv["party_id"]
                _apply_effects(
                    cur,
                    data.type,
                    [(ln.item_id, ln.quantity) for ln in data.items],
                    counterparty_id,
                    hv["total_amount"],
                )
                out = load_invoice(cur, invoice_id)
    json_log("info", "invoice.created", invoice_id=invoice_id, type=data.type, total_amount=out["totalAmount"])
    return out


@router.put("/{invoice_id}")
def update_invoice(invoice_id: str, payload: Dict[str, Any] = Body(...), db: Database = Depends(get_db)):
    iid = parse_invoice_id(invoice_id)
    with db.connection() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                row = _lock_invoice(cur, iid)
                body = dict(payload)
                body.setdefault("type", row["type"])
                data = parse_invoice_payload(body)
                if data.type != row["type"]:
                    raise HTTPException(status_code=400, detail="Invoice type cannot be changed")
                if row["is_closed"]:
                    raise HTTPException(status_code=400, detail="Invoice is closed")
                _assert_editable(cur, row, "edited")
                _reverse_invoice(cur, row)

                hv = _header_values(cur, data)
                line_amounts = hv.pop("_lines")
                hv.pop("type")
                sets = [f"{c} = %s" for c in hv.keys()]
                params = list(hv.values())
                if data.invoice_no:
                    sets.append("invoice_no = %s")
                    params.append(data.invoice_no)
                cur.execute(
                    f"UPDATE invoices SET {', '.join(sets)}, updated_at = now() WHERE id = %s",
                    params + [iid],
                )
                _insert_lines(cur, iid, data, line_amounts)
                counterparty_id = hv["supplier_id"] if data.type in PURCHASE_TYPES else hv["party_id"]
                _apply_effects(
                    cur,
                    data.type,
                    [(ln.item_id, ln.quantity) for ln in data.items],
                    counterparty_id,
                    hv["total_amount"],
                )
                out = load_invoice(cur, iid)
    json_log("info", "invoice.updated", invoice_id=iid, type=data.type, total_amount=out["totalAmount"])
    return out


@router.patch("/{invoice_id}")
def patch_invoice(invoice_id: str, payload: Dict[str, Any] = Body(...), db: Database = Depends(get_db)):
    return update_invoice(invoice_id, payload, db)


@router.delete("/{invoice_id}")
def delete_invoice(invoice_id: str, db: Database = Depends(get_db)):
    iid = parse_invoice_id(invoice_id)
    with db.connection() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                row = _lock_invoice(cur, iid)
                _assert_editable(cur, row, "deleted")
                _reverse_invoice(cur, row)
                cur.execute("DELETE FROM invoices WHERE id = %s", (iid,))
    json_log("info", "invoice.deleted", invoice_id=iid, type=row["type"])
    return {"message": "Invoice deleted", "id": str(iid)}
