"""
Sale / purchase return reconciliation.

`process_return` runs on a cursor the caller opened inside `conn.transaction()`:
every check and write below happens on that one transaction, so any
HTTPException (or driver error) rolls the whole return back.

Order of checks matters (clients key their messages off the first failure):
1 invoice id, 2 items list, 3 schema guard, (idempotency replay),
4 exists, (replay again once the row is locked), 5 base type, 6 closed,
7 has lines, 8 item on invoice, 9 qty > 0 with at most 3 decimals,
10 qty <= remaining, 11 not fully returned.
"""
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from fastapi import HTTPException

from .calculator import ZERO, compute_line, round2, to_decimal
from .db import has_columns
from .ledger import (
    INVOICE_NO_PREFIX,
    apply_balance_delta,
    apply_stock_delta,
    balance_delta,
    counterparty_table,
    new_invoice_no,
    stock_delta,
)

REQUIRED_INVOICE_COLUMNS = ("original_invoice_id", "is_closed")
# Quantity columns are numeric(14,3).
QUANTITY_PLACES = 3


@dataclass(frozen=True)
class ReturnPolicy:
    base_type: str
    return_type: str
    audit_type: str
    # Sale credit notes carry tax; purchase debit notes are subtotal only.
    include_tax: bool
    notes_prefix: str
    default_notes: str
    message: str


SALE_RETURN = ReturnPolicy(
    base_type="SALE",
    return_type="RETURN",
    audit_type="SALE_RETURN",
    include_tax=True,
    notes_prefix="Return",
    default_notes="Sale Return",
    message="Sale return processed",
)

PURCHASE_RETURN = ReturnPolicy(
    base_type="PURCHASE",
    return_type="PURCHASE_RETURN",
    audit_type="PURCHASE_RETURN",
    include_tax=False,
    notes_prefix="Purchase Return",
    default_notes="Purchase Return",
    message="Purchase return processed",
)


@dataclass(frozen=True)
class ReturnRequestLine:
    item_id: Any
    quantity: Any


def parse_invoice_id(raw) -> int:
    try:
        invoice_id = int(str(raw).strip())
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="Invalid invoice id")
    if invoice_id <= 0:
        raise HTTPException(status_code=400, detail="Invalid invoice id")
    return invoice_id


def _replay(cur, policy: ReturnPolicy, invoice_id: int, idempotency_key: str) -> Optional[Dict[str, Any]]:
    cur.execute(
        """
        SELECT r.id, r.type, r.invoice_no, r.total_amount, r.original_invoice_id,
               o.is_closed AS original_closed
        FROM invoices r
        LEFT JOIN invoices o ON o.id = r.original_invoice_id
        WHERE r.idempotency_key = %s
        """,
        (idempotency_key,),
    )
    row = cur.fetchone()
    if not row:
        return None
    if row["original_invoice_id"] != invoice_id or row["type"] != policy.return_type:
        raise HTTPException(status_code=409, detail="Idempotency-Key was already used for a different request")
    return {
        "message": policy.message,
        "returnInvoiceId": row["id"],
        "returnInvoiceNumber": row["invoice_no"],
        "totalAmount": row["total_amount"],
        "originalClosed": bool(row["original_closed"]),
        "replayed": True,
    }


def _requested_quantities(lines: Sequence[Dict[str, Any]], items: Sequence[ReturnRequestLine]) -> Dict[int, Decimal]:
    on_invoice = {ln["item_id"] for ln in lines if ln["item_id"] is not None}
    parsed = []
    for it in items:
        try:
            item_id = int(it.item_id)
        except (TypeError, ValueError):
            raise HTTPException(status_code=400, detail=f"Item {it.item_id} is not on the original invoice")
        if item_id not in on_invoice:
            raise HTTPException(status_code=400, detail=f"Item {item_id} is not on the original invoice")
        parsed.append((item_id, it.quantity))

    requested: Dict[int, Decimal] = {}
    for item_id, raw_qty in parsed:
        try:
            qty = to_decimal(raw_qty)
        except ArithmeticError:
            raise HTTPException(status_code=400, detail="Return quantity must be > 0")
        if not qty.is_finite() or qty <= 0:
            raise HTTPException(status_code=400, detail="Return quantity must be > 0")
        if qty.normalize().as_tuple().exponent < -QUANTITY_PLACES:
            raise HTTPException(
                status_code=400,
                detail=f"Return quantity must have at most {QUANTITY_PLACES} decimal places",
            )
        # Repeated item ids are summed.
        requested[item_id] = requested.get(item_id, ZERO) + qty
    return requested


def _check_remaining(lines: Sequence[Dict[str, Any]], requested: Dict[int, Decimal]) -> None:
    for item_id, qty in requested.items():
        matching = [ln for ln in lines if ln["item_id"] == item_id]
        remaining = sum((to_decimal(ln["quantity"]) for ln in matching), ZERO)
        if qty > remaining:
            name = matching[0]["name"] or f"item {item_id}"
            raise HTTPException(
                status_code=400,
                detail=f"Return quantity for {name} exceeds remaining quantity ({remaining.normalize():f})",
            )


def process_return(
    cur,
    policy: ReturnPolicy,
    invoice_id,
    items: Sequence[ReturnRequestLine],
    reason: Optional[str] = None,
    processed_by: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> Dict[str, Any]:
    invoice_id = parse_invoice_id(invoice_id)
    if not items:
        raise HTTPException(status_code=400, detail="items must be a non-empty list")
    if not has_columns(cur, "invoices", REQUIRED_INVOICE_COLUMNS):
        raise HTTPException(
            status_code=500,
            detail="Schema configuration error: invoices table is missing columns "
            + ", ".join(REQUIRED_INVOICE_COLUMNS),
        )

    if idempotency_key:
        replayed = _replay(cur, policy, invoice_id, idempotency_key)
        if replayed is not None:
            return replayed

    cur.execute(
        """
        SELECT id, type, party_id, supplier_id, payment_mode, tax_mode, gst_split, is_closed
        FROM invoices
        WHERE id = %s
        FOR UPDATE
        """,
        (invoice_id,),
    )
    original = cur.fetchone()
    if not original:
        raise HTTPException(status_code=404, detail="Original invoice not found")
    if idempotency_key:
        # A concurrent request with the same key may have committed while we waited on the lock.
        replayed = _replay(cur, policy, invoice_id, idempotency_key)
        if replayed is not None:
            return replayed
    if original["type"] != policy.base_type:
        raise HTTPException(status_code=400, detail=f"Only {policy.base_type} invoices can be returned")
    if original["is_closed"]:
        raise HTTPException(status_code=400, detail="Invoice is closed")

    cur.execute(
        """
        SELECT id, item_id, name, quantity, mrp, price, tax_rate, total
        FROM invoice_items
        WHERE invoice_id = %s
        ORDER BY id
        FOR UPDATE
        """,
        (invoice_id,),
    )
    lines: List[Dict[str, Any]] = [dict(r) for r in cur.fetchall()]
    if not lines:
        raise HTTPException(status_code=400, detail="Original invoice has no items")

    requested = _requested_quantities(lines, items)
    _check_remaining(lines, requested)
    if sum((to_decimal(ln["quantity"]) for ln in lines), ZERO) <= 0:
        raise HTTPException(status_code=400, detail="Invoice already fully returned")

    tax_mode = original.get("tax_mode") or "EXCLUSIVE"

    # Allocate each requested quantity over the matching lines in line order.
    allocations = []
    for item_id, qty in requested.items():
        left = qty
        for ln in lines:
            if left <= 0:
                break
            if ln["item_id"] != item_id:
                continue
            line_qty = to_decimal(ln["quantity"])
            take = min(left, line_qty)
            if take <= 0:
                continue
            allocations.append((ln, take))
            left -= take

    return_lines = []
    subtotal = ZERO
    tax = ZERO
    for ln, take in allocations:
        rate = to_decimal(ln["tax_rate"])
        amounts = compute_line(ln["price"], take, rate, tax_mode)
        subtotal += amounts.taxable
        if policy.include_tax:
            tax += amounts.tax
            line_total = amounts.line_total
        else:
            rate = ZERO
            line_total = round2(amounts.taxable)
        return_lines.append((ln, take, rate, line_total))

    return_total = round2(subtotal + tax)
    party_table, party_col = counterparty_table(policy.base_type)
    counterparty_id = original[party_col]
    notes = f"{policy.notes_prefix}: {reason}" if reason else policy.default_notes

    cur.execute(
        """
        INSERT INTO invoices
          (type, invoice_no, invoice_date, party_id, supplier_id,
           subtotal, total_tax, round_off, total_amount,
           amount_paid, amount_due, due_status,
           payment_mode, tax_mode, gst_split, notes,
           original_invoice_id, is_closed, idempotency_key)
        VALUES
          (%s, %s, %s, %s, %s,
           %s, %s, 0, %s,
           0, %s, 'UNPAID',
           %s, %s, %s, %s,
           %s, false, %s)
        RETURNING id, invoice_no
        """,
        (
            policy.return_type,
            new_invoice_no(INVOICE_NO_PREFIX[policy.return_type]),
            date.today(),
            original["party_id"],
            original["supplier_id"],
            round2(subtotal),
            round2(tax),
            return_total,
            return_total,
            original.get("payment_mode") or "CASH",
            tax_mode,
            original.get("gst_split") or "CGST_SGST",
            notes,
            invoice_id,
            idempotency_key,
        ),
    )
    created = cur.fetchone()
    return_invoice_id = created["id"]

    for ln, take, rate, line_total in return_lines:
        cur.execute(
            """
            INSERT INTO invoice_items (invoice_id, item_id, name, quantity, mrp, price, tax_rate, total)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (return_invoice_id, ln["item_id"], ln["name"], take, ln["mrp"], ln["price"], rate, line_total),
        )

        new_qty = to_decimal(ln["quantity"]) - take
        new_total = compute_line(ln["price"], new_qty, ln["tax_rate"], tax_mode).line_total
        cur.execute(
            "UPDATE invoice_items SET quantity = %s, total = %s WHERE id = %s",
            (new_qty, new_total, ln["id"]),
        )
        ln["quantity"] = new_qty
        ln["total"] = new_total

        apply_stock_delta(cur, ln["item_id"], stock_delta(policy.return_type, take))

        cur.execute(
            """
            INSERT INTO sale_return_audit
              (original_invoice_id, return_invoice_id, item_id, quantity, reason,
               processed_by, idempotency_key, return_type)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (invoice_id, return_invoice_id, ln["item_id"], take, reason, processed_by, idempotency_key, policy.audit_type),
        )

    # Header totals are re-derived from the reduced lines, never decremented.
    remaining_subtotal = ZERO
    remaining_tax = ZERO
    for ln in lines:
        amounts = compute_line(ln["price"], ln["quantity"], ln["tax_rate"], tax_mode)
        remaining_subtotal += amounts.taxable
        remaining_tax += amounts.tax
    cur.execute(
        """
        UPDATE invoices i
        SET total_amount = s.total,
            subtotal = %s,
            total_tax = %s,
            round_off = 0,
            amount_due = GREATEST(s.total - i.amount_paid, 0),
            due_status = CASE
              WHEN s.total - i.amount_paid <= 0 THEN 'PAID'
              WHEN i.amount_paid > 0 THEN 'PARTIAL'
              ELSE 'UNPAID'
            END,
            is_closed = (s.remaining <= 0),
            updated_at = now()
        FROM (
          SELECT COALESCE(SUM(total), 0) AS total, COALESCE(SUM(quantity), 0) AS remaining
          FROM invoice_items
          WHERE invoice_id = %s
        ) s
        WHERE i.id = %s
        RETURNING i.total_amount, i.is_closed
        """,
        (round2(remaining_subtotal), round2(remaining_tax), invoice_id, invoice_id),
    )
    updated = cur.fetchone()

    apply_balance_delta(cur, party_table, counterparty_id, balance_delta(policy.return_type, return_total))

    return {
        "message": policy.message,
        "returnInvoiceId": return_invoice_id,
        "returnInvoiceNumber": created["invoice_no"],
        "totalAmount": return_total,
        "originalClosed": bool(updated["is_closed"]),
    }
