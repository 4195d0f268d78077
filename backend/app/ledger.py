"""
Stock and running-balance side effects of invoices and payments.

Sign convention (one convention for parties and suppliers alike):
balance > 0 means the counterparty owes the business, balance < 0 means the
business owes the counterparty.
"""
import time
from decimal import Decimal

from fastapi import HTTPException

PURCHASE_TYPES = {"PURCHASE", "PURCHASE_RETURN"}

INVOICE_NO_PREFIX = {
    "SALE": "TXN",
    "RETURN": "CN",
    "PURCHASE": "PB",
    "PURCHASE_RETURN": "DN",
}


def new_invoice_no(prefix: str) -> str:
    # prefix + last 8 digits of the epoch-millisecond timestamp, e.g. CN-12345678
    return f"{prefix}-{str(time.time_ns() // 1_000_000)[-8:]}"


def stock_delta(invoice_type: str, qty: Decimal) -> Decimal:
    if invoice_type == "SALE":
        return -qty
    if invoice_type == "RETURN":
        return qty
    if invoice_type == "PURCHASE":
        return qty
    if invoice_type == "PURCHASE_RETURN":
        return -qty
    return Decimal("0")


def balance_delta(invoice_type: str, total: Decimal) -> Decimal:
    if invoice_type == "SALE":
        return total
    if invoice_type == "RETURN":
        return -total
    if invoice_type == "PURCHASE":
        return -total
    if invoice_type == "PURCHASE_RETURN":
        # We owe the supplier less: the (negative) payable moves towards zero.
        return total
    return Decimal("0")


def payment_balance_delta(direction: str, amount: Decimal) -> Decimal:
    # IN: counterparty paid us. OUT: we paid the counterparty.
    return -amount if direction == "IN" else amount


def counterparty_table(invoice_type: str) -> tuple[str, str]:
    """(table, invoices column) holding the counterparty for an invoice type."""
    if invoice_type in PURCHASE_TYPES:
        return "suppliers", "supplier_id"
    return "parties", "party_id"


def apply_stock_delta(cur, item_id: int, delta: Decimal) -> None:
    if not delta:
        return
    cur.execute(
        "UPDATE items SET stock = stock + %s, updated_at = now() WHERE id = %s",
        (delta, item_id),
    )
    if cur.rowcount == 0:
        raise HTTPException(status_code=404, detail=f"Item {item_id} not found")


def apply_balance_delta(cur, table: str, counterparty_id: int, delta: Decimal) -> None:
    if table not in {"parties", "suppliers"}:
        raise ValueError(f"unsupported counterparty table: {table}")
    if counterparty_id is None or not delta:
        return
    cur.execute(
        f"UPDATE {table} SET balance = balance + %s, updated_at = now() WHERE id = %s",
        (delta, counterparty_id),
    )
    if cur.rowcount == 0:
        label = "Supplier" if table == "suppliers" else "Party"
        raise HTTPException(status_code=404, detail=f"{label} {counterparty_id} not found")
