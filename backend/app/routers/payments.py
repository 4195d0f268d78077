from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import AliasChoices, Field

from ..db import Database
from ..deps import get_db, get_idempotency_key
from ..jsonlog import json_log
from ..ledger import apply_balance_delta, payment_balance_delta
from ..validation import CamelModel, Counterparty, OptionalText, PaymentDirection, PaymentMode

router = APIRouter(prefix="/payments", tags=["payments"])

_PAYMENT_SELECT = """
    SELECT p.id, p.party_id, p.supplier_id, COALESCE(pt.name, s.name) AS party_name,
           p.type, p.amount, p.payment_date, p.mode, p.notes, p.created_at
    FROM payments p
    LEFT JOIN parties pt ON pt.id = p.party_id
    LEFT JOIN suppliers s ON s.id = p.supplier_id
"""


class PaymentIn(CamelModel):
    party_id: int = Field(validation_alias=AliasChoices("partyId", "party_id", "supplierId", "supplier_id"))
    type: PaymentDirection
    amount: Decimal = Field(gt=0)
    payment_date: Optional[date] = Field(default=None, validation_alias=AliasChoices("date", "paymentDate", "payment_date"))
    mode: PaymentMode = "CASH"
    notes: OptionalText = None
    # Defaults: IN is a customer receipt, OUT a supplier disbursement.
    counterparty: Optional[Counterparty] = None
    idempotency_key: Optional[str] = None


def payment_out(r):
    is_supplier = r["supplier_id"] is not None
    return {
        "id": str(r["id"]),
        "partyId": str(r["supplier_id"] if is_supplier else r["party_id"]),
        "counterparty": "SUPPLIER" if is_supplier else "PARTY",
        "partyName": r.get("party_name") or "Unknown",
        "type": r["type"],
        "amount": r["amount"],
        "date": r["payment_date"],
        "mode": r["mode"],
        "notes": r["notes"],
    }


def _counterparty(data: PaymentIn) -> str:
    if data.counterparty:
        return data.counterparty
    return "PARTY" if data.type == "IN" else "SUPPLIER"


@router.get("")
def list_payments(db: Database = Depends(get_db)):
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(_PAYMENT_SELECT + " ORDER BY p.id DESC")
            return {"data": [payment_out(r) for r in cur.fetchall()]}


@router.get("/{payment_id}")
def get_payment(payment_id: int, db: Database = Depends(get_db)):
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(_PAYMENT_SELECT + " WHERE p.id = %s", (payment_id,))
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="Payment not found")
            return payment_out(row)


@router.post("", status_code=201)
def create_payment(
    data: PaymentIn,
    db: Database = Depends(get_db),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
):
    key = idempotency_key or ((data.idempotency_key or "").strip() or None)
    if key and len(key) > 128:
        raise HTTPException(status_code=400, detail="Idempotency-Key is too long (max 128 chars)")
    which = _counterparty(data)
    table, col = ("suppliers", "supplier_id") if which == "SUPPLIER" else ("parties", "party_id")

    with db.connection() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                if key:
                    cur.execute(_PAYMENT_SELECT + " WHERE p.idempotency_key = %s", (key,))
                    prior = cur.fetchone()
                    if prior:
                        if prior[col] != data.party_id or prior["amount"] != data.amount or prior["type"] != data.type:
                            raise HTTPException(status_code=409, detail="Idempotency-Key was already used for a different payment")
                        return {**payment_out(prior), "replayed": True}

                cur.execute(f"SELECT id FROM {table} WHERE id = %s FOR UPDATE", (data.party_id,))
                if not cur.fetchone():
                    label = "Supplier" if which == "SUPPLIER" else "Party"
                    raise HTTPException(status_code=404, detail=f"{label} not found")

                cur.execute(
                    f"""
                    INSERT INTO payments ({col}, type, amount, payment_date, mode, notes, idempotency_key)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (data.party_id, data.type, data.amount, data.payment_date or date.today(), data.mode, data.notes, key),
                )
                payment_id = cur.fetchone()["id"]
                apply_balance_delta(cur, table, data.party_id, payment_balance_delta(data.type, data.amount))
                cur.execute(_PAYMENT_SELECT + " WHERE p.id = %s", (payment_id,))
                out = payment_out(cur.fetchone())
    json_log("info", "payment.created", payment_id=payment_id, counterparty=which, type=data.type, amount=data.amount)
    return out


@router.delete("/{payment_id}")
def delete_payment(payment_id: int, db: Database = Depends(get_db)):
    with db.connection() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, party_id, supplier_id, type, amount FROM payments WHERE id = %s FOR UPDATE",
                    (payment_id,),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="Payment not found")
                if row["supplier_id"] is not None:
                    table, counterparty_id = "suppliers", row["supplier_id"]
                else:
                    table, counterparty_id = "parties", row["party_id"]
                apply_balance_delta(cur, table, counterparty_id, -payment_balance_delta(row["type"], row["amount"]))
                cur.execute("DELETE FROM payments WHERE id = %s", (payment_id,))
                return {"message": "Payment deleted", "id": str(payment_id)}
