from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException

from ..config import settings
from ..db import Database
from ..deps import get_db
from ..validation import CamelModel, OptionalText

router = APIRouter(prefix="/parties", tags=["parties"])

_PARTY_COLUMNS = "id, name, phone, gstin, address, balance, created_at, updated_at"


class PartyIn(CamelModel):
    name: OptionalText = None
    phone: OptionalText = None
    gstin: OptionalText = None
    address: OptionalText = None
    # Opening balance; only honoured on create.
    balance: Decimal = Decimal("0")


class BalanceAdjustIn(CamelModel):
    amount: Decimal


def party_out(r):
    return {**r, "id": str(r["id"])}


@router.get("")
def list_parties(db: Database = Depends(get_db)):
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {_PARTY_COLUMNS} FROM parties ORDER BY id DESC")
            return {"data": [party_out(r) for r in cur.fetchall()]}


@router.get("/{party_id}")
def get_party(party_id: int, db: Database = Depends(get_db)):
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {_PARTY_COLUMNS} FROM parties WHERE id = %s", (party_id,))
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="Party not found")
            return party_out(row)


@router.post("", status_code=201)
def create_party(data: PartyIn, db: Database = Depends(get_db)):
    if not data.name:
        raise HTTPException(status_code=400, detail="Name is required")
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO parties (name, phone, gstin, address, balance)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING {_PARTY_COLUMNS}
                """,
                (data.name, data.phone, data.gstin, data.address, data.balance),
            )
            return party_out(cur.fetchone())


@router.put("/{party_id}")
def update_party(party_id: int, data: PartyIn, db: Database = Depends(get_db)):
    # Balance is ledger-driven; it only moves through invoices, payments and /balance.
    if not data.name:
        raise HTTPException(status_code=400, detail="Name is required")
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE parties
                SET name = %s, phone = %s, gstin = %s, address = %s, updated_at = now()
                WHERE id = %s
                RETURNING {_PARTY_COLUMNS}
                """,
                (data.name, data.phone, data.gstin, data.address, party_id),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="Party not found")
            return party_out(row)


@router.patch("/{party_id}/balance")
def adjust_party_balance(party_id: int, data: BalanceAdjustIn, db: Database = Depends(get_db)):
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE parties SET balance = balance + %s, updated_at = now() WHERE id = %s RETURNING id, balance",
                (data.amount, party_id),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="Party not found")
            return {"message": "Balance updated", "id": str(row["id"]), "balance": row["balance"]}


@router.delete("/{party_id}")
def delete_party(party_id: int, db: Database = Depends(get_db)):
    if party_id == settings.cash_party_id:
        raise HTTPException(status_code=400, detail="The Cash Customer party cannot be deleted")
    with db.connection() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id FROM parties WHERE id = %s FOR UPDATE", (party_id,))
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="Party not found")
                cur.execute("SELECT COUNT(*)::int AS n FROM invoices WHERE party_id = %s", (party_id,))
                n = int((cur.fetchone() or {}).get("n") or 0)
                if n > 0:
                    raise HTTPException(status_code=409, detail=f"Cannot delete party: it has {n} invoice(s)")
                cur.execute("DELETE FROM payments WHERE party_id = %s", (party_id,))
                cur.execute("DELETE FROM parties WHERE id = %s", (party_id,))
                return {"message": "Party deleted", "id": str(party_id)}
