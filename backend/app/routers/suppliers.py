from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from ..db import Database
from ..deps import get_db
from ..validation import CamelModel, OptionalText

router = APIRouter(prefix="/suppliers", tags=["suppliers"])

_SUPPLIER_COLUMNS = "id, name, phone, gstin, address, balance, created_at, updated_at"


class SupplierIn(CamelModel):
    name: OptionalText = None
    phone: OptionalText = None
    gstin: OptionalText = None
    address: OptionalText = None
    balance: Decimal = Decimal("0")


class SupplierUpdate(CamelModel):
    name: OptionalText = None
    phone: OptionalText = None
    gstin: OptionalText = None
    address: OptionalText = None
    balance: Optional[Decimal] = None


def _assert_gstin_free(cur, gstin: Optional[str], supplier_id: Optional[int] = None):
    if not gstin:
        return
    cur.execute(
        "SELECT id FROM suppliers WHERE gstin = %s AND (%s::bigint IS NULL OR id <> %s)",
        (gstin, supplier_id, supplier_id),
    )
    if cur.fetchone():
        raise HTTPException(status_code=409, detail="GSTIN already exists")


@router.get("")
def list_suppliers(db: Database = Depends(get_db)):
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {_SUPPLIER_COLUMNS} FROM suppliers ORDER BY id DESC")
            return {"data": cur.fetchall()}


@router.get("/{supplier_id}")
def get_supplier(supplier_id: int, db: Database = Depends(get_db)):
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {_SUPPLIER_COLUMNS} FROM suppliers WHERE id = %s", (supplier_id,))
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="Supplier not found")
            return {"message": "Supplier", "data": row}


@router.post("", status_code=201)
def create_supplier(data: SupplierIn, db: Database = Depends(get_db)):
    if not data.name:
        raise HTTPException(status_code=400, detail="name is required")
    with db.connection() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                _assert_gstin_free(cur, data.gstin)
                cur.execute(
                    """
                    INSERT INTO suppliers (name, phone, gstin, address, balance)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (data.name, data.phone, data.gstin, data.address, data.balance),
                )
                return {"message": "Supplier created", "data": {"id": cur.fetchone()["id"]}}


@router.patch("/{supplier_id}")
def update_supplier(supplier_id: int, data: SupplierUpdate, db: Database = Depends(get_db)):
    payload = data.model_dump(exclude_unset=True)
    if "name" in payload and not payload["name"]:
        raise HTTPException(status_code=400, detail="name is required")
    if payload.get("balance", 0) is None:
        payload["balance"] = Decimal("0")
    fields = []
    params = []
    for k, v in payload.items():
        fields.append(f"{k} = %s")
        params.append(v)
    if not fields:
        raise HTTPException(status_code=400, detail="No fields to update")
    params.append(supplier_id)
    with db.connection() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                _assert_gstin_free(cur, payload.get("gstin"), supplier_id)
                cur.execute(
                    f"""
                    UPDATE suppliers
                    SET {', '.join(fields)}, updated_at = now()
                    WHERE id = %s
                    """,
                    params,
                )
                if cur.rowcount == 0:
                    raise HTTPException(status_code=404, detail="Supplier not found")
                return {"message": "Supplier updated"}


@router.put("/{supplier_id}")
def replace_supplier(supplier_id: int, data: SupplierUpdate, db: Database = Depends(get_db)):
    return update_supplier(supplier_id, data, db)


@router.delete("/{supplier_id}")
def delete_supplier(supplier_id: int, db: Database = Depends(get_db)):
    with db.connection() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id FROM suppliers WHERE id = %s FOR UPDATE", (supplier_id,))
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="Supplier not found")
                cur.execute("SELECT COUNT(*)::int AS n FROM invoices WHERE supplier_id = %s", (supplier_id,))
                n = int((cur.fetchone() or {}).get("n") or 0)
                if n > 0:
                    raise HTTPException(status_code=409, detail=f"Cannot delete supplier: it has {n} invoice(s)")
                cur.execute("DELETE FROM payments WHERE supplier_id = %s", (supplier_id,))
                cur.execute("DELETE FROM suppliers WHERE id = %s", (supplier_id,))
                return {"message": "Supplier deleted"}
