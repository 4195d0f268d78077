from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import Field

from ..db import Database
from ..deps import get_db
from ..validation import CamelModel, OptionalText

router = APIRouter(prefix="/items", tags=["items"])

_ITEM_COLUMNS = "id, name, code, barcode, category, supplier_id, selling_price, purchase_price, mrp, stock, unit, tax_rate"


class ItemIn(CamelModel):
    name: OptionalText = None
    code: OptionalText = None
    barcode: OptionalText = None
    category: OptionalText = None
    supplier_id: Optional[int] = None
    selling_price: Optional[Decimal] = Field(default=None, ge=0)
    purchase_price: Optional[Decimal] = Field(default=None, ge=0)
    mrp: Optional[Decimal] = Field(default=None, ge=0)
    stock: Decimal = Decimal("0")
    unit: OptionalText = None
    tax_rate: Decimal = Field(default=Decimal("0"), ge=0)


class StockAdjustIn(CamelModel):
    added_quantity: Decimal


def item_out(r):
    return {
        "id": str(r["id"]),
        "name": r["name"],
        "code": r["code"],
        "barcode": r["barcode"],
        "category": r["category"],
        "supplierId": None if r["supplier_id"] is None else str(r["supplier_id"]),
        "sellingPrice": r["selling_price"],
        "purchasePrice": r["purchase_price"],
        "mrp": r["mrp"],
        "stock": r["stock"],
        "unit": r["unit"],
        "taxRate": r["tax_rate"],
    }


def _require_fields(data: ItemIn):
    if not data.name or data.selling_price is None or data.purchase_price is None:
        raise HTTPException(status_code=400, detail="Name, sellingPrice & purchasePrice are required")


def _assert_barcode_free(cur, barcode: Optional[str], item_id: Optional[int] = None):
    if not barcode:
        return
    cur.execute(
        "SELECT id FROM items WHERE barcode = %s AND (%s::bigint IS NULL OR id <> %s)",
        (barcode, item_id, item_id),
    )
    if cur.fetchone():
        raise HTTPException(status_code=409, detail="Barcode already exists")


def _values(data: ItemIn):
    return (
        data.name,
        data.code,
        data.barcode,
        data.category,
        data.supplier_id,
        data.selling_price,
        data.purchase_price,
        data.mrp if data.mrp is not None else Decimal("0"),
        data.stock,
        data.unit or "pcs",
        data.tax_rate,
    )


@router.get("")
def list_items(db: Database = Depends(get_db)):
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {_ITEM_COLUMNS} FROM items ORDER BY id DESC")
            return {"data": [item_out(r) for r in cur.fetchall()]}


@router.get("/{item_id}")
def get_item(item_id: int, db: Database = Depends(get_db)):
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {_ITEM_COLUMNS} FROM items WHERE id = %s", (item_id,))
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="Item not found")
            return item_out(row)


@router.post("", status_code=201)
def create_item(data: ItemIn, db: Database = Depends(get_db)):
    _require_fields(data)
    with db.connection() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                _assert_barcode_free(cur, data.barcode)
                cur.execute(
                    f"""
                    INSERT INTO items (name, code, barcode, category, supplier_id, selling_price, purchase_price, mrp, stock, unit, tax_rate)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_ITEM_COLUMNS}
                    """,
                    _values(data),
                )
                return item_out(cur.fetchone())


@router.put("/{item_id}")
def update_item(item_id: int, data: ItemIn, db: Database = Depends(get_db)):
    _require_fields(data)
    with db.connection() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                _assert_barcode_free(cur, data.barcode, item_id)
                cur.execute(
                    f"""
                    UPDATE items
                    SET name = %s, code = %s, barcode = %s, category = %s, supplier_id = %s,
                        selling_price = %s, purchase_price = %s, mrp = %s, stock = %s, unit = %s, tax_rate = %s,
                        updated_at = now()
                    WHERE id = %s
                    RETURNING {_ITEM_COLUMNS}
                    """,
                    _values(data) + (item_id,),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="Item not found")
                return item_out(row)


@router.patch("/{item_id}/stock")
def adjust_item_stock(item_id: int, data: StockAdjustIn, db: Database = Depends(get_db)):
    # Signed delta; stock is allowed to go negative.
    with db.connection() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE items SET stock = stock + %s, updated_at = now() WHERE id = %s RETURNING id, stock",
                    (data.added_quantity, item_id),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="Item not found")
                return {"message": "Stock updated", "id": str(row["id"]), "stock": row["stock"]}


@router.delete("/{item_id}")
def delete_item(item_id: int, db: Database = Depends(get_db)):
    with db.connection() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT COUNT(*)::int AS n FROM invoice_items WHERE item_id = %s", (item_id,))
                n = int((cur.fetchone() or {}).get("n") or 0)
                if n > 0:
                    raise HTTPException(
                        status_code=409,
                        detail=f"Cannot delete item: it is referenced by {n} invoice line(s)",
                    )
                cur.execute("DELETE FROM items WHERE id = %s", (item_id,))
                if cur.rowcount == 0:
                    raise HTTPException(status_code=404, detail="Item not found")
                return {"message": "Item deleted", "id": str(item_id)}
