from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import Field

from ..db import Database
from ..deps import get_db
from ..jsonlog import json_log
from ..validation import CamelModel, OptionalText

router = APIRouter(prefix="/stock", tags=["stock"])

_STOCK_COLUMNS = "id, name, category, code, barcode, supplier_id, purchase_price, mrp, quantity, unit, tax_rate, created_at"


class StockIn(CamelModel):
    name: OptionalText = None
    category: OptionalText = None
    code: OptionalText = None
    barcode: OptionalText = None
    supplier_id: Optional[int] = None
    purchase_price: Optional[Decimal] = Field(default=None, ge=0)
    mrp: Optional[Decimal] = Field(default=None, ge=0)
    quantity: Optional[Decimal] = None
    unit: OptionalText = None
    tax_rate: Decimal = Field(default=Decimal("0"), ge=0)


class MoveToItemsIn(CamelModel):
    selling_price: Optional[Decimal] = Field(default=None, ge=0)
    mrp: Optional[Decimal] = Field(default=None, ge=0)
    tax_rate: Optional[Decimal] = Field(default=None, ge=0)


def _require_fields(data: StockIn):
    if not data.name or not data.quantity or not data.purchase_price:
        raise HTTPException(status_code=400, detail="Name, quantity, and purchase price are required")


def _values(data: StockIn):
    return (
        data.name,
        data.category,
        data.code,
        data.barcode,
        data.supplier_id,
        data.purchase_price,
        data.mrp if data.mrp is not None else Decimal("0"),
        data.quantity,
        data.unit or "PCS",
        data.tax_rate,
    )


@router.get("")
def list_stock(db: Database = Depends(get_db)):
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id, s.name, s.category, s.code, s.barcode, s.supplier_id, s.purchase_price, s.mrp,
                       s.quantity, s.unit, s.tax_rate, s.created_at, sup.name AS supplier_name
                FROM stock s
                LEFT JOIN suppliers sup ON sup.id = s.supplier_id
                ORDER BY s.created_at DESC, s.id DESC
                """
            )
            return {"data": cur.fetchall()}


@router.get("/{stock_id}")
def get_stock(stock_id: int, db: Database = Depends(get_db)):
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {_STOCK_COLUMNS} FROM stock WHERE id = %s", (stock_id,))
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="Stock item not found")
            return row


@router.get("/{stock_id}/tax-rate")
def get_stock_tax_rate(stock_id: int, db: Database = Depends(get_db)):
    """Tax rate of the latest purchase line with the same item name (0 when none)."""
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT ii.tax_rate
                FROM stock s
                JOIN invoice_items ii ON ii.name = s.name
                JOIN invoices i ON i.id = ii.invoice_id AND i.type = 'PURCHASE'
                WHERE s.id = %s
                ORDER BY ii.id DESC
                LIMIT 1
                """,
                (stock_id,),
            )
            row = cur.fetchone()
            return {"tax_rate": (row["tax_rate"] if row else None) or Decimal("0")}


@router.post("", status_code=201)
def create_stock(data: StockIn, db: Database = Depends(get_db)):
    _require_fields(data)
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO stock (name, category, code, barcode, supplier_id, purchase_price, mrp, quantity, unit, tax_rate)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                _values(data),
            )
            return {"id": cur.fetchone()["id"], "message": "Stock added successfully"}


@router.put("/{stock_id}")
def update_stock(stock_id: int, data: StockIn, db: Database = Depends(get_db)):
    _require_fields(data)
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE stock
                SET name = %s, category = %s, code = %s, barcode = %s, supplier_id = %s,
                    purchase_price = %s, mrp = %s, quantity = %s, unit = %s, tax_rate = %s
                WHERE id = %s
                """,
                _values(data) + (stock_id,),
            )
            if cur.rowcount == 0:
                raise HTTPException(status_code=404, detail="Stock item not found")
            return {"message": "Stock updated successfully"}


@router.delete("/{stock_id}")
def delete_stock(stock_id: int, db: Database = Depends(get_db)):
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute("DELETE FROM stock WHERE id = %s", (stock_id,))
            if cur.rowcount == 0:
                raise HTTPException(status_code=404, detail="Stock item not found")
            return {"message": "Stock deleted successfully"}


@router.post("/{stock_id}/move-to-items")
def move_stock_to_items(stock_id: int, data: MoveToItemsIn, db: Database = Depends(get_db)):
    if not data.selling_price or data.tax_rate is None:
        raise HTTPException(status_code=400, detail="Selling price and tax rate are required")
    with db.connection() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(f"SELECT {_STOCK_COLUMNS} FROM stock WHERE id = %s FOR UPDATE", (stock_id,))
                stock = cur.fetchone()
                if not stock:
                    raise HTTPException(status_code=404, detail="Stock item not found")

                barcode = stock["barcode"]
                barcode_dropped = False
                if barcode:
                    cur.execute("SELECT id FROM items WHERE barcode = %s", (barcode,))
                    if cur.fetchone():
                        barcode = None
                        barcode_dropped = True

                cur.execute(
                    """
                    INSERT INTO items (name, category, code, barcode, supplier_id, selling_price, purchase_price, mrp, stock, unit, tax_rate)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        stock["name"],
                        stock["category"],
                        stock["code"],
                        barcode,
                        stock["supplier_id"],
                        data.selling_price,
                        stock["purchase_price"],
                        data.mrp or stock["mrp"] or Decimal("0"),
                        stock["quantity"],
                        stock["unit"],
                        data.tax_rate,
                    ),
                )
                item_id = cur.fetchone()["id"]
                cur.execute("DELETE FROM stock WHERE id = %s", (stock_id,))

    json_log("info", "stock.moved_to_items", stock_id=stock_id, item_id=item_id, barcode_dropped=barcode_dropped)
    message = "Stock moved to items successfully"
    if barcode_dropped:
        message += " (barcode removed due to duplicate)"
    return {"message": message, "itemId": item_id}
