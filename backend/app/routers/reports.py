from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from ..calculator import round2
from ..config import settings
from ..db import Database
from ..deps import get_db

router = APIRouter(prefix="/reports", tags=["reports"])


def _num(row, key) -> Decimal:
    return Decimal(str((row or {}).get(key) or 0))


def build_summary(cur, start: Optional[date], end: Optional[date]) -> dict:
    cur.execute(
        """
        SELECT COALESCE(SUM(stock * purchase_price), 0) AS stock_value,
               COUNT(*) FILTER (WHERE stock < %s)::int AS low_stock_count
        FROM items
        """,
        (settings.low_stock_threshold,),
    )
    stock_row = cur.fetchone()

    cur.execute(
        """
        SELECT
          COALESCE(SUM(total_amount) FILTER (WHERE type = 'SALE'), 0) AS gross_sales,
          COALESCE(SUM(total_amount) FILTER (WHERE type = 'RETURN'), 0) AS sale_returns,
          COALESCE(SUM(total_tax) FILTER (WHERE type = 'SALE'), 0)
            - COALESCE(SUM(total_tax) FILTER (WHERE type = 'RETURN'), 0) AS sales_tax,
          COALESCE(SUM(total_amount) FILTER (WHERE type = 'PURCHASE'), 0) AS gross_purchases,
          COALESCE(SUM(total_amount) FILTER (WHERE type = 'PURCHASE_RETURN'), 0) AS purchase_returns
        FROM invoices
        WHERE (%s::date IS NULL OR invoice_date >= %s)
          AND (%s::date IS NULL OR invoice_date <= %s)
        """,
        (start, start, end, end),
    )
    inv = cur.fetchone()

    cur.execute(
        """
        SELECT
          (SELECT COALESCE(SUM(balance) FILTER (WHERE balance > 0), 0) FROM parties) AS receivables,
          (SELECT COALESCE(SUM(-balance) FILTER (WHERE balance < 0), 0) FROM parties) AS party_payables,
          (SELECT COALESCE(SUM(-balance) FILTER (WHERE balance < 0), 0) FROM suppliers) AS supplier_payables
        """
    )
    bal = cur.fetchone()

    cur.execute(
        """
        SELECT COALESCE(SUM(amount), 0) AS total
        FROM expenses
        WHERE (%s::date IS NULL OR expense_date >= %s)
          AND (%s::date IS NULL OR expense_date <= %s)
        """,
        (start, start, end, end),
    )
    exp = cur.fetchone()

    gross_sales = _num(inv, "gross_sales")
    sale_returns = _num(inv, "sale_returns")
    gross_purchases = _num(inv, "gross_purchases")
    purchase_returns = _num(inv, "purchase_returns")
    net_sales = gross_sales - sale_returns
    net_purchases = gross_purchases - purchase_returns
    expenses_total = _num(exp, "total")
    return {
        "start": str(start) if start else None,
        "end": str(end) if end else None,
        "stock": {
            "totalStockValue": round2(_num(stock_row, "stock_value")),
            "lowStockCount": int((stock_row or {}).get("low_stock_count") or 0),
            "lowStockThreshold": settings.low_stock_threshold,
        },
        "sales": {
            "grossSales": round2(gross_sales),
            "returns": round2(sale_returns),
            "netSales": round2(net_sales),
            "totalTax": round2(_num(inv, "sales_tax")),
        },
        "purchases": {
            "grossPurchases": round2(gross_purchases),
            "purchaseReturns": round2(purchase_returns),
            "netPurchases": round2(net_purchases),
        },
        "parties": {
            "receivables": round2(_num(bal, "receivables")),
            "payables": round2(_num(bal, "party_payables") + _num(bal, "supplier_payables")),
        },
        "expenses": {"total": round2(expenses_total)},
        "profit": round2(net_sales - net_purchases - expenses_total),
    }


@router.get("/summary")
def reports_summary(start: Optional[date] = None, end: Optional[date] = None, db: Database = Depends(get_db)):
    if start and end and end < start:
        raise HTTPException(status_code=400, detail="end cannot be before start")
    with db.connection() as conn:
        with conn.cursor() as cur:
            return build_summary(cur, start, end)
