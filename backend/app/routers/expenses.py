from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import AliasChoices, Field

from ..db import Database
from ..deps import get_db
from ..validation import CamelModel, OptionalText

router = APIRouter(prefix="/expenses", tags=["expenses"])


class ExpenseIn(CamelModel):
    category: OptionalText = None
    amount: Optional[Decimal] = None
    expense_date: Optional[date] = Field(default=None, validation_alias=AliasChoices("date", "expenseDate", "expense_date"))
    notes: OptionalText = None


def expense_out(r):
    return {
        "id": str(r["id"]),
        "category": r["category"],
        "amount": r["amount"],
        "date": r["expense_date"],
        "notes": r["notes"],
    }


def _require_amount(data: ExpenseIn) -> Decimal:
    if data.amount is None or data.amount <= 0:
        raise HTTPException(status_code=400, detail="Amount is required and must be > 0")
    return data.amount


@router.get("")
def list_expenses(db: Database = Depends(get_db)):
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT id, category, amount, expense_date, notes FROM expenses ORDER BY id DESC")
            return {"data": [expense_out(r) for r in cur.fetchall()]}


@router.get("/{expense_id}")
def get_expense(expense_id: int, db: Database = Depends(get_db)):
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT id, category, amount, expense_date, notes FROM expenses WHERE id = %s", (expense_id,))
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="Expense not found")
            return expense_out(row)


@router.post("", status_code=201)
def create_expense(data: ExpenseIn, db: Database = Depends(get_db)):
    amount = _require_amount(data)
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO expenses (category, amount, expense_date, notes)
                VALUES (%s, %s, %s, %s)
                RETURNING id, category, amount, expense_date, notes
                """,
                (data.category, amount, data.expense_date or date.today(), data.notes),
            )
            return expense_out(cur.fetchone())


@router.put("/{expense_id}")
def update_expense(expense_id: int, data: ExpenseIn, db: Database = Depends(get_db)):
    amount = _require_amount(data)
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE expenses
                SET category = %s, amount = %s, expense_date = COALESCE(%s, expense_date), notes = %s
                WHERE id = %s
                RETURNING id, category, amount, expense_date, notes
                """,
                (data.category, amount, data.expense_date, data.notes, expense_id),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="Expense not found")
            return expense_out(row)


@router.delete("/{expense_id}")
def delete_expense(expense_id: int, db: Database = Depends(get_db)):
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute("DELETE FROM expenses WHERE id = %s", (expense_id,))
            if cur.rowcount == 0:
                raise HTTPException(status_code=404, detail="Expense not found")
            return {"message": "Expense deleted", "id": str(expense_id)}
