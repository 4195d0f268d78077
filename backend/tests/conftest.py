import copy
import os
import sys
from contextlib import contextmanager
from decimal import Decimal

import pytest


# Allow running pytest from either the repo root or from within `backend/`.
# Tests import `backend.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)


def _norm_sql(sql) -> str:
    return " ".join(str(sql or "").lower().split())


class BillingState:
    """In-memory tables for the statements the return flow issues."""

    def __init__(self):
        self.invoice_columns = {"id", "type", "original_invoice_id", "is_closed", "idempotency_key"}
        self.parties = {}
        self.suppliers = {}
        self.items = {}
        self.invoices = {}
        self.invoice_items = {}
        self.audit = []
        self._next_id = 1000

    def next_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def add_party(self, party_id, balance="0", table="parties"):
        getattr(self, table)[party_id] = {"id": party_id, "balance": Decimal(balance)}

    def add_item(self, item_id, stock="0"):
        self.items[item_id] = {"id": item_id, "stock": Decimal(stock)}

    def add_invoice(self, invoice_id, type="SALE", party_id=None, supplier_id=None, lines=(), tax_mode="EXCLUSIVE", is_closed=False):
        total = Decimal("0")
        for ln in lines:
            row = {
                "id": ln["id"],
                "invoice_id": invoice_id,
                "item_id": ln["item_id"],
                "name": ln.get("name", f"Item {ln['item_id']}"),
                "quantity": Decimal(str(ln["quantity"])),
                "mrp": None,
                "price": Decimal(str(ln["price"])),
                "tax_rate": Decimal(str(ln.get("tax_rate", "0"))),
                "total": Decimal(str(ln["total"])),
            }
            self.invoice_items[row["id"]] = row
            total += row["total"]
        self.invoices[invoice_id] = {
            "id": invoice_id,
            "type": type,
            "invoice_no": f"TXN-{invoice_id:08d}",
            "party_id": party_id,
            "supplier_id": supplier_id,
            "payment_mode": "CASH",
            "tax_mode": tax_mode,
            "gst_split": "CGST_SGST",
            "subtotal": total,
            "total_tax": Decimal("0"),
            "total_amount": total,
            "amount_paid": Decimal("0"),
            "amount_due": total,
            "due_status": "UNPAID",
            "notes": None,
            "original_invoice_id": None,
            "is_closed": is_closed,
            "idempotency_key": None,
        }

    def lines_of(self, invoice_id):
        return sorted((r for r in self.invoice_items.values() if r["invoice_id"] == invoice_id), key=lambda r: r["id"])

    def snapshot(self):
        return copy.deepcopy(
            (self.parties, self.suppliers, self.items, self.invoices, self.invoice_items, self.audit)
        )

    def restore(self, snap):
        self.parties, self.suppliers, self.items, self.invoices, self.invoice_items, self.audit = copy.deepcopy(snap)


class BillingCursor:
    def __init__(self, state: BillingState):
        self.state = state
        self.rows = []
        self.rowcount = 0
        self.executed = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def _result(self, rows, rowcount=None):
        self.rows = list(rows)
        self.rowcount = len(self.rows) if rowcount is None else rowcount

    def execute(self, sql, params=None):
        text = _norm_sql(sql)
        params = tuple(params or ())
        self.executed.append((text, params))
        st = self.state

        if "from information_schema.columns" in text:
            _table, cols = params
            self._result([{"n": len([c for c in cols if c in st.invoice_columns])}])
            return
        if text.startswith("select r.id, r.type, r.invoice_no") and "where r.idempotency_key = %s" in text:
            out = []
            for inv in st.invoices.values():
                if inv["idempotency_key"] == params[0]:
                    orig = st.invoices.get(inv["original_invoice_id"]) or {}
                    out.append({**inv, "original_closed": orig.get("is_closed")})
            self._result(out)
            return
        if text.startswith("select id, type, party_id, supplier_id, payment_mode") and "for update" in text:
            inv = st.invoices.get(params[0])
            self._result([dict(inv)] if inv else [])
            return
        if text.startswith("select id, item_id, name, quantity") and "from invoice_items" in text:
            self._result([dict(r) for r in st.lines_of(params[0])])
            return
        if text.startswith("insert into invoices"):
            (itype, invoice_no, _date, party_id, supplier_id, subtotal, total_tax, total, due,
             payment_mode, tax_mode, gst_split, notes, original_id, key) = params
            if key is not None and any(i["idempotency_key"] == key for i in st.invoices.values()):
                raise AssertionError("duplicate idempotency key insert")
            new_id = st.next_id()
            st.invoices[new_id] = {
                "id": new_id,
                "type": itype,
                "invoice_no": invoice_no,
                "party_id": party_id,
                "supplier_id": supplier_id,
                "payment_mode": payment_mode,
                "tax_mode": tax_mode,
                "gst_split": gst_split,
                "subtotal": subtotal,
                "total_tax": total_tax,
                "total_amount": total,
                "amount_paid": Decimal("0"),
                "amount_due": due,
                "due_status": "UNPAID",
                "notes": notes,
                "original_invoice_id": original_id,
                "is_closed": False,
                "idempotency_key": key,
            }
            self._result([{"id": new_id, "invoice_no": invoice_no}])
            return
        if text.startswith("insert into invoice_items"):
            invoice_id, item_id, name, qty, mrp, price, rate, total = params
            new_id = st.next_id()
            st.invoice_items[new_id] = {
                "id": new_id,
                "invoice_id": invoice_id,
                "item_id": item_id,
                "name": name,
                "quantity": qty,
                "mrp": mrp,
                "price": price,
                "tax_rate": rate,
                "total": total,
            }
            self._result([], rowcount=1)
            return
        if text.startswith("update invoice_items set quantity = %s, total = %s where id = %s"):
            qty, total, line_id = params
            if qty < 0:
                raise AssertionError("invoice_items.quantity check violated")
            st.invoice_items[line_id]["quantity"] = qty
            st.invoice_items[line_id]["total"] = total
            self._result([], rowcount=1)
            return
        if text.startswith("update items set stock = stock + %s"):
            delta, item_id = params
            item = st.items.get(item_id)
            if item:
                item["stock"] += delta
            self._result([], rowcount=1 if item else 0)
            return
        if text.startswith("insert into sale_return_audit"):
            keys = ("original_invoice_id", "return_invoice_id", "item_id", "quantity", "reason", "processed_by", "idempotency_key", "return_type")
            st.audit.append(dict(zip(keys, params)))
            self._result([], rowcount=1)
            return
        if text.startswith("update invoices i set total_amount = s.total"):
            subtotal, total_tax, invoice_id, _again = params
            inv = st.invoices[invoice_id]
            lines = st.lines_of(invoice_id)
            total = sum((ln["total"] for ln in lines), Decimal("0"))
            remaining = sum((ln["quantity"] for ln in lines), Decimal("0"))
            inv.update(
                total_amount=total,
                subtotal=subtotal,
                total_tax=total_tax,
                amount_due=max(total - inv["amount_paid"], Decimal("0")),
                is_closed=remaining <= 0,
            )
            self._result([{"total_amount": total, "is_closed": inv["is_closed"]}])
            return
        for table in ("parties", "suppliers"):
            if text.startswith(f"update {table} set balance = balance + %s"):
                delta, cid = params
                row = getattr(st, table).get(cid)
                if row:
                    row["balance"] += delta
                self._result([], rowcount=1 if row else 0)
                return
        raise AssertionError(f"unexpected SQL in test cursor: {text}")

    def fetchone(self):
        if not self.rows:
            return None
        return self.rows[0]

    def fetchall(self):
        return list(self.rows)


class BillingConn:
    def __init__(self, state: BillingState):
        self.state = state
        self.cursors = []

    def cursor(self):
        cur = BillingCursor(self.state)
        self.cursors.append(cur)
        return cur

    @contextmanager
    def transaction(self):
        # Emulates ROLLBACK: any exception restores the pre-transaction tables.
        snap = self.state.snapshot()
        try:
            yield
        except BaseException:
            self.state.restore(snap)
            raise


class FakeDatabase:
    def __init__(self, state: BillingState):
        self.state = state
        self.conns = []

    @contextmanager
    def connection(self):
        conn = BillingConn(self.state)
        self.conns.append(conn)
        yield conn

    def open(self, timeout=None):
        return None

    def close(self):
        return None

    def ping(self):
        return None


@pytest.fixture
def billing_state():
    """
    Sale invoice 1 (party 5): one line {item 7, qty 10, price 100, tax 18%} = 1180.00.
    Purchase invoice 2 (supplier 9): one line {item 8, qty 5, price 50, tax 12%} = 280.00.
    """
    st = BillingState()
    st.add_party(5, balance="1180.00")
    st.add_party(9, balance="-280.00", table="suppliers")
    st.add_item(7, stock="0")
    st.add_item(8, stock="5")
    st.add_invoice(
        1,
        type="SALE",
        party_id=5,
        lines=[{"id": 10, "item_id": 7, "name": "Widget", "quantity": 10, "price": "100", "tax_rate": "18", "total": "1180.00"}],
    )
    st.add_invoice(
        2,
        type="PURCHASE",
        supplier_id=9,
        lines=[{"id": 20, "item_id": 8, "name": "Bolt", "quantity": 5, "price": "50", "tax_rate": "12", "total": "280.00"}],
    )
    return st


@pytest.fixture
def billing_db(billing_state):
    return FakeDatabase(billing_state)


@pytest.fixture
def billing_cursor(billing_state):
    return BillingCursor(billing_state)


class ScriptedCursor:
    """Answers SQL through `handler(text, params) -> (rows, rowcount)`; None means unexpected SQL."""

    def __init__(self, handler):
        self._handler = handler
        self._rows = []
        self.rowcount = 0
        self.executed: list[tuple[str, tuple]] = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        text = _norm_sql(sql)
        params = tuple(params or ())
        self.executed.append((text, params))
        out = self._handler(text, params)
        if out is None:
            raise AssertionError(f"unexpected SQL in test cursor: {text}")
        rows, rowcount = out
        self._rows = list(rows)
        self.rowcount = len(self._rows) if rowcount is None else rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)

    def statements(self, prefix: str):
        """Params of every executed statement starting with `prefix` (lowercase)."""
        return [p for t, p in self.executed if t.startswith(prefix)]


class ScriptedDatabase:
    def __init__(self, cur: ScriptedCursor):
        self.cur = cur

    @contextmanager
    def connection(self):
        conn = self

        class _Conn:
            @contextmanager
            def transaction(self):
                yield

            def cursor(self):
                return conn.cur

        yield _Conn()


@pytest.fixture
def scripted():
    """scripted(handler) -> (db, cursor) over a handler-driven fake cursor."""

    def _make(handler):
        cur = ScriptedCursor(handler)
        return ScriptedDatabase(cur), cur

    return _make
