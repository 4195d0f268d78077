from datetime import date
from decimal import Decimal

import pytest
from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError

from backend.app.config import settings
from backend.app.routers import invoices as invoices_router


def _no_sql(text, params):
    return None


def _invoice_store_handler(existing_parties=(5,)):
    """Keeps the inserted header/lines so the closing re-read returns them."""
    store = {"header": None, "lines": []}

    def handler(text, params):
        if text.startswith("select id from parties where id = %s"):
            return ([{"id": params[0]}] if params[0] in existing_parties else [], None)
        if text.startswith("select id from suppliers where id = %s"):
            return ([{"id": params[0]}] if params[0] in existing_parties else [], None)
        if text.startswith("insert into invoices"):
            cols = [c.strip() for c in text.split("(", 1)[1].split(")", 1)[0].split(",")]
            store["header"] = dict(zip(cols, params), id=42)
            return ([{"id": 42}], None)
        if text.startswith("insert into invoice_items"):
            keys = ("invoice_id", "item_id", "name", "quantity", "mrp", "price", "tax_rate", "total")
            store["lines"].append(dict(zip(keys, params), id=len(store["lines"]) + 1))
            return ([], 1)
        if text.startswith("update items set stock = stock + %s"):
            return ([], 1)
        if text.startswith("update parties set balance = balance + %s") or text.startswith(
            "update suppliers set balance = balance + %s"
        ):
            return ([], 1)
        if text.startswith("select i.id, i.type, i.invoice_no"):
            row = dict(store["header"])
            row.setdefault("is_closed", False)
            return ([row], None)
        if text.startswith("select id, item_id, name, quantity"):
            return (store["lines"], None)
        return None

    return handler, store


def _sale_payload(**overrides):
    payload = {
        "type": "sale",
        "partyId": 5,
        "date": "2026-03-01",
        "items": [{"itemId": 7, "itemName": "Widget", "quantity": 2, "price": "100", "taxRate": "18"}],
        "totalAmount": "236",
    }
    payload.update(overrides)
    return payload


def test_parse_invoice_payload_discriminates_on_normalized_type():
    sale = invoices_router.parse_invoice_payload(_sale_payload())
    assert isinstance(sale, invoices_router.SaleInvoiceIn)
    assert sale.type == "SALE"
    assert sale.invoice_date == date(2026, 3, 1)

    debit = invoices_router.parse_invoice_payload(
        {"type": "purchase-return", "supplierId": 9, "items": [{"itemId": 8, "quantity": 1, "price": "50"}]}
    )
    assert isinstance(debit, invoices_router.PurchaseReturnInvoiceIn)
    assert debit.party_id == 9


def test_parse_invoice_payload_rejects_unknown_type_and_missing_supplier():
    with pytest.raises(RequestValidationError):
        invoices_router.parse_invoice_payload({"type": "QUOTE", "items": []})
    with pytest.raises(RequestValidationError):
        invoices_router.parse_invoice_payload({"type": "PURCHASE", "items": [{"quantity": 1, "price": "1"}]})


def test_parse_invoice_payload_rejects_non_positive_quantity():
    with pytest.raises(RequestValidationError):
        invoices_router.parse_invoice_payload(_sale_payload(items=[{"itemId": 7, "quantity": 0, "price": "1"}]))


def test_total_mismatch_is_rejected_before_any_write(scripted):
    db, cur = scripted(_no_sql)
    with pytest.raises(HTTPException) as ex:
        invoices_router.create_invoice(_sale_payload(totalAmount="250"), db)
    assert ex.value.status_code == 400
    assert ex.value.detail == "totalAmount does not match computed total (236.00)"
    assert cur.executed == []


def test_empty_items_are_rejected(scripted):
    db, cur = scripted(_no_sql)
    with pytest.raises(HTTPException) as ex:
        invoices_router.create_invoice(_sale_payload(items=[]), db)
    assert ex.value.status_code == 400
    assert cur.executed == []


def test_overpayment_is_rejected(scripted):
    db, cur = scripted(_no_sql)
    with pytest.raises(HTTPException) as ex:
        invoices_router.create_invoice(_sale_payload(amountPaid="300"), db)
    assert ex.value.status_code == 400


def test_client_total_may_be_unrounded_total():
    data = invoices_router.parse_invoice_payload(
        _sale_payload(items=[{"quantity": 1, "price": "10.25"}], totalAmount="10.25")
    )
    totals = invoices_router._compute(data)
    assert totals.payable_total == Decimal("10.00")
    assert invoices_router._resolve_total(data, totals) == (Decimal("10.25"), Decimal("0"))

    data = invoices_router.parse_invoice_payload(_sale_payload(items=[{"quantity": 1, "price": "10.25"}], totalAmount=None))
    assert invoices_router._resolve_total(data, totals) == (Decimal("10.00"), Decimal("-0.25"))


def test_sale_invoice_moves_stock_and_books_invoice_total(scripted):
    handler, store = _invoice_store_handler()
    db, cur = scripted(handler)

    out = invoices_router.create_invoice(_sale_payload(amountPaid="36"), db)

    header = store["header"]
    assert header["type"] == "SALE"
    assert header["party_id"] == 5
    assert header["supplier_id"] is None
    assert header["invoice_no"].startswith("TXN-")
    assert header["total_amount"] == Decimal("236.00")
    assert header["total_tax"] == Decimal("36.00")
    assert header["amount_due"] == Decimal("200.00")
    assert header["due_status"] == "PARTIAL"

    stock = cur.statements("update items set stock")
    assert stock == [(Decimal("-2"), 7)]
    # The balance carries the full invoice total; amountPaid only sets amount_due.
    balance = cur.statements("update parties set balance")
    assert balance == [(Decimal("236.00"), 5)]

    assert out["id"] == "42"
    assert out["totalAmount"] == Decimal("236.00")
    assert out["cgst"] == Decimal("18.00")
    assert out["sgst"] == Decimal("18.00")
    assert out["igst"] == Decimal("0.00")
    assert out["items"][0]["total"] == Decimal("236.00")


def test_sale_without_party_books_against_cash_customer(scripted):
    handler, store = _invoice_store_handler(existing_parties=())
    db, cur = scripted(handler)

    invoices_router.create_invoice(_sale_payload(partyId="CASH", amountPaid="236"), db)

    assert store["header"]["party_id"] == settings.cash_party_id
    assert store["header"]["due_status"] == "PAID"
    assert not any(t.startswith("select id from parties") for t, _ in cur.executed)
    assert cur.statements("update parties set balance") == [(Decimal("236.00"), settings.cash_party_id)]


def test_unknown_party_is_404(scripted):
    handler, _store = _invoice_store_handler(existing_parties=())
    db, cur = scripted(handler)
    with pytest.raises(HTTPException) as ex:
        invoices_router.create_invoice(_sale_payload(), db)
    assert ex.value.status_code == 404
    assert ex.value.detail == "Party not found"


def test_purchase_invoice_adds_stock_and_increases_payable(scripted):
    handler, store = _invoice_store_handler(existing_parties=(9,))
    db, cur = scripted(handler)
    payload = {
        "type": "PURCHASE",
        "supplierId": 9,
        "gstSplit": "IGST",
        "items": [{"itemId": 8, "itemName": "Bolt", "quantity": 5, "price": "50", "taxRate": "12"}],
        "totalAmount": "280",
    }

    out = invoices_router.create_invoice(payload, db)

    assert store["header"]["supplier_id"] == 9
    assert store["header"]["party_id"] is None
    assert store["header"]["invoice_no"].startswith("PB-")
    assert cur.statements("update items set stock") == [(Decimal("5"), 8)]
    assert cur.statements("update suppliers set balance") == [(Decimal("-280.00"), 9)]
    assert out["igst"] == Decimal("30.00")
    assert out["partyId"] == "9"


def _locked_invoice_handler(row, return_count=0):
    def handler(text, params):
        if text.startswith("select id, type, party_id, supplier_id, total_amount, is_closed"):
            return ([row], None)
        if text.startswith("select count(*)::int as n from invoices where original_invoice_id"):
            return ([{"n": return_count}], None)
        return None

    return handler


def _sale_row(**overrides):
    row = {
        "id": 1,
        "type": "SALE",
        "party_id": 5,
        "supplier_id": None,
        "total_amount": Decimal("1180.00"),
        "is_closed": False,
        "original_invoice_id": None,
    }
    row.update(overrides)
    return row


def test_invoice_with_returns_cannot_be_deleted(scripted):
    db, cur = scripted(_locked_invoice_handler(_sale_row(), return_count=1))
    with pytest.raises(HTTPException) as ex:
        invoices_router.delete_invoice("1", db)
    assert ex.value.status_code == 409
    assert not any(t.startswith("delete") for t, _ in cur.executed)


def test_credit_note_cannot_be_deleted_directly(scripted):
    row = _sale_row(id=77, type="RETURN", original_invoice_id=1)
    db, cur = scripted(_locked_invoice_handler(row))
    with pytest.raises(HTTPException) as ex:
        invoices_router.delete_invoice("77", db)
    assert ex.value.status_code == 400


def test_invoice_type_cannot_change_on_update(scripted):
    db, cur = scripted(_locked_invoice_handler(_sale_row()))
    payload = _sale_payload(type="RETURN")
    with pytest.raises(HTTPException) as ex:
        invoices_router.update_invoice("1", payload, db)
    assert ex.value.status_code == 400
    assert ex.value.detail == "Invoice type cannot be changed"


def test_closed_invoice_cannot_be_edited(scripted):
    db, cur = scripted(_locked_invoice_handler(_sale_row(is_closed=True)))
    with pytest.raises(HTTPException) as ex:
        invoices_router.update_invoice("1", _sale_payload(), db)
    assert ex.value.detail == "Invoice is closed"


def test_delete_reverses_stock_and_balance(scripted):
    row = _sale_row()
    base = _locked_invoice_handler(row)

    def handler(text, params):
        if text.startswith("select item_id, quantity from invoice_items"):
            return ([{"item_id": 7, "quantity": Decimal("10")}], None)
        if text.startswith("update items set stock") or text.startswith("update parties set balance"):
            return ([], 1)
        if text.startswith("delete from invoice_items") or text.startswith("delete from invoices"):
            return ([], 1)
        return base(text, params)

    db, cur = scripted(handler)
    out = invoices_router.delete_invoice("1", db)

    assert out == {"message": "Invoice deleted", "id": "1"}
    assert cur.statements("update items set stock") == [(Decimal("10"), 7)]
    assert cur.statements("update parties set balance") == [(Decimal("-1180.00"), 5)]


def test_update_reverses_old_total_and_books_new_total(scripted):
    base = _locked_invoice_handler(_sale_row())
    reloaded = {
        "id": 1,
        "type": "SALE",
        "invoice_no": "TXN-00000001",
        "invoice_date": date(2026, 3, 1),
        "party_id": 5,
        "supplier_id": None,
        "subtotal": Decimal("200.00"),
        "total_tax": Decimal("36.00"),
        "round_off": Decimal("0"),
        "total_amount": Decimal("236.00"),
        "amount_paid": Decimal("236"),
        "amount_due": Decimal("0"),
        "due_status": "PAID",
        "payment_mode": "CASH",
        "tax_mode": "EXCLUSIVE",
        "gst_split": "CGST_SGST",
    }

    def handler(text, params):
        if text.startswith("select item_id, quantity from invoice_items"):
            return ([{"item_id": 7, "quantity": Decimal("10")}], None)
        if text.startswith("select id from parties where id = %s"):
            return ([{"id": params[0]}], None)
        if text.startswith("update items set stock") or text.startswith("update parties set balance"):
            return ([], 1)
        if text.startswith("delete from invoice_items") or text.startswith("update invoices set"):
            return ([], 1)
        if text.startswith("insert into invoice_items"):
            return ([], 1)
        if text.startswith("select i.id, i.type, i.invoice_no"):
            return ([reloaded], None)
        if text.startswith("select id, item_id, name, quantity"):
            return ([], None)
        return base(text, params)

    db, cur = scripted(handler)
    out = invoices_router.update_invoice("1", _sale_payload(amountPaid="236"), db)

    assert out["totalAmount"] == Decimal("236.00")
    assert cur.statements("update items set stock") == [(Decimal("10"), 7), (Decimal("-2"), 7)]
    assert cur.statements("update parties set balance") == [(Decimal("-1180.00"), 5), (Decimal("236.00"), 5)]


def test_line_quantity_is_limited_to_three_decimals():
    line = {"itemId": 7, "quantity": "1.0005", "price": "10"}
    with pytest.raises(RequestValidationError):
        invoices_router.parse_invoice_payload(_sale_payload(items=[line]))

    data = invoices_router.parse_invoice_payload(_sale_payload(items=[dict(line, quantity="1.125")]))
    assert data.items[0].quantity == Decimal("1.125")
