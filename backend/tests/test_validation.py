from typing import Optional

import pytest
from pydantic import ValidationError

from backend.app.validation import (
    CamelModel,
    GstSplit,
    InvoiceType,
    OptionalText,
    PaymentDirection,
    PaymentMode,
    TaxMode,
    UserRole,
)


class _M(CamelModel):
    invoice_type: InvoiceType
    tax_mode: TaxMode
    gst_split: GstSplit
    direction: PaymentDirection
    mode: PaymentMode
    role: UserRole
    notes: OptionalText = None
    party_id: Optional[int] = None


def test_validation_types_normalize_case():
    m = _M(
        invoiceType="purchase-return",
        taxMode=" inclusive ",
        gstSplit="cgst sgst",
        direction="In",
        mode="upi",
        role="super admin",
        notes="  paid at counter  ",
    )
    assert m.invoice_type == "PURCHASE_RETURN"
    assert m.tax_mode == "INCLUSIVE"
    assert m.gst_split == "CGST_SGST"
    assert m.direction == "IN"
    assert m.mode == "UPI"
    assert m.role == "SUPER_ADMIN"
    assert m.notes == "paid at counter"


def test_camel_and_snake_keys_are_both_accepted():
    m = _M(invoice_type="SALE", tax_mode="EXCLUSIVE", gst_split="IGST", direction="OUT", mode="CASH", role="STAFF", party_id=5)
    assert m.party_id == 5
    m = _M(invoiceType="SALE", taxMode="EXCLUSIVE", gstSplit="IGST", direction="OUT", mode="CASH", role="STAFF", partyId=6)
    assert m.party_id == 6


def test_blank_text_becomes_none():
    m = _M(invoiceType="SALE", taxMode="EXCLUSIVE", gstSplit="IGST", direction="OUT", mode="CASH", role="STAFF", notes="   ")
    assert m.notes is None


@pytest.mark.parametrize(
    "field,value",
    [("invoiceType", "QUOTE"), ("taxMode", "GROSS"), ("mode", "BARTER"), ("role", "OWNER"), ("direction", "SIDEWAYS")],
)
def test_unknown_codes_are_rejected(field, value):
    payload = dict(invoiceType="SALE", taxMode="EXCLUSIVE", gstSplit="IGST", direction="OUT", mode="CASH", role="STAFF")
    payload[field] = value
    with pytest.raises(ValidationError):
        _M(**payload)
