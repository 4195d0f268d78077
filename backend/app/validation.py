from __future__ import annotations

from typing import Annotated, Literal, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, StringConstraints
from pydantic.alias_generators import to_camel


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_upper_snake(v):
    if v is None:
        return v
    return str(v).strip().upper().replace("-", "_").replace(" ", "_")


def _blank_to_none(v):
    if isinstance(v, str) and not v.strip():
        return None
    return v


# Canonical codes mirror the CHECK constraints in `backend/db/migrations/001_init.sql`.
InvoiceType = Annotated[Literal["SALE", "RETURN", "PURCHASE", "PURCHASE_RETURN"], BeforeValidator(_to_upper_snake)]
TaxMode = Annotated[Literal["INCLUSIVE", "EXCLUSIVE"], BeforeValidator(_to_upper_str)]
GstSplit = Annotated[Literal["CGST_SGST", "IGST"], BeforeValidator(_to_upper_snake)]
PaymentDirection = Annotated[Literal["IN", "OUT"], BeforeValidator(_to_upper_str)]
PaymentMode = Annotated[Literal["CASH", "ONLINE", "CHEQUE", "CARD", "UPI", "CREDIT"], BeforeValidator(_to_upper_str)]
UserRole = Annotated[Literal["SUPER_ADMIN", "ADMIN", "STAFF"], BeforeValidator(_to_upper_snake)]
Counterparty = Annotated[Literal["PARTY", "SUPPLIER"], BeforeValidator(_to_upper_str)]

# Free-text fields: trim, and treat "" as absent.
OptionalText = Annotated[
    Optional[Annotated[str, StringConstraints(strip_whitespace=True, max_length=500)]],
    BeforeValidator(_blank_to_none),
]


class CamelModel(BaseModel):
    """Request bodies use the UI's camelCase keys; snake_case is accepted too."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
