"""
Invoice line and totals math shared by invoice creation, returns and display.

All amounts are `Decimal`. Intermediate taxable/tax values are carried at full
precision; only line totals and the invoice total are rounded to 2 decimals
(ROUND_HALF_UP), and the payable total is rounded to a whole currency unit.
"""
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional

INCLUSIVE = "INCLUSIVE"
EXCLUSIVE = "EXCLUSIVE"
CGST_SGST = "CGST_SGST"
IGST = "IGST"

MONEY_Q = Decimal("0.01")
UNIT_Q = Decimal("1")
ZERO = Decimal("0")
HUNDRED = Decimal("100")


def to_decimal(v) -> Decimal:
    if v is None:
        return ZERO
    if isinstance(v, Decimal):
        return v
    # str() first so floats like 0.1 don't carry binary noise.
    return Decimal(str(v))


def round2(v) -> Decimal:
    return to_decimal(v).quantize(MONEY_Q, rounding=ROUND_HALF_UP)


def round_unit(v) -> Decimal:
    return to_decimal(v).quantize(UNIT_Q, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class LineInput:
    price: Decimal
    quantity: Decimal
    tax_rate: Decimal = ZERO
    mrp: Optional[Decimal] = None


@dataclass(frozen=True)
class LineAmounts:
    gross: Decimal
    taxable: Decimal
    tax: Decimal
    line_total: Decimal
    savings: Decimal


@dataclass(frozen=True)
class InvoiceTotals:
    subtotal: Decimal
    total_tax: Decimal
    total: Decimal
    rounded_total: Decimal
    round_off: Decimal
    payable_total: Decimal
    cgst: Decimal
    sgst: Decimal
    igst: Decimal
    savings: Decimal
    lines: List[LineAmounts] = field(default_factory=list)


def _raw_line(price: Decimal, quantity: Decimal, tax_rate: Decimal, tax_mode: str, mrp: Optional[Decimal]):
    if price < 0 or quantity < 0 or tax_rate < 0:
        raise ValueError("price, quantity and tax rate must be >= 0")
    gross = price * quantity
    tax_fraction = tax_rate / HUNDRED
    if tax_mode == INCLUSIVE and tax_fraction > 0:
        taxable = gross / (1 + tax_fraction)
        tax = gross - taxable
        line_total = gross
    else:
        taxable = gross
        tax = taxable * tax_fraction
        line_total = taxable + tax
    savings = ZERO
    if mrp is not None:
        savings = max(ZERO, (mrp - price) * quantity)
    return gross, taxable, tax, line_total, savings


def compute_line(price, quantity, tax_rate=ZERO, tax_mode: str = EXCLUSIVE, mrp=None) -> LineAmounts:
    gross, taxable, tax, line_total, savings = _raw_line(
        to_decimal(price),
        to_decimal(quantity),
        to_decimal(tax_rate),
        _norm_tax_mode(tax_mode),
        to_decimal(mrp) if mrp is not None else None,
    )
    return LineAmounts(gross=gross, taxable=taxable, tax=tax, line_total=round2(line_total), savings=savings)


def split_gst(tax, gst_split: str = CGST_SGST) -> tuple[Decimal, Decimal, Decimal]:
    """Returns (cgst, sgst, igst); presentational only, the sum is always `tax`."""
    tax = to_decimal(tax)
    if _norm_gst_split(gst_split) == CGST_SGST:
        half = tax / 2
        return half, half, ZERO
    return ZERO, ZERO, tax


def compute_totals(lines: Iterable[LineInput], tax_mode: str = EXCLUSIVE, gst_split: str = CGST_SGST) -> InvoiceTotals:
    mode = _norm_tax_mode(tax_mode)
    subtotal = ZERO
    total_tax = ZERO
    total = ZERO
    savings = ZERO
    out: List[LineAmounts] = []
    for ln in lines:
        gross, taxable, tax, line_total, line_savings = _raw_line(
            to_decimal(ln.price),
            to_decimal(ln.quantity),
            to_decimal(ln.tax_rate),
            mode,
            to_decimal(ln.mrp) if ln.mrp is not None else None,
        )
        subtotal += taxable
        total_tax += tax
        # The invoice total is the sum of the stored (rounded) line totals, so a
        # later recompute from invoice_items reproduces it exactly.
        line_total = round2(line_total)
        total += line_total
        savings += line_savings
        out.append(LineAmounts(gross=gross, taxable=taxable, tax=tax, line_total=line_total, savings=line_savings))

    rounded_total = round_unit(total)
    round_off = rounded_total - total
    cgst, sgst, igst = split_gst(total_tax, gst_split)
    return InvoiceTotals(
        subtotal=round2(subtotal),
        total_tax=round2(total_tax),
        total=total,
        rounded_total=rounded_total,
        round_off=round_off,
        payable_total=total + round_off,
        cgst=round2(cgst),
        sgst=round2(sgst),
        igst=round2(igst),
        savings=round2(savings),
        lines=out,
    )


def _norm_tax_mode(v: Optional[str]) -> str:
    mode = str(v or EXCLUSIVE).strip().upper()
    if mode not in {INCLUSIVE, EXCLUSIVE}:
        raise ValueError(f"unsupported tax mode: {v}")
    return mode


def _norm_gst_split(v: Optional[str]) -> str:
    split = str(v or CGST_SGST).strip().upper()
    if split not in {CGST_SGST, IGST}:
        raise ValueError(f"unsupported gst split: {v}")
    return split
