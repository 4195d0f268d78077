from decimal import Decimal

from fastapi import HTTPException


def assert_not_overpaid(total: Decimal, paid: Decimal, eps: Decimal = Decimal("0.01"), detail: str = "amountPaid exceeds invoice total"):
    if paid < 0:
        raise HTTPException(status_code=400, detail="amountPaid must be >= 0")
    if paid > (total + eps):
        raise HTTPException(status_code=400, detail=detail)


def matches_within(client_value: Decimal, server_value: Decimal, eps: Decimal) -> bool:
    return abs(client_value - server_value) <= eps
