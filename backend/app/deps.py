from typing import Optional

from fastapi import Header, HTTPException, Request

from .db import Database


def get_db(request: Request) -> Database:
    db = getattr(request.app.state, "db", None)
    if db is None:
        raise HTTPException(status_code=503, detail="database is not configured")
    return db


def get_idempotency_key(
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
) -> Optional[str]:
    key = (idempotency_key or "").strip()
    if not key:
        return None
    if len(key) > 128:
        raise HTTPException(status_code=400, detail="Idempotency-Key is too long (max 128 chars)")
    return key
