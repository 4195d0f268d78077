from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from psycopg.errors import UniqueViolation
from pydantic import Field

from ..db import Database
from ..deps import get_db
from ..security import PasswordTooLong, hash_password
from ..validation import CamelModel, OptionalText, UserRole

router = APIRouter(prefix="/users", tags=["users"])

# password_hash is never selected for API responses.
_USER_COLUMNS = "id, name, username, role, created_at"


class UserIn(CamelModel):
    name: OptionalText = None
    username: OptionalText = None
    password: Optional[str] = None
    role: Optional[UserRole] = None


class UserUpdate(CamelModel):
    name: OptionalText = None
    role: Optional[UserRole] = None
    password: Optional[str] = Field(default=None, min_length=1)


def _hash(password: str) -> str:
    try:
        return hash_password(password)
    except PasswordTooLong as ex:
        raise HTTPException(status_code=400, detail=str(ex))


def _super_admin_ids(cur) -> list:
    cur.execute("SELECT id FROM users WHERE role = 'SUPER_ADMIN' ORDER BY id FOR UPDATE")
    return [r["id"] for r in cur.fetchall()]


def _assert_not_last_super_admin(cur, user_id: int, action: str) -> None:
    ids = _super_admin_ids(cur)
    if ids == [user_id]:
        raise HTTPException(status_code=400, detail=f"Cannot {action} the last SUPER_ADMIN user")


@router.get("")
def list_users(db: Database = Depends(get_db)):
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {_USER_COLUMNS} FROM users ORDER BY id DESC")
            return {"data": cur.fetchall()}


@router.get("/{user_id}")
def get_user(user_id: int, db: Database = Depends(get_db)):
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s", (user_id,))
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="User not found")
            return row


@router.post("", status_code=201)
def create_user(data: UserIn, db: Database = Depends(get_db)):
    username = (data.username or "").strip()
    if not data.name or not username or not data.password or not data.role:
        raise HTTPException(status_code=400, detail="All fields are required")
    with db.connection() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id FROM users WHERE username = %s", (username,))
                if cur.fetchone():
                    raise HTTPException(status_code=409, detail="Username already exists")
                try:
                    cur.execute(
                        f"""
                        INSERT INTO users (name, username, password_hash, role)
                        VALUES (%s, %s, %s, %s)
                        RETURNING {_USER_COLUMNS}
                        """,
                        (data.name, username, _hash(data.password), data.role),
                    )
                except UniqueViolation:
                    raise HTTPException(status_code=409, detail="Username already exists")
                return cur.fetchone()


@router.patch("/{user_id}")
def update_user(user_id: int, data: UserUpdate, db: Database = Depends(get_db)):
    fields = []
    params = []
    if data.name:
        fields.append("name = %s")
        params.append(data.name)
    if data.role:
        fields.append("role = %s")
        params.append(data.role)
    if data.password:
        fields.append("password_hash = %s")
        params.append(_hash(data.password))
    if not fields:
        raise HTTPException(status_code=400, detail="No fields to update")
    with db.connection() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, role FROM users WHERE id = %s FOR UPDATE", (user_id,))
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="User not found")
                if row["role"] == "SUPER_ADMIN" and data.role and data.role != "SUPER_ADMIN":
                    _assert_not_last_super_admin(cur, user_id, "demote")
                cur.execute(
                    f"UPDATE users SET {', '.join(fields)} WHERE id = %s RETURNING {_USER_COLUMNS}",
                    params + [user_id],
                )
                return cur.fetchone()


@router.delete("/{user_id}")
def delete_user(user_id: int, db: Database = Depends(get_db)):
    with db.connection() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, role FROM users WHERE id = %s FOR UPDATE", (user_id,))
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="User not found")
                if row["role"] == "SUPER_ADMIN":
                    _assert_not_last_super_admin(cur, user_id, "delete")
                cur.execute("DELETE FROM users WHERE id = %s", (user_id,))
                return {"message": "User deleted successfully"}
