#!/usr/bin/env python3
import argparse
import os
import secrets
import sys

import psycopg
from psycopg.rows import dict_row

from backend.app.security import hash_password

DEFAULT_USERS = (
    ("Super Admin", "superadmin", "SUPER_ADMIN"),
    ("Admin User", "admin", "ADMIN"),
    ("Staff User", "staff", "STAFF"),
)


def _generate_password() -> str:
    # URL-safe and copy/paste friendly.
    return secrets.token_urlsafe(16)


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed the default SUPER_ADMIN/ADMIN/STAFF users and the Cash Customer.")
    parser.add_argument(
        "--db",
        default=os.getenv("DATABASE_URL") or "postgresql://localhost/quickbill",
        help="Postgres connection string (defaults to $DATABASE_URL).",
    )
    parser.add_argument(
        "--password",
        default=os.getenv("SEED_USERS_PASSWORD"),
        help="Password for every seeded user (generated and printed when omitted).",
    )
    args = parser.parse_args()

    password = args.password
    generated_password = False
    if not password:
        password = _generate_password()
        generated_password = True

    created = []
    with psycopg.connect(args.db, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("INSERT INTO parties (id, name) VALUES (1, 'Cash Customer') ON CONFLICT (id) DO NOTHING")
                for name, username, role in DEFAULT_USERS:
                    cur.execute("SELECT id FROM users WHERE username = %s", (username,))
                    if cur.fetchone():
                        # Idempotent: existing users keep their password.
                        continue
                    cur.execute(
                        """
                        INSERT INTO users (name, username, password_hash, role)
                        VALUES (%s, %s, %s, %s)
                        """,
                        (name, username, hash_password(password), role),
                    )
                    created.append(username)

    for username in created:
        print(f"seeded user: {username}")
    if created and generated_password:
        print(f"password: {password}", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())
