#!/usr/bin/env python3
import argparse
import os
import sys
from pathlib import Path

import psycopg
from psycopg.rows import dict_row

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "db" / "migrations"


def pending_migrations(applied: set, migrations_dir: Path = MIGRATIONS_DIR) -> list:
    return [p for p in sorted(migrations_dir.glob("*.sql")) if p.name not in applied]


def main() -> int:
    parser = argparse.ArgumentParser(description="Apply pending SQL migrations in filename order.")
    parser.add_argument(
        "--db",
        default=os.getenv("DATABASE_URL") or "postgresql://localhost/quickbill",
        help="Postgres connection string (defaults to $DATABASE_URL).",
    )
    parser.add_argument("--dry-run", action="store_true", help="List pending migrations without applying them.")
    args = parser.parse_args()

    with psycopg.connect(args.db, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS schema_migrations (
                      name text PRIMARY KEY,
                      applied_at timestamptz NOT NULL DEFAULT now()
                    )
                    """
                )
                cur.execute("SELECT name FROM schema_migrations")
                applied = {r["name"] for r in cur.fetchall()}

        pending = pending_migrations(applied)
        if not pending:
            print("no pending migrations")
            return 0

        for path in pending:
            if args.dry_run:
                print(f"pending: {path.name}")
                continue
            # One transaction per file: a failing file leaves earlier ones applied.
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(path.read_text(encoding="utf-8"))
                    cur.execute("INSERT INTO schema_migrations (name) VALUES (%s)", (path.name,))
            print(f"applied: {path.name}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
