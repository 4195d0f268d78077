from contextlib import contextmanager
from typing import Optional

from psycopg.rows import dict_row

# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool

from .config import Settings


class Database:
    """
    Owns the bounded connection pool for one process.

    Built once at startup (see `main.create_app`), opened/closed by the app
    lifecycle hooks and handed to handlers through `deps.get_db`. Tests swap it
    for a fake exposing the same `connection()` context manager.
    """

    def __init__(self, conninfo: str, min_size: int = 1, max_size: int = 10):
        self.conninfo = conninfo
        # row_factory=dict_row: handlers index rows by column name.
        self._pool = ConnectionPool(
            conninfo=conninfo,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row},
            open=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(
            settings.db_url,
            min_size=settings.db_pool_min_size,
            max_size=max(settings.db_pool_max_size, settings.db_pool_min_size),
        )

    def open(self, timeout: Optional[float] = None) -> None:
        if timeout is None:
            self._pool.open()
        else:
            self._pool.open(wait=True, timeout=timeout)

    def close(self) -> None:
        self._pool.close()

    @contextmanager
    def connection(self):
        # `with db.connection() as conn:`
        # - commit on success
        # - rollback on exception
        # - return connection to pool (ConnectionPool.connection does all three)
        with self._pool.connection() as conn:
            yield conn

    def ping(self) -> None:
        with self.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()


def has_columns(cur, table_name: str, columns) -> bool:
    cur.execute(
        """
        SELECT COUNT(*)::int AS n
        FROM information_schema.columns
        WHERE table_schema = 'public'
          AND table_name = %s
          AND column_name = ANY(%s)
        """,
        (table_name, list(columns)),
    )
    return int((cur.fetchone() or {}).get("n") or 0) >= len(set(columns))
