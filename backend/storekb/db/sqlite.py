"""SQLite connection handling for the job and vector tables."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Sequence

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

# WAL lets retrieval reads run while a worker holds the write lock.
CONNECTION_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA foreign_keys=ON;",
    "PRAGMA busy_timeout=5000;",
)


class SQLiteDatabase:
    """One lazily opened connection per instance; every worker process opens its own.

    Multi-statement writes go through :meth:`transaction`, which takes the
    write lock up front (``BEGIN IMMEDIATE``) so claim and replace operations
    never interleave with another writer.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path).expanduser()
        self._connection: sqlite3.Connection | None = None

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            # FastAPI runs sync dependencies in a thread pool.
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            for pragma in CONNECTION_PRAGMAS:
                conn.execute(pragma)
            self._connection = conn
        return self._connection

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def commit(self) -> None:
        if self._connection is not None:
            self._connection.commit()

    def rollback(self) -> None:
        if self._connection is not None:
            self._connection.rollback()

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> sqlite3.Cursor:
        return self.connection.execute(sql, params or [])

    def query(self, sql: str, params: Sequence[Any] | None = None) -> list[sqlite3.Row]:
        return self.execute(sql, params).fetchall()

    def query_one(self, sql: str, params: Sequence[Any] | None = None) -> sqlite3.Row | None:
        return self.execute(sql, params).fetchone()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """Run statements atomically under the write lock."""
        conn = self.connection
        if conn.in_transaction:
            conn.commit()
        cursor = conn.cursor()
        try:
            cursor.execute("BEGIN IMMEDIATE")
            yield cursor
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()

    def ensure_schema(self) -> None:
        self.connection.executescript(SCHEMA_PATH.read_text(encoding="utf-8"))


__all__ = ["SQLiteDatabase", "SCHEMA_PATH"]
