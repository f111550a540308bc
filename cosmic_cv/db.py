from __future__ import annotations

import os
import sqlite3
from typing import Any

import psycopg2
from psycopg2.extras import RealDictCursor

DB_ERRORS: tuple[type[Exception], ...] = (sqlite3.Error, psycopg2.Error)


def adapt_query_for_backend(backend: str, query: str, params: Any = None) -> tuple[str, Any]:
    if backend != "postgres" or params is None:
        return query, params
    converted_query = query.replace("?", "%s")
    if isinstance(params, list):
        return converted_query, tuple(params)
    return converted_query, params


class StoreCursor:
    def __init__(self, raw_cursor: Any, backend: str):
        self._raw_cursor = raw_cursor
        self._backend = backend

    def execute(self, query: str, params: Any = None) -> "StoreCursor":
        converted_query, converted_params = adapt_query_for_backend(self._backend, query, params)
        if converted_params is None:
            self._raw_cursor.execute(converted_query)
        else:
            self._raw_cursor.execute(converted_query, converted_params)
        return self

    def fetchone(self) -> dict[str, Any] | None:
        row = self._raw_cursor.fetchone()
        return dict(row) if row is not None else None

    def fetchall(self) -> list[dict[str, Any]]:
        return [dict(row) for row in self._raw_cursor.fetchall()]

    @property
    def rowcount(self) -> int:
        return int(getattr(self._raw_cursor, "rowcount", 0))


class StoreConnection:
    def __init__(self, raw_connection: Any, backend: str):
        self._raw_connection = raw_connection
        self.backend = backend

    def cursor(self) -> StoreCursor:
        if self.backend == "postgres":
            return StoreCursor(self._raw_connection.cursor(cursor_factory=RealDictCursor), self.backend)
        return StoreCursor(self._raw_connection.cursor(), self.backend)

    def execute(self, query: str, params: Any = None) -> StoreCursor:
        cursor = self.cursor()
        cursor.execute(query, params)
        return cursor

    def commit(self) -> None:
        self._raw_connection.commit()

    def rollback(self) -> None:
        self._raw_connection.rollback()

    def close(self) -> None:
        self._raw_connection.close()


def open_connection(backend: str, database_url: str, sqlite_path: str, timeout_seconds: float) -> StoreConnection:
    if backend == "postgres":
        timeout_ms = int(timeout_seconds * 1000)
        raw_connection = psycopg2.connect(
            database_url,
            connect_timeout=max(1, int(timeout_seconds)),
            options=f"-c statement_timeout={timeout_ms}",
        )
        return StoreConnection(raw_connection, backend)
    db_dir = os.path.dirname(sqlite_path)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)
    raw_connection = sqlite3.connect(sqlite_path, timeout=timeout_seconds, check_same_thread=False)
    raw_connection.row_factory = sqlite3.Row
    return StoreConnection(raw_connection, backend)


SCHEMA_STATEMENTS: list[str] = [
    """
    CREATE TABLE IF NOT EXISTS payment_ledger (
        provider_reference TEXT PRIMARY KEY,
        email TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL,
        event_type TEXT NOT NULL,
        user_id TEXT,
        received_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS entitlements (
        subject_key TEXT PRIMARY KEY,
        user_id TEXT,
        email TEXT NOT NULL DEFAULT '',
        is_premium INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL,
        provider_reference TEXT NOT NULL DEFAULT '',
        renews_at TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS leads (
        email TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        marketing_consent INTEGER NOT NULL DEFAULT 0,
        mission_id TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_payment_ledger_email ON payment_ledger (email, received_at)",
    "CREATE INDEX IF NOT EXISTS idx_entitlements_user ON entitlements (user_id)",
    "CREATE INDEX IF NOT EXISTS idx_entitlements_email ON entitlements (email)",
]
