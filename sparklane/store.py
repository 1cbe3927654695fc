"""Key-value storage for project and instance records."""

from __future__ import annotations

import asyncio
import os
import sqlite3
from contextlib import closing
from typing import Callable, TypeVar

_T = TypeVar("_T")

_SCAN_LIMIT = 100_000_000

_SCHEMA = "CREATE TABLE IF NOT EXISTS kv (key BLOB PRIMARY KEY, value BLOB NOT NULL)"


class DatabaseError(Exception):
    """Raised when a storage operation cannot be completed."""


class Db:
    """An ordered byte-keyed store kept in an SQLite file.

    Each operation runs in its own transaction on a worker thread, so the
    object is cheap to share and copy between request handlers.
    """

    def __init__(self, path):
        self.path = os.fspath(path)

    def __repr__(self) -> str:
        return f"Db({self.path!r})"

    def _run(self, operation: Callable[[sqlite3.Connection], _T], message: str) -> _T:
        try:
            with closing(sqlite3.connect(self.path)) as conn, conn:
                conn.execute(_SCHEMA)
                return operation(conn)
        except sqlite3.Error as exc:
            raise DatabaseError(message) from exc

    async def get(self, key: str) -> bytes | None:
        """Return the value stored under ``key``, or None if there is none."""

        def operation(conn: sqlite3.Connection) -> bytes | None:
            row = conn.execute(
                "SELECT value FROM kv WHERE key = ?", (key.encode(),)
            ).fetchone()
            return None if row is None else bytes(row[0])

        return await asyncio.to_thread(self._run, operation, "cannot commit transaction")

    async def insert(self, key: str, value: bytes) -> None:
        """Store ``value`` under ``key``, replacing any earlier value."""
        data = bytes(value)

        def operation(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT INTO kv (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key.encode(), data),
            )

        await asyncio.to_thread(
            self._run, operation, "Database insert transaction failed"
        )

    async def scan_prefix(self, prefix: str) -> list[tuple[bytes, bytes]]:
        """Return every (key, value) pair whose key lies in [prefix, prefix + 0xFF)."""
        start = prefix.encode()
        end = start + b"\xff"

        def operation(conn: sqlite3.Connection) -> list[tuple[bytes, bytes]]:
            rows = conn.execute(
                "SELECT key, value FROM kv WHERE key >= ? AND key < ? "
                "ORDER BY key LIMIT ?",
                (start, end, _SCAN_LIMIT),
            )
            return [(bytes(k), bytes(v)) for k, v in rows]

        return await asyncio.to_thread(self._run, operation, "Scan prefix error")

    async def remove(self, key: str) -> None:
        """Delete ``key``; removing a missing key is not an error."""

        def operation(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM kv WHERE key = ?", (key.encode(),))

        await asyncio.to_thread(self._run, operation, "Db removal error")