from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

import sqlite3
import threading

from deploygate import config
from deploygate.storage.base import StorageBackend


class SQLiteStorageBackend(StorageBackend):
    def __init__(self, db_path: Optional[str] = None, *, timeout_seconds: float = 10.0):
        self._db_path = db_path
        self._timeout = float(timeout_seconds)
        self._local = threading.local()

    @property
    def name(self) -> str:
        return "sqlite"

    @property
    def db_path(self) -> str:
        return str(self._db_path or config.DB_PATH)

    def _open(self) -> sqlite3.Connection:
        db_file = Path(self.db_path)
        db_file.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None: transactions are opened explicitly with BEGIN IMMEDIATE.
        conn = sqlite3.connect(str(db_file), timeout=self._timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _active_tx(self) -> Optional[Dict[str, Any]]:
        return getattr(self._local, "tx_state", None)

    def in_transaction(self) -> bool:
        return self._active_tx() is not None

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        active = self._active_tx()
        if active is not None:
            yield active["conn"]
            return
        conn = self._open()
        try:
            yield conn
        finally:
            conn.close()

    @staticmethod
    def _run(conn: sqlite3.Connection, query: str, params: Sequence[Any]) -> sqlite3.Cursor:
        cur = conn.cursor()
        cur.execute(query, tuple(params))
        return cur

    def execute(self, query: str, params: Sequence[Any] = ()) -> int:
        with self.connect() as conn:
            return self._run(conn, query, params).rowcount

    def fetchone(self, query: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        with self.connect() as conn:
            row = self._run(conn, query, params).fetchone()
            return dict(row) if row else None

    def fetchall(self, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self.connect() as conn:
            return [dict(r) for r in self._run(conn, query, params).fetchall()]

    @contextmanager
    def transaction(self) -> Iterator["SQLiteStorageBackend"]:
        active = self._active_tx()
        if active is not None:
            active["depth"] += 1
            try:
                yield self
            finally:
                active["depth"] -= 1
            return

        conn = self._open()
        conn.execute("BEGIN IMMEDIATE")
        self._local.tx_state = {"conn": conn, "depth": 1}
        try:
            yield self
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            self._local.tx_state = None
            conn.close()

    def is_unique_violation(self, exc: BaseException) -> bool:
        if isinstance(exc, sqlite3.IntegrityError):
            return "unique" in str(exc).lower()
        return False
