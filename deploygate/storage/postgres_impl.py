from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

import os
import threading

from deploygate.storage.base import StorageBackend

try:
    import psycopg2
    from psycopg2 import errors as pg_errors
    from psycopg2.extras import RealDictCursor
except ImportError:  # pragma: no cover
    psycopg2 = None
    pg_errors = None
    RealDictCursor = None


class PostgresStorageBackend(StorageBackend):
    def __init__(self, dsn: Optional[str] = None):
        self._dsn = (
            dsn
            or os.getenv("DEPLOYGATE_POSTGRES_DSN")
            or os.getenv("DATABASE_URL")
        )
        if not self._dsn:
            raise ValueError("Postgres DSN missing. Set DEPLOYGATE_POSTGRES_DSN or DATABASE_URL.")
        if psycopg2 is None:
            raise RuntimeError("psycopg2 is required for PostgresStorageBackend (pip install deploygate[postgres])")
        self._local = threading.local()

    @property
    def name(self) -> str:
        return "postgres"

    def _adapt_sql(self, query: str) -> str:
        # Repositories are written with sqlite-style '?' placeholders.
        return query.replace("?", "%s")

    def _active_tx(self) -> Optional[Dict[str, Any]]:
        return getattr(self._local, "tx_state", None)

    def in_transaction(self) -> bool:
        return self._active_tx() is not None

    @contextmanager
    def connect(self) -> Iterator[Any]:
        active = self._active_tx()
        if active is not None:
            yield active["conn"]
            return
        conn = psycopg2.connect(self._dsn)
        try:
            yield conn
        finally:
            conn.close()

    def _run(self, cur: Any, query: str, params: Sequence[Any]) -> None:
        q = self._adapt_sql(query)
        # psycopg2 treats '%' as an interpolation marker whenever a params tuple
        # is given, so plain DDL is sent without one.
        if params:
            cur.execute(q, tuple(params))
        else:
            cur.execute(q)

    def execute(self, query: str, params: Sequence[Any] = ()) -> int:
        autocommit = not self.in_transaction()
        with self.connect() as conn:
            with conn.cursor() as cur:
                self._run(cur, query, params)
                if autocommit:
                    conn.commit()
                return cur.rowcount

    def fetchone(self, query: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        with self.connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                self._run(cur, query, params)
                row = cur.fetchone()
                return dict(row) if row else None

    def fetchall(self, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self.connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                self._run(cur, query, params)
                return [dict(r) for r in cur.fetchall()]

    @contextmanager
    def transaction(self) -> Iterator["PostgresStorageBackend"]:
        active = self._active_tx()
        if active is not None:
            active["depth"] += 1
            try:
                yield self
            finally:
                active["depth"] -= 1
            return

        conn = psycopg2.connect(self._dsn)
        self._local.tx_state = {"conn": conn, "depth": 1}
        try:
            yield self
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            self._local.tx_state = None
            conn.close()

    def is_unique_violation(self, exc: BaseException) -> bool:
        if pg_errors is not None and isinstance(exc, pg_errors.UniqueViolation):
            return True
        return super().is_unique_violation(exc)
