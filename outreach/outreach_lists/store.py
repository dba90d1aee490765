# outreach/outreach_lists/store.py
from __future__ import annotations

import copy
import logging
import threading
import uuid
from typing import Any, Dict, List, Optional, Protocol, Sequence

from psycopg2 import sql
from psycopg2.extras import Json, RealDictCursor, execute_values

log = logging.getLogger(__name__)

Row = Dict[str, Any]


class StoreError(RuntimeError):
    pass


class OutreachStore(Protocol):
    def upsert(self, table: str, rows: Sequence[Row], conflict_keys: Sequence[str]) -> List[Row]: ...

    def select(self, table: str, filters: Optional[Row] = None, order_by: Optional[str] = None) -> List[Row]: ...


def _adapt(value: Any) -> Any:
    # dict / list snapshots go into jsonb columns
    if isinstance(value, (dict, list)):
        return Json(value)
    return value


class PostgresStore:
    """psycopg2-backed store; every write is INSERT .. ON CONFLICT DO UPDATE."""

    def __init__(self, get_conn):
        self._get_conn = get_conn

    def upsert(self, table: str, rows: Sequence[Row], conflict_keys: Sequence[str]) -> List[Row]:
        if not rows:
            return []
        columns = list(rows[0].keys())
        updates = [c for c in columns if c not in conflict_keys]

        query = sql.SQL(
            "INSERT INTO {table} ({cols}) VALUES %s "
            "ON CONFLICT ({keys}) DO {action} RETURNING *"
        ).format(
            table=sql.Identifier(table),
            cols=sql.SQL(", ").join(map(sql.Identifier, columns)),
            keys=sql.SQL(", ").join(map(sql.Identifier, conflict_keys)),
            action=(
                sql.SQL("UPDATE SET ") + sql.SQL(", ").join(
                    sql.SQL("{c} = EXCLUDED.{c}").format(c=sql.Identifier(c)) for c in updates
                )
                if updates
                # no-op update so RETURNING still yields the existing row
                else sql.SQL("UPDATE SET {k} = EXCLUDED.{k}").format(k=sql.Identifier(conflict_keys[0]))
            ),
        )
        values = [tuple(_adapt(r.get(c)) for c in columns) for r in rows]

        conn = self._get_conn()
        try:
            with conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    out = execute_values(cur, query.as_string(conn), values, fetch=True)
            return [dict(r) for r in out]
        except Exception as e:
            log.exception("[store] upsert into %s failed", table)
            raise StoreError(f"upsert into {table} failed: {e}") from e
        finally:
            conn.close()

    def select(self, table: str, filters: Optional[Row] = None, order_by: Optional[str] = None) -> List[Row]:
        clauses = []
        params: List[Any] = []
        for key, value in (filters or {}).items():
            if isinstance(value, (list, tuple, set)):
                clauses.append(sql.SQL("{k} = ANY(%s)").format(k=sql.Identifier(key)))
                params.append(list(value))
            else:
                clauses.append(sql.SQL("{k} = %s").format(k=sql.Identifier(key)))
                params.append(value)

        query = sql.SQL("SELECT * FROM {table}").format(table=sql.Identifier(table))
        if clauses:
            query += sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses)
        if order_by:
            query += sql.SQL(" ORDER BY {o}").format(o=sql.Identifier(order_by))

        conn = self._get_conn()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                return [dict(r) for r in cur.fetchall()]
        except Exception as e:
            log.exception("[store] select from %s failed", table)
            raise StoreError(f"select from {table} failed: {e}") from e
        finally:
            conn.close()


class MemoryStore:
    """
    In-process store with the same upsert/select contract.
    Used when DATABASE_URL is not configured, and in tests.
    """

    def __init__(self):
        self._tables: Dict[str, List[Row]] = {}
        self._lock = threading.Lock()

    def upsert(self, table: str, rows: Sequence[Row], conflict_keys: Sequence[str]) -> List[Row]:
        out: List[Row] = []
        with self._lock:
            data = self._tables.setdefault(table, [])
            for row in rows:
                key = tuple(row.get(k) for k in conflict_keys)
                existing = next((r for r in data if tuple(r.get(k) for k in conflict_keys) == key), None)
                if existing is None:
                    existing = {"id": str(uuid.uuid4())}
                    data.append(existing)
                existing.update(copy.deepcopy(row))
                out.append(copy.deepcopy(existing))
        return out

    def select(self, table: str, filters: Optional[Row] = None, order_by: Optional[str] = None) -> List[Row]:
        def matches(row: Row) -> bool:
            for key, value in (filters or {}).items():
                if isinstance(value, (list, tuple, set)):
                    if row.get(key) not in value:
                        return False
                elif row.get(key) != value:
                    return False
            return True

        with self._lock:
            rows = [copy.deepcopy(r) for r in self._tables.get(table, []) if matches(r)]
        if order_by:
            rows.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by)))
        return rows
