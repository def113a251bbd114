"""Relational target stores: Supabase (PostgREST) and the local SQLite mirror.

Both stores expose the same small surface used by the writer, the rollup
rebuild and the audit: ``upsert``, keyset ``fetch_page``/``iter_rows``,
``delete_between`` and ``call_rpc``.
"""
from __future__ import annotations

import json
import logging
import re
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import requests

from services.retry import RetryPolicy, call_with_retry

LOGGER = logging.getLogger(__name__)

Filter = Tuple[str, str, Any]

SQL_OPERATORS = {"eq": "=", "neq": "!=", "gt": ">", "gte": ">=", "lt": "<", "lte": "<="}

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class TargetStoreError(RuntimeError):
    """Raised when a target store call fails."""


class TransientStoreError(TargetStoreError):
    """A failure worth retrying: network trouble, rate limiting, locks."""


class ConstraintViolationError(TargetStoreError):
    """The store rejected a row because of a key or reference constraint."""


def _identifier(name: str) -> str:
    if not _IDENTIFIER.match(name or ""):
        raise TargetStoreError(f"Invalid identifier {name!r}")
    return name


def _uniform_rows(rows: Sequence[Mapping[str, Any]]) -> Tuple[List[str], List[Dict[str, Any]]]:
    columns: List[str] = []
    seen = set()
    for row in rows:
        for column in row:
            if column not in seen:
                seen.add(column)
                columns.append(column)
    return columns, [{column: row.get(column) for column in columns} for row in rows]


class TargetStore:
    retry: RetryPolicy = RetryPolicy()

    def upsert(self, table: str, rows: Sequence[Mapping[str, Any]], conflict_key: str = "id") -> None:
        raise NotImplementedError

    def fetch_page(
        self,
        table: str,
        *,
        order_by: str = "id",
        after: Optional[Any] = None,
        limit: int = 1000,
        filters: Sequence[Filter] = (),
    ) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def delete_between(self, table: str, column: str, lower: Any, upper: Any) -> int:
        raise NotImplementedError

    def call_rpc(self, name: str, params: Mapping[str, Any]) -> Any:
        raise NotImplementedError

    def iter_rows(
        self,
        table: str,
        *,
        order_by: str = "id",
        page_size: int = 1000,
        filters: Sequence[Filter] = (),
    ) -> Iterator[Dict[str, Any]]:
        """Yield every row of ``table`` in ``order_by`` order.

        Pages are fetched with a keyset cursor on ``order_by``, which must be a
        unique, indexed column so rows inserted mid-scan cannot shift pages.
        """

        after = None
        while True:
            page = call_with_retry(
                lambda: self.fetch_page(
                    table, order_by=order_by, after=after, limit=page_size, filters=filters
                ),
                policy=self.retry,
                retry_on=(TransientStoreError,),
                description=f"read {table} page",
            )
            yield from page
            if len(page) < page_size:
                return
            after = page[-1][order_by]


# ---------------------------------------------------------------------------
# SQLite mirror
# ---------------------------------------------------------------------------


def _encode(value: Any) -> Any:
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    return value


def _decode_possible_json(value: Any) -> Any:
    if isinstance(value, str) and value[:1] in ("{", "["):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class SqliteTargetStore(TargetStore):
    def __init__(self, conn: sqlite3.Connection, *, retry: Optional[RetryPolicy] = None):
        conn.row_factory = sqlite3.Row
        self._conn = conn
        self.retry = retry or RetryPolicy()
        self._procedures = {"increment_daily_stats": self._increment_daily_stats}

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def _translate(self, exc: sqlite3.Error, action: str) -> TargetStoreError:
        if isinstance(exc, sqlite3.IntegrityError):
            return ConstraintViolationError(f"{action}: {exc}")
        if isinstance(exc, sqlite3.OperationalError) and "locked" in str(exc).lower():
            return TransientStoreError(f"{action}: {exc}")
        return TargetStoreError(f"{action}: {exc}")

    def upsert(self, table: str, rows: Sequence[Mapping[str, Any]], conflict_key: str = "id") -> None:
        if not rows:
            return
        columns, uniform = _uniform_rows(rows)
        table = _identifier(table)
        quoted = [_identifier(column) for column in columns]
        updates = ", ".join(
            f"{column} = excluded.{column}" for column in quoted if column != conflict_key
        )
        statement = (
            f"INSERT INTO {table} ({', '.join(quoted)}) "
            f"VALUES ({', '.join('?' for _ in quoted)}) "
            f"ON CONFLICT({_identifier(conflict_key)}) "
            + (f"DO UPDATE SET {updates}" if updates else "DO NOTHING")
        )
        values = [tuple(_encode(row[column]) for column in columns) for row in uniform]
        try:
            with self._conn:
                self._conn.executemany(statement, values)
        except sqlite3.Error as exc:
            raise self._translate(exc, f"upsert into {table}") from exc

    def fetch_page(
        self,
        table: str,
        *,
        order_by: str = "id",
        after: Optional[Any] = None,
        limit: int = 1000,
        filters: Sequence[Filter] = (),
    ) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        for column, op, value in filters:
            sql_op = SQL_OPERATORS.get(op)
            if sql_op is None:
                raise TargetStoreError(f"Unsupported filter operator {op!r}")
            clauses.append(f"{_identifier(column)} {sql_op} ?")
            params.append(value)
        if after is not None:
            clauses.append(f"{_identifier(order_by)} > ?")
            params.append(after)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        query = (
            f"SELECT * FROM {_identifier(table)}{where} "
            f"ORDER BY {_identifier(order_by)} LIMIT ?"
        )
        params.append(int(limit))
        try:
            rows = self._conn.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            raise self._translate(exc, f"read {table}") from exc
        return [{key: _decode_possible_json(row[key]) for key in row.keys()} for row in rows]

    def delete_between(self, table: str, column: str, lower: Any, upper: Any) -> int:
        statement = (
            f"DELETE FROM {_identifier(table)} "
            f"WHERE {_identifier(column)} >= ? AND {_identifier(column)} <= ?"
        )
        try:
            with self._conn:
                cursor = self._conn.execute(statement, (lower, upper))
        except sqlite3.Error as exc:
            raise self._translate(exc, f"delete from {table}") from exc
        return cursor.rowcount

    def call_rpc(self, name: str, params: Mapping[str, Any]) -> Any:
        procedure = self._procedures.get(name)
        if procedure is None:
            raise TargetStoreError(f"Unknown procedure {name!r}")
        try:
            return procedure(params)
        except sqlite3.Error as exc:
            raise self._translate(exc, f"call {name}") from exc

    def _increment_daily_stats(self, params: Mapping[str, Any]) -> None:
        day = params["p_date"]
        branch = params["p_branch_key"]
        revenue = int(params.get("p_revenue_delta") or 0)
        count = int(params.get("p_order_count_delta") or 0)
        settled = int(params.get("p_settled_amount_delta") or 0)

        with self._conn:
            row = self._conn.execute(
                "SELECT * FROM daily_stats WHERE date = ?", (day,)
            ).fetchone()
            if row is None:
                totals = {"total_revenue": 0, "total_order_count": 0, "total_settled_amount": 0}
                branches: Dict[str, Dict[str, int]] = {}
            else:
                totals = {
                    "total_revenue": row["total_revenue"] or 0,
                    "total_order_count": row["total_order_count"] or 0,
                    "total_settled_amount": row["total_settled_amount"] or 0,
                }
                branches = _decode_possible_json(row["branches"]) or {}

            entry = branches.setdefault(
                branch, {"revenue": 0, "orderCount": 0, "settledAmount": 0}
            )
            entry["revenue"] = entry.get("revenue", 0) + revenue
            entry["orderCount"] = entry.get("orderCount", 0) + count
            entry["settledAmount"] = entry.get("settledAmount", 0) + settled
            totals["total_revenue"] += revenue
            totals["total_order_count"] += count
            totals["total_settled_amount"] += settled

            self._conn.execute(
                """
                INSERT INTO daily_stats (date, total_revenue, total_order_count,
                    total_settled_amount, branches, last_updated)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(date) DO UPDATE SET
                    total_revenue = excluded.total_revenue,
                    total_order_count = excluded.total_order_count,
                    total_settled_amount = excluded.total_settled_amount,
                    branches = excluded.branches,
                    last_updated = excluded.last_updated
                """,
                (
                    day,
                    totals["total_revenue"],
                    totals["total_order_count"],
                    totals["total_settled_amount"],
                    _encode(branches),
                    _now_iso(),
                ),
            )


# ---------------------------------------------------------------------------
# Supabase / PostgREST
# ---------------------------------------------------------------------------


def _error_message_from_response(resp: requests.Response) -> Tuple[str, str]:
    try:
        payload = resp.json()
    except ValueError:
        return "", resp.text
    if not isinstance(payload, dict):
        return "", resp.text
    code = str(payload.get("code") or "")
    message = payload.get("message") or payload.get("details") or resp.text
    return code, message


class SupabaseTargetStore(TargetStore):
    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
        retry: Optional[RetryPolicy] = None,
    ):
        self._rest_url = f"{base_url.rstrip('/')}/rest/v1"
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            }
        )
        self._timeout = timeout
        self.retry = retry or RetryPolicy()

    @classmethod
    def from_settings(cls, settings) -> "SupabaseTargetStore":
        settings.require_supabase()
        return cls(
            settings.supabase_url,
            settings.supabase_key,
            timeout=settings.request_timeout,
            retry=RetryPolicy(attempts=settings.retry_attempts, backoff=settings.retry_backoff),
        )

    def _request(self, method: str, path: str, action: str, **kwargs) -> requests.Response:
        try:
            resp = self._session.request(
                method, f"{self._rest_url}/{path}", timeout=self._timeout, **kwargs
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientStoreError(f"{action}: {exc}") from exc
        except requests.RequestException as exc:
            raise TargetStoreError(f"{action}: {exc}") from exc

        if resp.status_code < 400:
            return resp
        code, message = _error_message_from_response(resp)
        detail = f"{action}: HTTP {resp.status_code} {message}"
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientStoreError(detail)
        if resp.status_code == 409 or code.startswith("23"):
            raise ConstraintViolationError(detail)
        raise TargetStoreError(detail)

    def upsert(self, table: str, rows: Sequence[Mapping[str, Any]], conflict_key: str = "id") -> None:
        if not rows:
            return
        _, uniform = _uniform_rows(rows)
        self._request(
            "POST",
            _identifier(table),
            f"upsert into {table}",
            params={"on_conflict": _identifier(conflict_key)},
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
            json=uniform,
        )

    def fetch_page(
        self,
        table: str,
        *,
        order_by: str = "id",
        after: Optional[Any] = None,
        limit: int = 1000,
        filters: Sequence[Filter] = (),
    ) -> List[Dict[str, Any]]:
        params: List[Tuple[str, str]] = [
            ("select", "*"),
            ("order", f"{_identifier(order_by)}.asc"),
            ("limit", str(int(limit))),
        ]
        for column, op, value in filters:
            if op not in SQL_OPERATORS:
                raise TargetStoreError(f"Unsupported filter operator {op!r}")
            params.append((_identifier(column), f"{op}.{value}"))
        if after is not None:
            params.append((order_by, f"gt.{after}"))
        resp = self._request("GET", _identifier(table), f"read {table}", params=params)
        return resp.json()

    def delete_between(self, table: str, column: str, lower: Any, upper: Any) -> int:
        resp = self._request(
            "DELETE",
            _identifier(table),
            f"delete from {table}",
            params=[(_identifier(column), f"gte.{lower}"), (column, f"lte.{upper}")],
            headers={"Prefer": "return=representation"},
        )
        try:
            return len(resp.json())
        except ValueError:
            return 0

    def call_rpc(self, name: str, params: Mapping[str, Any]) -> Any:
        resp = self._request(
            "POST", f"rpc/{_identifier(name)}", f"call {name}", json=dict(params)
        )
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return resp.text
