"""
Row store collaborators.

The core talks to persistence through ``RowStore``: table-keyed row reads and
writes with simple filter predicates plus named RPCs. Two implementations are
provided, Supabase/PostgREST over aiohttp and direct Postgres over psycopg2.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import aiohttp
import psycopg2
import psycopg2.extras
from psycopg2 import sql

from .config import Settings
from .errors import StorageFailure

logger = logging.getLogger(__name__)

Row = Dict[str, Any]

FILTER_OPERATORS = ("eq", "neq", "gt", "gte", "lt", "lte", "is", "in")


@dataclass(frozen=True)
class Filter:
    """A single ``column <op> value`` predicate"""

    column: str
    op: str
    value: Any = None

    def __post_init__(self) -> None:
        if self.op not in FILTER_OPERATORS:
            raise ValueError(f"Unsupported filter operator: {self.op}")

    def matches(self, row: Row) -> bool:
        current = row.get(self.column)
        if self.op == "eq":
            return current == self.value
        if self.op == "neq":
            return current != self.value
        if self.op == "is":
            return current is self.value
        if self.op == "in":
            return current in self.value
        if current is None:
            return False
        if self.op == "gt":
            return current > self.value
        if self.op == "gte":
            return current >= self.value
        if self.op == "lt":
            return current < self.value
        return current <= self.value


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def gte(column: str, value: Any) -> Filter:
    return Filter(column, "gte", value)


def is_null(column: str) -> Filter:
    return Filter(column, "is", None)


def in_(column: str, values: Iterable[Any]) -> Filter:
    return Filter(column, "in", tuple(values))


class RowStore(Protocol):
    """Generic async row store used by every service in the core"""

    async def select(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        columns: str = "*",
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[Row]:
        ...

    async def insert(self, table: str, rows: List[Row]) -> List[Row]:
        ...

    async def update(self, table: str, patch: Row, filters: Sequence[Filter]) -> List[Row]:
        ...

    async def upsert(self, table: str, rows: List[Row], conflict_keys: Sequence[str]) -> List[Row]:
        ...

    async def delete(self, table: str, filters: Sequence[Filter]) -> List[Row]:
        ...

    async def rpc(self, name: str, args: Dict[str, Any]) -> Any:
        ...


def _postgrest_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def postgrest_params(filters: Sequence[Filter]) -> List[Tuple[str, str]]:
    """Encode filters as PostgREST query parameters (``col=op.value``)"""
    params = []
    for item in filters:
        if item.op == "in":
            joined = ",".join(_postgrest_value(v) for v in item.value)
            params.append((item.column, f"in.({joined})"))
        else:
            params.append((item.column, f"{item.op}.{_postgrest_value(item.value)}"))
    return params


class PostgrestRowStore:
    """Row store backed by a Supabase (PostgREST) REST endpoint"""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        if not base_url:
            raise ValueError("PostgREST base URL is required (SUPABASE_URL)")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_settings(cls, settings: Settings) -> "PostgrestRowStore":
        return cls(settings.supabase_url, settings.supabase_service_key, timeout=settings.http_timeout)

    async def __aenter__(self) -> "PostgrestRowStore":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[List[Tuple[str, str]]] = None,
        payload: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        url = f"{self.base_url}/rest/v1/{path}"
        session = self._get_session()
        try:
            async with session.request(
                method,
                url,
                params=params,
                json=payload,
                headers=self._headers(prefer),
            ) as response:
                text = await response.text()
                if response.status >= 400:
                    message = text
                    try:
                        message = json.loads(text).get("message", text)
                    except (ValueError, AttributeError):
                        pass
                    logger.error(f"PostgREST {method} {path} failed ({response.status}): {message}")
                    raise StorageFailure(
                        f"{method} {path} failed: {message}", status_code=response.status
                    )
                return json.loads(text) if text else None
        except aiohttp.ClientError as exc:
            logger.error(f"PostgREST {method} {path} request error: {exc}")
            raise StorageFailure(f"{method} {path} failed: {exc}", original_error=exc) from exc
        except asyncio.TimeoutError as exc:
            logger.error(f"PostgREST {method} {path} timed out")
            raise StorageFailure(f"{method} {path} timed out", original_error=exc) from exc

    async def select(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        columns: str = "*",
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[Row]:
        params = [("select", columns)] + postgrest_params(filters)
        if order_by:
            params.append(("order", f"{order_by}.{'desc' if descending else 'asc'}"))
        return await self._request("GET", table, params=params) or []

    async def insert(self, table: str, rows: List[Row]) -> List[Row]:
        return await self._request("POST", table, payload=rows, prefer="return=representation") or []

    async def update(self, table: str, patch: Row, filters: Sequence[Filter]) -> List[Row]:
        if not filters:
            raise ValueError("Refusing to update without filters")
        return await self._request(
            "PATCH", table, params=postgrest_params(filters), payload=patch, prefer="return=representation"
        ) or []

    async def upsert(self, table: str, rows: List[Row], conflict_keys: Sequence[str]) -> List[Row]:
        return await self._request(
            "POST",
            table,
            params=[("on_conflict", ",".join(conflict_keys))],
            payload=rows,
            prefer="resolution=merge-duplicates,return=representation",
        ) or []

    async def delete(self, table: str, filters: Sequence[Filter]) -> List[Row]:
        if not filters:
            raise ValueError("Refusing to delete without filters")
        return await self._request(
            "DELETE", table, params=postgrest_params(filters), prefer="return=representation"
        ) or []

    async def rpc(self, name: str, args: Dict[str, Any]) -> Any:
        return await self._request("POST", f"rpc/{name}", payload=args)


class PostgresRowStore:
    """Row store talking to Postgres directly through psycopg2"""

    OPERATORS = {"eq": "=", "neq": "<>", "gt": ">", "gte": ">=", "lt": "<", "lte": "<="}

    def __init__(self, db_config: Dict[str, Any]):
        self.db_config = db_config

    @classmethod
    def from_settings(cls, settings: Settings) -> "PostgresRowStore":
        return cls(settings.db_config)

    def _get_connection(self):
        return psycopg2.connect(**self.db_config)

    @staticmethod
    def _adapt(value: Any) -> Any:
        if isinstance(value, (dict, list)):
            return psycopg2.extras.Json(value)
        return value

    def _where(self, filters: Sequence[Filter]) -> Tuple[sql.Composable, List[Any]]:
        if not filters:
            return sql.SQL(""), []
        clauses = []
        params: List[Any] = []
        for item in filters:
            column = sql.Identifier(item.column)
            if item.op == "is":
                clauses.append(sql.SQL("{} IS NULL").format(column))
            elif item.op == "in":
                clauses.append(sql.SQL("{} = ANY(%s)").format(column))
                params.append(list(item.value))
            else:
                clauses.append(sql.SQL("{} {} %s").format(column, sql.SQL(self.OPERATORS[item.op])))
                params.append(item.value)
        return sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses), params

    def _execute(self, statements: List[Tuple[sql.Composable, List[Any]]], fetch: bool = True) -> List[Row]:
        rows: List[Row] = []
        conn = self._get_connection()
        try:
            with conn:
                with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                    for statement, params in statements:
                        cursor.execute(statement, params)
                        if fetch and cursor.description is not None:
                            rows.extend(dict(row) for row in cursor.fetchall())
        finally:
            conn.close()
        return rows

    async def _run(self, statements: List[Tuple[sql.Composable, List[Any]]], description: str) -> List[Row]:
        try:
            return await asyncio.to_thread(self._execute, statements)
        except psycopg2.Error as exc:
            logger.error(f"Postgres {description} failed: {exc}")
            raise StorageFailure(f"{description} failed: {exc}", original_error=exc) from exc

    async def select(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        columns: str = "*",
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[Row]:
        if columns == "*":
            selected: sql.Composable = sql.SQL("*")
        else:
            selected = sql.SQL(", ").join(sql.Identifier(c.strip()) for c in columns.split(","))
        where, params = self._where(filters)
        statement = sql.SQL("SELECT {} FROM {}").format(selected, sql.Identifier(table)) + where
        if order_by:
            statement += sql.SQL(" ORDER BY {} {}").format(
                sql.Identifier(order_by), sql.SQL("DESC" if descending else "ASC")
            )
        return await self._run([(statement, params)], f"select from {table}")

    def _insert_statement(self, table: str, row: Row, conflict_keys: Sequence[str] = ()) -> Tuple[sql.Composable, List[Any]]:
        columns = list(row.keys())
        statement = sql.SQL("INSERT INTO {} ({}) VALUES ({})").format(
            sql.Identifier(table),
            sql.SQL(", ").join(map(sql.Identifier, columns)),
            sql.SQL(", ").join(sql.Placeholder() * len(columns)),
        )
        if conflict_keys:
            updates = [c for c in columns if c not in conflict_keys]
            if updates:
                statement += sql.SQL(" ON CONFLICT ({}) DO UPDATE SET {}").format(
                    sql.SQL(", ").join(map(sql.Identifier, conflict_keys)),
                    sql.SQL(", ").join(
                        sql.SQL("{0} = EXCLUDED.{0}").format(sql.Identifier(c)) for c in updates
                    ),
                )
            else:
                statement += sql.SQL(" ON CONFLICT ({}) DO NOTHING").format(
                    sql.SQL(", ").join(map(sql.Identifier, conflict_keys))
                )
        statement += sql.SQL(" RETURNING *")
        return statement, [self._adapt(row[c]) for c in columns]

    async def insert(self, table: str, rows: List[Row]) -> List[Row]:
        statements = [self._insert_statement(table, row) for row in rows]
        return await self._run(statements, f"insert into {table}")

    async def update(self, table: str, patch: Row, filters: Sequence[Filter]) -> List[Row]:
        if not filters:
            raise ValueError("Refusing to update without filters")
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(column)) for column in patch
        )
        where, params = self._where(filters)
        statement = (
            sql.SQL("UPDATE {} SET ").format(sql.Identifier(table))
            + assignments
            + where
            + sql.SQL(" RETURNING *")
        )
        values = [self._adapt(v) for v in patch.values()] + params
        return await self._run([(statement, values)], f"update {table}")

    async def upsert(self, table: str, rows: List[Row], conflict_keys: Sequence[str]) -> List[Row]:
        statements = [self._insert_statement(table, row, conflict_keys) for row in rows]
        return await self._run(statements, f"upsert into {table}")

    async def delete(self, table: str, filters: Sequence[Filter]) -> List[Row]:
        if not filters:
            raise ValueError("Refusing to delete without filters")
        where, params = self._where(filters)
        statement = sql.SQL("DELETE FROM {}").format(sql.Identifier(table)) + where + sql.SQL(" RETURNING *")
        return await self._run([(statement, params)], f"delete from {table}")

    async def rpc(self, name: str, args: Dict[str, Any]) -> Any:
        arguments = sql.SQL(", ").join(
            sql.SQL("{} => %s").format(sql.Identifier(key)) for key in args
        )
        statement = sql.SQL("SELECT {}(").format(sql.Identifier(name)) + arguments + sql.SQL(") AS result")
        rows = await self._run([(statement, [self._adapt(v) for v in args.values()])], f"rpc {name}")
        return rows[0]["result"] if rows else None


def build_store(settings: Settings) -> RowStore:
    """Construct the configured row store"""
    if settings.store_backend == "postgres":
        logger.info(f"Using Postgres row store at {settings.db_host}:{settings.db_port}")
        return PostgresRowStore.from_settings(settings)
    logger.info(f"Using PostgREST row store at {settings.supabase_url}")
    return PostgrestRowStore.from_settings(settings)
