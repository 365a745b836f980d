"""Shared pytest configuration for the project test suite."""
from __future__ import annotations

import copy
import itertools
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import pytest

# Ensure the repository root (which contains the ``spendlens`` package) is importable.
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from spendlens.errors import StorageFailure  # noqa: E402
from spendlens.models import Transaction  # noqa: E402
from spendlens.storage import Filter  # noqa: E402


class InMemoryRowStore:
    """Row store double keeping tables as lists of dicts.

    ``fail_on`` holds ``(method, table)`` pairs that raise ``StorageFailure``;
    every call is appended to ``calls`` so tests can assert on ordering, and
    ``selects`` keeps the filters each read was issued with.
    """

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.tables: Dict[str, List[Dict[str, Any]]] = {
            name: [dict(row) for row in rows] for name, rows in (tables or {}).items()
        }
        self.calls: List[tuple] = []
        self.fail_on: set = set()
        self.rpc_calls: List[tuple] = []
        self.selects: List[tuple] = []
        self.rpc_results: Dict[str, Any] = {"is_challenge_eligible": True}
        self._ids = itertools.count(1)

    def _check(self, method: str, table: str) -> None:
        self.calls.append((method, table))
        if (method, table) in self.fail_on or (method, "*") in self.fail_on:
            raise StorageFailure(f"{method} {table} failed", status_code=500)

    def _rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.setdefault(table, [])

    @staticmethod
    def _match(row: Dict[str, Any], filters: Sequence[Filter]) -> bool:
        return all(item.matches(row) for item in filters)

    async def select(self, table, filters=(), columns="*", order_by=None, descending=False):
        self._check("select", table)
        self.selects.append((table, list(filters)))
        rows = [copy.deepcopy(row) for row in self._rows(table) if self._match(row, filters)]
        if order_by:
            rows.sort(key=lambda row: row.get(order_by) or "", reverse=descending)
        if columns != "*":
            wanted = [c.strip() for c in columns.split(",")]
            rows = [{c: row.get(c) for c in wanted} for row in rows]
        return rows

    async def insert(self, table, rows):
        self._check("insert", table)
        inserted = []
        for row in rows:
            stored = copy.deepcopy(row)
            stored.setdefault("id", f"{table}-{next(self._ids)}")
            self._rows(table).append(stored)
            inserted.append(copy.deepcopy(stored))
        return inserted

    async def update(self, table, patch, filters):
        self._check("update", table)
        updated = []
        for row in self._rows(table):
            if self._match(row, filters):
                row.update(copy.deepcopy(patch))
                updated.append(copy.deepcopy(row))
        return updated

    async def upsert(self, table, rows, conflict_keys):
        self._check("upsert", table)
        result = []
        for row in rows:
            existing = next(
                (r for r in self._rows(table) if all(r.get(k) == row.get(k) for k in conflict_keys)),
                None,
            )
            if existing is not None:
                existing.update(copy.deepcopy(row))
                result.append(copy.deepcopy(existing))
            else:
                result.extend(await self.insert(table, [row]))
        return result

    async def delete(self, table, filters):
        self._check("delete", table)
        kept, removed = [], []
        for row in self._rows(table):
            (removed if self._match(row, filters) else kept).append(row)
        self.tables[table] = kept
        return removed

    async def rpc(self, name, args):
        self._check("rpc", name)
        self.rpc_calls.append((name, copy.deepcopy(args)))
        if name == "upsert_merchant_category":
            return await self.upsert(
                "merchant_categories",
                [
                    {
                        "user_id": args["p_user_id"],
                        "merchant_pattern": args["p_merchant_pattern"],
                        "category": args["p_category"],
                    }
                ],
                conflict_keys=("user_id", "merchant_pattern"),
            )
        return self.rpc_results.get(name)


@pytest.fixture
def store() -> InMemoryRowStore:
    return InMemoryRowStore()


@pytest.fixture
def make_transaction() -> Callable[..., Transaction]:
    """Factory for transactions with sensible defaults"""
    counter = itertools.count(1)

    def _make(
        description: str = "Card payment",
        amount: float = -10.0,
        timestamp: str = "2024-03-04T12:00:00",
        **overrides: Any,
    ) -> Transaction:
        values = {
            "id": f"tx-{next(counter)}",
            "timestamp": timestamp,
            "description": description,
            "amount": amount,
            "currency": "GBP",
            "connection_id": "conn-1",
        }
        values.update(overrides)
        return Transaction(**values)

    return _make
