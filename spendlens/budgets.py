"""
Category budget policies used by category-budget challenges.
"""

import logging
from typing import Dict, Mapping, Optional, Protocol

from .storage import RowStore, eq

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY_BUDGETS: Dict[str, float] = {
    "Groceries": 400.0,
    "Dining": 200.0,
    "Transport": 150.0,
    "Shopping": 300.0,
    "Entertainment": 200.0,
}


class CategoryBudgetPolicy(Protocol):
    async def budgets_for(self, user_id: str) -> Dict[str, float]:
        ...


class StaticCategoryBudgetPolicy:
    """Same budget table for every user"""

    def __init__(self, budgets: Optional[Mapping[str, float]] = None):
        self.budgets = dict(budgets if budgets is not None else DEFAULT_CATEGORY_BUDGETS)

    async def budgets_for(self, user_id: str) -> Dict[str, float]:
        return dict(self.budgets)


class StoredCategoryBudgetPolicy:
    """Per-user limits from the ``category_targets`` table, with a static fallback"""

    TABLE = "category_targets"

    def __init__(self, store: RowStore, fallback: Optional[CategoryBudgetPolicy] = None):
        self.store = store
        self.fallback = fallback or StaticCategoryBudgetPolicy()

    async def budgets_for(self, user_id: str) -> Dict[str, float]:
        rows = await self.store.select(self.TABLE, [eq("user_id", user_id)], columns="category,amount")
        budgets = {row["category"]: float(row["amount"]) for row in rows if row.get("category")}
        if not budgets:
            logger.debug(f"No category targets for user {user_id}, using default budgets")
            return await self.fallback.budgets_for(user_id)
        return budgets
