"""
Categorization Service
Loads merchant rules (user rules take precedence over system rules) and applies
them to transaction batches.
"""

import asyncio
import logging
from collections import Counter, defaultdict
from typing import Dict, Iterable, List, Optional, Sequence

from .auth import require_user
from .categorizer import MerchantCategoryIndex
from .errors import InvalidOperation, NotFound, StorageFailure
from .models import UNCATEGORIZED, MerchantCategoryRule, Transaction
from .storage import RowStore, eq, in_, is_null

logger = logging.getLogger(__name__)

RULES_TABLE = "merchant_categories"
TRANSACTIONS_TABLE = "transactions"


def resolve_precedence(
    user_rules: Iterable[MerchantCategoryRule],
    system_rules: Iterable[MerchantCategoryRule],
) -> List[MerchantCategoryRule]:
    """
    Merge user and system rules into one ordered list

    User rules come first. A system rule is dropped when any user rule has the
    same pattern string, and every pattern string appears at most once.
    """
    resolved: List[MerchantCategoryRule] = []
    seen = set()
    for rule in list(user_rules) + list(system_rules):
        if rule.merchant_pattern in seen:
            continue
        seen.add(rule.merchant_pattern)
        resolved.append(rule)
    return resolved


class CategorizationService:
    """Keeps a per-process rule cache for one user and categorizes against it"""

    def __init__(self, store: RowStore, user_id: Optional[str] = None):
        self.store = store
        self.user_id = user_id
        self._index = MerchantCategoryIndex()

    @property
    def rules(self) -> List[MerchantCategoryRule]:
        return list(self._index.rules)

    async def load_rules(self, user_id: Optional[str] = None) -> List[MerchantCategoryRule]:
        """
        Reload the rule cache from the store

        Both reads must succeed before the cache is replaced; on failure the
        previous cache is kept and ``StorageFailure`` propagates.
        """
        user_id = require_user(user_id or self.user_id)

        user_rows, system_rows = await asyncio.gather(
            self.store.select(RULES_TABLE, [eq("user_id", user_id)]),
            self.store.select(RULES_TABLE, [is_null("user_id")]),
        )
        user_rules = [MerchantCategoryRule.from_dict(row) for row in user_rows]
        system_rules = [MerchantCategoryRule.from_dict(row) for row in system_rows]
        resolved = resolve_precedence(user_rules, system_rules)

        self._index = MerchantCategoryIndex(resolved)
        logger.info(
            f"Loaded {len(user_rules)} user and {len(system_rules)} system merchant rules "
            f"({len(user_rules) + len(system_rules) - len(resolved)} dropped by precedence)"
        )
        return self.rules

    async def _ensure_rules(self) -> MerchantCategoryIndex:
        if not self._index:
            await self.load_rules()
        return self._index

    async def categorize_batch(self, transactions: Sequence[Transaction]) -> List[Transaction]:
        """Return copies of the transactions with ``transaction_category`` assigned.

        The rule cache is loaded on first use.
        """
        index = await self._ensure_rules()
        categorized = [t.with_category(index.categorize(t)) for t in transactions]

        if categorized:
            counts = Counter(t.transaction_category for t in categorized)
            logger.debug(
                "Categorization summary: "
                + ", ".join(f"{category}: {count}" for category, count in counts.most_common())
            )
        return categorized

    async def categorize_transactions(self, transactions: Sequence[Transaction]) -> List[Transaction]:
        """Best-effort categorization: a rule-load failure returns the batch unchanged"""
        try:
            return await self.categorize_batch(transactions)
        except StorageFailure as exc:
            logger.warning(f"Category rules unavailable, leaving {len(transactions)} transactions as-is: {exc}")
            return list(transactions)

    async def list_categories(self) -> List[str]:
        index = await self._ensure_rules()
        return index.categories()

    async def update_transaction_category(self, transaction_id: str, new_category: str) -> int:
        """
        Re-categorize a transaction and everything sharing its merchant key

        The merchant name (or description when there is none) becomes a
        user-scoped rule for ``new_category``. Every stored transaction whose
        merchant name or description equals that key is updated, then the
        rule cache is reloaded.

        Returns:
            Number of stored transactions updated
        """
        user_id = require_user(self.user_id)

        rows = await self.store.select(
            TRANSACTIONS_TABLE, [eq("id", transaction_id), eq("user_id", user_id)]
        )
        if not rows:
            raise NotFound(f"Transaction {transaction_id} not found", status_code=404)

        transaction = Transaction.from_dict(rows[0])
        pattern_key = transaction.merchant_name or transaction.description
        if not pattern_key:
            raise InvalidOperation(
                f"Transaction {transaction_id} has no merchant name or description to learn from"
            )

        # Single-statement upsert keyed on (user_id, merchant_pattern)
        await self.store.rpc(
            "upsert_merchant_category",
            {"p_user_id": user_id, "p_merchant_pattern": pattern_key, "p_category": new_category},
        )

        patch = {"transaction_category": new_category}
        by_merchant = await self.store.update(
            TRANSACTIONS_TABLE, patch, [eq("user_id", user_id), eq("merchant_name", pattern_key)]
        )
        by_description = await self.store.update(
            TRANSACTIONS_TABLE, patch, [eq("user_id", user_id), eq("description", pattern_key)]
        )
        updated_ids = {row.get("id") for row in by_merchant + by_description}

        logger.info(f"Learned rule '{pattern_key}' -> {new_category}; updated {len(updated_ids)} transactions")

        await self.load_rules(user_id)
        return len(updated_ids)

    async def recategorize_stored(self, batch_size: int = 100) -> int:
        """
        Re-apply the current rules to the user's stored transactions

        Only rows whose category changes to something other than
        ``Uncategorized`` are written back.

        Returns:
            Number of transactions updated
        """
        user_id = require_user(self.user_id)
        await self.load_rules(user_id)

        rows = await self.store.select(TRANSACTIONS_TABLE, [eq("user_id", user_id)])
        transactions = [Transaction.from_dict(row) for row in rows]

        updated = 0
        for start in range(0, len(transactions), batch_size):
            batch = transactions[start:start + batch_size]
            categorized = [t.with_category(self._index.categorize(t)) for t in batch]
            written = await self.save_changed_categories(batch, categorized)
            if written:
                logger.info(f"Recategorized {written} transactions in batch {start // batch_size + 1}")
            updated += written
        return updated

    async def save_changed_categories(
        self, original: Sequence[Transaction], categorized: Sequence[Transaction]
    ) -> int:
        """
        Write back categories that changed to something other than ``Uncategorized``

        Returns:
            Number of transactions updated
        """
        user_id = require_user(self.user_id)
        changes: Dict[str, List[str]] = defaultdict(list)
        for before, after in zip(original, categorized):
            category = after.transaction_category
            if category and category != UNCATEGORIZED and category != before.transaction_category:
                changes[category].append(after.id)

        for category, ids in changes.items():
            await self.store.update(
                TRANSACTIONS_TABLE,
                {"transaction_category": category},
                [eq("user_id", user_id), in_("id", ids)],
            )
        return sum(len(ids) for ids in changes.values())
