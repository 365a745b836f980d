"""
Merchant Category Index
Resolves a transaction to a spending category from merchant pattern rules
"""

from typing import Iterable, List, Sequence

from .models import UNCATEGORIZED, MerchantCategoryRule, Transaction

# Provider type hints that carry no category information
GENERIC_TRANSACTION_TYPES = frozenset({"CREDIT", "DEBIT"})


def categorize(transaction: Transaction, rules: Iterable[MerchantCategoryRule]) -> str:
    """
    Categorize a transaction against an ordered rule set

    Args:
        transaction: Transaction with description and optional merchant name
        rules: Rules in precedence order (user rules before system rules)

    Returns:
        Category of the first matching rule, the provider transaction type
        when it is meaningful, otherwise ``Uncategorized``
    """
    description = (transaction.description or "").upper()
    merchant = (transaction.merchant_name or "").upper()

    if description or merchant:
        for rule in rules:
            for fragment in rule.patterns:
                if fragment in description or fragment in merchant:
                    return rule.category

    transaction_type = transaction.transaction_type
    if transaction_type and transaction_type.upper() not in GENERIC_TRANSACTION_TYPES:
        return transaction_type

    return UNCATEGORIZED


class MerchantCategoryIndex:
    """Ordered, precedence-resolved merchant rules"""

    def __init__(self, rules: Sequence[MerchantCategoryRule] = ()):
        self.rules: List[MerchantCategoryRule] = list(rules)

    def __len__(self) -> int:
        return len(self.rules)

    def __bool__(self) -> bool:
        return bool(self.rules)

    def categorize(self, transaction: Transaction) -> str:
        return categorize(transaction, self.rules)

    def categories(self) -> List[str]:
        """Unique category names, sorted"""
        return sorted({rule.category for rule in self.rules})
