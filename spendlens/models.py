"""
Core data model: transactions, merchant rules, derived patterns and challenges.

Rows arrive from the row store as plain dicts; every model converts with
``from_dict`` so the services never touch raw row shapes.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from dateutil import parser as date_parser

UNCATEGORIZED = "Uncategorized"


Timestamp = Union[str, date, datetime, None]


def _parse_iso(value: Timestamp) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, datetime.min.time())
    if not value or not isinstance(value, str):
        raise ValueError(f"Invalid timestamp: {value!r}")
    return date_parser.isoparse(value.strip())


def parse_timestamp(value: Timestamp) -> datetime:
    """
    Parse an ISO-8601 timestamp into a naive local datetime.

    Offset-aware values are converted to local clock time so that day-of-week
    and time-of-day checks see what the user saw on their statement.

    Raises:
        ValueError: the value is missing or not a valid ISO-8601 string
    """
    parsed = _parse_iso(value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def epoch_seconds(value: Timestamp) -> float:
    """Absolute instant of a timestamp; naive values are read as local time"""
    return _parse_iso(value).timestamp()


def to_utc_iso(moment: datetime) -> str:
    """Offset-aware UTC ISO string for range filters against ``timestamptz`` columns"""
    return moment.astimezone(timezone.utc).isoformat()


@dataclass
class Transaction:
    """A bank transaction as consumed by the core. Negative amounts are debits."""

    id: str
    timestamp: str
    description: str
    amount: float
    currency: str = "GBP"
    connection_id: Optional[str] = None
    merchant_name: Optional[str] = None
    transaction_category: Optional[str] = None
    transaction_type: Optional[str] = None
    scheduled_date: Optional[str] = None
    user_id: Optional[str] = None

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "Transaction":
        return cls(
            id=str(row.get("id") or row.get("transaction_id") or ""),
            timestamp=row.get("timestamp", ""),
            description=row.get("description") or "",
            amount=float(row.get("amount") or 0),
            currency=row.get("currency") or "GBP",
            connection_id=row.get("connection_id"),
            merchant_name=row.get("merchant_name"),
            transaction_category=row.get("transaction_category"),
            transaction_type=row.get("transaction_type"),
            scheduled_date=row.get("scheduled_date"),
            user_id=row.get("user_id"),
        )

    def with_category(self, category: str) -> "Transaction":
        return replace(self, transaction_category=category)


@dataclass(frozen=True)
class MerchantCategoryRule:
    """A ``|``-delimited set of substrings mapped to a spending category"""

    category: str
    merchant_pattern: str
    user_id: Optional[str] = None
    id: Optional[str] = None

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "MerchantCategoryRule":
        return cls(
            category=row["category"],
            merchant_pattern=row["merchant_pattern"],
            user_id=row.get("user_id"),
            id=row.get("id"),
        )

    @property
    def patterns(self) -> Tuple[str, ...]:
        """Upper-cased, non-empty fragments of the pattern"""
        return tuple(part.upper() for part in self.merchant_pattern.split("|") if part)


@dataclass
class TransactionPattern:
    """A recurring group of same-description transactions"""

    pattern: re.Pattern
    amount: float
    frequency: int

    def matches(self, text: str) -> bool:
        return bool(self.pattern.search(text or ""))


@dataclass
class SeasonalPattern:
    month: int
    adjustment: float


@dataclass
class ScheduledTransaction:
    amount: float
    date: datetime


@dataclass
class TransactionPatterns:
    recurring_transactions: List[TransactionPattern] = field(default_factory=list)
    recurring_payments: List[TransactionPattern] = field(default_factory=list)
    scheduled_transactions: List[ScheduledTransaction] = field(default_factory=list)
    seasonal_patterns: List[SeasonalPattern] = field(default_factory=list)
    seasonal_available: bool = True


# Challenge criteria: one frozen dataclass per criteria type.

@dataclass(frozen=True)
class NoSpendCriteria:
    max_spend: float = 0.0
    exclude_categories: Tuple[str, ...] = ()
    type: str = "no_spend"


@dataclass(frozen=True)
class ReducedSpendingCriteria:
    category: Optional[str] = None
    max_spend: float = 0.0
    time_window: Optional[str] = None
    type: str = "reduced_spending"


@dataclass(frozen=True)
class SpendingReductionCriteria:
    reduction_target: float = 0.0
    min_transactions: int = 1
    category: Optional[str] = None
    type: str = "spending_reduction"


@dataclass(frozen=True)
class SavingsCriteria:
    target: float = 0.0
    type: str = "savings"


@dataclass(frozen=True)
class StreakCriteria:
    days: int = 30
    type: str = "streak"


@dataclass(frozen=True)
class CategoryBudgetCriteria:
    category_budgets: Optional[Dict[str, float]] = None
    type: str = "category_budget"


@dataclass(frozen=True)
class SmartShoppingCriteria:
    target_savings: float = 0.0
    min_transactions: int = 0
    type: str = "smart_shopping"


@dataclass(frozen=True)
class UnknownCriteria:
    type: str
    raw: Dict[str, Any] = field(default_factory=dict)


ChallengeCriteria = Union[
    NoSpendCriteria,
    ReducedSpendingCriteria,
    SpendingReductionCriteria,
    SavingsCriteria,
    StreakCriteria,
    CategoryBudgetCriteria,
    SmartShoppingCriteria,
    UnknownCriteria,
]


def _number(value: Any, default: float) -> float:
    return float(value) if value is not None else default


def parse_criteria(payload: Union[Dict[str, Any], str, None]) -> ChallengeCriteria:
    """Build the typed criteria variant for a ``criteria`` column value"""
    if isinstance(payload, str):
        payload = json.loads(payload)
    payload = payload or {}
    kind = payload.get("type", "")

    if kind == "no_spend":
        return NoSpendCriteria(
            max_spend=_number(payload.get("max_spend"), 0.0),
            exclude_categories=tuple(payload.get("exclude_categories") or ()),
        )
    if kind == "reduced_spending":
        return ReducedSpendingCriteria(
            category=payload.get("category"),
            max_spend=_number(payload.get("max_spend"), 0.0),
            time_window=payload.get("time_window") or None,
        )
    if kind == "spending_reduction":
        return SpendingReductionCriteria(
            reduction_target=_number(payload.get("reduction_target"), 0.0),
            min_transactions=int(payload.get("min_transactions") or 1),
            category=payload.get("category"),
        )
    if kind == "savings":
        return SavingsCriteria(target=_number(payload.get("target"), 0.0))
    if kind == "streak":
        days = payload.get("days")
        # Older challenge rows store the streak as a list of day labels
        if isinstance(days, (list, tuple)):
            days = len(days)
        return StreakCriteria(days=int(days or 30))
    if kind == "category_budget":
        budgets = payload.get("category_budgets")
        return CategoryBudgetCriteria(
            category_budgets={k: float(v) for k, v in budgets.items()} if budgets else None
        )
    if kind == "smart_shopping":
        return SmartShoppingCriteria(
            target_savings=_number(payload.get("target_savings"), 0.0),
            min_transactions=int(payload.get("min_transactions") or 0),
        )
    return UnknownCriteria(type=kind, raw=dict(payload))


@dataclass
class Challenge:
    id: str
    name: str
    criteria: ChallengeCriteria
    reward_xp: int = 0
    description: str = ""
    reward_badge: Optional[str] = None
    active: bool = True
    period: Optional[str] = None

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "Challenge":
        return cls(
            id=str(row["id"]),
            name=row.get("name", ""),
            description=row.get("description") or "",
            criteria=parse_criteria(row.get("criteria")),
            reward_xp=int(row.get("reward_xp") or 0),
            reward_badge=row.get("reward_badge") or None,
            active=bool(row.get("active", True)),
            period=row.get("type"),
        )


class ChallengeStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class UserChallenge:
    id: str
    user_id: str
    challenge_id: str
    started_at: str
    status: ChallengeStatus = ChallengeStatus.ACTIVE
    progress: Dict[str, Any] = field(default_factory=dict)
    streak_count: int = 0
    completed_at: Optional[str] = None

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "UserChallenge":
        progress = row.get("progress") or {}
        if isinstance(progress, str):
            progress = json.loads(progress)
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            challenge_id=str(row["challenge_id"]),
            started_at=row.get("started_at") or row.get("created_at") or "",
            status=ChallengeStatus(row.get("status") or "active"),
            progress=dict(progress),
            streak_count=int(row.get("streak_count") or 0),
            completed_at=row.get("completed_at"),
        )


@dataclass
class ProgressResult:
    """Outcome of evaluating one user challenge"""

    progress: Dict[str, Any]
    is_completed: bool = False
    is_failed: bool = False

    @property
    def next_status(self) -> ChallengeStatus:
        if self.is_completed:
            return ChallengeStatus.COMPLETED
        if self.is_failed:
            return ChallengeStatus.FAILED
        return ChallengeStatus.ACTIVE
