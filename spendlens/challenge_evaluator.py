"""
Challenge progress evaluation.

Maps (user challenge, challenge definition, transaction window) to updated
progress and completion/failure flags. Pure: any historical aggregate a
criterion needs is passed in through ``EvaluationContext``.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, Optional, Sequence, Tuple

from .budgets import DEFAULT_CATEGORY_BUDGETS
from .models import (
    CategoryBudgetCriteria,
    Challenge,
    NoSpendCriteria,
    ProgressResult,
    ReducedSpendingCriteria,
    SavingsCriteria,
    SmartShoppingCriteria,
    SpendingReductionCriteria,
    StreakCriteria,
    Transaction,
    UnknownCriteria,
    UserChallenge,
    parse_timestamp,
)

SATURDAY, SUNDAY = 5, 6


@dataclass
class EvaluationContext:
    """Pre-fetched aggregates for criteria that look beyond the window"""

    historical_average: Optional[float] = None
    category_budgets: Optional[Dict[str, float]] = None


def parse_time_window(time_window: str) -> Tuple[int, int]:
    """Parse ``"HH:MM-HH:MM"`` into (start, end) minutes after midnight"""
    try:
        start, end = time_window.split("-")
        start_hour, start_minute = (int(part) for part in start.strip().split(":"))
        end_hour, end_minute = (int(part) for part in end.strip().split(":"))
    except ValueError as exc:
        raise ValueError(f"Invalid time window: {time_window!r}") from exc
    return start_hour * 60 + start_minute, end_hour * 60 + end_minute


def is_within_time_window(moment: datetime, time_window: Optional[str]) -> bool:
    """Daily clock-time check, inclusive at both ends; no window means always"""
    if not time_window:
        return True
    start, end = parse_time_window(time_window)
    minute_of_day = moment.hour * 60 + moment.minute
    if start <= end:
        return start <= minute_of_day <= end
    # Window crosses midnight, e.g. 22:00-02:00
    return minute_of_day >= start or minute_of_day <= end


def is_weekend(moment: datetime) -> bool:
    return moment.weekday() in (SATURDAY, SUNDAY)


def is_consecutive_day(earlier: datetime, later: datetime) -> bool:
    return abs((later.date() - earlier.date()).days) == 1


def total_debits(transactions: Iterable[Transaction]) -> float:
    return sum(abs(t.amount) for t in transactions if t.amount < 0)


def total_credits(transactions: Iterable[Transaction]) -> float:
    return sum(t.amount for t in transactions if t.amount > 0)


class ChallengeProgressEvaluator:
    """One evaluation rule per criteria type"""

    def __init__(
        self,
        clock: Optional[Callable[[], datetime]] = None,
        refunds_category: str = "Refunds",
    ):
        self.clock = clock or datetime.now
        self.refunds_category = refunds_category

    def evaluate(
        self,
        user_challenge: UserChallenge,
        challenge: Challenge,
        transactions: Sequence[Transaction],
        context: Optional[EvaluationContext] = None,
    ) -> ProgressResult:
        context = context or EvaluationContext()
        criteria = challenge.criteria
        progress = dict(user_challenge.progress)

        if isinstance(criteria, NoSpendCriteria):
            return self._no_spend(criteria, user_challenge, transactions, progress)
        if isinstance(criteria, ReducedSpendingCriteria):
            return self._reduced_spending(criteria, transactions, progress)
        if isinstance(criteria, SpendingReductionCriteria):
            return self._spending_reduction(criteria, transactions, progress, context)
        if isinstance(criteria, SavingsCriteria):
            return self._savings(criteria, transactions, progress)
        if isinstance(criteria, StreakCriteria):
            return self._streak(criteria, user_challenge, progress)
        if isinstance(criteria, CategoryBudgetCriteria):
            return self._category_budget(criteria, transactions, progress, context)
        if isinstance(criteria, SmartShoppingCriteria):
            return self._smart_shopping(criteria, transactions, progress)
        if isinstance(criteria, UnknownCriteria):
            return ProgressResult(progress=progress)
        raise TypeError(f"Unhandled criteria variant: {type(criteria).__name__}")

    def _no_spend(self, criteria, user_challenge, transactions, progress) -> ProgressResult:
        started_at = parse_timestamp(user_challenge.started_at)
        excluded = set(criteria.exclude_categories)
        spent = total_debits(
            t for t in transactions
            if t.transaction_category not in excluded and parse_timestamp(t.timestamp) >= started_at
        )
        progress["total_spent"] = spent
        return ProgressResult(
            progress=progress,
            is_completed=spent <= criteria.max_spend,
            is_failed=spent > criteria.max_spend,
        )

    def _reduced_spending(self, criteria, transactions, progress) -> ProgressResult:
        spent = total_debits(
            t for t in transactions
            if t.transaction_category == criteria.category
            and is_within_time_window(parse_timestamp(t.timestamp), criteria.time_window)
        )
        progress["category_spent"] = spent
        return ProgressResult(
            progress=progress,
            is_completed=spent <= criteria.max_spend,
            is_failed=spent > criteria.max_spend,
        )

    def _spending_reduction(self, criteria, transactions, progress, context) -> ProgressResult:
        historical_average = context.historical_average or 0.0
        current_spending = total_debits(
            t for t in transactions if is_weekend(parse_timestamp(t.timestamp))
        )
        if historical_average:
            reduction_percentage = (historical_average - current_spending) / historical_average * 100
        else:
            reduction_percentage = 0.0

        progress.update(
            historical_average=historical_average,
            current_spending=current_spending,
            reduction_percentage=reduction_percentage,
        )
        target_met = reduction_percentage >= criteria.reduction_target * 100
        return ProgressResult(
            progress=progress,
            is_completed=target_met,
            is_failed=len(transactions) >= criteria.min_transactions and not target_met,
        )

    def _savings(self, criteria, transactions, progress) -> ProgressResult:
        saved = total_credits(transactions)
        progress["total_saved"] = saved
        # Savings challenges only complete or stay active
        return ProgressResult(progress=progress, is_completed=saved >= criteria.target)

    def _streak(self, criteria, user_challenge, progress) -> ProgressResult:
        today = self.clock()
        last_streak = parse_timestamp(progress.get("last_streak_date") or user_challenge.started_at)
        consecutive = is_consecutive_day(last_streak, today)

        progress["streak_count"] = (progress.get("streak_count") or 0) + 1 if consecutive else 0
        progress["last_streak_date"] = today.isoformat()

        # A broken streak ends the challenge rather than only resetting it
        return ProgressResult(
            progress=progress,
            is_completed=progress["streak_count"] >= criteria.days,
            is_failed=not consecutive,
        )

    def _category_budget(self, criteria, transactions, progress, context) -> ProgressResult:
        budgets = criteria.category_budgets or context.category_budgets or DEFAULT_CATEGORY_BUDGETS
        spending: Dict[str, float] = {}
        within_budget = True
        for category, budget in budgets.items():
            spent = total_debits(t for t in transactions if t.transaction_category == category)
            spending[category] = spent
            if spent > budget:
                within_budget = False

        progress["category_spending"] = spending
        return ProgressResult(progress=progress, is_completed=within_budget, is_failed=not within_budget)

    def _smart_shopping(self, criteria, transactions, progress) -> ProgressResult:
        saved = total_credits(t for t in transactions if t.transaction_category == self.refunds_category)
        progress["saved_amount"] = saved
        progress["transaction_count"] = len(transactions)
        return ProgressResult(
            progress=progress,
            is_completed=saved >= criteria.target_savings and len(transactions) >= criteria.min_transactions,
        )
