"""
Pattern Detection Module
Derives recurring, seasonal and scheduled patterns from a transaction snapshot
"""

import logging
import math
import re
import statistics
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .errors import PatternDetectionFailure
from .models import (
    ScheduledTransaction,
    SeasonalPattern,
    Transaction,
    TransactionPattern,
    TransactionPatterns,
    epoch_seconds,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400

# (transaction, local timestamp, epoch seconds, parsed scheduled date or None)
ParsedTransaction = Tuple[Transaction, datetime, float, Optional[datetime]]


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class PatternDetector:
    """Pure pattern detection over already-fetched transactions"""

    def __init__(
        self,
        regularity_threshold: float = 0.2,
        seasonal_threshold: float = 0.1,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize pattern detector

        Args:
            regularity_threshold: Interval variance must stay below this
                fraction of the mean interval for a group to be recurring (default 20%)
            seasonal_threshold: Minimum absolute monthly deviation from the
                overall mean to report a seasonal pattern (default 10%)
            clock: Source of "now" for scheduled transactions
        """
        self.regularity_threshold = regularity_threshold
        self.seasonal_threshold = seasonal_threshold
        self.clock = clock or datetime.now

    def detect(self, transactions: Sequence[Transaction]) -> TransactionPatterns:
        """
        Run every detector over the transactions

        Raises:
            PatternDetectionFailure: a date could not be parsed or a detector
                failed; never returned as an empty result
        """
        if not transactions:
            return TransactionPatterns()

        parsed = self._parse(transactions)
        try:
            recurring_transactions, recurring_payments = self._recurring(parsed)
            seasonal = self._seasonal(parsed)
            scheduled = self._scheduled(parsed, self.clock())
        except PatternDetectionFailure:
            raise
        except Exception as exc:
            logger.error(f"Pattern detection failed: {exc}")
            raise PatternDetectionFailure(
                f"Pattern detection failed: {exc}", original_error=exc
            ) from exc

        return TransactionPatterns(
            recurring_transactions=recurring_transactions,
            recurring_payments=recurring_payments,
            scheduled_transactions=scheduled,
            seasonal_patterns=seasonal if seasonal is not None else [],
            seasonal_available=seasonal is not None,
        )

    def detect_recurring(
        self, transactions: Sequence[Transaction]
    ) -> Tuple[List[TransactionPattern], List[TransactionPattern]]:
        """Return (recurring inflows, recurring payments)"""
        return self._recurring(self._parse(transactions))

    def detect_seasonal(self, transactions: Sequence[Transaction]) -> Optional[List[SeasonalPattern]]:
        """Monthly deviations, or None when the overall average is exactly zero"""
        if not transactions:
            return []
        return self._seasonal(self._parse(transactions))

    def extract_scheduled(
        self, transactions: Sequence[Transaction], now: Optional[datetime] = None
    ) -> List[ScheduledTransaction]:
        return self._scheduled(self._parse(transactions), now or self.clock())

    def _parse(self, transactions: Sequence[Transaction]) -> List[ParsedTransaction]:
        parsed = []
        for transaction in transactions:
            try:
                occurred_at = parse_timestamp(transaction.timestamp)
                instant = epoch_seconds(transaction.timestamp)
                scheduled = parse_timestamp(transaction.scheduled_date) if transaction.scheduled_date else None
            except (TypeError, ValueError) as exc:
                logger.error(f"Unparsable date on transaction {transaction.id}: {exc}")
                raise PatternDetectionFailure(
                    f"Transaction {transaction.id} has an invalid date: {exc}",
                    transaction_id=transaction.id,
                    original_error=exc,
                ) from exc
            parsed.append((transaction, occurred_at, instant, scheduled))
        return parsed

    def _recurring(
        self, parsed: List[ParsedTransaction]
    ) -> Tuple[List[TransactionPattern], List[TransactionPattern]]:
        groups: Dict[str, List[ParsedTransaction]] = defaultdict(list)
        for item in parsed:
            groups[item[0].description.lower()].append(item)

        inflows: List[TransactionPattern] = []
        payments: List[TransactionPattern] = []

        for description, group in groups.items():
            if len(group) < 2:
                continue

            ordered = sorted(group, key=lambda item: item[2])
            intervals = [
                math.floor((ordered[i][2] - ordered[i - 1][2]) / SECONDS_PER_DAY)
                for i in range(1, len(ordered))
            ]
            average_interval = statistics.fmean(intervals)
            interval_variance = statistics.pvariance(intervals, mu=average_interval)

            # Zero-interval groups (same-day duplicates) are never regular
            if not interval_variance < average_interval * self.regularity_threshold:
                continue

            average_amount = statistics.fmean(item[0].amount for item in group)
            pattern = TransactionPattern(
                pattern=re.compile(re.escape(description), re.IGNORECASE),
                amount=average_amount,
                frequency=round_half_up(average_interval),
            )
            if average_amount > 0:
                inflows.append(pattern)
            else:
                payments.append(pattern)

        return inflows, payments

    def _seasonal(self, parsed: List[ParsedTransaction]) -> Optional[List[SeasonalPattern]]:
        if not parsed:
            return []

        by_month: Dict[int, List[float]] = defaultdict(list)
        for transaction, occurred_at, _, _ in parsed:
            by_month[occurred_at.month - 1].append(transaction.amount)

        overall_average = statistics.fmean(item[0].amount for item in parsed)
        if overall_average == 0:
            logger.info("Seasonal analysis unavailable: transactions average to zero")
            return None

        patterns = []
        for month, amounts in by_month.items():
            adjustment = (statistics.fmean(amounts) - overall_average) / overall_average
            if abs(adjustment) > self.seasonal_threshold:
                patterns.append(SeasonalPattern(month=month, adjustment=adjustment))
        return patterns

    @staticmethod
    def _scheduled(parsed: List[ParsedTransaction], now: datetime) -> List[ScheduledTransaction]:
        return [
            ScheduledTransaction(amount=transaction.amount, date=scheduled)
            for transaction, _, _, scheduled in parsed
            if scheduled is not None and scheduled > now
        ]


def detect_patterns(
    transactions: Sequence[Transaction], now: Optional[datetime] = None
) -> TransactionPatterns:
    """Run pattern detection with default thresholds"""
    clock = (lambda: now) if now is not None else None
    return PatternDetector(clock=clock).detect(transactions)
