#!/usr/bin/env python3
"""
Worker Service for transaction processing
Categorizes new transactions, advances challenges and refreshes spending
patterns for every user with an active bank connection.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import schedule

from .budgets import StoredCategoryBudgetPolicy
from .categorization_service import CategorizationService
from .challenge_orchestrator import ChallengeOrchestrator
from .config import Settings
from .errors import PatternDetectionFailure
from .models import Transaction, epoch_seconds, to_utc_iso
from .pattern_detector import PatternDetector
from .storage import RowStore, build_store, eq, gte, is_null

logger = logging.getLogger(__name__)


def normalize_provider_transactions(
    raw_transactions: List[Dict[str, Any]], connection_id: str, now: Optional[datetime] = None
) -> List[Dict[str, Any]]:
    """
    Fill in connection id and a deterministic transaction id where the provider omitted them

    Args:
        raw_transactions: Transactions as returned by the provider sync
        connection_id: Bank connection the batch was fetched for
        now: Processing time stamped on every row

    Returns:
        New row dicts ready to be stored
    """
    processed_at = (now or datetime.now()).isoformat()
    normalized = []
    for raw in raw_transactions:
        row = dict(raw)
        row["connection_id"] = row.get("connection_id") or connection_id
        if not row.get("id"):
            epoch_ms = int(epoch_seconds(row["timestamp"]) * 1000)
            row["id"] = f"{row['connection_id']}_{epoch_ms}"
        row["processed_at"] = processed_at
        normalized.append(row)
    return normalized


class SpendLensWorker:
    """Worker service for scheduled transaction processing"""

    def __init__(
        self,
        store: RowStore,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.settings = settings or Settings()
        self.clock = clock or datetime.now

        self.budget_policy = StoredCategoryBudgetPolicy(store)
        self.orchestrator = ChallengeOrchestrator(store, budget_policy=self.budget_policy, clock=self.clock)
        self.detector = PatternDetector(clock=self.clock)

        logger.info("Worker service initialized")

    async def active_users(self) -> List[str]:
        """Users with at least one active, connected bank connection"""
        rows = await self.store.select(
            "bank_connections",
            [eq("status", "active"), is_null("disconnected_at")],
            columns="user_id",
        )
        return sorted({row["user_id"] for row in rows if row.get("user_id")})

    async def ingest_provider_transactions(
        self, user_id: str, connection_id: str, raw_transactions: List[Dict[str, Any]]
    ) -> int:
        """Normalize, categorize and store a batch fetched by the provider sync"""
        rows = normalize_provider_transactions(raw_transactions, connection_id, self.clock())
        for row in rows:
            row["user_id"] = user_id

        service = CategorizationService(self.store, user_id)
        categorized = await service.categorize_transactions([Transaction.from_dict(row) for row in rows])
        for row, transaction in zip(rows, categorized):
            row["transaction_category"] = transaction.transaction_category

        stored = await self.store.upsert("transactions", rows, conflict_keys=("id",))
        logger.info(f"Stored {len(rows)} transactions for connection {connection_id}")
        return len(stored) or len(rows)

    async def process_user(self, user_id: str) -> Dict[str, Any]:
        """
        Run the processing pipeline for one user

        Returns:
            Summary with categorization, challenge and pattern counts
        """
        since = self.clock() - timedelta(days=self.settings.lookback_days)
        rows = await self.store.select(
            "transactions",
            [eq("user_id", user_id), gte("timestamp", to_utc_iso(since))],
            order_by="timestamp",
        )
        transactions = [Transaction.from_dict(row) for row in rows]

        service = CategorizationService(self.store, user_id)
        categorized = await service.categorize_transactions(transactions)
        recategorized = await service.save_changed_categories(transactions, categorized)

        challenges = await self.orchestrator.update_challenge_progress(user_id, categorized)

        result: Dict[str, Any] = {
            "status": "success",
            "user_id": user_id,
            "transactions": len(transactions),
            "recategorized": recategorized,
            "challenges": challenges.to_dict(),
        }

        try:
            patterns = self.detector.detect(categorized)
            result["patterns"] = {
                "recurring_transactions": len(patterns.recurring_transactions),
                "recurring_payments": len(patterns.recurring_payments),
                "scheduled_transactions": len(patterns.scheduled_transactions),
                "seasonal_patterns": len(patterns.seasonal_patterns),
            }
        except PatternDetectionFailure as exc:
            logger.warning(f"Couldn't analyze transactions for user {user_id}: {exc}")
            result["pattern_error"] = str(exc)

        logger.info(f"Processed user {user_id}: {result}")
        return result

    async def run_daily_jobs(self) -> Dict[str, Any]:
        """Process every active user; one user's failure does not stop the rest"""
        logger.info("Running daily jobs...")
        processed = 0
        errors = 0

        try:
            users = await self.active_users()
        except Exception as e:
            logger.error(f"Daily jobs failed: {str(e)}")
            return {
                "status": "error",
                "error": str(e),
                "timestamp": self.clock().isoformat(),
            }

        for user_id in users:
            try:
                await self.process_user(user_id)
                processed += 1
            except Exception as e:
                logger.error(f"Processing failed for user {user_id}: {str(e)}")
                errors += 1

        logger.info("Daily jobs completed")
        return {
            "status": "success" if not errors else "partial",
            "users": processed,
            "errors": errors,
            "timestamp": self.clock().isoformat(),
        }

    async def _run_and_release(self) -> Dict[str, Any]:
        try:
            return await self.run_daily_jobs()
        finally:
            close = getattr(self.store, "close", None)
            if close is not None:
                await close()

    def run_daily_jobs_sync(self) -> Dict[str, Any]:
        """Entry point for the scheduler thread"""
        return asyncio.run(self._run_and_release())


def main():
    """Main worker loop"""
    settings = Settings.from_environment()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    logger.info("Starting SpendLens worker")

    worker = SpendLensWorker(build_store(settings), settings)

    schedule.every().day.at(settings.daily_run_at).do(worker.run_daily_jobs_sync)
    logger.info(f"Daily jobs scheduled at {settings.daily_run_at}")

    logger.info("Running initial processing pass...")
    worker.run_daily_jobs_sync()

    while True:
        try:
            schedule.run_pending()
            time.sleep(60)

        except KeyboardInterrupt:
            logger.info("Worker service shutting down...")
            break
        except Exception as e:
            logger.error(f"Worker loop error: {str(e)}")
            time.sleep(60)


if __name__ == "__main__":
    main()
