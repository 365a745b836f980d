"""
Challenge Orchestrator
Applies challenge evaluation across a user's active challenges and persists
the resulting transitions (complete, fail or progress update).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from .auth import require_user
from .budgets import CategoryBudgetPolicy, StaticCategoryBudgetPolicy
from .challenge_evaluator import ChallengeProgressEvaluator, EvaluationContext, total_debits
from .errors import InvalidOperation, StorageFailure
from .models import (
    CategoryBudgetCriteria,
    Challenge,
    ChallengeStatus,
    ProgressResult,
    SpendingReductionCriteria,
    Transaction,
    UserChallenge,
    to_utc_iso,
)
from .storage import RowStore, eq, gte

logger = logging.getLogger(__name__)

USER_CHALLENGES_TABLE = "user_challenges"
CHALLENGES_TABLE = "challenges"
TRANSACTIONS_TABLE = "transactions"

HISTORY_WINDOW_DAYS = 30

# Rewards still owed for a completed challenge, kept in its stored progress
PENDING_REWARDS_KEY = "pending_rewards"


@dataclass
class ChallengeUpdateSummary:
    completed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    rewarded: List[str] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "completed": len(self.completed),
            "failed": len(self.failed),
            "updated": len(self.updated),
            "skipped": len(self.skipped),
            "rewarded": len(self.rewarded),
            "errors": len(self.errors),
        }


class ChallengeOrchestrator:
    """Drives the evaluator for one user at a time; all I/O goes through the row store"""

    def __init__(
        self,
        store: RowStore,
        evaluator: Optional[ChallengeProgressEvaluator] = None,
        budget_policy: Optional[CategoryBudgetPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.clock = clock or datetime.now
        self.evaluator = evaluator or ChallengeProgressEvaluator(clock=self.clock)
        self.budget_policy = budget_policy or StaticCategoryBudgetPolicy()

    async def get_active_challenges(self, user_id: str) -> List[UserChallenge]:
        user_id = require_user(user_id)
        rows = await self.store.select(
            USER_CHALLENGES_TABLE,
            [eq("user_id", user_id), eq("status", ChallengeStatus.ACTIVE.value)],
        )
        return [UserChallenge.from_dict(row) for row in rows]

    async def get_challenge_catalog(self) -> Dict[str, Challenge]:
        rows = await self.store.select(CHALLENGES_TABLE)
        return {str(row["id"]): Challenge.from_dict(row) for row in rows}

    async def get_available_challenges(self, user_id: str) -> List[Challenge]:
        """Active catalog challenges the user is not currently running"""
        running = {uc.challenge_id for uc in await self.get_active_challenges(user_id)}
        rows = await self.store.select(CHALLENGES_TABLE, [eq("active", True)])
        return [Challenge.from_dict(row) for row in rows if str(row["id"]) not in running]

    async def start_challenge(self, user_id: str, challenge_id: str) -> UserChallenge:
        user_id = require_user(user_id)

        eligible = await self.store.rpc(
            "is_challenge_eligible", {"p_user_id": user_id, "p_challenge_id": challenge_id}
        )
        if not eligible:
            raise InvalidOperation("user is not eligible for this challenge", status_code=409)

        rows = await self.store.insert(
            USER_CHALLENGES_TABLE,
            [
                {
                    "user_id": user_id,
                    "challenge_id": challenge_id,
                    "status": ChallengeStatus.ACTIVE.value,
                    "progress": {},
                    "streak_count": 0,
                    "started_at": self.clock().isoformat(),
                }
            ],
        )
        if not rows:
            raise StorageFailure(f"Challenge {challenge_id} could not be started")

        logger.info(f"User {user_id} started challenge {challenge_id}")
        return UserChallenge.from_dict(rows[0])

    async def update_challenge_progress(
        self, user_id: str, transactions: Sequence[Transaction]
    ) -> ChallengeUpdateSummary:
        """
        Evaluate every active challenge of the user against new transactions

        Rewards left pending by an earlier completion are issued first.
        Challenges whose definition no longer exists are skipped. A failure
        while evaluating or persisting one challenge is logged and does not
        stop the others.
        """
        user_id = require_user(user_id)
        active = await self.get_active_challenges(user_id)
        catalog = await self.get_challenge_catalog()

        summary = ChallengeUpdateSummary()
        summary.rewarded = await self.settle_pending_rewards(user_id, catalog)
        budgets: Optional[Dict[str, float]] = None

        for user_challenge in active:
            challenge = catalog.get(user_challenge.challenge_id)
            if challenge is None:
                logger.warning(
                    f"Skipping user challenge {user_challenge.id}: "
                    f"challenge {user_challenge.challenge_id} not found"
                )
                summary.skipped.append(user_challenge.id)
                continue

            try:
                context = EvaluationContext()
                if isinstance(challenge.criteria, SpendingReductionCriteria):
                    context.historical_average = await self.historical_average(
                        user_id, challenge.criteria.category
                    )
                if isinstance(challenge.criteria, CategoryBudgetCriteria):
                    if budgets is None:
                        budgets = await self.budget_policy.budgets_for(user_id)
                    context.category_budgets = budgets

                result = self.evaluator.evaluate(user_challenge, challenge, transactions, context)

                if result.is_completed:
                    await self.complete_challenge(user_challenge, challenge, result)
                    summary.completed.append(user_challenge.id)
                elif result.is_failed:
                    await self.fail_challenge(user_challenge, result)
                    summary.failed.append(user_challenge.id)
                else:
                    await self.update_progress(user_challenge, result.progress)
                    summary.updated.append(user_challenge.id)
            except Exception as exc:
                logger.error(f"Challenge {user_challenge.id} progress update failed: {exc}")
                summary.errors.append({"user_challenge_id": user_challenge.id, "error": str(exc)})

        logger.info(f"Challenge progress for user {user_id}: {summary.to_dict()}")
        return summary

    async def historical_average(self, user_id: str, category: Optional[str]) -> float:
        """Mean debit size over the user's last 30 days, optionally for one category"""
        since = self.clock() - timedelta(days=HISTORY_WINDOW_DAYS)
        filters = [eq("user_id", user_id), gte("timestamp", to_utc_iso(since))]
        if category:
            filters.append(eq("transaction_category", category))
        rows = await self.store.select(TRANSACTIONS_TABLE, filters, columns="amount,timestamp")
        history = [Transaction.from_dict(row) for row in rows]
        return total_debits(history) / (len(history) or 1)

    async def _transition(self, user_challenge: UserChallenge, patch: Dict[str, Any]) -> List[Dict[str, Any]]:
        # Only an active row may transition, so a concurrent pass cannot apply it twice
        return await self.store.update(
            USER_CHALLENGES_TABLE,
            patch,
            [eq("id", user_challenge.id), eq("status", ChallengeStatus.ACTIVE.value)],
        )

    async def complete_challenge(
        self, user_challenge: UserChallenge, challenge: Challenge, result: ProgressResult
    ) -> bool:
        """
        Close the challenge as completed and issue its rewards

        The rewards still owed are recorded in the stored progress under
        ``pending_rewards`` together with the transition, and each one is
        cleared as soon as its RPC succeeds. A reward RPC that fails leaves
        its entry behind for ``settle_pending_rewards``.
        """
        pending = ["xp"] + (["badge"] if challenge.reward_badge else [])
        progress = dict(result.progress, **{PENDING_REWARDS_KEY: pending})
        rows = await self._transition(
            user_challenge,
            {
                "status": ChallengeStatus.COMPLETED.value,
                "progress": progress,
                "completed_at": self.clock().isoformat(),
            },
        )
        if not rows:
            logger.info(f"User challenge {user_challenge.id} was already closed; no reward issued")
            return False

        logger.info(
            f"User {user_challenge.user_id} completed challenge {challenge.id} "
            f"(+{challenge.reward_xp} XP{', badge ' + challenge.reward_badge if challenge.reward_badge else ''})"
        )
        await self._issue_rewards(user_challenge, challenge, progress)
        return True

    async def settle_pending_rewards(self, user_id: str, catalog: Dict[str, Challenge]) -> List[str]:
        """Retry rewards of completed challenges whose reward RPCs did not all succeed"""
        rows = await self.store.select(
            USER_CHALLENGES_TABLE,
            [eq("user_id", user_id), eq("status", ChallengeStatus.COMPLETED.value)],
        )
        settled = []
        for row in rows:
            user_challenge = UserChallenge.from_dict(row)
            challenge = catalog.get(user_challenge.challenge_id)
            if not user_challenge.progress.get(PENDING_REWARDS_KEY) or challenge is None:
                continue
            try:
                await self._issue_rewards(user_challenge, challenge, user_challenge.progress)
                settled.append(user_challenge.id)
            except Exception as exc:
                logger.error(f"Pending rewards for user challenge {user_challenge.id} still failing: {exc}")
        return settled

    async def _issue_rewards(
        self, user_challenge: UserChallenge, challenge: Challenge, progress: Dict[str, Any]
    ) -> None:
        pending = list(progress.get(PENDING_REWARDS_KEY) or [])
        metadata = {key: value for key, value in progress.items() if key != PENDING_REWARDS_KEY}

        for reward in list(pending):
            if reward == "xp":
                await self.store.rpc(
                    "update_user_xp",
                    {"p_user_id": user_challenge.user_id, "p_xp_earned": challenge.reward_xp},
                )
            elif reward == "badge" and challenge.reward_badge:
                await self.store.rpc(
                    "check_and_award_achievement",
                    {
                        "p_user_id": user_challenge.user_id,
                        "p_badge_name": challenge.reward_badge,
                        "p_metadata": metadata,
                    },
                )
            pending.remove(reward)
            remaining = dict(metadata, **{PENDING_REWARDS_KEY: pending}) if pending else metadata
            await self.store.update(
                USER_CHALLENGES_TABLE,
                {"progress": remaining},
                [eq("id", user_challenge.id), eq("status", ChallengeStatus.COMPLETED.value)],
            )

    async def fail_challenge(self, user_challenge: UserChallenge, result: ProgressResult) -> bool:
        rows = await self._transition(
            user_challenge,
            {
                "status": ChallengeStatus.FAILED.value,
                "progress": result.progress,
                "completed_at": self.clock().isoformat(),
            },
        )
        if rows:
            logger.info(f"User {user_challenge.user_id} failed challenge {user_challenge.challenge_id}")
        return bool(rows)

    async def update_progress(self, user_challenge: UserChallenge, progress: Dict[str, Any]) -> None:
        await self._transition(user_challenge, {"progress": progress})
