"""
Test Suite: challenge progress orchestration against the row store
"""

from datetime import datetime, timedelta

import pytest

from spendlens.budgets import StaticCategoryBudgetPolicy
from spendlens.challenge_orchestrator import ChallengeOrchestrator
from spendlens.errors import InvalidOperation, Unauthorized
from spendlens.models import to_utc_iso

USER_ID = "user-1"
NOW = datetime(2024, 3, 31, 9, 0)


@pytest.fixture
def challenge_store(store):
    store.tables["challenges"] = [
        {"id": "c-nospend", "name": "No spend weekend", "type": "weekly", "active": True, "reward_xp": 100,
         "reward_badge": "Frugal", "criteria": {"type": "no_spend", "max_spend": 0}},
        {"id": "c-savings", "name": "Save 500", "type": "monthly", "active": True, "reward_xp": 200,
         "criteria": {"type": "savings", "target": 500}},
        {"id": "c-dining", "name": "Dining cap", "type": "weekly", "active": True, "reward_xp": 50,
         "criteria": '{"type": "reduced_spending", "category": "Dining", "max_spend": 10}'},
        {"id": "c-retired", "name": "Old", "type": "weekly", "active": False, "reward_xp": 10,
         "criteria": {"type": "savings", "target": 1}},
    ]
    store.tables["user_challenges"] = []
    return store


def enrol(store, uc_id, challenge_id, status="active", user_id=USER_ID, progress=None):
    store.tables["user_challenges"].append(
        {"id": uc_id, "user_id": user_id, "challenge_id": challenge_id, "status": status,
         "progress": progress or {}, "streak_count": 0, "started_at": "2024-03-01T00:00:00"}
    )


def status_of(store, uc_id):
    return next(row for row in store.tables["user_challenges"] if row["id"] == uc_id)["status"]


@pytest.fixture
def orchestrator(challenge_store):
    return ChallengeOrchestrator(challenge_store, clock=lambda: NOW)


class TestUpdateChallengeProgress:

    @pytest.mark.asyncio
    async def test_complete_awards_xp_and_badge(self, orchestrator, challenge_store, make_transaction):
        enrol(challenge_store, "uc-1", "c-nospend")

        summary = await orchestrator.update_challenge_progress(USER_ID, [make_transaction(amount=25.0)])

        assert summary.completed == ["uc-1"]
        row = challenge_store.tables["user_challenges"][0]
        assert row["status"] == "completed"
        assert row["completed_at"] == NOW.isoformat()
        assert challenge_store.rpc_calls == [
            ("update_user_xp", {"p_user_id": USER_ID, "p_xp_earned": 100}),
            ("check_and_award_achievement",
             {"p_user_id": USER_ID, "p_badge_name": "Frugal", "p_metadata": {"total_spent": 0}}),
        ]

    @pytest.mark.asyncio
    async def test_no_badge_means_xp_only(self, orchestrator, challenge_store, make_transaction):
        enrol(challenge_store, "uc-1", "c-savings")

        await orchestrator.update_challenge_progress(USER_ID, [make_transaction(amount=600.0)])

        assert [name for name, _ in challenge_store.rpc_calls] == ["update_user_xp"]

    @pytest.mark.asyncio
    async def test_fail_and_update(self, orchestrator, challenge_store, make_transaction):
        enrol(challenge_store, "uc-dining", "c-dining")
        enrol(challenge_store, "uc-savings", "c-savings")
        transactions = [
            make_transaction(amount=-30.0, transaction_category="Dining"),
            make_transaction(amount=100.0),
        ]

        summary = await orchestrator.update_challenge_progress(USER_ID, transactions)

        assert summary.failed == ["uc-dining"]
        assert summary.updated == ["uc-savings"]
        assert status_of(challenge_store, "uc-dining") == "failed"
        assert status_of(challenge_store, "uc-savings") == "active"
        savings = next(r for r in challenge_store.tables["user_challenges"] if r["id"] == "uc-savings")
        assert savings["progress"] == {"total_saved": 100.0}
        assert challenge_store.rpc_calls == []

    @pytest.mark.asyncio
    async def test_orphaned_user_challenge_is_skipped(self, orchestrator, challenge_store, make_transaction):
        enrol(challenge_store, "uc-ghost", "c-deleted")
        enrol(challenge_store, "uc-1", "c-savings")

        summary = await orchestrator.update_challenge_progress(USER_ID, [make_transaction(amount=1.0)])

        assert summary.skipped == ["uc-ghost"]
        assert summary.updated == ["uc-1"]
        assert status_of(challenge_store, "uc-ghost") == "active"

    @pytest.mark.asyncio
    async def test_only_the_users_active_challenges_are_evaluated(self, orchestrator, challenge_store, make_transaction):
        enrol(challenge_store, "uc-done", "c-savings", status="completed")
        enrol(challenge_store, "uc-other", "c-savings", user_id="someone-else")

        summary = await orchestrator.update_challenge_progress(USER_ID, [make_transaction(amount=900.0)])

        assert summary.to_dict() == {
            "completed": 0, "failed": 0, "updated": 0, "skipped": 0, "rewarded": 0, "errors": 0,
        }

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_others(self, orchestrator, challenge_store, make_transaction):
        challenge_store.tables["challenges"].append(
            {"id": "c-weekend", "name": "Weekend", "type": "weekly", "active": True, "reward_xp": 10,
             "criteria": {"type": "spending_reduction", "reduction_target": 0.2}}
        )
        enrol(challenge_store, "uc-weekend", "c-weekend")
        enrol(challenge_store, "uc-savings", "c-savings")
        challenge_store.fail_on.add(("select", "transactions"))

        summary = await orchestrator.update_challenge_progress(USER_ID, [make_transaction(amount=10.0)])

        assert [e["user_challenge_id"] for e in summary.errors] == ["uc-weekend"]
        assert summary.updated == ["uc-savings"]

    @pytest.mark.asyncio
    async def test_category_budgets_come_from_policy(self, challenge_store, make_transaction):
        challenge_store.tables["challenges"].append(
            {"id": "c-budget", "name": "Budgets", "type": "monthly", "active": True, "reward_xp": 10,
             "criteria": {"type": "category_budget"}}
        )
        enrol(challenge_store, "uc-budget", "c-budget")
        orchestrator = ChallengeOrchestrator(
            challenge_store,
            budget_policy=StaticCategoryBudgetPolicy({"Groceries": 50.0}),
            clock=lambda: NOW,
        )

        summary = await orchestrator.update_challenge_progress(
            USER_ID, [make_transaction(amount=-60.0, transaction_category="Groceries")]
        )

        assert summary.failed == ["uc-budget"]

    @pytest.mark.asyncio
    async def test_requires_user(self, orchestrator, challenge_store):
        with pytest.raises(Unauthorized):
            await orchestrator.update_challenge_progress(None, [])
        assert challenge_store.calls == []


class TestTransitions:

    @pytest.mark.asyncio
    async def test_already_closed_challenge_is_not_rewarded_twice(self, orchestrator, challenge_store, make_transaction):
        enrol(challenge_store, "uc-1", "c-nospend")
        active = await orchestrator.get_active_challenges(USER_ID)
        catalog = await orchestrator.get_challenge_catalog()
        result = orchestrator.evaluator.evaluate(active[0], catalog["c-nospend"], [])

        first = await orchestrator.complete_challenge(active[0], catalog["c-nospend"], result)
        second = await orchestrator.complete_challenge(active[0], catalog["c-nospend"], result)

        assert first is True
        assert second is False
        assert [name for name, _ in challenge_store.rpc_calls].count("update_user_xp") == 1

    @pytest.mark.asyncio
    async def test_fail_on_closed_challenge_is_a_no_op(self, orchestrator, challenge_store):
        enrol(challenge_store, "uc-1", "c-savings")
        active = await orchestrator.get_active_challenges(USER_ID)
        challenge_store.tables["user_challenges"][0]["status"] = "completed"

        result = orchestrator.evaluator.evaluate(
            active[0], (await orchestrator.get_challenge_catalog())["c-savings"], []
        )
        assert await orchestrator.fail_challenge(active[0], result) is False
        assert status_of(challenge_store, "uc-1") == "completed"


class TestStartChallenge:

    @pytest.mark.asyncio
    async def test_eligible_user_starts_challenge(self, orchestrator, challenge_store):
        user_challenge = await orchestrator.start_challenge(USER_ID, "c-savings")

        assert user_challenge.status.value == "active"
        assert user_challenge.progress == {}
        assert user_challenge.started_at == NOW.isoformat()
        assert challenge_store.rpc_calls == [
            ("is_challenge_eligible", {"p_user_id": USER_ID, "p_challenge_id": "c-savings"})
        ]
        assert len(challenge_store.tables["user_challenges"]) == 1

    @pytest.mark.asyncio
    async def test_ineligible_user_is_refused(self, orchestrator, challenge_store):
        challenge_store.rpc_results["is_challenge_eligible"] = False

        with pytest.raises(InvalidOperation) as excinfo:
            await orchestrator.start_challenge(USER_ID, "c-savings")

        assert excinfo.value.status_code == 409
        assert challenge_store.tables["user_challenges"] == []


@pytest.mark.asyncio
async def test_available_challenges_exclude_running_and_inactive(orchestrator, challenge_store):
    enrol(challenge_store, "uc-1", "c-savings")

    available = await orchestrator.get_available_challenges(USER_ID)

    assert sorted(c.id for c in available) == ["c-dining", "c-nospend"]


@pytest.mark.asyncio
async def test_historical_average_over_last_thirty_days(orchestrator, challenge_store):
    challenge_store.tables["transactions"] = [
        {"id": "h1", "user_id": USER_ID, "amount": -40.0, "timestamp": "2024-03-10T12:00:00",
         "transaction_category": "Dining"},
        {"id": "h2", "user_id": USER_ID, "amount": -20.0, "timestamp": "2024-03-20T12:00:00",
         "transaction_category": "Groceries"},
        {"id": "h3", "user_id": USER_ID, "amount": 30.0, "timestamp": "2024-03-21T12:00:00",
         "transaction_category": "Dining"},
        {"id": "h4", "user_id": USER_ID, "amount": -500.0, "timestamp": "2024-02-01T12:00:00",
         "transaction_category": "Dining"},
    ]

    assert await orchestrator.historical_average(USER_ID, None) == pytest.approx(20.0)
    assert await orchestrator.historical_average(USER_ID, "Dining") == pytest.approx(20.0)
    assert await orchestrator.historical_average(USER_ID, "Travel") == 0.0


class TestPendingRewards:

    @pytest.mark.asyncio
    async def test_failed_badge_rpc_is_retried_on_next_run(self, orchestrator, challenge_store, make_transaction):
        enrol(challenge_store, "uc-1", "c-nospend")
        challenge_store.fail_on.add(("rpc", "check_and_award_achievement"))

        first = await orchestrator.update_challenge_progress(USER_ID, [])

        assert [e["user_challenge_id"] for e in first.errors] == ["uc-1"]
        row = challenge_store.tables["user_challenges"][0]
        assert row["status"] == "completed"
        assert row["progress"] == {"total_spent": 0, "pending_rewards": ["badge"]}

        challenge_store.fail_on.clear()
        second = await orchestrator.update_challenge_progress(USER_ID, [])

        assert second.rewarded == ["uc-1"]
        assert [name for name, _ in challenge_store.rpc_calls] == [
            "update_user_xp", "check_and_award_achievement",
        ]
        assert challenge_store.rpc_calls[-1][1]["p_metadata"] == {"total_spent": 0}
        assert challenge_store.tables["user_challenges"][0]["progress"] == {"total_spent": 0}

    @pytest.mark.asyncio
    async def test_failed_xp_rpc_keeps_every_reward_pending(self, orchestrator, challenge_store):
        enrol(challenge_store, "uc-1", "c-nospend")
        challenge_store.fail_on.add(("rpc", "update_user_xp"))

        await orchestrator.update_challenge_progress(USER_ID, [])
        settled = await orchestrator.settle_pending_rewards(USER_ID, await orchestrator.get_challenge_catalog())

        assert settled == []
        assert challenge_store.tables["user_challenges"][0]["progress"]["pending_rewards"] == ["xp", "badge"]
        assert challenge_store.rpc_calls == []

    @pytest.mark.asyncio
    async def test_settled_challenges_are_not_rewarded_again(self, orchestrator, challenge_store):
        enrol(challenge_store, "uc-1", "c-savings", status="completed", progress={"total_saved": 600.0})

        summary = await orchestrator.update_challenge_progress(USER_ID, [])

        assert summary.rewarded == []
        assert challenge_store.rpc_calls == []


@pytest.mark.asyncio
async def test_history_cutoff_is_sent_as_utc(orchestrator, challenge_store):
    await orchestrator.historical_average(USER_ID, "Dining")

    table, filters = challenge_store.selects[-1]
    cutoff = next(item.value for item in filters if item.column == "timestamp")
    assert table == "transactions"
    assert cutoff.endswith("+00:00")
    assert cutoff == to_utc_iso(NOW - timedelta(days=30))


@pytest.mark.asyncio
async def test_history_without_category_covers_every_category(orchestrator, challenge_store):
    await orchestrator.historical_average(USER_ID, None)

    _, filters = challenge_store.selects[-1]
    assert [item.column for item in filters] == ["user_id", "timestamp"]
