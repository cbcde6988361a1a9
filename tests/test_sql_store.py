"""The same contracts against the SQLAlchemy backend (SQLite through aiosqlite)."""
from datetime import date, timedelta

import pytest

from stepcredit.core.errors import (
    ConflictError, InsufficientCreditsError, InvalidStatusTransitionError, OutOfStockError, UserLimitError,
)
from stepcredit.models import EntryKind, RedemptionStatus, RewardCategory, RewardType
from stepcredit.repositories.sql import SqlLedgerStore, SqlStepRepository


async def test_ledger_invariant_and_atomic_debit(session_maker):
    store = SqlLedgerStore(session_maker)
    acc = await store.credit("u1", 150, EntryKind.EARNED, "daily_steps", "steps", "e1")
    assert (acc.available_credits, acc.lifetime_earned) == (150, 150)
    acc = await store.debit("u1", 100, EntryKind.SPENT, "reward_redemption", "coffee", "e2")
    assert (acc.available_credits, acc.lifetime_spent) == (50, 100)

    with pytest.raises(InsufficientCreditsError) as exc:
        await store.debit("u1", 51, EntryKind.SPENT, "reward_redemption", "coffee", "e3")
    assert exc.value.available == 50
    acc = await store.get_account("u1")
    assert (acc.available_credits, acc.lifetime_earned, acc.lifetime_spent) == (50, 150, 100)
    assert acc.last_updated.tzinfo is not None


async def test_ledger_replay_and_listing(session_maker):
    store = SqlLedgerStore(session_maker)
    await store.credit("u1", 10, EntryKind.EARNED, "daily_steps", "a", "a", {"steps": 1000})
    await store.credit("u1", 10, EntryKind.EARNED, "daily_steps", "a", "a", {"steps": 1000})
    await store.credit("u1", 5, EntryKind.BONUS, "daily_goal", "b", "b")
    await store.debit("u1", 3, EntryKind.PENALTY, "manual_adjustment", "c", "c")

    acc = await store.get_account("u1")
    assert acc.available_credits == 12

    items, total = await store.list_entries("u1", None, 10, 0)
    assert [e.id for e in items] == ["c", "b", "a"] and total == 3
    assert items[-1].metadata == {"steps": 1000}
    items, total = await store.list_entries("u1", EntryKind.BONUS, 10, 0)
    assert [e.id for e in items] == ["b"] and total == 1
    items, total = await store.list_entries("u1", None, 1, 2)
    assert [e.id for e in items] == ["a"] and total == 3


async def test_sum_entries_matches_source_and_literal_prefix(session_maker):
    store = SqlLedgerStore(session_maker)
    await store.credit("u_1", 30, EntryKind.EARNED, "daily_steps", "d", "steps:u_1:2025-03-10:3000:base")
    await store.credit("u_1", 20, EntryKind.EARNED, "daily_steps", "d", "steps:u_1:2025-03-10:5000:base")
    await store.credit("u_1", 25, EntryKind.BONUS, "daily_goal", "d", "steps:u_1:2025-03-10:5000:bonus")
    await store.credit("u_1", 40, EntryKind.EARNED, "daily_steps", "d", "steps:u_1:2025-03-11:4000:base")
    await store.credit("u_1", 7, EntryKind.EARNED, "daily_steps", "d", "steps:uX1:2025-03-10:700:base")

    assert await store.sum_entries("u_1", "daily_steps", "steps:u_1:2025-03-10:") == 50
    assert await store.sum_entries("u_1", "daily_goal", "steps:u_1:2025-03-10:") == 25
    # "_" is matched literally, not as a wildcard
    assert await store.sum_entries("u_1", "daily_steps", "steps:u_1:") == 90
    assert await store.sum_entries("u_1", "daily_steps", "steps:u_1:2025-03-12:") == 0


async def test_unknown_account_is_zeroed(session_maker):
    acc = await SqlLedgerStore(session_maker).get_account("ghost")
    assert (acc.user_id, acc.available_credits) == ("ghost", 0)


async def test_daily_steps_keep_best(session_maker):
    days = SqlStepRepository(session_maker)
    day = date(2025, 3, 10)
    assert await days.get_day("u1", day) == 0
    assert await days.record_day("u1", day, 4_000) == 4_000
    assert await days.record_day("u1", day, 2_000) == 4_000
    assert await days.record_day("u1", day, 9_000) == 9_000
    assert await days.get_day("u1", day) == 9_000


async def test_conversion_and_achievements(sql_core):
    await sql_core.seed_defaults()
    result = await sql_core.convert_steps("u1", 12_000)
    assert result.breakdown.total == 170
    assert [d.id for d in result.unlocked] == ["first_steps", "daily_walker", "goal_crusher"]
    assert result.account.available_credits == 170 + 85

    again = await sql_core.convert_steps("u1", 12_000)
    assert again.credited.total == 0 and again.unlocked == []
    assert again.account.available_credits == 255

    status = {s.achievement.id: s for s in await sql_core.list_achievements("u1")}
    assert status["goal_crusher"].is_completed
    assert status["marathon_master"].progress_percent == 48.0


async def test_redeem_scenario(sql_core, make_reward):
    await sql_core.create_reward(make_reward(id="coffee", cost=100))
    await sql_core.convert_steps("u1", 10_000)
    r = await sql_core.redeem("u1", "coffee")
    assert r.status == RedemptionStatus.FULFILLED and r.fulfillment_code
    assert (await sql_core.get_balance("u1")).available_credits == 50
    with pytest.raises(InsufficientCreditsError):
        await sql_core.redeem("u1", "coffee")
    assert (await sql_core.get_balance("u1")).available_credits == 50


async def test_inventory_and_user_limit(sql_core, make_reward):
    await sql_core.create_reward(make_reward(id="rare", cost=10, quantity=1))
    await sql_core.create_reward(make_reward(id="once", cost=10, user_limit=1))
    for u in ("u1", "u2"):
        await sql_core.adjust(u, 100, "grant")

    await sql_core.redeem("u1", "rare")
    with pytest.raises(OutOfStockError):
        await sql_core.redeem("u2", "rare")
    assert await sql_core.catalog.remaining_inventory("rare") == 0
    assert [r.id for r in await sql_core.list_rewards()] == ["once"]

    await sql_core.redeem("u1", "once")
    with pytest.raises(UserLimitError):
        await sql_core.redeem("u1", "once")


async def test_lifecycle_refund_and_expiry(sql_core, clock, make_reward):
    await sql_core.create_reward(make_reward(
        id="gear", cost=30, quantity=5, type=RewardType.PHYSICAL_ITEM,
        category=RewardCategory.FITNESS, physical_shipping=True,
    ))
    await sql_core.adjust("u1", 100, "grant")
    first = await sql_core.redeem("u1", "gear")
    second = await sql_core.redeem("u1", "gear")
    assert first.status == RedemptionStatus.PENDING

    cancelled = await sql_core.transition_redemption(first.id, RedemptionStatus.CANCELLED)
    assert cancelled.status == RedemptionStatus.CANCELLED
    with pytest.raises(InvalidStatusTransitionError):
        await sql_core.transition_redemption(first.id, RedemptionStatus.FULFILLED)
    assert (await sql_core.get_balance("u1")).available_credits == 70
    assert await sql_core.catalog.remaining_inventory("gear") == 4

    clock.advance(days=31)
    assert await sql_core.expire_stale_redemptions() == 1
    items, total = await sql_core.list_redemptions("u1", status=RedemptionStatus.EXPIRED)
    assert [r.id for r in items] == [second.id] and total == 1
    acc = await sql_core.get_balance("u1")
    assert acc.available_credits == 100
    assert acc.available_credits == acc.lifetime_earned - acc.lifetime_spent
    assert await sql_core.catalog.remaining_inventory("gear") == 5


async def test_duplicate_reward_is_conflict(sql_core, make_reward):
    await sql_core.create_reward(make_reward(id="dup"))
    with pytest.raises(ConflictError):
        await sql_core.create_reward(make_reward(id="dup"))


async def test_availability_window(sql_core, clock, make_reward):
    await sql_core.create_reward(make_reward(id="soon", start_date=clock() + timedelta(days=1)))
    await sql_core.create_reward(make_reward(id="now"))
    assert [r.id for r in await sql_core.list_rewards()] == ["now"]
    clock.advance(days=2)
    assert sorted(r.id for r in await sql_core.list_rewards()) == ["now", "soon"]
