from datetime import date

import pytest

from stepcredit.core.errors import InternalError, ValidationError
from stepcredit.models import EntryKind


async def test_first_submission_credits_base_and_bonus(core):
    result = await core.convert_steps("u1", 12_000)
    assert result.day == date(2025, 3, 10)
    assert (result.breakdown.base, result.breakdown.bonus, result.breakdown.total) == (120, 50, 170)
    assert result.credited.total == 170
    assert result.account.available_credits == 170
    assert result.unlocked == []

    items, _ = await core.list_transactions("u1")
    by_source = {e.source: e for e in items}
    assert by_source["daily_steps"].kind == EntryKind.EARNED
    assert by_source["daily_steps"].amount == 120
    assert by_source["daily_goal"].kind == EntryKind.BONUS
    assert by_source["daily_goal"].amount == 50
    assert by_source["daily_steps"].metadata == {"steps": 12_000, "day": "2025-03-10"}


async def test_growing_day_only_credits_the_increase(core):
    await core.convert_steps("u1", 800)
    second = await core.convert_steps("u1", 5_300)
    # 53 base + 25 bonus in total, 8 base already paid
    assert (second.credited.base, second.credited.bonus) == (45, 25)
    assert second.account.available_credits == 78
    assert second.best_steps == 5_300


async def test_lower_report_for_same_day_credits_nothing(core):
    await core.convert_steps("u1", 6_000)
    again = await core.convert_steps("u1", 4_000)
    assert again.credited.total == 0
    assert again.best_steps == 6_000
    assert again.account.available_credits == 60 + 25


async def test_resubmitted_report_is_idempotent(core):
    await core.convert_steps("u1", 3_000, entry_id="device-7:2025-03-10:3000")
    await core.convert_steps("u1", 3_000, entry_id="device-7:2025-03-10:3000")
    acc = await core.get_balance("u1")
    assert acc.available_credits == 30 + 10
    _, total = await core.list_transactions("u1")
    assert total == 2


async def test_days_are_credited_independently(core, clock):
    await core.convert_steps("u1", 5_000, day=date(2025, 3, 8))
    await core.convert_steps("u1", 5_000, day=date(2025, 3, 9))
    assert (await core.get_balance("u1")).available_credits == 2 * 75


async def test_day_defaults_to_clock(core, clock):
    clock.advance(days=1)
    result = await core.convert_steps("u1", 100)
    assert result.day == date(2025, 3, 11)


@pytest.mark.parametrize("steps", [-1, 100_001])
async def test_out_of_range_steps_rejected(core, steps):
    with pytest.raises(ValidationError):
        await core.convert_steps("u1", steps)
    assert (await core.get_balance("u1")).available_credits == 0


async def test_conversion_feeds_achievements(core):
    await core.achievements.seed_defaults()
    result = await core.convert_steps("u1", 10_000)
    assert [d.id for d in result.unlocked] == ["first_steps", "daily_walker", "goal_crusher"]
    assert result.account.available_credits == 150 + 10 + 25 + 50
    assert result.account.available_credits == result.account.lifetime_earned


async def test_failed_day_save_does_not_pay_the_day_twice(core, monkeypatch):
    days = core.steps._days
    real_record = days.record_day
    calls = []

    async def record_once_broken(user_id, day, steps):
        calls.append(steps)
        if len(calls) == 1:
            raise InternalError("disk full")
        return await real_record(user_id, day, steps)

    monkeypatch.setattr(days, "record_day", record_once_broken)
    with pytest.raises(InternalError):
        await core.convert_steps("u1", 5_000)
    assert (await core.get_balance("u1")).available_credits == 50 + 25

    result = await core.convert_steps("u1", 6_000)
    assert (result.credited.base, result.credited.bonus) == (10, 0)
    assert result.best_steps == 6_000
    assert result.account.available_credits == 60 + 25
