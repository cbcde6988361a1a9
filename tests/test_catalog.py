from datetime import timedelta

import pytest

from stepcredit.core.errors import ConflictError, NotFoundError, ValidationError
from stepcredit.models import RewardCategory, RewardType
from stepcredit.services.catalog import DEFAULT_REWARDS


async def test_cheapest_first_ties_newest_first(core, clock, make_reward):
    await core.create_reward(make_reward(id="a", cost=200))
    clock.advance(minutes=1)
    await core.create_reward(make_reward(id="b", cost=100))
    clock.advance(minutes=1)
    await core.create_reward(make_reward(id="c", cost=200))
    rewards = await core.list_rewards()
    assert [r.id for r in rewards] == ["b", "c", "a"]


async def test_unavailable_rewards_are_hidden(core, clock, make_reward):
    now = clock()
    await core.create_reward(make_reward(id="inactive", is_active=False))
    await core.create_reward(make_reward(id="future", start_date=now + timedelta(days=1)))
    await core.create_reward(make_reward(id="past", end_date=now - timedelta(seconds=1)))
    await core.create_reward(make_reward(id="sold_out", quantity=0))
    await core.create_reward(make_reward(id="ok", start_date=now, end_date=now))
    assert [r.id for r in await core.list_rewards()] == ["ok"]


async def test_filters_and_paging(core, make_reward):
    await core.create_reward(make_reward(id="coffee", cost=100))
    await core.create_reward(make_reward(
        id="shoes", cost=500, type=RewardType.PHYSICAL_ITEM, category=RewardCategory.FITNESS,
    ))
    await core.create_reward(make_reward(id="tea", cost=150))

    fitness = await core.list_rewards(category=RewardCategory.FITNESS)
    assert [r.id for r in fitness] == ["shoes"]
    coupons = await core.list_rewards(type=RewardType.DIGITAL_COUPON)
    assert [r.id for r in coupons] == ["coffee", "tea"]
    page = await core.list_rewards(limit=1, offset=1)
    assert [r.id for r in page] == ["tea"]


async def test_remaining_inventory_tracks_reservations(core, make_reward):
    await core.create_reward(make_reward(id="limited", quantity=2))
    await core.create_reward(make_reward(id="open"))
    assert await core.catalog.remaining_inventory("limited") == 2
    assert await core.catalog.remaining_inventory("open") is None

    assert await core.catalog.reserve("limited")
    assert await core.catalog.reserve("limited")
    assert not await core.catalog.reserve("limited")
    assert await core.catalog.remaining_inventory("limited") == 0

    await core.catalog.release("limited")
    assert await core.catalog.remaining_inventory("limited") == 1


async def test_get_unknown_reward(core):
    with pytest.raises(NotFoundError) as exc:
        await core.get_reward("missing")
    assert exc.value.code == "REWARD_NOT_FOUND"


@pytest.mark.parametrize(
    "overrides",
    [
        {"cost": 0},
        {"cost": -10},
        {"quantity": -1},
        {"user_limit": 0},
    ],
)
async def test_create_reward_validation(core, make_reward, overrides):
    with pytest.raises(ValidationError):
        await core.create_reward(make_reward(**overrides))


async def test_create_reward_rejects_inverted_window(core, clock, make_reward):
    with pytest.raises(ValidationError):
        await core.create_reward(make_reward(start_date=clock(), end_date=clock() - timedelta(days=1)))


async def test_duplicate_reward_id(core, make_reward):
    await core.create_reward(make_reward(id="dup"))
    with pytest.raises(ConflictError):
        await core.create_reward(make_reward(id="dup"))


async def test_generated_id_when_missing(core, make_reward):
    reward = await core.create_reward(make_reward(id=None))
    assert reward.id
    assert (await core.get_reward(reward.id)).name == "Coffee"


async def test_seed_defaults_is_idempotent(core):
    await core.seed_defaults()
    await core.seed_defaults()
    rewards = await core.list_rewards()
    assert sorted(r.id for r in rewards) == sorted(r.id for r in DEFAULT_REWARDS)
    assert [r.cost for r in rewards] == [100, 200, 300, 500]
    assert len(await core.list_definitions()) == 4
