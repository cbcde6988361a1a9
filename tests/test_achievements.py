import pytest

from stepcredit.core.errors import InternalError, ValidationError
from stepcredit.core.locks import KeyedLock
from stepcredit.models import EntryKind
from stepcredit.repositories.memory import MemoryAchievementRepository, MemoryLedgerStore
from stepcredit.services.achievements import AchievementEngine, DEFAULT_ACHIEVEMENTS
from stepcredit.services.credits import Ledger


@pytest.fixture
async def engine(core):
    await core.achievements.seed_defaults()
    return core.achievements


async def test_no_definitions_means_nothing_unlocks(core):
    assert await core.achievements.evaluate("u1", 50_000) == []
    assert (await core.get_balance("u1")).available_credits == 0


async def test_threshold_unlocks_and_awards(core, engine):
    unlocked = await engine.evaluate("u1", 1_200)
    assert [d.id for d in unlocked] == ["first_steps"]

    items, total = await core.list_transactions("u1")
    assert total == 1
    assert items[0].kind == EntryKind.BONUS
    assert items[0].source == "achievement"
    assert items[0].amount == 10


async def test_reevaluation_is_idempotent(core, engine):
    await engine.evaluate("u1", 12_000)
    _, before = await core.list_transactions("u1")
    assert await engine.evaluate("u1", 12_000) == []
    _, after = await core.list_transactions("u1")
    assert before == after == 3
    assert (await core.get_balance("u1")).available_credits == 10 + 25 + 50


async def test_progress_is_best_day_and_never_regresses(core, engine):
    await engine.evaluate("u1", 2_500)
    await engine.evaluate("u1", 500)
    status = {s.achievement.id: s for s in await engine.list_achievements("u1")}
    assert status["first_steps"].is_completed
    assert status["first_steps"].progress_percent == 100.0
    assert status["daily_walker"].progress_percent == 50.0
    assert status["goal_crusher"].progress_percent == 25.0
    assert not status["marathon_master"].is_completed


async def test_progress_just_below_threshold_is_not_complete(engine):
    assert await engine.evaluate("u1", 24_999) != []
    status = {s.achievement.id: s for s in await engine.list_achievements("u1")}
    assert not status["marathon_master"].is_completed
    assert status["marathon_master"].progress_percent < 100


async def test_list_achievements_for_new_user(engine):
    status = await engine.list_achievements("fresh")
    assert [s.achievement.id for s in status] == [d.id for d in DEFAULT_ACHIEVEMENTS]
    assert all(s.progress_percent == 0.0 and not s.is_completed for s in status)


async def test_unlock_events_published(engine, publisher):
    await engine.evaluate("u1", 5_000)
    assert publisher.subjects() == ["achievements.unlocked", "achievements.unlocked"]
    assert {e["achievement_id"] for _, e in publisher.events} == {"first_steps", "daily_walker"}


async def test_negative_steps_rejected(engine):
    with pytest.raises(ValidationError):
        await engine.evaluate("u1", -1)


class FailingLedger(Ledger):
    async def credit(self, *args, **kwargs):
        raise InternalError("ledger unavailable")


async def test_failed_award_does_not_complete(clock):
    repo = MemoryAchievementRepository()
    store = MemoryLedgerStore()
    broken = AchievementEngine(repo, FailingLedger(store), KeyedLock(), clock=clock)
    await broken.seed_defaults()

    with pytest.raises(InternalError):
        await broken.evaluate("u1", 1_000)
    progress = await repo.get_progress("u1")
    assert "first_steps" not in progress or not progress["first_steps"].is_completed

    healthy = AchievementEngine(repo, Ledger(store), KeyedLock(), clock=clock)
    assert [d.id for d in await healthy.evaluate("u1", 1_000)] == ["first_steps"]
    assert (await store.get_account("u1")).available_credits == 10


class FlakyProgressRepository(MemoryAchievementRepository):
    def __init__(self):
        super().__init__()
        self.fail_next = True

    async def save_progress(self, progress):
        if progress.is_completed and self.fail_next:
            self.fail_next = False
            raise InternalError("write failed")
        return await super().save_progress(progress)


async def test_award_retry_after_lost_completion_credits_once(clock):
    repo = FlakyProgressRepository()
    store = MemoryLedgerStore()
    engine = AchievementEngine(repo, Ledger(store), KeyedLock(), clock=clock)
    await engine.seed_defaults()

    with pytest.raises(InternalError):
        await engine.evaluate("u1", 1_000)
    # credit landed, completion did not; the retry must not pay twice
    assert [d.id for d in await engine.evaluate("u1", 1_000)] == ["first_steps"]
    acc = await store.get_account("u1")
    assert acc.available_credits == 10
    _, total = await store.list_entries("u1", None, 10, 0)
    assert total == 1
