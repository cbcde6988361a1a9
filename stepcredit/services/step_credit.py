from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings
from ..core.locks import KeyedLock, KeyLock, RedisKeyedLock
from ..models import utcnow
from ..repositories import memory, sql
from .achievements import AchievementEngine
from .catalog import RewardCatalog
from .credits import Ledger
from .redemptions import RedemptionWorkflow
from .steps import StepConverter

logger = logging.getLogger(__name__)


@dataclass
class StepCreditCore:
    """Wired components; routers, the NATS consumer and the scheduler all go through this."""

    ledger: Ledger
    achievements: AchievementEngine
    catalog: RewardCatalog
    redemptions: RedemptionWorkflow
    steps: StepConverter

    async def seed_defaults(self) -> None:
        await self.achievements.seed_defaults()
        await self.catalog.seed_defaults()
        logger.info("default achievements and rewards seeded")

    # entry points used by the HTTP layer
    async def convert_steps(self, user_id, steps, day=None, entry_id=None):
        return await self.steps.convert_steps(user_id, steps, day=day, entry_id=entry_id)

    async def get_balance(self, user_id):
        return await self.ledger.get_balance(user_id)

    async def list_transactions(self, user_id, kind=None, limit=20, offset=0):
        return await self.ledger.list_transactions(user_id, kind, limit, offset)

    async def spend(self, user_id, amount, description=None, reward_id=None, entry_id=None):
        return await self.ledger.spend(user_id, amount, description, reward_id, entry_id)

    async def adjust(self, user_id, delta, reason, entry_id=None):
        return await self.ledger.adjust(user_id, delta, reason, entry_id)

    async def list_definitions(self):
        return await self.achievements.list_definitions()

    async def list_achievements(self, user_id):
        return await self.achievements.list_achievements(user_id)

    async def list_rewards(self, category=None, type=None, limit=None, offset=0):
        return await self.catalog.list_available(category, type, limit=limit, offset=offset)

    async def get_reward(self, reward_id):
        return await self.catalog.get(reward_id)

    async def create_reward(self, data):
        return await self.catalog.create_reward(data)

    async def redeem(self, user_id, reward_id):
        return await self.redemptions.redeem(user_id, reward_id)

    async def list_redemptions(self, user_id, status=None, limit=20, offset=0):
        return await self.redemptions.list_redemptions(user_id, status, limit, offset)

    async def transition_redemption(self, redemption_id, status):
        return await self.redemptions.transition(redemption_id, status)

    async def expire_stale_redemptions(self, now=None):
        return await self.redemptions.expire_stale(now)


def build_core(
    settings: Settings,
    session_maker: async_sessionmaker[AsyncSession] | None = None,
    locks: KeyLock | None = None,
    publish: Callable[[str, dict], None] | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> StepCreditCore:
    if settings.store_backend == "memory":
        ledger_store = memory.MemoryLedgerStore(settings.lock_timeout_seconds)
        days = memory.MemoryStepRepository()
        achievement_repo = memory.MemoryAchievementRepository()
        reward_repo = memory.MemoryRewardRepository()
        redemption_repo = memory.MemoryRedemptionRepository()
    elif settings.store_backend == "sql":
        if session_maker is None:
            from ..db import async_session_maker as session_maker
        ledger_store = sql.SqlLedgerStore(session_maker)
        days = sql.SqlStepRepository(session_maker)
        achievement_repo = sql.SqlAchievementRepository(session_maker)
        reward_repo = sql.SqlRewardRepository(session_maker)
        redemption_repo = sql.SqlRedemptionRepository(session_maker)
    else:
        raise ValueError(f"unknown STORE_BACKEND {settings.store_backend!r}")

    if locks is None:
        if settings.lock_backend == "redis":
            from ..core.redis import get_redis
            locks = RedisKeyedLock(get_redis(), timeout=settings.lock_timeout_seconds)
        else:
            locks = KeyedLock(timeout=settings.lock_timeout_seconds)

    ledger = Ledger(ledger_store, max_retries=settings.conflict_retries)
    catalog = RewardCatalog(reward_repo, clock=clock)
    achievements = AchievementEngine(
        achievement_repo, ledger, locks, clock=clock, publish=publish,
        subject=settings.nats_subject_achievements,
    )
    redemptions = RedemptionWorkflow(
        ledger, catalog, redemption_repo, locks, clock=clock, publish=publish,
        subject=settings.nats_subject_redemptions, expiry_days=settings.redemption_expiry_days,
    )
    steps = StepConverter(
        ledger, days, achievements, locks, max_daily_steps=settings.max_daily_steps, clock=clock,
    )
    logger.info("core built with %s store and %s locks", settings.store_backend, type(locks).__name__)
    return StepCreditCore(ledger, achievements, catalog, redemptions, steps)
