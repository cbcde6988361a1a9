from __future__ import annotations
import logging
import uuid
from datetime import datetime
from typing import Callable

from ..core.errors import ConflictError, NotFoundError, ValidationError
from ..models import RewardCategory, RewardType, utcnow
from ..repositories.interfaces import RewardRepository
from ..schemas import RewardCreate, RewardRead

logger = logging.getLogger(__name__)

DEFAULT_REWARDS = (
    RewardCreate(
        id="coffee_voucher", name="Free Coffee Voucher",
        description="Redeem for a free coffee at participating cafes",
        type=RewardType.DIGITAL_COUPON, category=RewardCategory.FOOD_BEVERAGE,
        cost=100, quantity=100, user_limit=5,
        instructions="Show the code at the counter",
    ),
    RewardCreate(
        id="fitness_gear", name="Fitness Gear Discount",
        description="Discount on fitness equipment, shipped to your address",
        type=RewardType.PHYSICAL_ITEM, category=RewardCategory.FITNESS,
        cost=500, quantity=50, user_limit=1, physical_shipping=True,
    ),
    RewardCreate(
        id="tree_planting", name="Plant a Tree",
        description="We plant a tree on your behalf",
        type=RewardType.CHARITY_DONATION, category=RewardCategory.ENVIRONMENT,
        cost=200, user_limit=10,
    ),
    RewardCreate(
        id="premium_features", name="Premium Features (1 month)",
        description="Unlock premium app features for a month",
        type=RewardType.PREMIUM_FEATURE, category=RewardCategory.ENTERTAINMENT,
        cost=300, user_limit=3,
    ),
)

def _is_available(r: RewardRead, now: datetime) -> bool:
    if not r.is_active:
        return False
    if r.start_date is not None and r.start_date > now:
        return False
    if r.end_date is not None and r.end_date < now:
        return False
    return r.remaining is None or r.remaining > 0


class RewardCatalog:
    def __init__(self, repo: RewardRepository, clock: Callable[[], datetime] = utcnow) -> None:
        self._repo = repo
        self._clock = clock

    async def list_available(
        self,
        category: RewardCategory | None = None,
        type: RewardType | None = None,
        now: datetime | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[RewardRead]:
        """Available rewards, cheapest first; equal cost shows the newest first."""
        if offset < 0 or (limit is not None and limit < 1):
            raise ValidationError("invalid pagination", field="limit")
        now = now or self._clock()
        rows = [r for r in await self._repo.list_all(category, type) if _is_available(r, now)]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        rows.sort(key=lambda r: r.cost)  # stable: keeps newest-first within a cost
        end = None if limit is None else offset + limit
        return rows[offset:end]

    async def get(self, reward_id: str) -> RewardRead:
        r = await self._repo.get(reward_id)
        if r is None:
            raise NotFoundError("Reward", reward_id)
        return r

    async def remaining_inventory(self, reward_id: str) -> int | None:
        """Slots left, None for unlimited rewards."""
        return (await self.get(reward_id)).remaining

    async def reserve(self, reward_id: str) -> bool:
        return await self._repo.reserve(reward_id)

    async def release(self, reward_id: str) -> None:
        await self._repo.release(reward_id)

    async def create_reward(self, data: RewardCreate) -> RewardRead:
        if data.cost <= 0:
            raise ValidationError("cost must be positive", field="cost")
        if data.quantity is not None and data.quantity < 0:
            raise ValidationError("quantity must be non-negative", field="quantity")
        if data.user_limit is not None and data.user_limit < 1:
            raise ValidationError("user_limit must be at least 1", field="user_limit")
        if data.start_date and data.end_date and data.start_date > data.end_date:
            raise ValidationError("start_date must not be after end_date", field="start_date")

        reward = RewardRead(
            **data.model_dump(exclude={"id"}),
            id=data.id or uuid.uuid4().hex,
            redeemed_count=0,
            created_at=self._clock(),
        )
        created = await self._repo.add(reward)
        logger.info("reward %s created", created.id, extra={"reward_id": created.id})
        return created

    async def seed_defaults(self) -> None:
        for data in DEFAULT_REWARDS:
            if await self._repo.get(data.id) is not None:
                continue
            try:
                await self.create_reward(data)
            except ConflictError:
                logger.info("reward %s seeded by another instance", data.id, extra={"reward_id": data.id})
