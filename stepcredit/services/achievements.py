from __future__ import annotations
import logging
from datetime import datetime
from typing import Callable

from ..core.errors import ValidationError
from ..core.locks import KeyLock
from ..models import EntryKind, utcnow
from ..repositories.interfaces import AchievementRepository
from ..schemas import AchievementDefinitionRead, AchievementProgressRead, AchievementStatusRead
from .credits import Ledger

logger = logging.getLogger(__name__)

DEFAULT_ACHIEVEMENTS = (
    AchievementDefinitionRead(id="first_steps", name="First Steps", description="Walk 1,000 steps in a day",
                              threshold_steps=1_000, reward_credits=10),
    AchievementDefinitionRead(id="daily_walker", name="Daily Walker", description="Walk 5,000 steps in a day",
                              threshold_steps=5_000, reward_credits=25),
    AchievementDefinitionRead(id="goal_crusher", name="Goal Crusher", description="Walk 10,000 steps in a day",
                              threshold_steps=10_000, reward_credits=50),
    AchievementDefinitionRead(id="marathon_master", name="Marathon Master", description="Walk 25,000 steps in a day",
                              threshold_steps=25_000, reward_credits=100),
)

def award_entry_id(user_id: str, achievement_id: str) -> str:
    return f"achievement:{user_id}:{achievement_id}"


class AchievementEngine:
    """
    Unlocks step-threshold achievements.

    Progress is the best single-day performance seen so far and never goes
    down. The reward credit is written before completion is stored, under
    an entry id fixed per (user, achievement): if storing completion fails,
    the next evaluation retries it and the ledger drops the duplicate award.
    """

    def __init__(
        self,
        repo: AchievementRepository,
        ledger: Ledger,
        locks: KeyLock,
        clock: Callable[[], datetime] = utcnow,
        publish: Callable[[str, dict], None] | None = None,
        subject: str = "achievements.unlocked",
    ) -> None:
        self._repo = repo
        self._ledger = ledger
        self._locks = locks
        self._clock = clock
        self._publish = publish
        self._subject = subject

    async def seed_defaults(self) -> None:
        for definition in DEFAULT_ACHIEVEMENTS:
            await self._repo.upsert_definition(definition)

    async def list_definitions(self) -> list[AchievementDefinitionRead]:
        return await self._repo.list_definitions()

    async def evaluate(self, user_id: str, steps: int) -> list[AchievementDefinitionRead]:
        if isinstance(steps, bool) or not isinstance(steps, int) or steps < 0:
            raise ValidationError("steps must be a non-negative integer", field="steps")

        unlocked: list[AchievementDefinitionRead] = []
        async with self._locks.hold(f"achievements:{user_id}"):
            definitions = await self._repo.list_definitions()
            progress = await self._repo.get_progress(user_id)
            for d in definitions:
                current = progress.get(d.id)
                if current is not None and current.is_completed:
                    continue
                completed = steps >= d.threshold_steps
                # capped below 100 so rounding never reports an unfinished achievement as done
                pct = 100.0 if completed else min(round(steps / d.threshold_steps * 100, 2), 99.99)
                if current is not None and not completed:
                    if pct <= current.progress_percent:
                        continue

                if completed and d.reward_credits > 0:
                    await self._ledger.credit(
                        user_id, d.reward_credits, EntryKind.BONUS, "achievement",
                        f"Achievement unlocked: {d.name}",
                        entry_id=award_entry_id(user_id, d.id),
                        metadata={"achievement_id": d.id, "steps": steps},
                    )
                await self._repo.save_progress(AchievementProgressRead(
                    user_id=user_id, achievement_id=d.id, progress_percent=pct,
                    is_completed=completed, completed_at=self._clock() if completed else None,
                ))
                if completed:
                    logger.info("achievement %s unlocked", d.id, extra={"user_id": user_id, "achievement_id": d.id})
                    unlocked.append(d)

        if self._publish is not None:
            for d in unlocked:
                self._publish(self._subject, {
                    "user_id": user_id, "achievement_id": d.id, "reward_credits": d.reward_credits,
                })
        return unlocked

    async def list_achievements(self, user_id: str) -> list[AchievementStatusRead]:
        definitions = await self._repo.list_definitions()
        progress = await self._repo.get_progress(user_id)
        out = []
        for d in definitions:
            p = progress.get(d.id)
            out.append(AchievementStatusRead(
                achievement=d,
                progress_percent=p.progress_percent if p else 0.0,
                is_completed=p.is_completed if p else False,
                completed_at=p.completed_at if p else None,
            ))
        return out
