from __future__ import annotations
import logging
from datetime import date, datetime
from typing import Callable

from ..core.errors import ValidationError
from ..core.locks import KeyLock
from ..core.retry import retry_on_conflict
from ..models import EntryKind, utcnow
from ..repositories.interfaces import StepRepository
from ..schemas import CreditBreakdown, StepConversionRead
from .achievements import AchievementEngine
from .credits import Ledger, compute_credits

logger = logging.getLogger(__name__)


class StepConverter:
    """
    Turns a step report into ledger credits and achievement progress.

    A user may report the same day several times as the count grows; only
    the difference between compute_credits(steps) and what the day's ledger
    entries already paid is credited, so totals for a day always equal
    compute_credits(best) even when saving the best count failed earlier.
    """

    def __init__(
        self,
        ledger: Ledger,
        days: StepRepository,
        achievements: AchievementEngine,
        locks: KeyLock,
        max_daily_steps: int = 100_000,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._ledger = ledger
        self._days = days
        self._achievements = achievements
        self._locks = locks
        self._max_daily_steps = max_daily_steps
        self._clock = clock

    async def convert_steps(
        self, user_id: str, steps: int, day: date | None = None, entry_id: str | None = None,
    ) -> StepConversionRead:
        breakdown = compute_credits(steps)
        if steps > self._max_daily_steps:
            raise ValidationError(
                f"steps must not exceed {self._max_daily_steps} per day", field="steps"
            )
        day = day or self._clock().date()
        # every entry for the day shares this prefix; the ledger is the record of what was paid
        prefix = f"steps:{user_id}:{day.isoformat()}:"
        key = f"{prefix}{entry_id or steps}"
        meta = {"steps": steps, "day": day.isoformat()}

        async with self._locks.hold(f"steps:{user_id}"):
            paid_base = await self._ledger.credited_total(user_id, "daily_steps", prefix)
            paid_bonus = await self._ledger.credited_total(user_id, "daily_goal", prefix)
            base = max(breakdown.base - paid_base, 0)
            bonus = max(breakdown.bonus - paid_bonus, 0)
            if base:
                await self._ledger.credit(
                    user_id, base, EntryKind.EARNED, "daily_steps",
                    f"Converted {steps} steps on {day.isoformat()}",
                    entry_id=f"{key}:base", metadata=meta,
                )
            if bonus:
                await self._ledger.credit(
                    user_id, bonus, EntryKind.BONUS, "daily_goal",
                    f"Daily goal bonus for {steps} steps",
                    entry_id=f"{key}:bonus", metadata=meta,
                )
            best = await retry_on_conflict(self._days.record_day, user_id, day, steps)

        unlocked = await self._achievements.evaluate(user_id, best)
        account = await self._ledger.get_balance(user_id)
        logger.info(
            "converted %s steps for %s on %s", steps, user_id, day,
            extra={"user_id": user_id, "amount": base + bonus, "source": "daily_steps"},
        )
        return StepConversionRead(
            user_id=user_id, day=day, steps=steps, best_steps=best, breakdown=breakdown,
            credited=CreditBreakdown(base=base, bonus=bonus, total=base + bonus),
            account=account, unlocked=unlocked,
        )
