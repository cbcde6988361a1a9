"""Dict-backed repositories for single-process runs and tests."""
from __future__ import annotations
from datetime import date, datetime

from ..core.errors import ConflictError, InsufficientCreditsError
from ..core.locks import KeyedLock
from ..models import EntryKind, RedemptionStatus, RewardCategory, RewardType, ACTIVE_REDEMPTION_STATUSES, utcnow
from ..schemas import (
    AccountRead, LedgerEntryRead, AchievementDefinitionRead, AchievementProgressRead,
    RewardRead, RedemptionRead,
)


class MemoryLedgerStore:
    def __init__(self, lock_timeout: float = 5.0) -> None:
        self._accounts: dict[str, AccountRead] = {}
        self._entries: dict[str, LedgerEntryRead] = {}
        self._by_user: dict[str, list[LedgerEntryRead]] = {}
        self._locks = KeyedLock(lock_timeout)

    async def get_account(self, user_id: str) -> AccountRead:
        return self._accounts.get(user_id) or AccountRead(user_id=user_id)

    async def credit(self, user_id, amount, kind, source, description, entry_id, metadata=None):
        async with self._locks.hold(user_id):
            if entry_id in self._entries:
                return await self.get_account(user_id)
            acc = await self.get_account(user_id)
            acc = acc.model_copy(update={
                "available_credits": acc.available_credits + amount,
                "lifetime_earned": acc.lifetime_earned + amount,
                "last_updated": utcnow(),
            })
            self._append(acc, kind, amount, source, description, entry_id, metadata)
            return acc

    async def debit(self, user_id, amount, kind, source, description, entry_id, metadata=None):
        async with self._locks.hold(user_id):
            if entry_id in self._entries:
                return await self.get_account(user_id)
            acc = await self.get_account(user_id)
            if acc.available_credits < amount:
                raise InsufficientCreditsError(acc.available_credits, amount)
            acc = acc.model_copy(update={
                "available_credits": acc.available_credits - amount,
                "lifetime_spent": acc.lifetime_spent + amount,
                "last_updated": utcnow(),
            })
            self._append(acc, kind, amount, source, description, entry_id, metadata)
            return acc

    def _append(self, acc: AccountRead, kind, amount, source, description, entry_id, metadata) -> None:
        entry = LedgerEntryRead(
            id=entry_id, user_id=acc.user_id, kind=kind, amount=amount, source=source,
            description=description, metadata=metadata, created_at=acc.last_updated,
        )
        self._accounts[acc.user_id] = acc
        self._entries[entry_id] = entry
        self._by_user.setdefault(acc.user_id, []).append(entry)

    async def list_entries(self, user_id: str, kind: EntryKind | None, limit: int, offset: int):
        rows = [e for e in reversed(self._by_user.get(user_id, [])) if kind is None or e.kind == kind]
        return rows[offset:offset + limit], len(rows)

    async def sum_entries(self, user_id: str, source: str, id_prefix: str) -> int:
        return sum(
            e.amount for e in self._by_user.get(user_id, [])
            if e.source == source and e.id.startswith(id_prefix)
        )


class MemoryStepRepository:
    def __init__(self) -> None:
        self._days: dict[tuple[str, date], int] = {}

    async def get_day(self, user_id: str, day: date) -> int:
        return self._days.get((user_id, day), 0)

    async def record_day(self, user_id: str, day: date, steps: int) -> int:
        best = max(self._days.get((user_id, day), 0), steps)
        self._days[(user_id, day)] = best
        return best


class MemoryAchievementRepository:
    def __init__(self) -> None:
        self._definitions: dict[str, AchievementDefinitionRead] = {}
        self._progress: dict[tuple[str, str], AchievementProgressRead] = {}

    async def list_definitions(self, active_only: bool = True):
        rows = [d for d in self._definitions.values() if d.is_active or not active_only]
        return sorted(rows, key=lambda d: (d.threshold_steps, d.id))

    async def upsert_definition(self, definition):
        self._definitions[definition.id] = definition
        return definition

    async def get_progress(self, user_id: str):
        return {aid: p for (uid, aid), p in self._progress.items() if uid == user_id}

    async def save_progress(self, progress):
        key = (progress.user_id, progress.achievement_id)
        current = self._progress.get(key)
        if current is not None and current.is_completed:
            # completion is terminal
            return current
        self._progress[key] = progress
        return progress


class MemoryRewardRepository:
    def __init__(self) -> None:
        self._rewards: dict[str, RewardRead] = {}

    async def get(self, reward_id: str) -> RewardRead | None:
        return self._rewards.get(reward_id)

    async def list_all(self, category: RewardCategory | None = None, type: RewardType | None = None):
        return [
            r for r in self._rewards.values()
            if (category is None or r.category == category) and (type is None or r.type == type)
        ]

    async def add(self, reward: RewardRead) -> RewardRead:
        if reward.id in self._rewards:
            raise ConflictError(f"Reward {reward.id} already exists")
        self._rewards[reward.id] = reward
        return reward

    async def reserve(self, reward_id: str) -> bool:
        r = self._rewards.get(reward_id)
        if r is None:
            return False
        if r.quantity is not None and r.redeemed_count >= r.quantity:
            return False
        self._rewards[reward_id] = r.model_copy(update={"redeemed_count": r.redeemed_count + 1})
        return True

    async def release(self, reward_id: str) -> None:
        r = self._rewards.get(reward_id)
        if r is not None and r.redeemed_count > 0:
            self._rewards[reward_id] = r.model_copy(update={"redeemed_count": r.redeemed_count - 1})


class MemoryRedemptionRepository:
    def __init__(self) -> None:
        self._rows: dict[str, RedemptionRead] = {}

    async def add(self, redemption: RedemptionRead) -> RedemptionRead:
        if redemption.id in self._rows:
            raise ConflictError(f"Redemption {redemption.id} already exists")
        self._rows[redemption.id] = redemption
        return redemption

    async def get(self, redemption_id: str) -> RedemptionRead | None:
        return self._rows.get(redemption_id)

    async def count_active(self, user_id: str, reward_id: str) -> int:
        return sum(
            1 for r in self._rows.values()
            if r.user_id == user_id and r.reward_id == reward_id and r.status in ACTIVE_REDEMPTION_STATUSES
        )

    async def list_for_user(self, user_id: str, status: RedemptionStatus | None, limit: int, offset: int):
        rows = [r for r in self._rows.values() if r.user_id == user_id and (status is None or r.status == status)]
        rows.sort(key=lambda r: r.redeemed_at, reverse=True)
        return rows[offset:offset + limit], len(rows)

    async def update_status(self, redemption_id, expected, status, fulfilled_at=None, fulfillment_code=None):
        r = self._rows.get(redemption_id)
        if r is None or r.status != expected:
            return None
        update: dict = {"status": status, "updated_at": utcnow()}
        if fulfilled_at is not None:
            update["fulfilled_at"] = fulfilled_at
        if fulfillment_code is not None:
            update["fulfillment_code"] = fulfillment_code
        r = r.model_copy(update=update)
        self._rows[redemption_id] = r
        return r

    async def list_stale(self, before: datetime) -> list[RedemptionRead]:
        return [
            r for r in self._rows.values()
            if r.status in (RedemptionStatus.PENDING, RedemptionStatus.PROCESSING) and r.redeemed_at < before
        ]
