"""
Storage contracts for the credit core.

Services only talk to these protocols; ``memory.py`` and ``sql.py`` provide
the two implementations. Every mutating method is atomic on its own: a
caller never has to read, compute and write back across two calls.
"""
from __future__ import annotations
from datetime import date, datetime
from typing import Protocol

from ..models import EntryKind, RedemptionStatus, RewardCategory, RewardType
from ..schemas import (
    AccountRead, LedgerEntryRead, AchievementDefinitionRead, AchievementProgressRead,
    RewardRead, RedemptionRead,
)


class LedgerStore(Protocol):
    async def get_account(self, user_id: str) -> AccountRead:
        """Zeroed account when the user has none yet."""
        ...

    async def credit(
        self, user_id: str, amount: int, kind: EntryKind, source: str, description: str,
        entry_id: str, metadata: dict | None = None,
    ) -> AccountRead:
        """Increase balance and lifetime earned, append the entry.

        A known ``entry_id`` is a replay: nothing changes and the current
        account is returned.
        """
        ...

    async def debit(
        self, user_id: str, amount: int, kind: EntryKind, source: str, description: str,
        entry_id: str, metadata: dict | None = None,
    ) -> AccountRead:
        """Decrease balance, increase lifetime spent, append the entry.

        Raises InsufficientCreditsError, leaving the account untouched, when
        the balance is below ``amount``. Replays behave as in ``credit``.
        """
        ...

    async def list_entries(
        self, user_id: str, kind: EntryKind | None, limit: int, offset: int,
    ) -> tuple[list[LedgerEntryRead], int]:
        """Newest first, plus the total matching count."""
        ...

    async def sum_entries(self, user_id: str, source: str, id_prefix: str) -> int:
        """Total amount of the user's entries from ``source`` whose id starts with ``id_prefix``."""
        ...


class StepRepository(Protocol):
    async def get_day(self, user_id: str, day: date) -> int: ...

    async def record_day(self, user_id: str, day: date, steps: int) -> int:
        """Keep the higher of the stored and reported count; return the stored value."""
        ...


class AchievementRepository(Protocol):
    async def list_definitions(self, active_only: bool = True) -> list[AchievementDefinitionRead]: ...

    async def upsert_definition(self, definition: AchievementDefinitionRead) -> AchievementDefinitionRead: ...

    async def get_progress(self, user_id: str) -> dict[str, AchievementProgressRead]: ...

    async def save_progress(self, progress: AchievementProgressRead) -> AchievementProgressRead: ...


class RewardRepository(Protocol):
    async def get(self, reward_id: str) -> RewardRead | None: ...

    async def list_all(
        self, category: RewardCategory | None = None, type: RewardType | None = None,
    ) -> list[RewardRead]: ...

    async def add(self, reward: RewardRead) -> RewardRead:
        """Raises ConflictError when the id is taken."""
        ...

    async def reserve(self, reward_id: str) -> bool:
        """Take one inventory slot; False when none is left."""
        ...

    async def release(self, reward_id: str) -> None: ...


class RedemptionRepository(Protocol):
    async def add(self, redemption: RedemptionRead) -> RedemptionRead: ...

    async def get(self, redemption_id: str) -> RedemptionRead | None: ...

    async def count_active(self, user_id: str, reward_id: str) -> int:
        """Redemptions of the reward by the user that are pending, processing or fulfilled."""
        ...

    async def list_for_user(
        self, user_id: str, status: RedemptionStatus | None, limit: int, offset: int,
    ) -> tuple[list[RedemptionRead], int]: ...

    async def update_status(
        self, redemption_id: str, expected: RedemptionStatus, status: RedemptionStatus,
        fulfilled_at: datetime | None = None, fulfillment_code: str | None = None,
    ) -> RedemptionRead | None:
        """Compare-and-set on the status; None when it no longer equals ``expected``."""
        ...

    async def list_stale(self, before: datetime) -> list[RedemptionRead]:
        """Pending or processing redemptions made before ``before``."""
        ...
