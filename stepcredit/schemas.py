from __future__ import annotations
from pydantic import BaseModel, Field, computed_field
from typing import Annotated
from datetime import date, datetime

from .models import EntryKind, RedemptionStatus, RewardType, RewardCategory

Name128    = Annotated[str, Field(min_length=1, max_length=128)]
Key128     = Annotated[str, Field(min_length=1, max_length=128)]

OptStr     = str | None

# --- ledger
class AccountRead(BaseModel):
    user_id: str
    available_credits: int = 0
    lifetime_earned: int = 0
    lifetime_spent: int = 0
    last_updated: datetime | None = None

class LedgerEntryRead(BaseModel):
    id: str
    user_id: str
    kind: EntryKind
    amount: int
    source: str
    description: str
    metadata: dict | None = None
    created_at: datetime

class LedgerPage(BaseModel):
    items: list[LedgerEntryRead]
    total: int
    limit: int
    offset: int

    @computed_field
    @property
    def has_next_page(self) -> bool:
        return self.offset + len(self.items) < self.total

class SpendRequest(BaseModel):
    amount: int
    description: OptStr = None
    reward_id: OptStr = None
    entry_id: Key128 | None = None

class AdjustRequest(BaseModel):
    delta: int
    reason: Name128
    entry_id: Key128 | None = None

# --- steps
class CreditBreakdown(BaseModel):
    base: int
    bonus: int
    total: int

class StepSubmission(BaseModel):
    steps: int
    day: date | None = None
    entry_id: Key128 | None = None  # client idempotency key

class StepIngest(StepSubmission):
    user_id: Key128

# --- achievements
class AchievementDefinitionRead(BaseModel):
    id: str
    name: str
    description: OptStr = None
    threshold_steps: int
    reward_credits: int = 0
    is_active: bool = True

class AchievementProgressRead(BaseModel):
    user_id: str
    achievement_id: str
    progress_percent: float = 0.0
    is_completed: bool = False
    completed_at: datetime | None = None

class AchievementStatusRead(BaseModel):
    achievement: AchievementDefinitionRead
    progress_percent: float
    is_completed: bool
    completed_at: datetime | None = None

class StepConversionRead(BaseModel):
    user_id: str
    day: date
    steps: int
    best_steps: int             # highest report for the day after this submission
    breakdown: CreditBreakdown  # credits the submitted steps are worth
    credited: CreditBreakdown   # credits actually added by this submission
    account: AccountRead
    unlocked: list[AchievementDefinitionRead]

# --- rewards
class RewardCreate(BaseModel):
    id: Key128 | None = None
    name: Name128
    description: OptStr = None
    type: RewardType
    category: RewardCategory
    cost: int
    quantity: int | None = None    # None = unlimited
    user_limit: int | None = None  # None = unlimited
    start_date: datetime | None = None
    end_date: datetime | None = None
    physical_shipping: bool = False
    instructions: OptStr = None
    is_active: bool = True

class RewardRead(BaseModel):
    id: str
    name: str
    description: OptStr = None
    type: RewardType
    category: RewardCategory
    cost: int
    quantity: int | None = None
    user_limit: int | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    physical_shipping: bool = False
    instructions: OptStr = None
    is_active: bool = True
    redeemed_count: int = 0
    created_at: datetime

    @computed_field
    @property
    def remaining(self) -> int | None:
        if self.quantity is None:
            return None
        return max(self.quantity - self.redeemed_count, 0)

class RedemptionRead(BaseModel):
    id: str
    user_id: str
    reward_id: str
    cost: int
    status: RedemptionStatus
    fulfillment_code: OptStr = None
    redeemed_at: datetime
    fulfilled_at: datetime | None = None
    updated_at: datetime | None = None

class RedemptionPage(BaseModel):
    items: list[RedemptionRead]
    total: int
    limit: int
    offset: int

    @computed_field
    @property
    def has_next_page(self) -> bool:
        return self.offset + len(self.items) < self.total

class RedemptionStatusUpdate(BaseModel):
    status: RedemptionStatus
