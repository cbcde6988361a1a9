from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum

from sqlalchemy import (
    UniqueConstraint, Index, CheckConstraint, String, Text, Integer, Float, Boolean, JSON,
    Enum as SqlEnum,
)
from sqlalchemy.orm import declarative_base, Mapped, mapped_column
from sqlalchemy.types import Date, DateTime

Base = declarative_base()

def utcnow():
    return datetime.now(timezone.utc)

class EntryKind(str, Enum):
    EARNED = "earned"     # step conversion, refunds
    SPENT = "spent"       # reward redemption
    BONUS = "bonus"       # milestone bonus, achievement reward, staff grant
    PENALTY = "penalty"   # staff correction

CREDIT_KINDS = frozenset({EntryKind.EARNED, EntryKind.BONUS})
DEBIT_KINDS = frozenset({EntryKind.SPENT, EntryKind.PENALTY})

class RedemptionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

# statuses that hold an inventory slot and count towards user limits
ACTIVE_REDEMPTION_STATUSES = frozenset(
    {RedemptionStatus.PENDING, RedemptionStatus.PROCESSING, RedemptionStatus.FULFILLED}
)

class RewardType(str, Enum):
    DIGITAL_COUPON = "digital_coupon"
    PHYSICAL_ITEM = "physical_item"
    EXPERIENCE = "experience"
    CHARITY_DONATION = "charity_donation"
    PREMIUM_FEATURE = "premium_feature"
    VIRTUAL_ITEM = "virtual_item"

class RewardCategory(str, Enum):
    FITNESS = "fitness"
    FOOD_BEVERAGE = "food_beverage"
    ENTERTAINMENT = "entertainment"
    SHOPPING = "shopping"
    TRAVEL = "travel"
    HEALTH = "health"
    ENVIRONMENT = "environment"
    CHARITY = "charity"

class Account(Base):
    __tablename__ = "accounts"
    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    available_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lifetime_earned: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lifetime_spent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        CheckConstraint("available_credits >= 0", name="ck_account_available"),
        CheckConstraint("available_credits = lifetime_earned - lifetime_spent", name="ck_account_balance"),
    )

class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entry_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[EntryKind] = mapped_column(SqlEnum(EntryKind), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(64), nullable=False)  # e.g. "daily_steps", "achievement", "reward_redemption"
    description: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_ledger_amount"),
        Index("ix_ledger_user_seq", "user_id", "seq"),
        Index("ix_ledger_kind", "kind"),
    )

class DailySteps(Base):
    __tablename__ = "daily_steps"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    steps: Mapped[int] = mapped_column(Integer, default=0, nullable=False)  # best report of the day
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "day", name="uq_daily_steps_user_day"),
    )

class AchievementDefinition(Base):
    __tablename__ = "achievement_definitions"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    threshold_steps: Mapped[int] = mapped_column(Integer, nullable=False)
    reward_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("threshold_steps > 0", name="ck_achievement_threshold"),
        CheckConstraint("reward_credits >= 0", name="ck_achievement_reward"),
    )

class AchievementProgress(Base):
    __tablename__ = "achievement_progress"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    achievement_id: Mapped[str] = mapped_column(String(64), nullable=False)
    progress_percent: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "achievement_id", name="uq_progress_user_achievement"),
        Index("ix_progress_user", "user_id"),
    )

class Reward(Base):
    __tablename__ = "rewards"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    type: Mapped[RewardType] = mapped_column(SqlEnum(RewardType), nullable=False)
    category: Mapped[RewardCategory] = mapped_column(SqlEnum(RewardCategory), nullable=False)
    cost: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity: Mapped[int | None] = mapped_column(Integer)  # null = unlimited
    user_limit: Mapped[int | None] = mapped_column(Integer)  # null = unlimited
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    physical_shipping: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    instructions: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    redeemed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        CheckConstraint("cost > 0", name="ck_reward_cost"),
        CheckConstraint("redeemed_count >= 0", name="ck_reward_redeemed"),
        Index("ix_rewards_category", "category"),
        Index("ix_rewards_cost", "cost"),
    )

class Redemption(Base):
    __tablename__ = "redemptions"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    reward_id: Mapped[str] = mapped_column(String(64), nullable=False)
    cost: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[RedemptionStatus] = mapped_column(SqlEnum(RedemptionStatus), default=RedemptionStatus.PENDING, nullable=False)
    fulfillment_code: Mapped[str | None] = mapped_column(String(32))
    redeemed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    fulfilled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_redemptions_user", "user_id", "redeemed_at"),
        Index("ix_redemptions_user_reward", "user_id", "reward_id", "status"),
        Index("ix_redemptions_status", "status"),
    )
