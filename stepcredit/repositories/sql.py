"""
SQLAlchemy implementations of the repository protocols.

Balances and inventory are never read, modified in Python and written back:
each change is one conditional UPDATE, so the row lock taken by the database
is the only serialisation point needed. Unique-key races (lazy account
creation, a replayed entry id landing twice) surface as ``ConflictError`` and
are retried by the caller.
"""
from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import AsyncIterator

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.errors import ConflictError, InsufficientCreditsError, InternalError
from ..models import (
    Account, LedgerEntry, DailySteps, AchievementDefinition, AchievementProgress, Reward, Redemption,
    EntryKind, RedemptionStatus, RewardCategory, RewardType, ACTIVE_REDEMPTION_STATUSES, utcnow,
)
from ..schemas import (
    AccountRead, LedgerEntryRead, AchievementDefinitionRead, AchievementProgressRead,
    RewardRead, RedemptionRead,
)

logger = logging.getLogger(__name__)

def _utc(dt: datetime | None) -> datetime | None:
    # SQLite hands back naive values; everything is stored in UTC
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt

def _account(a: Account | None, user_id: str) -> AccountRead:
    if a is None:
        return AccountRead(user_id=user_id)
    return AccountRead(
        user_id=a.user_id, available_credits=a.available_credits, lifetime_earned=a.lifetime_earned,
        lifetime_spent=a.lifetime_spent, last_updated=_utc(a.last_updated),
    )

def _entry(e: LedgerEntry) -> LedgerEntryRead:
    return LedgerEntryRead(
        id=e.entry_id, user_id=e.user_id, kind=e.kind, amount=e.amount, source=e.source,
        description=e.description, metadata=e.details, created_at=_utc(e.created_at),
    )

def _definition(d: AchievementDefinition) -> AchievementDefinitionRead:
    return AchievementDefinitionRead(
        id=d.id, name=d.name, description=d.description, threshold_steps=d.threshold_steps,
        reward_credits=d.reward_credits, is_active=d.is_active,
    )

def _progress(p: AchievementProgress) -> AchievementProgressRead:
    return AchievementProgressRead(
        user_id=p.user_id, achievement_id=p.achievement_id, progress_percent=p.progress_percent,
        is_completed=p.is_completed, completed_at=_utc(p.completed_at),
    )

def _reward(r: Reward) -> RewardRead:
    return RewardRead(
        id=r.id, name=r.name, description=r.description, type=r.type, category=r.category, cost=r.cost,
        quantity=r.quantity, user_limit=r.user_limit, start_date=_utc(r.start_date), end_date=_utc(r.end_date),
        physical_shipping=r.physical_shipping, instructions=r.instructions, is_active=r.is_active,
        redeemed_count=r.redeemed_count, created_at=_utc(r.created_at),
    )

def _redemption(r: Redemption) -> RedemptionRead:
    return RedemptionRead(
        id=r.id, user_id=r.user_id, reward_id=r.reward_id, cost=r.cost, status=r.status,
        fulfillment_code=r.fulfillment_code, redeemed_at=_utc(r.redeemed_at),
        fulfilled_at=_utc(r.fulfilled_at), updated_at=_utc(r.updated_at),
    )


class _SqlRepository:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._sm = session_maker

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self._sm() as db:
            try:
                yield db
            except IntegrityError as exc:
                await db.rollback()
                raise ConflictError(f"{type(self).__name__}: concurrent write collided") from exc
            except SQLAlchemyError as exc:
                await db.rollback()
                logger.exception("storage failure in %s", type(self).__name__)
                raise InternalError("Storage failure", exc) from exc


class SqlLedgerStore(_SqlRepository):
    async def get_account(self, user_id: str) -> AccountRead:
        async with self._session() as db:
            return _account(await db.get(Account, user_id), user_id)

    async def credit(self, user_id, amount, kind, source, description, entry_id, metadata=None):
        return await self._apply(user_id, amount, kind, source, description, entry_id, metadata, debit=False)

    async def debit(self, user_id, amount, kind, source, description, entry_id, metadata=None):
        return await self._apply(user_id, amount, kind, source, description, entry_id, metadata, debit=True)

    async def _apply(self, user_id, amount, kind, source, description, entry_id, metadata, *, debit: bool):
        async with self._session() as db:
            seen = (await db.execute(
                select(LedgerEntry.seq).where(LedgerEntry.entry_id == entry_id)
            )).scalar_one_or_none()
            if seen is not None:
                return _account(await db.get(Account, user_id), user_id)

            if await db.get(Account, user_id) is None:
                db.add(Account(user_id=user_id, available_credits=0, lifetime_earned=0, lifetime_spent=0, version=0))
                await db.flush()

            now = utcnow()
            stmt = update(Account).where(Account.user_id == user_id)
            if debit:
                stmt = stmt.where(Account.available_credits >= amount).values(
                    available_credits=Account.available_credits - amount,
                    lifetime_spent=Account.lifetime_spent + amount,
                )
            else:
                stmt = stmt.values(
                    available_credits=Account.available_credits + amount,
                    lifetime_earned=Account.lifetime_earned + amount,
                )
            stmt = stmt.values(version=Account.version + 1, last_updated=now)
            res = await db.execute(stmt.execution_options(synchronize_session=False))
            if res.rowcount == 0:
                available = (await db.execute(
                    select(Account.available_credits).where(Account.user_id == user_id)
                )).scalar_one()
                await db.rollback()
                raise InsufficientCreditsError(available, amount)

            db.add(LedgerEntry(
                entry_id=entry_id, user_id=user_id, kind=kind, amount=amount, source=source,
                description=description, details=metadata, created_at=now,
            ))
            await db.flush()
            acc = (await db.execute(
                select(Account).where(Account.user_id == user_id).execution_options(populate_existing=True)
            )).scalar_one()
            out = _account(acc, user_id)
            await db.commit()
            return out

    async def list_entries(self, user_id: str, kind: EntryKind | None, limit: int, offset: int):
        async with self._session() as db:
            conds = [LedgerEntry.user_id == user_id]
            if kind is not None:
                conds.append(LedgerEntry.kind == kind)
            total = (await db.execute(select(func.count()).select_from(LedgerEntry).where(*conds))).scalar_one()
            rows = (await db.execute(
                select(LedgerEntry).where(*conds).order_by(LedgerEntry.seq.desc()).limit(limit).offset(offset)
            )).scalars().all()
            return [_entry(e) for e in rows], total

    async def sum_entries(self, user_id: str, source: str, id_prefix: str) -> int:
        async with self._session() as db:
            total = (await db.execute(
                select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
                    LedgerEntry.user_id == user_id,
                    LedgerEntry.source == source,
                    LedgerEntry.entry_id.startswith(id_prefix, autoescape=True),
                )
            )).scalar_one()
            return int(total)


class SqlStepRepository(_SqlRepository):
    async def get_day(self, user_id: str, day: date) -> int:
        async with self._session() as db:
            steps = (await db.execute(
                select(DailySteps.steps).where(DailySteps.user_id == user_id, DailySteps.day == day)
            )).scalar_one_or_none()
            return steps or 0

    async def record_day(self, user_id: str, day: date, steps: int) -> int:
        async with self._session() as db:
            row = (await db.execute(
                select(DailySteps).where(DailySteps.user_id == user_id, DailySteps.day == day)
            )).scalar_one_or_none()
            if row is None:
                db.add(DailySteps(user_id=user_id, day=day, steps=steps))
                await db.commit()
                return steps
            best = max(row.steps, steps)
            await db.execute(
                update(DailySteps)
                .where(DailySteps.id == row.id, DailySteps.steps < steps)
                .values(steps=steps, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return best


class SqlAchievementRepository(_SqlRepository):
    async def list_definitions(self, active_only: bool = True):
        async with self._session() as db:
            q = select(AchievementDefinition).order_by(AchievementDefinition.threshold_steps, AchievementDefinition.id)
            if active_only:
                q = q.where(AchievementDefinition.is_active.is_(True))
            return [_definition(d) for d in (await db.execute(q)).scalars().all()]

    async def upsert_definition(self, definition):
        async with self._session() as db:
            d = await db.get(AchievementDefinition, definition.id)
            if d is None:
                d = AchievementDefinition(id=definition.id)
                db.add(d)
            d.name = definition.name
            d.description = definition.description
            d.threshold_steps = definition.threshold_steps
            d.reward_credits = definition.reward_credits
            d.is_active = definition.is_active
            await db.commit()
            return _definition(d)

    async def get_progress(self, user_id: str):
        async with self._session() as db:
            rows = (await db.execute(
                select(AchievementProgress).where(AchievementProgress.user_id == user_id)
            )).scalars().all()
            return {p.achievement_id: _progress(p) for p in rows}

    async def save_progress(self, progress):
        async with self._session() as db:
            p = (await db.execute(select(AchievementProgress).where(
                AchievementProgress.user_id == progress.user_id,
                AchievementProgress.achievement_id == progress.achievement_id,
            ))).scalar_one_or_none()
            if p is None:
                p = AchievementProgress(user_id=progress.user_id, achievement_id=progress.achievement_id)
                db.add(p)
            elif p.is_completed:
                # completion is terminal
                return _progress(p)
            p.progress_percent = progress.progress_percent
            p.is_completed = progress.is_completed
            p.completed_at = progress.completed_at
            await db.commit()
            return _progress(p)


class SqlRewardRepository(_SqlRepository):
    async def get(self, reward_id: str) -> RewardRead | None:
        async with self._session() as db:
            r = await db.get(Reward, reward_id)
            return _reward(r) if r else None

    async def list_all(self, category: RewardCategory | None = None, type: RewardType | None = None):
        async with self._session() as db:
            q = select(Reward)
            if category is not None:
                q = q.where(Reward.category == category)
            if type is not None:
                q = q.where(Reward.type == type)
            return [_reward(r) for r in (await db.execute(q)).scalars().all()]

    async def add(self, reward: RewardRead) -> RewardRead:
        async with self._session() as db:
            r = Reward(
                id=reward.id, name=reward.name, description=reward.description, type=reward.type,
                category=reward.category, cost=reward.cost, quantity=reward.quantity, user_limit=reward.user_limit,
                start_date=reward.start_date, end_date=reward.end_date, physical_shipping=reward.physical_shipping,
                instructions=reward.instructions, is_active=reward.is_active, redeemed_count=reward.redeemed_count,
                created_at=reward.created_at,
            )
            db.add(r)
            await db.commit()
            return _reward(r)

    async def reserve(self, reward_id: str) -> bool:
        async with self._session() as db:
            res = await db.execute(
                update(Reward)
                .where(Reward.id == reward_id)
                .where((Reward.quantity.is_(None)) | (Reward.redeemed_count < Reward.quantity))
                .values(redeemed_count=Reward.redeemed_count + 1)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return res.rowcount == 1

    async def release(self, reward_id: str) -> None:
        async with self._session() as db:
            await db.execute(
                update(Reward)
                .where(Reward.id == reward_id, Reward.redeemed_count > 0)
                .values(redeemed_count=Reward.redeemed_count - 1)
                .execution_options(synchronize_session=False)
            )
            await db.commit()


class SqlRedemptionRepository(_SqlRepository):
    async def add(self, redemption: RedemptionRead) -> RedemptionRead:
        async with self._session() as db:
            r = Redemption(
                id=redemption.id, user_id=redemption.user_id, reward_id=redemption.reward_id,
                cost=redemption.cost, status=redemption.status, fulfillment_code=redemption.fulfillment_code,
                redeemed_at=redemption.redeemed_at, fulfilled_at=redemption.fulfilled_at,
                updated_at=redemption.updated_at or redemption.redeemed_at,
            )
            db.add(r)
            await db.commit()
            return _redemption(r)

    async def get(self, redemption_id: str) -> RedemptionRead | None:
        async with self._session() as db:
            r = await db.get(Redemption, redemption_id)
            return _redemption(r) if r else None

    async def count_active(self, user_id: str, reward_id: str) -> int:
        async with self._session() as db:
            return (await db.execute(
                select(func.count()).select_from(Redemption).where(
                    Redemption.user_id == user_id,
                    Redemption.reward_id == reward_id,
                    Redemption.status.in_(list(ACTIVE_REDEMPTION_STATUSES)),
                )
            )).scalar_one()

    async def list_for_user(self, user_id: str, status: RedemptionStatus | None, limit: int, offset: int):
        async with self._session() as db:
            conds = [Redemption.user_id == user_id]
            if status is not None:
                conds.append(Redemption.status == status)
            total = (await db.execute(select(func.count()).select_from(Redemption).where(*conds))).scalar_one()
            rows = (await db.execute(
                select(Redemption).where(*conds)
                .order_by(Redemption.redeemed_at.desc(), Redemption.id)
                .limit(limit).offset(offset)
            )).scalars().all()
            return [_redemption(r) for r in rows], total

    async def update_status(self, redemption_id, expected, status, fulfilled_at=None, fulfillment_code=None):
        async with self._session() as db:
            values: dict = {"status": status, "updated_at": utcnow()}
            if fulfilled_at is not None:
                values["fulfilled_at"] = fulfilled_at
            if fulfillment_code is not None:
                values["fulfillment_code"] = fulfillment_code
            res = await db.execute(
                update(Redemption)
                .where(Redemption.id == redemption_id, Redemption.status == expected)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 0:
                await db.rollback()
                return None
            await db.commit()
            r = (await db.execute(
                select(Redemption).where(Redemption.id == redemption_id).execution_options(populate_existing=True)
            )).scalar_one()
            return _redemption(r)

    async def list_stale(self, before: datetime) -> list[RedemptionRead]:
        async with self._session() as db:
            rows = (await db.execute(
                select(Redemption).where(
                    Redemption.status.in_([RedemptionStatus.PENDING, RedemptionStatus.PROCESSING]),
                    Redemption.redeemed_at < before,
                ).order_by(Redemption.redeemed_at)
            )).scalars().all()
            return [_redemption(r) for r in rows]
