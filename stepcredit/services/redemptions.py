"""
Reward redemption workflow and redemption lifecycle.

``redeem`` runs the availability checks in a fixed order so each failure
maps to one error, then takes an inventory slot and debits the user. The
slot reservation and the debit are both atomic conditional updates; the
checks before them only produce precise errors. Work is held under the
user's lock from the limit check onwards, so two requests from the same
user can not both squeeze under ``user_limit``.
"""
from __future__ import annotations
import logging
import secrets
import string
import uuid
from datetime import datetime, timedelta
from typing import Callable

from ..core.errors import (
    ConflictError, ExpiredError, InsufficientCreditsError, InvalidStatusTransitionError,
    NotFoundError, OutOfStockError, UserLimitError, ValidationError,
)
from ..core.locks import KeyLock
from ..models import EntryKind, RedemptionStatus, utcnow
from ..repositories.interfaces import RedemptionRepository
from ..schemas import RedemptionRead
from .catalog import RewardCatalog
from .credits import Ledger, MAX_PAGE_SIZE

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[RedemptionStatus, frozenset[RedemptionStatus]] = {
    RedemptionStatus.PENDING: frozenset({
        RedemptionStatus.PROCESSING, RedemptionStatus.FULFILLED,
        RedemptionStatus.CANCELLED, RedemptionStatus.EXPIRED,
    }),
    RedemptionStatus.PROCESSING: frozenset({
        RedemptionStatus.FULFILLED, RedemptionStatus.CANCELLED, RedemptionStatus.EXPIRED,
    }),
    RedemptionStatus.FULFILLED: frozenset(),
    RedemptionStatus.CANCELLED: frozenset(),
    RedemptionStatus.EXPIRED: frozenset(),
}

REFUND_STATUSES = frozenset({RedemptionStatus.CANCELLED, RedemptionStatus.EXPIRED})

_CODE_ALPHABET = string.digits + string.ascii_uppercase

def _base36(n: int) -> str:
    out = ""
    while True:
        n, rem = divmod(n, 36)
        out = _CODE_ALPHABET[rem] + out
        if n == 0:
            return out

def generate_fulfillment_code(now: datetime) -> str:
    """``SC`` + base-36 millisecond timestamp + 6 random characters, all upper case."""
    stamp = _base36(int(now.timestamp() * 1000))
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(6))
    return f"SC{stamp}{suffix}"

def debit_entry_id(redemption_id: str) -> str:
    return f"redeem:{redemption_id}"

def refund_entry_id(redemption_id: str) -> str:
    return f"refund:{redemption_id}"


class RedemptionWorkflow:
    def __init__(
        self,
        ledger: Ledger,
        catalog: RewardCatalog,
        redemptions: RedemptionRepository,
        locks: KeyLock,
        clock: Callable[[], datetime] = utcnow,
        publish: Callable[[str, dict], None] | None = None,
        subject: str = "redemptions.updated",
        expiry_days: int = 30,
    ) -> None:
        self._ledger = ledger
        self._catalog = catalog
        self._redemptions = redemptions
        self._locks = locks
        self._clock = clock
        self._publish = publish
        self._subject = subject
        self._expiry = timedelta(days=expiry_days)

    async def redeem(self, user_id: str, reward_id: str) -> RedemptionRead:
        now = self._clock()
        try:
            reward = await self._catalog.get(reward_id)
        except NotFoundError:
            logger.info("redeem of unknown reward %s", reward_id, extra={"user_id": user_id, "reward_id": reward_id})
            raise
        if not reward.is_active or (reward.start_date is not None and reward.start_date > now):
            raise NotFoundError("Reward", reward_id)
        if reward.end_date is not None and reward.end_date < now:
            raise ExpiredError(reward_id)
        if reward.remaining is not None and reward.remaining <= 0:
            raise OutOfStockError(reward_id)

        async with self._locks.hold(f"user:{user_id}"):
            if reward.user_limit is not None:
                used = await self._redemptions.count_active(user_id, reward_id)
                if used >= reward.user_limit:
                    raise UserLimitError(reward_id, reward.user_limit)

            account = await self._ledger.get_balance(user_id)
            if account.available_credits < reward.cost:
                raise InsufficientCreditsError(account.available_credits, reward.cost)

            if not await self._catalog.reserve(reward_id):
                raise OutOfStockError(reward_id)

            redemption_id = uuid.uuid4().hex
            try:
                await self._ledger.debit(
                    user_id, reward.cost, EntryKind.SPENT, "reward_redemption",
                    f"Redeemed {reward.name}",
                    entry_id=debit_entry_id(redemption_id),
                    metadata={"reward_id": reward_id, "redemption_id": redemption_id},
                )
            except Exception:
                await self._catalog.release(reward_id)
                raise

            fulfil_now = not reward.physical_shipping
            redemption = RedemptionRead(
                id=redemption_id, user_id=user_id, reward_id=reward_id, cost=reward.cost,
                status=RedemptionStatus.FULFILLED if fulfil_now else RedemptionStatus.PENDING,
                fulfillment_code=generate_fulfillment_code(now) if fulfil_now else None,
                redeemed_at=now, fulfilled_at=now if fulfil_now else None, updated_at=now,
            )
            try:
                redemption = await self._redemptions.add(redemption)
            except Exception:
                logger.exception(
                    "storing redemption %s failed, refunding", redemption_id,
                    extra={"user_id": user_id, "reward_id": reward_id, "redemption_id": redemption_id},
                )
                await self._ledger.credit(
                    user_id, reward.cost, EntryKind.EARNED, "redemption_refund",
                    f"Refund for failed redemption of {reward.name}",
                    entry_id=refund_entry_id(redemption_id),
                    metadata={"reward_id": reward_id, "redemption_id": redemption_id},
                )
                await self._catalog.release(reward_id)
                raise

        logger.info(
            "reward %s redeemed by %s", reward_id, user_id,
            extra={"user_id": user_id, "reward_id": reward_id, "redemption_id": redemption.id,
                   "status": redemption.status.value},
        )
        self._emit(redemption)
        return redemption

    async def transition(self, redemption_id: str, status: RedemptionStatus) -> RedemptionRead:
        """Move a redemption along its lifecycle.

        Cancelling or expiring refunds the cost before the status is
        written, under the redemption's own lock. The refund entry id is
        fixed per redemption, so a retry after a failed status write pays
        nothing twice, and a failed refund leaves the redemption open for
        that retry.
        """
        async with self._locks.hold(f"redemption:{redemption_id}"):
            current = await self._redemptions.get(redemption_id)
            if current is None:
                raise NotFoundError("Redemption", redemption_id)
            if status not in ALLOWED_TRANSITIONS[current.status]:
                raise InvalidStatusTransitionError("redemption", current.status.value, status.value)

            if status in REFUND_STATUSES:
                await self._ledger.credit(
                    current.user_id, current.cost, EntryKind.EARNED, "redemption_refund",
                    f"Refund for {status.value} redemption",
                    entry_id=refund_entry_id(redemption_id),
                    metadata={"reward_id": current.reward_id, "redemption_id": redemption_id},
                )
            elif await self._ledger.credited_total(
                current.user_id, "redemption_refund", refund_entry_id(redemption_id),
            ):
                # refunded by an earlier cancel/expire whose status write failed
                raise ConflictError(f"Redemption {redemption_id} was refunded; finish cancelling it")

            now = self._clock()
            fulfilled_at = code = None
            if status == RedemptionStatus.FULFILLED:
                fulfilled_at = now
                code = current.fulfillment_code or generate_fulfillment_code(now)
            updated = await self._redemptions.update_status(
                redemption_id, current.status, status, fulfilled_at=fulfilled_at, fulfillment_code=code,
            )
            if updated is None:
                raise ConflictError(f"Redemption {redemption_id} was changed concurrently")

            if status in REFUND_STATUSES:
                await self._catalog.release(current.reward_id)

        logger.info(
            "redemption %s moved %s -> %s", redemption_id, current.status.value, status.value,
            extra={"user_id": current.user_id, "redemption_id": redemption_id, "status": status.value},
        )
        self._emit(updated)
        return updated

    async def expire_stale(self, now: datetime | None = None) -> int:
        """Expire pending/processing redemptions older than the expiry window; returns how many."""
        cutoff = (now or self._clock()) - self._expiry
        expired = 0
        for r in await self._redemptions.list_stale(cutoff):
            try:
                await self.transition(r.id, RedemptionStatus.EXPIRED)
            except (ConflictError, InvalidStatusTransitionError) as exc:
                # moved by someone else between listing and expiring
                logger.info("skip expiring %s: %s", r.id, exc.message, extra={"redemption_id": r.id})
                continue
            expired += 1
        if expired:
            logger.info("expired %d stale redemptions", expired)
        return expired

    async def list_redemptions(
        self, user_id: str, status: RedemptionStatus | None = None, limit: int = 20, offset: int = 0,
    ) -> tuple[list[RedemptionRead], int]:
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", field="limit")
        if offset < 0:
            raise ValidationError("offset must be non-negative", field="offset")
        return await self._redemptions.list_for_user(user_id, status, limit, offset)

    def _emit(self, r: RedemptionRead) -> None:
        if self._publish is None:
            return
        self._publish(self._subject, {
            "redemption_id": r.id, "user_id": r.user_id, "reward_id": r.reward_id,
            "status": r.status.value, "cost": r.cost,
        })
