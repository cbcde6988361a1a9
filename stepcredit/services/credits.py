from __future__ import annotations
import logging
import uuid

from ..core.errors import ValidationError
from ..core.retry import retry_on_conflict, MAX_RETRIES
from ..models import EntryKind, CREDIT_KINDS, DEBIT_KINDS
from ..repositories.interfaces import LedgerStore
from ..schemas import AccountRead, CreditBreakdown, LedgerEntryRead

logger = logging.getLogger(__name__)

STEPS_PER_CREDIT = 100
# (threshold, bonus), highest first; only the first match applies
BONUS_TIERS = ((10_000, 50), (5_000, 25), (1_000, 10))

MAX_PAGE_SIZE = 100

def _require_int(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer", field=field)
    return value

def compute_credits(steps: int) -> CreditBreakdown:
    """Credits a day's step count is worth: one per 100 steps plus the milestone bonus."""
    steps = _require_int(steps, "steps")
    if steps < 0:
        raise ValidationError("steps must be non-negative", field="steps")
    base = steps // STEPS_PER_CREDIT
    bonus = next((amount for threshold, amount in BONUS_TIERS if steps >= threshold), 0)
    return CreditBreakdown(base=base, bonus=bonus, total=base + bonus)


class Ledger:
    """Validated, retried access to a LedgerStore.

    Every mutation carries an entry id; callers that may replay a request
    pass a deterministic one, everyone else gets a fresh uuid.
    """

    def __init__(self, store: LedgerStore, max_retries: int = MAX_RETRIES) -> None:
        self._store = store
        self._retries = max_retries

    async def credit(
        self, user_id: str, amount: int, kind: EntryKind = EntryKind.EARNED, source: str = "manual",
        description: str = "", *, entry_id: str | None = None, metadata: dict | None = None,
    ) -> AccountRead:
        self._check(amount, kind, CREDIT_KINDS)
        account = await retry_on_conflict(
            self._store.credit, user_id, amount, kind, source, description or source,
            entry_id or uuid.uuid4().hex, metadata, max_retries=self._retries,
        )
        logger.info(
            "credited %s to %s", amount, user_id,
            extra={"user_id": user_id, "kind": kind.value, "amount": amount, "source": source},
        )
        return account

    async def debit(
        self, user_id: str, amount: int, kind: EntryKind = EntryKind.SPENT, source: str = "manual",
        description: str = "", *, entry_id: str | None = None, metadata: dict | None = None,
    ) -> AccountRead:
        self._check(amount, kind, DEBIT_KINDS)
        account = await retry_on_conflict(
            self._store.debit, user_id, amount, kind, source, description or source,
            entry_id or uuid.uuid4().hex, metadata, max_retries=self._retries,
        )
        logger.info(
            "debited %s from %s", amount, user_id,
            extra={"user_id": user_id, "kind": kind.value, "amount": amount, "source": source},
        )
        return account

    @staticmethod
    def _check(amount: int, kind: EntryKind, allowed: frozenset) -> None:
        amount = _require_int(amount, "amount")
        if amount <= 0:
            raise ValidationError("amount must be positive", field="amount")
        if kind not in allowed:
            raise ValidationError(f"entry kind {kind} not allowed here", field="kind")

    async def get_balance(self, user_id: str) -> AccountRead:
        return await self._store.get_account(user_id)

    async def list_transactions(
        self, user_id: str, kind: EntryKind | None = None, limit: int = 20, offset: int = 0,
    ) -> tuple[list[LedgerEntryRead], int]:
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", field="limit")
        if offset < 0:
            raise ValidationError("offset must be non-negative", field="offset")
        return await self._store.list_entries(user_id, kind, limit, offset)

    async def credited_total(self, user_id: str, source: str, id_prefix: str) -> int:
        return await self._store.sum_entries(user_id, source, id_prefix)

    async def spend(
        self, user_id: str, amount: int, description: str | None = None,
        reward_id: str | None = None, entry_id: str | None = None,
    ) -> AccountRead:
        return await self.debit(
            user_id, amount, EntryKind.SPENT, "reward_redemption",
            description or "Credits spent",
            entry_id=entry_id, metadata={"reward_id": reward_id} if reward_id else None,
        )

    async def adjust(self, user_id: str, delta: int, reason: str, entry_id: str | None = None) -> AccountRead:
        """Staff correction: positive delta grants a bonus, negative applies a penalty."""
        delta = _require_int(delta, "delta")
        if delta == 0:
            raise ValidationError("delta must be non-zero", field="delta")
        if delta > 0:
            return await self.credit(user_id, delta, EntryKind.BONUS, "manual_adjustment", reason, entry_id=entry_id)
        return await self.debit(user_id, -delta, EntryKind.PENALTY, "manual_adjustment", reason, entry_id=entry_id)
