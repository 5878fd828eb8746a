from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Union

from sqlalchemy.exc import IntegrityError

from core.config import Settings
from core.errors import InsufficientCredits, NotFound, ValidationError
from ledger.pricing import ActionKind, PricingTable
from ledger.store import AccountSnapshot, AccountTxn, BalanceStore, EntryKind, EntrySnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurchaseResult:
    purchase: EntrySnapshot
    bonus: Optional[EntrySnapshot]
    balance: int
    duplicate: bool = False

    @property
    def credits_granted(self) -> int:
        return self.purchase.amount + (self.bonus.amount if self.bonus else 0)


@dataclass(frozen=True)
class LedgerAudit:
    account_id: str
    balance: int
    ledger_sum: int
    entries: int
    broken_snapshots: tuple[int, ...] = ()

    @property
    def consistent(self) -> bool:
        return self.balance == self.ledger_sum and not self.broken_snapshots


class CreditMeter:
    """Prices actions and moves credits, one atomic ledger unit per call."""

    def __init__(self, store: BalanceStore, pricing: PricingTable, settings: Settings) -> None:
        self.store = store
        self.pricing = pricing
        self.bonus_percent = settings.first_purchase_bonus_percent
        self.monthly_grants = {
            "creator": settings.creator_monthly_credits,
            "pro": settings.pro_monthly_credits,
        }

    def cost(self, action: Union[ActionKind, str], params: dict[str, Any]) -> int:
        return self.pricing.cost(action, params)

    def balance(self, account_id: str) -> AccountSnapshot:
        return self.store.ensure_account(account_id)

    def history(self, account_id: str, limit: int = 50, offset: int = 0) -> list[EntrySnapshot]:
        return self.store.entries(account_id, limit=limit, offset=offset)

    def check_and_debit(
        self,
        account_id: str,
        amount: int,
        description: str,
        metadata: Optional[dict[str, Any]] = None,
        reference: Optional[str] = None,
    ) -> EntrySnapshot:
        _require_positive(amount)
        with self.store.transaction(account_id) as txn:
            if txn.balance < amount:
                logger.info("debit of %s refused for %s: balance %s", amount, account_id, txn.balance)
                raise InsufficientCredits(required=amount, available=txn.balance)
            entry = txn.append(-amount, EntryKind.USAGE, description, metadata, reference)
        logger.info("debited %s from %s, balance %s", amount, account_id, entry.balance_after)
        return entry

    def credit(
        self,
        account_id: str,
        amount: int,
        kind: EntryKind,
        description: str,
        metadata: Optional[dict[str, Any]] = None,
        reference: Optional[str] = None,
    ) -> EntrySnapshot:
        _require_positive(amount)
        kind = EntryKind(kind)
        if kind is EntryKind.PURCHASE:
            return self.purchase(account_id, amount, description, metadata, reference).purchase
        with self.store.transaction(account_id) as txn:
            entry = txn.append(amount, kind, description, metadata, reference)
        logger.info("credited %s %s to %s, balance %s", amount, kind.value, account_id, entry.balance_after)
        return entry

    def purchase(
        self,
        account_id: str,
        amount: int,
        description: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        reference: Optional[str] = None,
    ) -> PurchaseResult:
        """Credit a purchase, adding the first-purchase bonus in the same unit.

        A ``reference`` (for example ``order:<id>``) makes the call idempotent:
        replaying it returns the original entries with ``duplicate=True``.
        """
        _require_positive(amount)
        try:
            with self.store.transaction(account_id) as txn:
                if reference:
                    existing = txn.find_reference(reference)
                    if existing is not None:
                        return self._replayed_purchase(txn, existing)
                first = txn.count_kind(EntryKind.PURCHASE) == 0
                bonus_amount = amount * self.bonus_percent // 100 if first else 0
                purchase = txn.append(
                    amount,
                    EntryKind.PURCHASE,
                    description or f"Purchased {amount} credits",
                    {**(metadata or {}), "is_first_purchase": first},
                    reference,
                )
                bonus = None
                if bonus_amount > 0:
                    bonus = txn.append(
                        bonus_amount,
                        EntryKind.BONUS,
                        f"First purchase bonus ({self.bonus_percent}%)",
                        {"bonus_for": purchase.id, **_trace_fields(metadata)},
                        f"{reference}:bonus" if reference else None,
                    )
                balance = txn.balance
        except IntegrityError:
            if not reference:
                raise
            # Lost a cross-process race on the same reference.
            existing = self.store.find_reference(reference)
            if existing is None:
                raise
            with self.store.transaction(account_id) as txn:
                return self._replayed_purchase(txn, existing)
        logger.info(
            "purchase of %s credited to %s (bonus %s), balance %s",
            amount, account_id, bonus.amount if bonus else 0, balance,
        )
        return PurchaseResult(purchase=purchase, bonus=bonus, balance=balance)

    def refund(self, debit: EntrySnapshot, reason: str, reference: Optional[str] = None) -> EntrySnapshot:
        """Reverse a USAGE debit with a positive USAGE entry. Idempotent per reference."""
        if debit.kind is not EntryKind.USAGE or debit.amount >= 0:
            raise ValidationError("only usage debits can be reversed")
        reference = reference or f"reversal:{debit.id}"
        with self.store.transaction(debit.account_id) as txn:
            existing = txn.find_reference(reference)
            if existing is not None:
                return existing
            entry = txn.append(
                -debit.amount,
                EntryKind.USAGE,
                f"Refund: {reason}",
                {"reversal_of": debit.id, **_trace_fields(debit.metadata)},
                reference,
            )
        logger.warning("refunded %s to %s (%s)", entry.amount, debit.account_id, reason)
        return entry

    def grant_monthly(self, account_id: str, plan: str, now: Optional[datetime] = None) -> Optional[EntrySnapshot]:
        amount = self.monthly_grants.get(plan.lower(), 0)
        if amount <= 0:
            return None
        now = now or datetime.now(tz=timezone.utc)
        period = now.strftime("%Y-%m")
        reference = f"grant:{account_id}:{plan.lower()}:{period}"
        with self.store.transaction(account_id) as txn:
            existing = txn.find_reference(reference)
            if existing is not None:
                return existing
            return txn.append(
                amount,
                EntryKind.MONTHLY_GRANT,
                f"Monthly {plan.lower()} credits for {period}",
                {"plan": plan.lower(), "period": period},
                reference,
            )

    def audit(self, account_id: str) -> LedgerAudit:
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFound("Account not found")
        running = 0
        broken = []
        entries = self.store.entries(account_id, newest_first=False)
        for entry in entries:
            running += entry.amount
            if entry.balance_after != running:
                broken.append(entry.id)
        return LedgerAudit(
            account_id=account_id,
            balance=account.balance,
            ledger_sum=running,
            entries=len(entries),
            broken_snapshots=tuple(broken),
        )

    def _replayed_purchase(self, txn: AccountTxn, existing: EntrySnapshot) -> PurchaseResult:
        bonus = txn.find_reference(f"{existing.reference}:bonus")
        return PurchaseResult(purchase=existing, bonus=bonus, balance=txn.balance, duplicate=True)


def grant_starting_credits(amount: int):
    def _grant(txn: AccountTxn) -> None:
        if amount > 0:
            txn.append(amount, EntryKind.BONUS, "Starting credits", {"reason": "signup"})

    return _grant


def _require_positive(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("amount must be a positive integer")


def _trace_fields(metadata: Optional[dict[str, Any]]) -> dict[str, Any]:
    keys = ("order_id", "script_id", "dispatch_id")
    return {key: metadata[key] for key in keys if metadata and key in metadata}
