from __future__ import annotations

import enum
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterator, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from core.database import KeyedLocks
from models.tables import Account, LedgerEntry

logger = logging.getLogger(__name__)


class EntryKind(str, enum.Enum):
    PURCHASE = "PURCHASE"
    BONUS = "BONUS"
    MONTHLY_GRANT = "MONTHLY_GRANT"
    USAGE = "USAGE"


@dataclass(frozen=True)
class AccountSnapshot:
    id: str
    balance: int
    total_purchased: int
    total_used: int


@dataclass(frozen=True)
class EntrySnapshot:
    id: int
    account_id: str
    amount: int
    kind: EntryKind
    description: str
    balance_after: int
    reference: Optional[str]
    metadata: dict[str, Any]
    created_at: datetime


def _account_snapshot(account: Account) -> AccountSnapshot:
    return AccountSnapshot(
        id=account.id,
        balance=account.balance,
        total_purchased=account.total_purchased,
        total_used=account.total_used,
    )


def _entry_snapshot(entry: LedgerEntry) -> EntrySnapshot:
    return EntrySnapshot(
        id=entry.id,
        account_id=entry.account_id,
        amount=entry.amount,
        kind=EntryKind(entry.kind),
        description=entry.description,
        balance_after=entry.balance_after,
        reference=entry.reference,
        metadata=dict(entry.entry_metadata or {}),
        created_at=entry.created_at,
    )


class AccountTxn:
    """The account row plus its ledger, inside one open transaction."""

    def __init__(self, session: Session, account: Account) -> None:
        self.session = session
        self.account = account

    @property
    def balance(self) -> int:
        return self.account.balance

    def append(
        self,
        amount: int,
        kind: EntryKind,
        description: str,
        metadata: Optional[dict[str, Any]] = None,
        reference: Optional[str] = None,
    ) -> EntrySnapshot:
        new_balance = self.account.balance + amount
        if new_balance < 0:
            raise ValueError("balance would go negative")

        self.account.balance = new_balance
        if kind in (EntryKind.PURCHASE, EntryKind.BONUS):
            self.account.total_purchased += amount
        elif kind is EntryKind.USAGE:
            self.account.total_used -= amount

        entry = LedgerEntry(
            account_id=self.account.id,
            amount=amount,
            kind=kind.value,
            description=description[:255],
            balance_after=new_balance,
            reference=reference,
            entry_metadata=dict(metadata or {}),
        )
        self.session.add(entry)
        self.session.flush()
        return _entry_snapshot(entry)

    def find_reference(self, reference: str) -> Optional[EntrySnapshot]:
        entry = self.session.execute(
            select(LedgerEntry).where(LedgerEntry.reference == reference)
        ).scalar_one_or_none()
        return _entry_snapshot(entry) if entry else None

    def count_kind(self, kind: EntryKind) -> int:
        return self.session.execute(
            select(func.count(LedgerEntry.id)).where(
                LedgerEntry.account_id == self.account.id,
                LedgerEntry.kind == kind.value,
            )
        ).scalar_one()

    def snapshot(self) -> AccountSnapshot:
        return _account_snapshot(self.account)


AccountInitializer = Callable[[AccountTxn], None]


class BalanceStore:
    """Durable balances and the append-only ledger behind them.

    All mutation goes through :meth:`transaction`, which serializes work per
    account (process lock plus row lock) and commits or rolls back as a unit.
    """

    def __init__(self, session_factory: sessionmaker, on_create: Optional[AccountInitializer] = None) -> None:
        self._session_factory = session_factory
        self._locks = KeyedLocks()
        self._on_create = on_create

    @contextmanager
    def transaction(self, account_id: str, create: bool = True) -> Iterator[AccountTxn]:
        with self._locks.hold(account_id):
            if create:
                self._ensure_account(account_id)
            with self._session_factory.begin() as session:
                account = session.execute(
                    select(Account).where(Account.id == account_id).with_for_update()
                ).scalar_one_or_none()
                if account is None:
                    raise LookupError(account_id)
                yield AccountTxn(session, account)

    def get_account(self, account_id: str) -> Optional[AccountSnapshot]:
        with self._session_factory() as session:
            account = session.get(Account, account_id)
            return _account_snapshot(account) if account else None

    def ensure_account(self, account_id: str) -> AccountSnapshot:
        with self._locks.hold(account_id):
            self._ensure_account(account_id)
        snapshot = self.get_account(account_id)
        if snapshot is None:
            raise LookupError(account_id)
        return snapshot

    def entries(self, account_id: str, limit: Optional[int] = None, offset: int = 0, newest_first: bool = True) -> list[EntrySnapshot]:
        order = (LedgerEntry.id.desc(),) if newest_first else (LedgerEntry.id.asc(),)
        stmt = select(LedgerEntry).where(LedgerEntry.account_id == account_id).order_by(*order).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._session_factory() as session:
            return [_entry_snapshot(row) for row in session.execute(stmt).scalars()]

    def count_entries(self, account_id: str) -> int:
        with self._session_factory() as session:
            return session.execute(
                select(func.count(LedgerEntry.id)).where(LedgerEntry.account_id == account_id)
            ).scalar_one()

    def find_reference(self, reference: str) -> Optional[EntrySnapshot]:
        with self._session_factory() as session:
            entry = session.execute(
                select(LedgerEntry).where(LedgerEntry.reference == reference)
            ).scalar_one_or_none()
            return _entry_snapshot(entry) if entry else None

    def _ensure_account(self, account_id: str) -> None:
        with self._session_factory() as session:
            if session.get(Account, account_id) is not None:
                return
        try:
            with self._session_factory.begin() as session:
                account = Account(id=account_id, balance=0, total_purchased=0, total_used=0)
                session.add(account)
                session.flush()
                if self._on_create is not None:
                    self._on_create(AccountTxn(session, account))
        except IntegrityError:
            # Another process created it first.
            logger.debug("account %s created concurrently", account_id)
            return
        logger.info("created account %s", account_id)
