from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from deltas import DeltaApplicator, compute_deltas
from errors import NotFoundError, PersistenceFailure, ValidationFailure
from models import (
    Account,
    AccountSnapshot,
    IncomeEntry,
    IncomeEntryType,
    Profile,
    SnapshotSource,
    Transaction,
)
from reconciliation import (
    ReconciliationEngine,
    account_transaction,
    should_auto_reconcile,
)
from schemas import AccountIn, IncomeEntryIn, SnapshotIn, TransactionIn, TransferIn
from snapshots import SnapshotStore


logger = logging.getLogger(__name__)


def get_current_user_id() -> int:
    return 1


def reconcile_automated_accounts(session: Session) -> dict[str, int]:
    """Re-derive income snapshots for every account whose owner opted in.

    A failing account is logged and skipped; the next run retries it.
    """
    rows = session.execute(
        select(Account.id, Account.user_id)
        .join(Profile, Profile.id == Account.user_id)
        .where(Profile.auto_adjust_balances_from_income.is_(True))
        .order_by(Account.user_id, Account.id)
    ).all()
    engine = ReconciliationEngine(session)
    results: dict[str, int] = {}
    for row in rows:
        try:
            results[row.id] = len(engine.reconcile(row.id, row.user_id))
        except (NotFoundError, PersistenceFailure) as exc:
            logger.warning(f"reconcile_skipped: account_id={row.id} error={exc}")
    return results


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(or_(Account.user_id == self.user_id, Account.is_shared.is_(True)))
            .order_by(Account.name, Account.id)
        )
        return list(self.session.scalars(stmt).all())

    def get(self, account_id: str) -> Account:
        account = self.session.get(Account, account_id)
        if not account or (account.user_id != self.user_id and not account.is_shared):
            raise NotFoundError("Account not found")
        return account

    def create(self, data: AccountIn) -> Account:
        existing = self.session.scalar(
            select(Account).where(
                Account.user_id == self.user_id,
                func.lower(Account.name) == data.name.strip().lower(),
            )
        )
        if existing:
            raise ValidationFailure("Account with this name already exists")
        account = Account(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            institution=data.institution,
            is_shared=data.is_shared,
            notes=data.notes,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def delete(self, account_id: str) -> None:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFoundError("Account not found")
        self.session.delete(account)
        self.session.commit()


class SnapshotService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.store = SnapshotStore(session)
        self.engine = ReconciliationEngine(session)

    def list_for_account(self, account_id: str) -> list[AccountSnapshot]:
        AccountService(self.session, self.user_id).get(account_id)
        return self.store.list_for_account(account_id)

    def record(self, account_id: str, data: SnapshotIn) -> AccountSnapshot:
        AccountService(self.session, self.user_id).get(account_id)
        with account_transaction(self.session, account_id):
            if data.balance_adjustment_cents is not None:
                latest = self.store.latest(account_id)
                if not latest:
                    raise NotFoundError("No existing balance snapshot found to adjust")
                balance = int(latest.balance_cents) + data.balance_adjustment_cents
            else:
                balance = data.balance_cents
            snapshot = self.store.upsert(
                account_id,
                self.user_id,
                data.snapshot_date,
                balance,
                data.note,
                source=SnapshotSource.manual,
            )
            if should_auto_reconcile(self.session, account_id, self.user_id):
                self.engine.rebuild(account_id, self.user_id)
        self.session.refresh(snapshot)
        return snapshot

    def delete(self, snapshot_id: int) -> None:
        snapshot = self.session.get(AccountSnapshot, snapshot_id)
        if not snapshot:
            raise NotFoundError("Balance snapshot not found")
        AccountService(self.session, self.user_id).get(snapshot.account_id)
        if snapshot.source != SnapshotSource.manual:
            raise ValidationFailure(
                "Income snapshots are derived and cannot be deleted directly"
            )
        account_id = snapshot.account_id
        with account_transaction(self.session, account_id):
            self.session.delete(snapshot)
            self.session.flush()
            if should_auto_reconcile(self.session, account_id, self.user_id):
                self.engine.rebuild(account_id, self.user_id)


class IncomeService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.engine = ReconciliationEngine(session)

    def list_for_account(self, account_id: str) -> list[IncomeEntry]:
        AccountService(self.session, self.user_id).get(account_id)
        stmt = (
            select(IncomeEntry)
            .where(IncomeEntry.account_id == account_id)
            .order_by(IncomeEntry.received_date.desc(), IncomeEntry.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def get(self, entry_id: int) -> IncomeEntry:
        entry = self.session.get(IncomeEntry, entry_id)
        if not entry or entry.user_id != self.user_id:
            raise NotFoundError("Income entry not found")
        return entry

    def create(self, data: IncomeEntryIn) -> IncomeEntry:
        AccountService(self.session, self.user_id).get(data.account_id)
        entry = IncomeEntry(
            user_id=self.user_id,
            account_id=data.account_id,
            entry_type=data.entry_type,
            amount_cents=data.amount_cents,
            received_date=data.received_date,
            source=_clean(data.source),
            note=_clean(data.note),
        )
        self.session.add(entry)
        self.session.commit()
        self.session.refresh(entry)
        self._sync_accounts({entry.account_id})
        return entry

    def update(self, entry_id: int, data: IncomeEntryIn) -> IncomeEntry:
        entry = self.get(entry_id)
        if data.account_id != entry.account_id:
            AccountService(self.session, self.user_id).get(data.account_id)
        previous_account_id = entry.account_id
        entry.account_id = data.account_id
        entry.entry_type = data.entry_type
        entry.amount_cents = data.amount_cents
        entry.received_date = data.received_date
        entry.source = _clean(data.source)
        entry.note = _clean(data.note)
        self.session.commit()
        self.session.refresh(entry)
        self._sync_accounts({previous_account_id, entry.account_id})
        return entry

    def delete(self, entry_id: int) -> None:
        entry = self.get(entry_id)
        account_id = entry.account_id
        self.session.delete(entry)
        self.session.commit()
        self._sync_accounts({account_id})

    def _sync_accounts(self, account_ids: set[str]) -> None:
        for account_id in sorted(account_ids):
            self.engine.reconcile_if_automated(account_id, self.user_id)


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.deltas = DeltaApplicator(session)

    def get(self, transaction_id: int, *, include_deleted: bool = False) -> Transaction:
        stmt = select(Transaction).where(
            Transaction.user_id == self.user_id, Transaction.id == transaction_id
        )
        if not include_deleted:
            stmt = stmt.where(Transaction.deleted_at.is_(None))
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def list(self, paid_by: Optional[str] = None, limit: int = 200) -> list[Transaction]:
        stmt = select(Transaction).where(
            Transaction.user_id == self.user_id, Transaction.deleted_at.is_(None)
        )
        if paid_by is not None:
            stmt = stmt.where(Transaction.paid_by == paid_by)
        stmt = stmt.order_by(Transaction.date.desc(), Transaction.id.desc()).limit(limit)
        return list(self.session.scalars(stmt).all())

    def create(self, data: TransactionIn) -> Transaction:
        paid_by = _clean(data.paid_by)
        deltas = compute_deltas(None, paid_by, 0, data.amount_cents)
        self._check_accounts(deltas)

        txn = Transaction(
            user_id=self.user_id,
            date=data.date,
            amount_cents=data.amount_cents,
            description=data.description.strip(),
            paid_by=paid_by,
        )
        self.session.add(txn)
        self.session.flush()
        self._apply_charge(deltas, f"Expense: {txn.description}")
        self.session.refresh(txn)
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        paid_by = _clean(data.paid_by)
        deltas = compute_deltas(
            txn.paid_by, paid_by, txn.amount_cents, data.amount_cents
        )
        self._check_accounts(deltas)

        txn.date = data.date
        txn.amount_cents = data.amount_cents
        txn.description = data.description.strip()
        txn.paid_by = paid_by
        self.session.flush()
        self._apply_charge(deltas, f"Edited expense: {txn.description}")
        self.session.refresh(txn)
        return txn

    def soft_delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        deltas = compute_deltas(txn.paid_by, None, txn.amount_cents, 0)
        self._check_accounts(deltas)

        txn.deleted_at = datetime.utcnow()
        self.session.flush()
        self._apply_charge(deltas, f"Deleted expense: {txn.description}")

    def restore(self, transaction_id: int) -> None:
        txn = self.get(transaction_id, include_deleted=True)
        if txn.deleted_at is None:
            return
        deltas = compute_deltas(None, txn.paid_by, 0, txn.amount_cents)
        self._check_accounts(deltas)

        txn.deleted_at = None
        self.session.flush()
        self._apply_charge(deltas, f"Restored expense: {txn.description}")

    def _check_accounts(self, deltas: dict[str, int]) -> None:
        # A paid-by account must be one the acting user can see.
        accounts = AccountService(self.session, self.user_id)
        for account_id in sorted(deltas):
            accounts.get(account_id)

    def _apply_charge(self, deltas: dict[str, int], note: str) -> None:
        self.deltas.apply_deltas(deltas, self.user_id, note)
        # apply_deltas commits when an account was charged; otherwise the edit
        # is still pending.
        self.session.commit()


class TransferService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.engine = ReconciliationEngine(session)

    def record(self, data: TransferIn) -> tuple[Transaction, IncomeEntry]:
        to_account = AccountService(self.session, self.user_id).get(data.to_account_id)
        expense = Transaction(
            user_id=self.user_id,
            date=data.received_date,
            amount_cents=data.amount_cents,
            description=data.description.strip(),
            paid_by=None,
        )
        income = IncomeEntry(
            user_id=self.user_id,
            account_id=to_account.id,
            entry_type=IncomeEntryType.income,
            amount_cents=data.amount_cents,
            received_date=data.received_date,
            source=f"Transfer from {data.from_account_name or 'personal account'}",
            note=_clean(data.note),
        )
        self.session.add_all([expense, income])
        self.session.commit()
        self.session.refresh(expense)
        self.session.refresh(income)
        self.engine.reconcile_if_automated(to_account.id, self.user_id)
        return expense, income


class PreferenceService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self) -> bool:
        profile = self.session.get(Profile, self.user_id)
        return bool(profile and profile.auto_adjust_balances_from_income)

    def set(self, enabled: bool) -> bool:
        profile = self.session.get(Profile, self.user_id)
        if not profile:
            profile = Profile(id=self.user_id)
            self.session.add(profile)
        profile.auto_adjust_balances_from_income = enabled
        self.session.commit()

        if enabled:
            results = ReconciliationEngine(self.session).reconcile_owned_accounts(
                self.user_id
            )
            logger.info(
                f"auto_adjust_enabled: user_id={self.user_id} accounts={len(results)}"
            )
        return enabled


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None
