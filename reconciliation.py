import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Iterator, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import NotFoundError, PersistenceFailure
from models import Account, AccountSnapshot, IncomeEntry, Profile, SnapshotSource
from snapshots import SnapshotStore


logger = logging.getLogger(__name__)

INCOME_SNAPSHOT_NOTE = "Income"

@dataclass
class _AccountLock:
    lock: threading.RLock = field(default_factory=threading.RLock)
    users: int = 0


_registry_guard = threading.Lock()
_account_locks: dict[str, _AccountLock] = {}


@contextmanager
def account_lock(account_id: str) -> Iterator[None]:
    """Serialize balance writes for one account within this process.

    Reentrant, so a delta application may rebuild income snapshots while
    holding it. An entry lives only while some thread holds or waits on it.
    Cross-process callers are serialized by the row lock taken in
    ``lock_account``.
    """
    with _registry_guard:
        entry = _account_locks.get(account_id)
        if entry is None:
            entry = _account_locks[account_id] = _AccountLock()
        entry.users += 1
    try:
        with entry.lock:
            yield
    finally:
        with _registry_guard:
            entry.users -= 1
            if entry.users == 0:
                del _account_locks[account_id]


def lock_account(session: Session, account_id: str) -> Account:
    # FOR UPDATE is a no-op on SQLite, whose writers are already serialized.
    account = session.scalar(
        select(Account).where(Account.id == account_id).with_for_update()
    )
    if not account:
        raise NotFoundError("Account not found")
    return account


@contextmanager
def account_transaction(session: Session, account_id: str) -> Iterator[Account]:
    """Lock one account and commit the work done inside the block.

    Store errors roll back and surface as ``PersistenceFailure``; anything
    else rolls back and propagates unchanged.
    """
    with account_lock(account_id):
        try:
            account = lock_account(session, account_id)
            yield account
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception(f"account_write_failed: account_id={account_id}")
            raise PersistenceFailure(
                f"Balance write failed for account {account_id}",
                account_id=account_id,
            ) from exc
        except Exception:
            session.rollback()
            raise


def get_account_owner_id(session: Session, account_id: str) -> Optional[int]:
    return session.scalar(select(Account.user_id).where(Account.id == account_id))


def is_income_auto_adjust_enabled(session: Session, user_id: int) -> bool:
    enabled = session.scalar(
        select(Profile.auto_adjust_balances_from_income).where(Profile.id == user_id)
    )
    return bool(enabled)


def should_auto_reconcile(session: Session, account_id: str, actor_user_id: int) -> bool:
    owner_id = get_account_owner_id(session, account_id)
    if owner_id is None or owner_id != actor_user_id:
        return False
    return is_income_auto_adjust_enabled(session, actor_user_id)


@dataclass(frozen=True)
class DerivedBalance:
    snapshot_date: date
    balance_cents: int


def daily_income_totals(entries: Iterable[tuple[date, int]]) -> dict[date, int]:
    totals: dict[date, int] = {}
    for received_date, amount_cents in entries:
        totals[received_date] = totals.get(received_date, 0) + int(amount_cents)
    return totals


def replay_income(
    checkpoint_balance_cents: int, totals: dict[date, int]
) -> list[DerivedBalance]:
    running = checkpoint_balance_cents
    derived: list[DerivedBalance] = []
    for day in sorted(totals):
        running += totals[day]
        derived.append(DerivedBalance(snapshot_date=day, balance_cents=running))
    return derived


class ReconciliationEngine:
    """Rebuilds income-derived snapshots from the latest manual checkpoint.

    Every derived row is recomputed from scratch on each call, so repeated
    calls with unchanged inputs converge on the same snapshot set and a failed
    call is repaired by the next successful one.
    """

    def __init__(self, session: Session) -> None:
        self.session = session
        self.store = SnapshotStore(session)

    def reconcile(self, account_id: str, actor_user_id: int) -> list[AccountSnapshot]:
        with account_transaction(self.session, account_id):
            rows = self.rebuild(account_id, actor_user_id)
        return rows

    def rebuild(self, account_id: str, actor_user_id: int) -> list[AccountSnapshot]:
        """Delete and re-derive income snapshots without committing."""
        removed = self.store.delete_by_source(account_id, SnapshotSource.income)

        checkpoint = self.store.latest(account_id, SnapshotSource.manual)
        if not checkpoint:
            logger.info(
                f"reconcile: account_id={account_id} checkpoint=none removed={removed}"
            )
            return []

        income_rows = self.session.execute(
            select(IncomeEntry.received_date, IncomeEntry.amount_cents)
            .where(
                IncomeEntry.account_id == account_id,
                IncomeEntry.received_date > checkpoint.snapshot_date,
            )
            .order_by(IncomeEntry.received_date.asc(), IncomeEntry.id.asc())
        ).all()

        derived = replay_income(
            int(checkpoint.balance_cents),
            daily_income_totals(
                (row.received_date, row.amount_cents) for row in income_rows
            ),
        )
        rows = self.store.add_all(
            AccountSnapshot(
                account_id=account_id,
                user_id=actor_user_id,
                snapshot_date=item.snapshot_date,
                balance_cents=item.balance_cents,
                note=INCOME_SNAPSHOT_NOTE,
                source=SnapshotSource.income,
            )
            for item in derived
        )
        logger.info(
            f"reconcile: account_id={account_id} "
            f"checkpoint={checkpoint.snapshot_date.isoformat()} "
            f"removed={removed} derived={len(rows)}"
        )
        return rows

    def reconcile_if_automated(
        self, account_id: str, actor_user_id: int
    ) -> Optional[list[AccountSnapshot]]:
        if not should_auto_reconcile(self.session, account_id, actor_user_id):
            return None
        return self.reconcile(account_id, actor_user_id)

    def reconcile_owned_accounts(self, user_id: int) -> dict[str, int]:
        account_ids = self.session.scalars(
            select(Account.id).where(Account.user_id == user_id).order_by(Account.id)
        ).all()
        results: dict[str, int] = {}
        for account_id in account_ids:
            results[account_id] = len(self.reconcile(account_id, user_id))
        return results
