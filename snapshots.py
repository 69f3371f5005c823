from datetime import date
from typing import Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from models import AccountSnapshot, SnapshotSource


class SnapshotStore:
    """Dated balance rows per account, at most one per (account, day).

    Nothing here commits; callers own the unit of work.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def latest(
        self, account_id: str, source: Optional[SnapshotSource] = None
    ) -> Optional[AccountSnapshot]:
        # Walks ix_snapshot_account_date / ix_snapshot_account_source_date
        # backwards; the unique (account, day) key means no tie-break exists.
        stmt = select(AccountSnapshot).where(AccountSnapshot.account_id == account_id)
        if source is not None:
            stmt = stmt.where(AccountSnapshot.source == source)
        stmt = stmt.order_by(AccountSnapshot.snapshot_date.desc()).limit(1)
        return self.session.scalar(stmt)

    def for_date(self, account_id: str, snapshot_date: date) -> Optional[AccountSnapshot]:
        return self.session.scalar(
            select(AccountSnapshot).where(
                AccountSnapshot.account_id == account_id,
                AccountSnapshot.snapshot_date == snapshot_date,
            )
        )

    def list_for_account(
        self, account_id: str, *, newest_first: bool = True
    ) -> list[AccountSnapshot]:
        order = (
            AccountSnapshot.snapshot_date.desc()
            if newest_first
            else AccountSnapshot.snapshot_date.asc()
        )
        stmt = (
            select(AccountSnapshot)
            .where(AccountSnapshot.account_id == account_id)
            .order_by(order)
        )
        return list(self.session.scalars(stmt).all())

    def upsert(
        self,
        account_id: str,
        user_id: int,
        snapshot_date: date,
        balance_cents: int,
        note: Optional[str],
        source: SnapshotSource = SnapshotSource.manual,
    ) -> AccountSnapshot:
        existing = self.for_date(account_id, snapshot_date)
        if existing:
            existing.user_id = user_id
            existing.balance_cents = balance_cents
            existing.note = note
            existing.source = source
            self.session.flush()
            return existing

        snapshot = AccountSnapshot(
            account_id=account_id,
            user_id=user_id,
            snapshot_date=snapshot_date,
            balance_cents=balance_cents,
            note=note,
            source=source,
        )
        self.session.add(snapshot)
        self.session.flush()
        return snapshot

    def delete_by_source(self, account_id: str, source: SnapshotSource) -> int:
        result = self.session.execute(
            delete(AccountSnapshot)
            .where(
                AccountSnapshot.account_id == account_id,
                AccountSnapshot.source == source,
            )
            .execution_options(synchronize_session="fetch")
        )
        return int(result.rowcount or 0)

    def add_all(self, snapshots: Iterable[AccountSnapshot]) -> list[AccountSnapshot]:
        rows = list(snapshots)
        if rows:
            self.session.add_all(rows)
            self.session.flush()
        return rows
