import logging
import math
import re
from contextlib import ExitStack
from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from errors import NotFoundError, PersistenceFailure, ValidationFailure
from models import AccountSnapshot, SnapshotSource
from reconciliation import (
    ReconciliationEngine,
    account_lock,
    lock_account,
    should_auto_reconcile,
)
from snapshots import SnapshotStore


logger = logging.getLogger(__name__)

# Free-text "who paid" labels from before paid_by referenced accounts.
LEGACY_PAID_BY_VALUES = frozenset({"joint", "mano", "sobi"})

_ACCOUNT_ID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def local_today() -> date:
    tz = ZoneInfo(get_settings().timezone)
    return datetime.now(tz).date()


def is_account_id(value: Optional[str]) -> bool:
    if not value:
        return False
    if value in LEGACY_PAID_BY_VALUES:
        return False
    return bool(_ACCOUNT_ID_RE.match(value))


def _as_cents(value: object, label: str) -> int:
    if isinstance(value, bool):
        raise ValidationFailure(f"{label} must be a number")
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValidationFailure(f"{label} must be finite")
        if not value.is_integer():
            raise ValidationFailure(f"{label} must be a whole number of cents")
        return int(value)
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise ValidationFailure(f"{label} must be finite")
        if value != value.to_integral_value():
            raise ValidationFailure(f"{label} must be a whole number of cents")
        return int(value)
    if isinstance(value, int):
        return value
    raise ValidationFailure(f"{label} must be a number")


def compute_deltas(
    old_paid_by: Optional[str],
    new_paid_by: Optional[str],
    old_amount_cents: int,
    new_amount_cents: int,
) -> dict[str, int]:
    """Net balance change per account for a charge moving from old to new.

    The old charge is reversed (credited back) and the new charge applied
    (debited). A deletion is ``new_paid_by=None, new_amount_cents=0``.
    Legacy labels and other non-account values contribute nothing.
    """
    old_amount = _as_cents(old_amount_cents, "old amount")
    new_amount = _as_cents(new_amount_cents, "new amount")
    deltas: dict[str, int] = {}

    if is_account_id(old_paid_by):
        deltas[old_paid_by] = deltas.get(old_paid_by, 0) + abs(old_amount)

    if is_account_id(new_paid_by):
        deltas[new_paid_by] = deltas.get(new_paid_by, 0) - abs(new_amount)

    return deltas


class DeltaApplicator:
    """Writes paid-by balance adjustments as same-day manual snapshots.

    All non-zero deltas of one call are applied in a single transaction while
    holding the locks of every touched account, so a read of the latest
    balance can never be overwritten by a concurrent adjustment. Pending
    changes already in the session (the triggering transaction edit) commit
    or roll back together with the adjustments.
    """

    def __init__(self, session: Session) -> None:
        self.session = session
        self.store = SnapshotStore(session)
        self.engine = ReconciliationEngine(session)

    def apply_delta(
        self,
        account_id: str,
        actor_user_id: int,
        delta_cents: int,
        note: str,
        *,
        today: Optional[date] = None,
    ) -> Optional[AccountSnapshot]:
        applied = self.apply_deltas(
            {account_id: delta_cents}, actor_user_id, note, today=today
        )
        return applied[0] if applied else None

    def apply_deltas(
        self,
        deltas: dict[str, int],
        actor_user_id: int,
        note: str,
        *,
        today: Optional[date] = None,
    ) -> list[AccountSnapshot]:
        pending: dict[str, int] = {}
        for account_id in sorted(deltas):
            delta = _as_cents(deltas[account_id], "delta")
            if delta == 0:
                logger.debug(f"apply_delta: account_id={account_id} skipped zero delta")
                continue
            pending[account_id] = delta
        if not pending:
            return []

        snapshot_date = today or local_today()
        applied: list[AccountSnapshot] = []
        with ExitStack() as stack:
            # Locks are always taken in sorted account order.
            for account_id in pending:
                stack.enter_context(account_lock(account_id))
            try:
                for account_id, delta in pending.items():
                    applied.append(
                        self._stage(
                            account_id, actor_user_id, delta, note, snapshot_date
                        )
                    )
                self.session.commit()
            except SQLAlchemyError as exc:
                self.session.rollback()
                failed = ", ".join(pending)
                logger.exception(f"apply_delta_failed: account_ids={failed}")
                raise PersistenceFailure(
                    f"Balance adjustment failed for account(s) {failed}"
                ) from exc
            except Exception:
                self.session.rollback()
                raise
        return applied

    def _stage(
        self,
        account_id: str,
        actor_user_id: int,
        delta: int,
        note: str,
        snapshot_date: date,
    ) -> AccountSnapshot:
        lock_account(self.session, account_id)
        latest = self.store.latest(account_id)
        if not latest:
            raise NotFoundError(
                "No existing balance snapshot found for paid-by account"
            )
        new_balance = int(latest.balance_cents) + delta
        snapshot = self.store.upsert(
            account_id,
            actor_user_id,
            snapshot_date,
            new_balance,
            note,
            source=SnapshotSource.manual,
        )
        reconciled = should_auto_reconcile(self.session, account_id, actor_user_id)
        if reconciled:
            self.engine.rebuild(account_id, actor_user_id)
        logger.info(
            f"apply_delta: account_id={account_id} delta={delta} "
            f"balance={new_balance} date={snapshot_date.isoformat()} "
            f"reconciled={reconciled}"
        )
        return snapshot
