import threading
import uuid
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from database import Base
from deltas import (
    LEGACY_PAID_BY_VALUES,
    DeltaApplicator,
    compute_deltas,
    is_account_id,
)
from errors import NotFoundError, PersistenceFailure, ValidationFailure
from models import (
    Account,
    AccountSnapshot,
    AccountType,
    IncomeEntry,
    Profile,
    SnapshotSource,
    Transaction,
)
from reconciliation import _account_locks

A = "3f2b8c1e-9d4a-4e6b-8a7c-1d2e3f4a5b6c"
B = "7c6b5a4f-3e2d-4c1b-9a8f-7e6d5c4b3a21"

TODAY = date(2024, 3, 1)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _account(session, account_id: str = A, user_id: int = 1) -> Account:
    account = Account(
        id=account_id,
        user_id=user_id,
        name=f"Account {account_id[:4]}",
        type=AccountType.checking,
    )
    session.add(account)
    session.commit()
    return account


def _snapshot(
    session,
    account_id: str,
    day: date,
    balance_cents: int,
    source: SnapshotSource = SnapshotSource.manual,
) -> None:
    session.add(
        AccountSnapshot(
            account_id=account_id,
            user_id=1,
            snapshot_date=day,
            balance_cents=balance_cents,
            note="Opening balance",
            source=source,
        )
    )
    session.commit()


def _rows(session, account_id: str) -> list[tuple[date, int, SnapshotSource]]:
    rows = session.scalars(
        select(AccountSnapshot)
        .where(AccountSnapshot.account_id == account_id)
        .order_by(AccountSnapshot.snapshot_date)
    ).all()
    return [(r.snapshot_date, r.balance_cents, r.source) for r in rows]


def _enable_automation(session, user_id: int = 1) -> None:
    session.add(Profile(id=user_id, auto_adjust_balances_from_income=True))
    session.commit()


def test_is_account_id() -> None:
    assert is_account_id(A)
    assert is_account_id(A.upper())
    assert is_account_id(str(uuid.uuid4()))
    assert not is_account_id(None)
    assert not is_account_id("")
    assert not is_account_id("not-an-account")
    for legacy in LEGACY_PAID_BY_VALUES:
        assert not is_account_id(legacy)


def test_unchanged_charge_nets_to_zero() -> None:
    deltas = compute_deltas(A, A, 4_000, 4_000)
    assert all(value == 0 for value in deltas.values())
    assert deltas == {A: 0}


def test_deletion_reverses_the_charge() -> None:
    assert compute_deltas(A, None, 4_000, 0) == {A: 4_000}


def test_moving_charge_between_accounts() -> None:
    assert compute_deltas(A, B, 4_000, 4_000) == {A: 4_000, B: -4_000}


def test_amount_edit_on_same_account_combines() -> None:
    assert compute_deltas(A, A, 4_000, 6_500) == {A: -2_500}


def test_new_charge_and_signs_use_absolute_amounts() -> None:
    assert compute_deltas(None, A, 0, 1_200) == {A: -1_200}
    assert compute_deltas(A, B, -300, -700) == {A: 300, B: -700}


def test_legacy_and_free_text_payers_contribute_nothing() -> None:
    assert compute_deltas("joint", "mano", 1_000, 2_000) == {}
    assert compute_deltas("sobi", A, 1_000, 2_000) == {A: -2_000}
    assert compute_deltas("Alice", None, 1_000, 0) == {}
    assert compute_deltas(None, None, 1_000, 2_000) == {}


def test_non_finite_amounts_are_rejected() -> None:
    with pytest.raises(ValidationFailure):
        compute_deltas(A, None, float("nan"), 0)
    with pytest.raises(ValidationFailure):
        compute_deltas(None, A, 0, float("inf"))
    with pytest.raises(ValidationFailure):
        compute_deltas(None, A, 0, Decimal("12.5"))
    assert compute_deltas(None, A, 0, 1_500.0) == {A: -1_500}


def test_apply_delta_without_any_snapshot_fails_and_writes_nothing() -> None:
    session = make_session()
    _account(session)

    with pytest.raises(NotFoundError):
        DeltaApplicator(session).apply_delta(A, 1, -1_000, "Expense", today=TODAY)

    assert _rows(session, A) == []


def test_zero_delta_skips_all_io() -> None:
    session = make_session()

    # No account exists at all; a zero delta must not even look.
    result = DeltaApplicator(session).apply_delta(A, 1, 0, "Noop", today=TODAY)

    assert result is None
    assert session.scalar(select(func.count(AccountSnapshot.id))) == 0


def test_apply_delta_unknown_account_raises_not_found() -> None:
    session = make_session()

    with pytest.raises(NotFoundError):
        DeltaApplicator(session).apply_delta(A, 1, -500, "Expense", today=TODAY)


def test_apply_delta_writes_manual_snapshot_for_today() -> None:
    session = make_session()
    _account(session)
    _snapshot(session, A, date(2024, 2, 1), 100_000)

    snapshot = DeltaApplicator(session).apply_delta(
        A, 1, -4_000, "Expense: Groceries", today=TODAY
    )

    assert snapshot is not None
    assert snapshot.note == "Expense: Groceries"
    assert _rows(session, A) == [
        (date(2024, 2, 1), 100_000, SnapshotSource.manual),
        (TODAY, 96_000, SnapshotSource.manual),
    ]


def test_same_day_adjustments_replace_the_day_row() -> None:
    session = make_session()
    _account(session)
    _snapshot(session, A, date(2024, 2, 1), 100_000)
    applicator = DeltaApplicator(session)

    applicator.apply_delta(A, 1, -1_000, "First", today=TODAY)
    applicator.apply_delta(A, 1, -500, "Second", today=TODAY)

    assert _rows(session, A) == [
        (date(2024, 2, 1), 100_000, SnapshotSource.manual),
        (TODAY, 98_500, SnapshotSource.manual),
    ]


def test_latest_snapshot_of_any_source_is_the_base() -> None:
    session = make_session()
    _account(session)
    _snapshot(session, A, date(2024, 1, 1), 10_000)
    _snapshot(session, A, date(2024, 2, 1), 12_000, SnapshotSource.income)

    DeltaApplicator(session).apply_delta(A, 1, -2_000, "Expense", today=TODAY)

    assert _rows(session, A)[-1] == (TODAY, 10_000, SnapshotSource.manual)


def test_owner_with_automation_gets_income_relayered() -> None:
    session = make_session()
    _account(session, user_id=1)
    _enable_automation(session, user_id=1)
    _snapshot(session, A, date(2024, 2, 1), 100_000)
    session.add(
        IncomeEntry(
            user_id=1,
            account_id=A,
            amount_cents=10_000,
            received_date=date(2024, 3, 5),
        )
    )
    session.commit()

    DeltaApplicator(session).apply_delta(A, 1, -4_000, "Expense", today=TODAY)

    assert _rows(session, A) == [
        (date(2024, 2, 1), 100_000, SnapshotSource.manual),
        (TODAY, 96_000, SnapshotSource.manual),
        (date(2024, 3, 5), 106_000, SnapshotSource.income),
    ]


def test_no_relayering_without_automation_or_for_non_owner() -> None:
    session = make_session()
    _account(session, account_id=A, user_id=1)
    _account(session, account_id=B, user_id=2)
    _enable_automation(session, user_id=1)
    for account_id in (A, B):
        _snapshot(session, account_id, date(2024, 2, 1), 100_000)
        session.add(
            IncomeEntry(
                user_id=1,
                account_id=account_id,
                amount_cents=10_000,
                received_date=date(2024, 3, 5),
            )
        )
    session.commit()

    # Actor 1 does not own B, so B is adjusted but not reconciled.
    DeltaApplicator(session).apply_delta(B, 1, -4_000, "Expense", today=TODAY)
    assert [row[2] for row in _rows(session, B)] == [SnapshotSource.manual] * 2

    # Actor 2 owns B but has no preference row.
    DeltaApplicator(session).apply_delta(B, 2, -1_000, "Expense", today=TODAY)
    assert [row[2] for row in _rows(session, B)] == [SnapshotSource.manual] * 2
    assert _rows(session, B)[-1][1] == 95_000


def test_multi_account_deltas_apply_atomically() -> None:
    session = make_session()
    _account(session, account_id=A)
    _account(session, account_id=B)
    _snapshot(session, A, date(2024, 2, 1), 50_000)

    with pytest.raises(NotFoundError):
        DeltaApplicator(session).apply_deltas(
            {A: 4_000, B: -4_000}, 1, "Edited expense", today=TODAY
        )

    assert _rows(session, A) == [(date(2024, 2, 1), 50_000, SnapshotSource.manual)]


def test_apply_deltas_skips_zero_entries() -> None:
    session = make_session()
    _account(session, account_id=A)
    _snapshot(session, A, date(2024, 2, 1), 50_000)

    applied = DeltaApplicator(session).apply_deltas(
        {A: -2_000, B: 0}, 1, "Expense", today=TODAY
    )

    assert [s.account_id for s in applied] == [A]


def test_concurrent_adjustments_to_one_account_are_serialized(tmp_path) -> None:
    engine = create_engine(
        f"sqlite:///{tmp_path / 'balances.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    setup = SessionLocal()
    _account(setup)
    _snapshot(setup, A, date(2024, 2, 1), 100_000)
    setup.close()

    errors: list[BaseException] = []

    def worker() -> None:
        session = SessionLocal()
        try:
            DeltaApplicator(session).apply_delta(A, 1, -100, "Expense", today=TODAY)
        except BaseException as exc:  # surfaced through the assertion below
            errors.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    check = SessionLocal()
    assert _rows(check, A)[-1] == (TODAY, 99_200, SnapshotSource.manual)
    check.close()


def test_lock_registry_does_not_grow_with_unknown_accounts() -> None:
    session = make_session()
    _account(session)
    _snapshot(session, A, date(2024, 2, 1), 100_000)
    applicator = DeltaApplicator(session)

    for _ in range(20):
        with pytest.raises(NotFoundError):
            applicator.apply_delta(str(uuid.uuid4()), 1, -100, "Expense", today=TODAY)
    applicator.apply_delta(A, 1, -100, "Expense", today=TODAY)

    assert _account_locks == {}


def test_store_failure_rolls_back_adjustment_and_pending_edit() -> None:
    session = make_session()
    _account(session)
    _snapshot(session, A, date(2024, 2, 1), 100_000)
    applicator = DeltaApplicator(session)
    session.add(
        Transaction(
            user_id=1,
            date=TODAY,
            amount_cents=4_000,
            description="Groceries",
            paid_by=A,
        )
    )
    session.flush()

    real_upsert = applicator.store.upsert

    def failing_upsert(*args, **kwargs):
        real_upsert(*args, **kwargs)
        raise SQLAlchemyError("disk I/O error")

    applicator.store.upsert = failing_upsert
    with pytest.raises(PersistenceFailure):
        applicator.apply_delta(A, 1, -4_000, "Expense: Groceries", today=TODAY)

    assert _rows(session, A) == [(date(2024, 2, 1), 100_000, SnapshotSource.manual)]
    assert session.scalars(select(Transaction)).all() == []

    applicator.store.upsert = real_upsert
    applicator.apply_delta(A, 1, -4_000, "Expense: Groceries", today=TODAY)
    assert _rows(session, A)[-1] == (TODAY, 96_000, SnapshotSource.manual)
