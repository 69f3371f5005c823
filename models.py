import uuid
from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class SnapshotSource(str, Enum):
    manual = "manual"
    income = "income"


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    credit_card = "credit_card"
    investment = "investment"
    retirement = "retirement"
    loan = "loan"
    crypto = "crypto"
    cash = "cash"
    other = "other"


class IncomeEntryType(str, Enum):
    income = "income"
    retirement_401k = "401k"
    hsa = "hsa"


INCOME_ENTRY_TYPE_ENUM = SAEnum(
    IncomeEntryType,
    name="incomeentrytype",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


def _new_account_id() -> str:
    return str(uuid.uuid4())


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Profile(Base, TimestampMixin):
    __tablename__ = "profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    auto_adjust_balances_from_income: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=_new_account_id
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(SAEnum(AccountType), nullable=False)
    institution: Mapped[Optional[str]] = mapped_column(String(100))
    is_shared: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    snapshots: Mapped[list["AccountSnapshot"]] = relationship(
        "AccountSnapshot",
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    income_entries: Mapped[list["IncomeEntry"]] = relationship(
        "IncomeEntry",
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_account_user_name"),
        Index("ix_accounts_user", "user_id"),
    )


class AccountSnapshot(Base, TimestampMixin):
    __tablename__ = "account_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[str] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)
    source: Mapped[SnapshotSource] = mapped_column(
        SAEnum(SnapshotSource), default=SnapshotSource.manual, nullable=False
    )

    account: Mapped["Account"] = relationship("Account", back_populates="snapshots")

    __table_args__ = (
        UniqueConstraint(
            "account_id", "snapshot_date", name="uq_snapshot_account_date"
        ),
        Index("ix_snapshot_account_date", "account_id", "snapshot_date"),
        Index(
            "ix_snapshot_account_source_date",
            "account_id",
            "source",
            "snapshot_date",
        ),
    )


class IncomeEntry(Base, TimestampMixin):
    __tablename__ = "income_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    account_id: Mapped[str] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    entry_type: Mapped[IncomeEntryType] = mapped_column(
        INCOME_ENTRY_TYPE_ENUM, default=IncomeEntryType.income, nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    received_date: Mapped[date] = mapped_column(Date, nullable=False)
    source: Mapped[Optional[str]] = mapped_column(String(200))
    note: Mapped[Optional[str]] = mapped_column(Text)

    account: Mapped["Account"] = relationship(
        "Account", back_populates="income_entries"
    )

    __table_args__ = (
        Index("ix_income_account_received", "account_id", "received_date"),
        Index("ix_income_user_received", "user_id", "received_date"),
        CheckConstraint("amount_cents > 0", name="ck_income_amount_positive"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    paid_by: Mapped[Optional[str]] = mapped_column(String(64))
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_paid_by", "paid_by"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )
