from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import AccountType, IncomeEntryType, SnapshotSource


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    institution: Optional[str] = Field(default=None, max_length=100)
    is_shared: bool = False
    notes: Optional[str] = None


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: int
    name: str
    type: AccountType
    institution: Optional[str]
    is_shared: bool
    notes: Optional[str]


class SnapshotIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    snapshot_date: date
    balance_cents: Optional[int] = None
    balance_adjustment_cents: Optional[int] = None
    note: Optional[str] = Field(default=None, max_length=200)

    @model_validator(mode="after")
    def _one_of_balance_or_adjustment(self) -> "SnapshotIn":
        if (self.balance_cents is None) == (self.balance_adjustment_cents is None):
            raise ValueError(
                "Exactly one of balance_cents or balance_adjustment_cents is required"
            )
        return self


class SnapshotOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: str
    user_id: int
    balance_cents: int
    snapshot_date: date
    note: Optional[str]
    source: SnapshotSource
    created_at: datetime


class IncomeEntryIn(BaseModel):
    account_id: str = Field(..., min_length=1, max_length=36)
    entry_type: IncomeEntryType = IncomeEntryType.income
    amount_cents: int = Field(..., gt=0)
    received_date: date
    source: Optional[str] = Field(default=None, max_length=200)
    note: Optional[str] = None


class IncomeEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    account_id: str
    entry_type: IncomeEntryType
    amount_cents: int
    received_date: date
    source: Optional[str]
    note: Optional[str]


class TransactionIn(BaseModel):
    date: date
    amount_cents: int = Field(..., ge=0)
    description: str = Field(..., min_length=1, max_length=200)
    paid_by: Optional[str] = Field(default=None, max_length=64)


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    date: date
    amount_cents: int
    description: str
    paid_by: Optional[str]


class TransferIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    to_account_id: str = Field(..., min_length=1, max_length=36)
    from_account_name: Optional[str] = Field(default=None, max_length=100)
    amount_cents: int = Field(..., gt=0)
    received_date: date
    description: str = Field(..., min_length=1, max_length=200)
    note: Optional[str] = None


class PreferencesIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    auto_adjust_balances_from_income: bool
