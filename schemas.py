import datetime as dt
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import (
    Account,
    AccountType,
    RecurringInterval,
    Transaction,
    TransactionStatus,
    TransactionType,
)

CENTS = Decimal("100")


def to_cents(amount: Decimal) -> int:
    return int((amount * CENTS).to_integral_value())


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / CENTS).quantize(Decimal("0.01"))


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: int
    type: TransactionType
    amount: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    date: dt.date
    category: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    status: TransactionStatus = TransactionStatus.completed
    is_recurring: bool = False
    recurring_interval: Optional[RecurringInterval] = None
    receipt_url: Optional[str] = Field(default=None, max_length=500)

    @property
    def amount_cents(self) -> int:
        return to_cents(self.amount)


class TransactionOut(BaseModel):
    id: int
    account_id: int
    type: TransactionType
    amount: Decimal
    date: dt.date
    category: str
    description: Optional[str]
    status: TransactionStatus
    is_recurring: bool
    recurring_interval: Optional[RecurringInterval]
    next_recurring_date: Optional[dt.date]
    receipt_url: Optional[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, txn: Transaction) -> "TransactionOut":
        return cls(
            id=txn.id,
            account_id=txn.account_id,
            type=txn.type,
            amount=from_cents(txn.amount_cents),
            date=txn.date,
            category=txn.category,
            description=txn.description,
            status=txn.status,
            is_recurring=txn.is_recurring,
            recurring_interval=txn.recurring_interval,
            next_recurring_date=txn.next_recurring_date,
            receipt_url=txn.receipt_url,
            created_at=txn.created_at,
            updated_at=txn.updated_at,
        )


class AccountIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType = AccountType.current
    balance: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)
    is_default: bool = False


class AccountOut(BaseModel):
    id: int
    name: str
    type: AccountType
    balance: Decimal
    is_default: bool

    @classmethod
    def from_model(cls, account: Account) -> "AccountOut":
        return cls(
            id=account.id,
            name=account.name,
            type=account.type,
            balance=from_cents(account.balance_cents),
            is_default=account.is_default,
        )


class ReceiptFields(BaseModel):
    amount: Decimal = Field(..., ge=0, max_digits=12)
    date: dt.date
    description: Optional[str] = Field(default=None, max_length=500)
    category: Optional[str] = Field(default=None, max_length=100)
    merchant_name: Optional[str] = Field(
        default=None, max_length=200, alias="merchantName"
    )

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("amount")
    @classmethod
    def round_to_cents(cls, value: Decimal) -> Decimal:
        return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    @field_validator("date", mode="before")
    @classmethod
    def date_from_timestamp(cls, value):
        """Receipts often come back with a full ISO timestamp; keep the day."""
        if isinstance(value, str):
            try:
                return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).date()
            except ValueError:
                return value
        if isinstance(value, datetime):
            return value.date()
        return value


class SessionIn(BaseModel):
    external_id: str = Field(..., min_length=1, max_length=120)
    email: Optional[str] = Field(default=None, max_length=255)
    name: Optional[str] = Field(default=None, max_length=120)


class BulkDeleteIn(BaseModel):
    ids: list[int] = Field(..., min_length=1)
