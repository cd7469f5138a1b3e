from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import (
    Recurrence,
    RecurrenceFrequency,
    Transaction,
    TransactionDirection,
)


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    currency_code: str = Field(..., pattern=r"^[A-Z]{3}$")
    description: Optional[str] = Field(default=None, max_length=500)

    @field_validator("currency_code", mode="before")
    @classmethod
    def _normalize_currency(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value


class TagIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    description: Optional[str] = Field(default=None, max_length=512)
    parent_id: Optional[int] = None


class TransactionIn(BaseModel):
    value_date: datetime
    amount: Decimal = Field(..., ge=0, max_digits=18, decimal_places=2)
    direction: TransactionDirection
    description: Optional[str] = Field(default=None, max_length=500)
    tag_ids: list[int] = Field(default_factory=list)


class RecurrenceIn(BaseModel):
    start_date: datetime
    end_date: Optional[datetime] = None
    frequency: RecurrenceFrequency
    direction: TransactionDirection
    amount: Decimal = Field(..., ge=0, max_digits=18, decimal_places=2)
    description: Optional[str] = Field(default=None, max_length=500)
    tag_ids: list[int] = Field(default_factory=list)


class TransactionFilter(BaseModel):
    """Optional, AND-combined search criteria.

    ``tag_ids`` matches transactions carrying at least one of the ids, the
    date bounds are inclusive and ``description`` is a case-insensitive
    substring.
    """

    model_config = ConfigDict(extra="forbid")

    direction: Optional[TransactionDirection] = None
    tag_ids: set[int] = Field(default_factory=set)
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class RecurrenceCreationResult:
    recurrence: Recurrence
    generated_transactions: list[Transaction]
    summary: str

    @property
    def transaction_count(self) -> int:
        return len(self.generated_transactions)


@dataclass(frozen=True)
class StatisticsSnapshot:
    currency_code: str
    balance: Decimal
    income: Decimal
    expenses: Decimal
    net: Decimal
    spending_by_category: dict[str, Decimal] = field(default_factory=dict)
    recent_transactions: list[Transaction] = field(default_factory=list)
    transaction_count: int = 0
