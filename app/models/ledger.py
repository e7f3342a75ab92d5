"""
Ledger models - bills, return credits and payment events.

Design principles:
- Bills are never deleted; a voided bill is marked full_return
- Return credits and payment events are immutable once written
- Payment events are append-only: they are the audit trail
- All amounts are 2dp Decimals, stored as strings
- ConsolidatedCustomer is derived on every read, never persisted
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import ClassVar, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from app.utils.money import ZERO, sub, to_money
from app.utils.time_utils import as_utc_naive, utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"
    FULL_RETURN = "full_return"


class RefundMethod(str, Enum):
    CASH = "cash"
    CREDITED = "credited"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"


class CustomerKey(BaseModel):
    """
    Consolidation key for a customer.

    Customers are identified by phone number only. Two customers sharing a
    phone collapse into one key, and records with no phone all land on the
    UNKNOWN sentinel.
    """
    model_config = ConfigDict(frozen=True)

    UNKNOWN_PHONE: ClassVar[str] = "unknown"

    phone: str

    @classmethod
    def from_phone(cls, phone: Optional[str]) -> "CustomerKey":
        cleaned = (phone or "").strip()
        return cls(phone=cleaned or cls.UNKNOWN_PHONE)

    @property
    def is_unknown(self) -> bool:
        return self.phone == self.UNKNOWN_PHONE

    def __str__(self) -> str:
        return self.phone


class LedgerRecord(BaseModel):
    """Common config for stored ledger documents."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=_new_id, alias="_id")
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at", mode="before")
    @classmethod
    def _normalize_created_at(cls, value):
        if value is None:
            return utcnow()
        if isinstance(value, datetime):
            return as_utc_naive(value)
        return value

    @field_validator("customer_name", "customer_phone", mode="before", check_fields=False)
    @classmethod
    def _blank_if_missing(cls, value):
        return "" if value is None else value

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, value):
        # Mongo may hand back ObjectIds for documents inserted elsewhere.
        return str(value) if value is not None else _new_id()

    def to_document(self) -> dict:
        """Serialize for MongoDB: `_id` key, Decimals as strings."""
        return self.model_dump(by_alias=True, mode="json") | {"created_at": self.created_at}


class Bill(LedgerRecord):
    """
    One completed sale, or a manual balance.

    Invariants:
    - total_amount and amount_paid are >= 0
    - amount_paid / payment_status only change through payment allocation
    - full_return bills are void and ignored by consolidation
    """
    customer_name: str = ""
    customer_phone: str = ""
    total_amount: Decimal = ZERO
    amount_paid: Decimal = ZERO
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    is_manual_balance: bool = False
    notes: Optional[str] = None
    due_date: Optional[datetime] = None

    @field_validator("total_amount", "amount_paid", mode="before")
    @classmethod
    def _coerce_money(cls, value):
        return to_money(value)

    @field_validator("due_date", mode="before")
    @classmethod
    def _normalize_due_date(cls, value):
        if isinstance(value, datetime):
            return as_utc_naive(value)
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day)
        return value

    @field_serializer("total_amount", "amount_paid")
    def _money_out(self, value: Decimal) -> str:
        return str(value)

    @property
    def key(self) -> CustomerKey:
        return CustomerKey.from_phone(self.customer_phone)

    @property
    def is_void(self) -> bool:
        return self.payment_status == PaymentStatus.FULL_RETURN

    def outstanding(self) -> Decimal:
        """How much of this bill remains unpaid."""
        return sub(self.total_amount, self.amount_paid)

    def to_document(self) -> dict:
        doc = super().to_document()
        doc["due_date"] = self.due_date
        return doc


class ReturnCredit(LedgerRecord):
    """A refund against a customer's account. Immutable."""
    sale_id: Optional[str] = None
    customer_name: str = ""
    customer_phone: str = ""
    total_refund: Decimal = ZERO
    refund_method: RefundMethod = RefundMethod.CASH
    reason: Optional[str] = None

    @field_validator("total_refund", mode="before")
    @classmethod
    def _coerce_money(cls, value):
        return to_money(value)

    @field_validator("refund_method", mode="before")
    @classmethod
    def _legacy_credit(cls, value):
        if value == "credit":
            return RefundMethod.CREDITED
        return value

    @field_serializer("total_refund")
    def _money_out(self, value: Decimal) -> str:
        return str(value)

    @property
    def key(self) -> CustomerKey:
        return CustomerKey.from_phone(self.customer_phone)

    def credited_amount(self) -> Decimal:
        """Cash refunds already left the till; only credited ones count."""
        if self.refund_method == RefundMethod.CREDITED:
            return self.total_refund
        return ZERO


class PaymentEvent(LedgerRecord):
    """One application of money against one bill. Append-only."""
    sale_id: str
    customer_phone: str = ""
    amount: Decimal
    previous_balance: Decimal
    resulting_balance: Decimal
    payment_method: PaymentMethod = PaymentMethod.CASH
    notes: Optional[str] = None

    @field_validator("amount", "previous_balance", "resulting_balance", mode="before")
    @classmethod
    def _coerce_money(cls, value):
        return to_money(value)

    @field_serializer("amount", "previous_balance", "resulting_balance")
    def _money_out(self, value: Decimal) -> str:
        return str(value)

    @property
    def key(self) -> CustomerKey:
        return CustomerKey.from_phone(self.customer_phone)


class ConsolidatedCustomer(BaseModel):
    """Per-customer aggregate over all live bills and credits."""
    key: CustomerKey
    customer_name: str
    bills: List[Bill]
    total_amount: Decimal
    total_paid: Decimal
    total_return_credits: Decimal
    total_outstanding: Decimal
    oldest_bill_date: datetime
    days_overdue: int
    payment_status: PaymentStatus

    @property
    def customer_phone(self) -> str:
        return self.key.phone

    def open_bills(self) -> List[Bill]:
        return [bill for bill in self.bills if bill.outstanding() > 0]
