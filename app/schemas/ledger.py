from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict

from app.models.ledger import (
    Bill,
    ConsolidatedCustomer,
    PaymentEvent,
    PaymentMethod,
    PaymentStatus,
    RefundMethod,
    ReturnCredit,
)
from app.services.payment_allocator import AllocationResult


class PaymentRequest(BaseModel):
    """Request body to record a customer payment.

    `amount` is left loose so non-numeric input is rejected by the
    allocator with InvalidAmount rather than by request validation.
    """
    amount: Decimal | float | str
    payment_method: PaymentMethod = PaymentMethod.CASH
    notes: Optional[str] = None


class ManualBalanceCreate(BaseModel):
    customer_name: str = ""
    customer_phone: str = ""
    total_amount: Decimal | float | str
    due_date: Optional[datetime] = None
    notes: Optional[str] = None


class DueDateUpdate(BaseModel):
    due_date: Optional[datetime] = None
    notes: Optional[str] = None


class ReturnCreditCreate(BaseModel):
    sale_id: Optional[str] = None
    customer_name: str = ""
    customer_phone: str = Field(..., min_length=1)
    total_refund: Decimal = Field(..., ge=0)
    refund_method: RefundMethod = RefundMethod.CASH
    reason: Optional[str] = None


class BillResponse(BaseModel):
    id: str
    customer_name: str
    customer_phone: str
    total_amount: Decimal
    amount_paid: Decimal
    outstanding: Decimal
    payment_status: PaymentStatus
    is_manual_balance: bool
    notes: Optional[str] = None
    due_date: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_bill(cls, bill: Bill) -> "BillResponse":
        return cls(
            id=bill.id,
            customer_name=bill.customer_name,
            customer_phone=bill.customer_phone,
            total_amount=bill.total_amount,
            amount_paid=bill.amount_paid,
            outstanding=bill.outstanding(),
            payment_status=bill.payment_status,
            is_manual_balance=bill.is_manual_balance,
            notes=bill.notes,
            due_date=bill.due_date,
            created_at=bill.created_at
        )


class PaymentEventResponse(BaseModel):
    id: str
    sale_id: str
    customer_phone: str
    amount: Decimal
    previous_balance: Decimal
    resulting_balance: Decimal
    payment_method: PaymentMethod
    notes: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_event(cls, event: PaymentEvent) -> "PaymentEventResponse":
        return cls(**event.model_dump(exclude={"id"}), id=event.id)


class CustomerResponse(BaseModel):
    """Consolidated customer position."""
    customer_phone: str
    customer_name: str
    bills: List[BillResponse]
    total_amount: Decimal
    total_paid: Decimal
    total_return_credits: Decimal
    total_outstanding: Decimal
    oldest_bill_date: datetime
    days_overdue: int
    payment_status: PaymentStatus

    @classmethod
    def from_customer(cls, customer: ConsolidatedCustomer) -> "CustomerResponse":
        return cls(
            customer_phone=customer.customer_phone,
            customer_name=customer.customer_name,
            bills=[BillResponse.from_bill(b) for b in customer.bills],
            total_amount=customer.total_amount,
            total_paid=customer.total_paid,
            total_return_credits=customer.total_return_credits,
            total_outstanding=customer.total_outstanding,
            oldest_bill_date=customer.oldest_bill_date,
            days_overdue=customer.days_overdue,
            payment_status=customer.payment_status
        )


class AllocationResponse(BaseModel):
    events: List[PaymentEventResponse]
    bills: List[BillResponse]
    unapplied: Decimal

    @classmethod
    def from_result(cls, result: AllocationResult) -> "AllocationResponse":
        return cls(
            events=[PaymentEventResponse.from_event(e) for e in result.events],
            bills=[BillResponse.from_bill(b) for b in result.updated_bills],
            unapplied=result.unapplied
        )


class ReturnCreditResponse(BaseModel):
    id: str
    sale_id: Optional[str] = None
    customer_name: str
    customer_phone: str
    total_refund: Decimal
    credited_amount: Decimal
    refund_method: RefundMethod
    reason: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_credit(cls, credit: ReturnCredit) -> "ReturnCreditResponse":
        return cls(
            id=credit.id,
            sale_id=credit.sale_id,
            customer_name=credit.customer_name,
            customer_phone=credit.customer_phone,
            total_refund=credit.total_refund,
            credited_amount=credit.credited_amount(),
            refund_method=credit.refund_method,
            reason=credit.reason,
            created_at=credit.created_at
        )
