"""
Payment allocation - apply one customer payment across open bills, oldest first.

Each touched bill is one single-row write followed by one payment event
append. The writes run strictly in allocation order, one at a time. There is
no cross-bill rollback: if a write fails, the bills already updated stay
updated and the caller gets the list of events that went through.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from app.models.ledger import (
    Bill,
    ConsolidatedCustomer,
    CustomerKey,
    PaymentEvent,
    PaymentMethod,
    PaymentStatus,
)
from app.services.consolidation_service import bill_sort_key, consolidate, find_customer
from app.utils.ledger_errors import (
    BillNotFound,
    CustomerNotFound,
    ExceedsOutstanding,
    InvalidAmount,
    StoreWriteFailure,
)
from app.utils.money import ZERO, add, parse_money, sub

logger = logging.getLogger(__name__)


class AllocationStep(BaseModel):
    """One planned application of money against one bill."""
    bill: Bill
    applied: Decimal
    previous_balance: Decimal
    resulting_balance: Decimal
    new_amount_paid: Decimal
    new_status: PaymentStatus


class AllocationResult(BaseModel):
    events: List[PaymentEvent]
    updated_bills: List[Bill]
    unapplied: Decimal = ZERO


def _parse_payment(amount: Any) -> Decimal:
    value = parse_money(amount)
    if value is None:
        raise InvalidAmount(f"Payment amount is not a number: {amount!r}")
    if value <= 0:
        raise InvalidAmount("Payment amount must be greater than 0")
    return value


def validate_payment_amount(customer: ConsolidatedCustomer, amount: Any) -> Decimal:
    """Reject before any write: non-numeric, non-positive, or over the balance."""
    value = _parse_payment(amount)
    if value > customer.total_outstanding:
        raise ExceedsOutstanding(value, customer.total_outstanding)
    return value


def _step(bill: Bill, applied: Decimal) -> AllocationStep:
    bill_outstanding = bill.outstanding()
    resulting = sub(bill_outstanding, applied)
    return AllocationStep(
        bill=bill,
        applied=applied,
        previous_balance=bill_outstanding,
        resulting_balance=resulting,
        new_amount_paid=add(bill.amount_paid, applied),
        new_status=PaymentStatus.PAID if resulting <= 0 else PaymentStatus.PARTIAL,
    )


def plan_allocation(customer: ConsolidatedCustomer, amount: Decimal) -> List[AllocationStep]:
    """
    FIFO plan over the customer's open bills.

    Bills are taken in (created_at, id) order so equal timestamps still give
    the same plan on every run. Stops when the payment is used up or the
    bills run out, whichever comes first.
    """
    steps: List[AllocationStep] = []
    remaining = amount

    for bill in sorted(customer.open_bills(), key=bill_sort_key):
        if remaining <= 0:
            break

        bill_outstanding = bill.outstanding()
        if bill_outstanding <= 0:
            continue

        step = _step(bill, min(bill_outstanding, remaining))
        steps.append(step)
        remaining = sub(remaining, step.applied)

    return steps


async def _apply_steps(
    repo,
    key: CustomerKey,
    steps: List[AllocationStep],
    method: PaymentMethod,
    notes: Optional[str],
) -> List[PaymentEvent]:
    """Write each step as bill update then event append, in order."""
    events: List[PaymentEvent] = []

    for step in steps:
        bill = step.bill
        event = PaymentEvent(
            sale_id=bill.id,
            customer_phone=bill.customer_phone,
            amount=step.applied,
            previous_balance=step.previous_balance,
            resulting_balance=step.resulting_balance,
            payment_method=method,
            notes=notes,
        )

        try:
            await repo.update_bill_payment(
                bill.id,
                step.new_amount_paid,
                step.new_status,
                expected_amount_paid=bill.amount_paid,
            )
            await repo.append_payment_event(event)
        except StoreWriteFailure as exc:
            logger.error(
                "Payment allocation for %s stopped at bill %s after %d of %d bills: %s",
                key, bill.id, len(events), len(steps), exc,
            )
            raise StoreWriteFailure(
                str(exc), completed_events=events, failed_bill_id=bill.id
            ) from exc

        events.append(event)
        logger.info(
            "Applied %s to bill %s for %s (balance %s -> %s)",
            step.applied, bill.id, key,
            step.previous_balance, step.resulting_balance,
        )

    return events


def _updated_bills(steps: List[AllocationStep]) -> List[Bill]:
    return [
        step.bill.model_copy(update={
            "amount_paid": step.new_amount_paid,
            "payment_status": step.new_status,
        })
        for step in steps
    ]


async def allocate_payment(
    repo,
    customer: ConsolidatedCustomer,
    amount: Any,
    method: PaymentMethod = PaymentMethod.CASH,
    notes: Optional[str] = None,
) -> AllocationResult:
    """
    Distribute a payment over the customer's bills and persist it.

    Raises InvalidAmount / ExceedsOutstanding before touching the store.
    Raises StoreWriteFailure with ``completed_events`` if a write fails
    part way through.
    """
    value = validate_payment_amount(customer, amount)
    steps = plan_allocation(customer, value)

    events = await _apply_steps(repo, customer.key, steps, method, notes)

    applied_total = ZERO
    for step in steps:
        applied_total = add(applied_total, step.applied)

    unapplied = sub(value, applied_total)
    if unapplied > 0:
        # Only reachable with a stale snapshot; the amount check above
        # normally guarantees the bills cover the payment.
        logger.warning(
            "Open bills for %s exhausted with %s of the payment unapplied",
            customer.key, unapplied,
        )

    return AllocationResult(events=events, updated_bills=_updated_bills(steps), unapplied=unapplied)


class CustomerLocks:
    """One asyncio.Lock per customer key, so allocations for the same
    customer run one after another within this process.

    A key's lock is dropped once nobody holds or waits for it.
    """

    def __init__(self):
        self._locks: Dict[CustomerKey, asyncio.Lock] = {}
        self._users: Dict[CustomerKey, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: CustomerKey):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


customer_locks = CustomerLocks()


async def record_customer_payment(
    repo,
    phone: str,
    amount: Any,
    method: PaymentMethod = PaymentMethod.CASH,
    notes: Optional[str] = None,
    locks: Optional[CustomerLocks] = None,
) -> AllocationResult:
    """Re-read the store, consolidate, and allocate under the customer's lock."""
    if locks is None:
        locks = customer_locks
    key = CustomerKey.from_phone(phone)

    async with locks.hold(key):
        bills = await repo.list_bills_for_customer(key)
        credits = await repo.list_return_credits_for_customer(key)
        customer = find_customer(consolidate(bills, credits), key.phone)
        if customer is None:
            raise CustomerNotFound(f"No bills found for customer {key.phone}")
        return await allocate_payment(repo, customer, amount, method, notes)


async def pay_bill(
    repo,
    bill_id: str,
    amount: Any,
    method: PaymentMethod = PaymentMethod.CASH,
    notes: Optional[str] = None,
    locks: Optional[CustomerLocks] = None,
) -> AllocationResult:
    """
    Pay one named bill, bypassing FIFO order.

    The amount is checked against that bill's own outstanding balance, not
    the customer's total. Runs under the same per-customer lock as
    record_customer_payment.
    """
    if locks is None:
        locks = customer_locks

    bill = await repo.get_bill(bill_id)
    if bill is None or bill.is_void:
        raise BillNotFound(f"Bill {bill_id} not found")

    async with locks.hold(bill.key):
        # Re-read under the lock; a FIFO allocation may have just touched it.
        bill = await repo.get_bill(bill_id)
        if bill is None or bill.is_void:
            raise BillNotFound(f"Bill {bill_id} not found")

        value = _parse_payment(amount)
        if value > bill.outstanding():
            raise ExceedsOutstanding(value, bill.outstanding())

        steps = [_step(bill, value)]
        events = await _apply_steps(repo, bill.key, steps, method, notes)
        return AllocationResult(events=events, updated_bills=_updated_bills(steps))
