"""
Consolidation - fold bills and return credits into per-customer positions.

Algorithm:
1. Drop full_return bills (void)
2. Group live bills by customer key (phone)
3. Sum credited refunds per key; cash refunds are ignored
4. Fold each group, rounding after every addition/subtraction
5. Derive outstanding, oldest bill date, days overdue and status

Pure: the same inputs always give the same output.
"""

from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from app.models.ledger import (
    Bill,
    ConsolidatedCustomer,
    CustomerKey,
    PaymentStatus,
    ReturnCredit,
)
from app.utils.money import ZERO, add, sub
from app.utils.time_utils import utcnow

SECONDS_PER_DAY = 86400


def bill_sort_key(bill: Bill):
    """Allocation order: oldest first, id breaks ties."""
    return (bill.created_at, bill.id)


def derive_status(total_paid: Decimal, total_outstanding: Decimal) -> PaymentStatus:
    if total_outstanding <= 0:
        return PaymentStatus.PAID
    if total_paid > 0:
        return PaymentStatus.PARTIAL
    return PaymentStatus.UNPAID


def days_between(start: datetime, now: datetime) -> int:
    """Whole days elapsed, floored; a future start counts as 0."""
    elapsed = (now - start).total_seconds()
    if elapsed <= 0:
        return 0
    return int(elapsed // SECONDS_PER_DAY)


def sum_credits_by_key(credits: Iterable[ReturnCredit]) -> Dict[CustomerKey, Decimal]:
    totals: Dict[CustomerKey, Decimal] = defaultdict(lambda: ZERO)
    for credit in credits:
        amount = credit.credited_amount()
        if amount == 0:
            continue
        totals[credit.key] = add(totals[credit.key], amount)
    return dict(totals)


def consolidate_group(
    key: CustomerKey,
    bills: List[Bill],
    return_credits: Decimal,
    now: datetime,
) -> ConsolidatedCustomer:
    ordered = sorted(bills, key=bill_sort_key)

    total_amount = ZERO
    total_paid = ZERO
    for bill in ordered:
        total_amount = add(total_amount, bill.total_amount)
        total_paid = add(total_paid, bill.amount_paid)

    total_outstanding = sub(sub(total_amount, total_paid), return_credits)
    oldest = ordered[0].created_at

    # Latest non-empty name wins; a customer may correct their name over time.
    name = ""
    for bill in reversed(ordered):
        if bill.customer_name.strip():
            name = bill.customer_name.strip()
            break

    return ConsolidatedCustomer(
        key=key,
        customer_name=name,
        bills=ordered,
        total_amount=total_amount,
        total_paid=total_paid,
        total_return_credits=return_credits,
        total_outstanding=total_outstanding,
        oldest_bill_date=oldest,
        days_overdue=days_between(oldest, now),
        payment_status=derive_status(total_paid, total_outstanding),
    )


def consolidate(
    bills: Iterable[Bill],
    credits: Iterable[ReturnCredit],
    now: Optional[datetime] = None,
) -> List[ConsolidatedCustomer]:
    """
    Build one ConsolidatedCustomer per customer key.

    Identities with return credits but no live bills are not reported.
    Output is ordered by key only so that repeated calls are identical;
    display ordering belongs to the query layer.
    """
    if now is None:
        now = utcnow()

    groups: Dict[CustomerKey, List[Bill]] = defaultdict(list)
    for bill in bills:
        if bill.is_void:
            continue
        groups[bill.key].append(bill)

    credit_totals = sum_credits_by_key(credits)

    return [
        consolidate_group(key, groups[key], credit_totals.get(key, ZERO), now)
        for key in sorted(groups, key=lambda k: k.phone)
    ]


def find_customer(
    customers: Iterable[ConsolidatedCustomer], phone: str
) -> Optional[ConsolidatedCustomer]:
    key = CustomerKey.from_phone(phone)
    for customer in customers:
        if customer.key == key:
            return customer
    return None
