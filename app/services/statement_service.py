"""
Customer statement - chronological account ledger with a running balance.

Rows:
- bill: debit = bill total, credit = amount paid at the till
  (amount_paid less the payments recorded later as events)
- payment: credit = payment event amount
- return: credit = refund if credited, 0 for cash refunds

The closing balance matches the consolidated total_outstanding.
"""

from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel

from app.models.ledger import Bill, CustomerKey, PaymentEvent, ReturnCredit
from app.utils.money import ZERO, add, sub


class RowKind(str, Enum):
    BILL = "bill"
    MANUAL_BALANCE = "manual_balance"
    PAYMENT = "payment"
    RETURN = "return"


# Same-timestamp rows: the debt comes before what settles it.
_KIND_ORDER = {
    RowKind.BILL: 0,
    RowKind.MANUAL_BALANCE: 0,
    RowKind.PAYMENT: 1,
    RowKind.RETURN: 2,
}


class StatementRow(BaseModel):
    id: str
    kind: RowKind
    date: datetime
    reference: str
    description: str
    debit: Decimal = ZERO
    credit: Decimal = ZERO
    balance: Decimal = ZERO
    sale_id: Optional[str] = None
    notes: Optional[str] = None


class StatementSummary(BaseModel):
    total_bills: int
    paid_bills: int
    unpaid_bills: int
    total_purchases: Decimal
    total_paid: Decimal
    total_payments_received: Decimal
    total_return_credits: Decimal
    total_outstanding: Decimal
    has_credit: bool


class CustomerStatement(BaseModel):
    customer_phone: str
    customer_name: str
    rows: List[StatementRow]
    closing_balance: Decimal
    summary: StatementSummary


def _short_ref(record_id: str) -> str:
    return record_id.replace("-", "")[:8].upper()


def _bill_row(bill: Bill, recovered: Decimal) -> StatementRow:
    paid_at_till = sub(bill.amount_paid, recovered)
    if paid_at_till < 0:
        paid_at_till = ZERO
    return StatementRow(
        id=f"bill-{bill.id}",
        kind=RowKind.MANUAL_BALANCE if bill.is_manual_balance else RowKind.BILL,
        date=bill.created_at,
        reference=_short_ref(bill.id),
        description="Manual Balance" if bill.is_manual_balance else f"Bill #{_short_ref(bill.id)}",
        debit=bill.total_amount,
        credit=paid_at_till,
        sale_id=bill.id,
        notes=bill.notes,
    )


def _payment_row(event: PaymentEvent) -> StatementRow:
    return StatementRow(
        id=f"payment-{event.id}",
        kind=RowKind.PAYMENT,
        date=event.created_at,
        reference=_short_ref(event.id),
        description=f"Payment Received ({event.payment_method.value.upper()})",
        credit=event.amount,
        sale_id=event.sale_id,
        notes=event.notes,
    )


def _return_row(credit: ReturnCredit) -> StatementRow:
    description = "Return (credited)" if credit.credited_amount() > 0 else "Return (cash refund)"
    if credit.reason:
        description = f"{description} - {credit.reason}"
    return StatementRow(
        id=f"return-{credit.id}",
        kind=RowKind.RETURN,
        date=credit.created_at,
        reference=f"RET-{_short_ref(credit.id)[:6]}",
        description=description,
        credit=credit.credited_amount(),
        sale_id=credit.sale_id,
        notes=credit.reason,
    )


def build_statement(
    phone: str,
    bills: Iterable[Bill],
    credits: Iterable[ReturnCredit],
    events: Iterable[PaymentEvent],
) -> CustomerStatement:
    """Statement for one customer key; records of other keys are ignored."""
    key = CustomerKey.from_phone(phone)
    live_bills = [b for b in bills if b.key == key and not b.is_void]
    live_ids = {b.id for b in live_bills}
    own_credits = [c for c in credits if c.key == key]
    own_events = [e for e in events if e.sale_id in live_ids]

    recovered: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    for event in own_events:
        recovered[event.sale_id] = add(recovered[event.sale_id], event.amount)

    rows = [_bill_row(b, recovered[b.id]) for b in live_bills]
    rows += [_payment_row(e) for e in own_events]
    rows += [_return_row(c) for c in own_credits]
    rows.sort(key=lambda r: (r.date, _KIND_ORDER[r.kind], r.id))

    balance = ZERO
    for row in rows:
        balance = sub(add(balance, row.debit), row.credit)
        row.balance = balance

    total_purchases = ZERO
    total_paid = ZERO
    paid_bills = 0
    for bill in live_bills:
        total_purchases = add(total_purchases, bill.total_amount)
        total_paid = add(total_paid, bill.amount_paid)
        if bill.outstanding() <= 0:
            paid_bills += 1

    payments_received = ZERO
    for event in own_events:
        payments_received = add(payments_received, event.amount)

    return_credits = ZERO
    for credit in own_credits:
        return_credits = add(return_credits, credit.credited_amount())

    total_outstanding = sub(sub(total_purchases, total_paid), return_credits)

    name = ""
    for bill in sorted(live_bills, key=lambda b: (b.created_at, b.id), reverse=True):
        if bill.customer_name.strip():
            name = bill.customer_name.strip()
            break

    return CustomerStatement(
        customer_phone=key.phone,
        customer_name=name,
        rows=rows,
        closing_balance=balance,
        summary=StatementSummary(
            total_bills=len(live_bills),
            paid_bills=paid_bills,
            unpaid_bills=len(live_bills) - paid_bills,
            total_purchases=total_purchases,
            total_paid=total_paid,
            total_payments_received=payments_received,
            total_return_credits=return_credits,
            total_outstanding=total_outstanding,
            has_credit=total_outstanding < 0,
        ),
    )
