"""Manual balances: bills that record an opening or adjustment balance
rather than a point-of-sale transaction."""

import logging
from datetime import datetime
from typing import Any, Optional

from app.models.ledger import Bill, PaymentStatus
from app.utils.ledger_errors import BillNotFound, InvalidAmount, InvalidInput
from app.utils.money import ZERO, parse_money
from app.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


async def issue_manual_balance(
    repo,
    customer_name: str,
    customer_phone: str,
    total_amount: Any,
    due_date: Optional[datetime] = None,
    notes: Optional[str] = None,
) -> Bill:
    """
    Create an unpaid bill flagged as a manual balance.

    Downstream it consolidates and allocates like any other bill.
    """
    name = (customer_name or "").strip()
    phone = (customer_phone or "").strip()
    if not name or not phone:
        raise InvalidInput("Customer name and phone are required")

    amount = parse_money(total_amount)
    if amount is None or amount <= 0:
        raise InvalidAmount("Amount must be greater than 0")

    bill = Bill(
        customer_name=name,
        customer_phone=phone,
        total_amount=amount,
        amount_paid=ZERO,
        payment_status=PaymentStatus.UNPAID,
        is_manual_balance=True,
        due_date=due_date,
        notes=notes or None,
        created_at=utcnow(),
    )
    created = await repo.create_bill(bill)
    logger.info("Manual balance %s of %s issued for %s", created.id, amount, phone)
    return created


async def update_due_date(
    repo,
    bill_id: str,
    due_date: Optional[datetime],
    notes: Optional[str] = None,
) -> Bill:
    """Set or clear a bill's due date; has no effect on balances."""
    bill = await repo.update_bill_due_date(bill_id, due_date, notes)
    if bill is None:
        raise BillNotFound(f"Bill {bill_id} not found")
    return bill
