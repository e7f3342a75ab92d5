from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

from app.core.auth import PERM_PAYMENT_EDIT, PERM_SALES_EDIT, create_access_token
from app.db.mongo import get_ledger_repo
from app.main import app
from app.models.ledger import Bill, PaymentEvent, PaymentStatus, RefundMethod, ReturnCredit
from app.utils.ledger_errors import StoreWriteFailure
from app.utils.money import to_money

# Fixed reference time so ages and FIFO order are reproducible.
DAY0 = datetime(2026, 1, 1, 9, 0, 0)


class InMemoryLedgerStore:
    """Ledger store kept in dicts; mirrors LedgerRepository's contract.

    `fail_on_update` / `fail_on_append` name bill ids whose write should
    fail, to exercise partial allocation.
    """

    def __init__(self):
        self.bills = {}
        self.credits = {}
        self.events: List[PaymentEvent] = []
        self.fail_on_update = set()
        self.fail_on_append = set()
        self.write_log = []

    async def list_bills(self):
        return [b.model_copy() for b in self.bills.values()]

    async def list_bills_for_customer(self, key):
        return [b.model_copy() for b in self.bills.values() if b.key == key]

    async def get_bill(self, bill_id):
        bill = self.bills.get(bill_id)
        return bill.model_copy() if bill else None

    async def list_return_credits(self):
        return list(self.credits.values())

    async def list_return_credits_for_customer(self, key):
        return [c for c in self.credits.values() if c.key == key]

    async def list_payment_events(self, customer=None, sale_id=None):
        events = [
            e for e in self.events
            if (customer is None or e.key == customer)
            and (sale_id is None or e.sale_id == sale_id)
        ]
        return sorted(events, key=lambda e: e.created_at, reverse=True)

    async def create_bill(self, bill):
        self.bills[bill.id] = bill.model_copy()
        return bill

    async def create_return_credit(self, credit):
        self.credits[credit.id] = credit
        return credit

    async def update_bill_payment(self, bill_id, new_amount_paid, new_status, expected_amount_paid=None):
        self.write_log.append(("update", bill_id))
        if bill_id in self.fail_on_update:
            raise StoreWriteFailure(f"update failed for {bill_id}", failed_bill_id=bill_id)
        bill = self.bills.get(bill_id)
        if bill is None or bill.is_void:
            raise StoreWriteFailure(f"Bill {bill_id} not found", failed_bill_id=bill_id)
        if expected_amount_paid is not None and bill.amount_paid != expected_amount_paid:
            raise StoreWriteFailure(f"Bill {bill_id} changed since it was read", failed_bill_id=bill_id)
        self.bills[bill_id] = bill.model_copy(update={
            "amount_paid": new_amount_paid,
            "payment_status": new_status,
        })

    async def append_payment_event(self, event):
        self.write_log.append(("append", event.sale_id))
        if event.sale_id in self.fail_on_append:
            raise StoreWriteFailure(f"append failed for {event.sale_id}", failed_bill_id=event.sale_id)
        self.events.append(event)
        return event

    async def update_bill_due_date(self, bill_id, due_date, notes=None):
        bill = self.bills.get(bill_id)
        if bill is None:
            return None
        update = {"due_date": due_date}
        if notes is not None:
            update["notes"] = notes
        self.bills[bill_id] = bill.model_copy(update=update)
        return self.bills[bill_id]


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def make_bill():
    """Factory for bills; `day` is the offset from DAY0."""
    def _make(
        total,
        paid=0,
        day=0,
        phone="0300-1234567",
        name="Ayesha",
        status: Optional[PaymentStatus] = None,
        bill_id: Optional[str] = None,
        **extra,
    ) -> Bill:
        total_d, paid_d = to_money(total), to_money(paid)
        if status is None:
            if paid_d <= 0:
                status = PaymentStatus.UNPAID
            elif paid_d >= total_d:
                status = PaymentStatus.PAID
            else:
                status = PaymentStatus.PARTIAL
        fields = dict(
            customer_name=name,
            customer_phone=phone,
            total_amount=total_d,
            amount_paid=paid_d,
            payment_status=status,
            created_at=DAY0 + timedelta(days=day),
            **extra,
        )
        if bill_id is not None:
            fields["id"] = bill_id
        return Bill(**fields)
    return _make


@pytest.fixture
def make_credit():
    def _make(amount, method=RefundMethod.CREDITED, phone="0300-1234567", day=0, sale_id=None):
        return ReturnCredit(
            customer_name="Ayesha",
            customer_phone=phone,
            total_refund=Decimal(str(amount)),
            refund_method=method,
            sale_id=sale_id,
            created_at=DAY0 + timedelta(days=day),
        )
    return _make


@pytest.fixture
def client(store):
    """API client backed by the in-memory store (no MongoDB, no lifespan)."""
    app.dependency_overrides[get_ledger_repo] = lambda: store
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    token = create_access_token("till-1", [PERM_PAYMENT_EDIT, PERM_SALES_EDIT])
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def read_only_headers():
    token = create_access_token("viewer-1", [])
    return {"Authorization": f"Bearer {token}"}
