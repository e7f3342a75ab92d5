"""
Tests for FIFO payment allocation.

Covers:
- Oldest-first ordering and tie-break
- Exact payoff
- Rejection before any write
- Partial progress reporting when a store write fails
- The Ayesha end-to-end scenario
"""

import asyncio
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app.models.ledger import PaymentMethod, PaymentStatus
from app.services.consolidation_service import consolidate, find_customer
from app.services.payment_allocator import (
    CustomerLocks,
    allocate_payment,
    pay_bill,
    plan_allocation,
    record_customer_payment,
)
from app.utils.ledger_errors import (
    BillNotFound,
    CustomerNotFound,
    ExceedsOutstanding,
    InvalidAmount,
    StoreWriteFailure,
)

PHONE = "0300-1234567"
NOW = datetime(2026, 2, 1)


async def _seed(store, bills, credits=()):
    for bill in bills:
        await store.create_bill(bill)
    for credit in credits:
        await store.create_return_credit(credit)


async def _customer(store, phone=PHONE):
    bills = await store.list_bills()
    credits = await store.list_return_credits()
    return find_customer(consolidate(bills, credits, now=NOW), phone)


@pytest.mark.asyncio
async def test_fifo_allocation_order(store, make_bill):
    """50/30/20 outstanding, pay 60: first bill cleared, second part-paid."""
    d1, d2, d3 = make_bill(50, day=0), make_bill(30, day=1), make_bill(20, day=2)
    await _seed(store, [d3, d1, d2])
    customer = await _customer(store)

    result = await allocate_payment(store, customer, Decimal("60"), PaymentMethod.CASH, "counter")

    assert [(e.sale_id, e.amount) for e in result.events] == [
        (d1.id, Decimal("50.00")),
        (d2.id, Decimal("10.00")),
    ]
    assert result.events[0].resulting_balance == Decimal("0.00")
    assert result.events[1].previous_balance == Decimal("30.00")
    assert result.events[1].resulting_balance == Decimal("20.00")
    assert all(e.notes == "counter" for e in result.events)

    assert store.bills[d1.id].amount_paid == Decimal("50.00")
    assert store.bills[d1.id].payment_status == PaymentStatus.PAID
    assert store.bills[d2.id].amount_paid == Decimal("10.00")
    assert store.bills[d2.id].payment_status == PaymentStatus.PARTIAL
    assert store.bills[d3.id].amount_paid == Decimal("0.00")
    assert store.bills[d3.id].payment_status == PaymentStatus.UNPAID
    assert len(store.events) == 2


@pytest.mark.asyncio
async def test_writes_are_sequential_in_allocation_order(store, make_bill):
    d1, d2 = make_bill(50, day=0), make_bill(30, day=1)
    await _seed(store, [d2, d1])
    customer = await _customer(store)

    await allocate_payment(store, customer, "80")

    assert store.write_log == [
        ("update", d1.id), ("append", d1.id),
        ("update", d2.id), ("append", d2.id),
    ]


@pytest.mark.asyncio
async def test_exact_payoff(store, make_bill):
    bills = [make_bill(50, 20, day=0), make_bill(30, day=1), make_bill("20.55", day=2)]
    await _seed(store, bills)
    customer = await _customer(store)
    assert customer.total_outstanding == Decimal("80.55")

    result = await allocate_payment(store, customer, Decimal("80.55"))

    assert result.unapplied == Decimal("0.00")
    assert all(b.payment_status == PaymentStatus.PAID for b in store.bills.values())
    after = await _customer(store)
    assert after.total_outstanding == Decimal("0.00")
    assert after.payment_status == PaymentStatus.PAID


@pytest.mark.parametrize("amount", [0, "0", -10, "-0.01", "abc", None, "1e30", "9" * 29])
@pytest.mark.asyncio
async def test_invalid_amount_rejected_without_writes(store, make_bill, amount):
    await _seed(store, [make_bill(100)])
    customer = await _customer(store)
    before = {k: v.model_copy() for k, v in store.bills.items()}

    with pytest.raises(InvalidAmount):
        await allocate_payment(store, customer, amount)

    assert store.bills == before
    assert store.events == []
    assert store.write_log == []


@pytest.mark.asyncio
async def test_amount_over_outstanding_rejected(store, make_bill, make_credit):
    await _seed(store, [make_bill(100, 40)], [make_credit(10)])
    customer = await _customer(store)

    with pytest.raises(ExceedsOutstanding) as excinfo:
        await allocate_payment(store, customer, "50.01")

    assert excinfo.value.outstanding == Decimal("50.00")
    assert store.events == []
    assert store.write_log == []


@pytest.mark.asyncio
async def test_tie_break_by_id(store, make_bill):
    second = make_bill(10, day=0, bill_id="bill-b")
    first = make_bill(10, day=0, bill_id="bill-a")
    await _seed(store, [second, first])
    customer = await _customer(store)

    runs = [plan_allocation(customer, Decimal("15")) for _ in range(3)]

    for steps in runs:
        assert [(s.bill.id, s.applied) for s in steps] == [
            ("bill-a", Decimal("10.00")),
            ("bill-b", Decimal("5.00")),
        ]


@pytest.mark.asyncio
async def test_paid_bills_are_skipped(store, make_bill):
    paid = make_bill(40, 40, day=0)
    open_bill = make_bill(25, 5, day=1)
    await _seed(store, [paid, open_bill])
    customer = await _customer(store)

    result = await allocate_payment(store, customer, 20)

    assert [e.sale_id for e in result.events] == [open_bill.id]
    assert store.bills[open_bill.id].payment_status == PaymentStatus.PAID


@pytest.mark.asyncio
async def test_store_failure_reports_partial_progress(store, make_bill):
    d1, d2, d3 = make_bill(50, day=0), make_bill(30, day=1), make_bill(20, day=2)
    await _seed(store, [d1, d2, d3])
    store.fail_on_update.add(d2.id)
    customer = await _customer(store)

    with pytest.raises(StoreWriteFailure) as excinfo:
        await allocate_payment(store, customer, 90)

    err = excinfo.value
    assert err.failed_bill_id == d2.id
    assert [e.sale_id for e in err.completed_events] == [d1.id]
    # No rollback: the first bill stays paid, later bills untouched.
    assert store.bills[d1.id].payment_status == PaymentStatus.PAID
    assert store.bills[d2.id].amount_paid == Decimal("0.00")
    assert store.bills[d3.id].amount_paid == Decimal("0.00")
    assert [e.sale_id for e in store.events] == [d1.id]


@pytest.mark.asyncio
async def test_event_append_failure_is_reported(store, make_bill):
    d1 = make_bill(50, day=0)
    await _seed(store, [d1])
    store.fail_on_append.add(d1.id)
    customer = await _customer(store)

    with pytest.raises(StoreWriteFailure) as excinfo:
        await allocate_payment(store, customer, 10)

    assert excinfo.value.completed_events == []
    assert excinfo.value.failed_bill_id == d1.id


@pytest.mark.asyncio
async def test_stale_snapshot_detected_by_store(store, make_bill):
    d1 = make_bill(50, day=0)
    await _seed(store, [d1])
    stale = await _customer(store)
    await allocate_payment(store, await _customer(store), 10)

    with pytest.raises(StoreWriteFailure):
        await allocate_payment(store, stale, 10)

    assert store.bills[d1.id].amount_paid == Decimal("10.00")


@pytest.mark.asyncio
async def test_exhausted_bills_return_events_without_raising(make_bill, store):
    """A snapshot whose outstanding is larger than its bills cover."""
    d1 = make_bill(30, day=0)
    await _seed(store, [d1])
    customer = (await _customer(store)).model_copy(update={"total_outstanding": Decimal("100.00")})

    result = await allocate_payment(store, customer, 50)

    assert [e.amount for e in result.events] == [Decimal("30.00")]
    assert result.unapplied == Decimal("20.00")


@pytest.mark.asyncio
async def test_manual_balance_bill_allocated_like_sale(store, make_bill):
    manual = make_bill(100, day=0, is_manual_balance=True)
    sale = make_bill(100, day=1)
    await _seed(store, [sale, manual])
    customer = await _customer(store)

    result = await allocate_payment(store, customer, 120)

    assert [e.sale_id for e in result.events] == [manual.id, sale.id]


@pytest.mark.asyncio
async def test_ayesha_end_to_end(store, make_bill, make_credit):
    bill_a = make_bill(1000, 200, day=0)
    bill_b = make_bill(500, 0, day=5)
    await _seed(store, [bill_a, bill_b], [make_credit(100)])

    result = await record_customer_payment(store, PHONE, "900", PaymentMethod.BANK_TRANSFER)

    assert [(e.sale_id, e.amount) for e in result.events] == [
        (bill_a.id, Decimal("800.00")),
        (bill_b.id, Decimal("100.00")),
    ]
    assert store.bills[bill_a.id].payment_status == PaymentStatus.PAID
    assert store.bills[bill_b.id].amount_paid == Decimal("100.00")
    assert store.bills[bill_b.id].payment_status == PaymentStatus.PARTIAL
    after = await _customer(store)
    assert after.total_outstanding == Decimal("300.00")
    assert after.total_outstanding == after.total_amount - after.total_paid - after.total_return_credits


@pytest.mark.asyncio
async def test_record_payment_unknown_customer(store):
    with pytest.raises(CustomerNotFound):
        await record_customer_payment(store, "0399-0000000", 10)


@pytest.mark.asyncio
async def test_concurrent_payments_for_same_customer_are_serialized(store, make_bill):
    await _seed(store, [make_bill(100, day=0)])
    locks = CustomerLocks()

    results = await asyncio.gather(
        record_customer_payment(store, PHONE, 60, locks=locks),
        record_customer_payment(store, PHONE, 60, locks=locks),
        return_exceptions=True,
    )

    assert sum(1 for r in results if isinstance(r, ExceedsOutstanding)) == 1
    assert sum(e.amount for e in store.events) == Decimal("60.00")
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_locks_are_dropped_after_use(store, make_bill):
    await _seed(store, [make_bill(100), make_bill(50, phone="0321-7654321", name="Bilal")])
    locks = CustomerLocks()

    await record_customer_payment(store, PHONE, 10, locks=locks)
    await record_customer_payment(store, "0321-7654321", 10, locks=locks)
    with pytest.raises(CustomerNotFound):
        await record_customer_payment(store, "0399-0000000", 10, locks=locks)

    assert len(locks) == 0


@pytest.mark.asyncio
async def test_payment_for_customer_without_phone(store, make_bill):
    blank = make_bill(40, phone="", name="Walk-in")
    await _seed(store, [blank, make_bill(100)])

    result = await record_customer_payment(store, "unknown", 40)

    assert [e.sale_id for e in result.events] == [blank.id]
    assert store.bills[blank.id].payment_status == PaymentStatus.PAID


@pytest.mark.asyncio
async def test_pay_bill_skips_fifo_order(store, make_bill):
    old, new = make_bill(50, day=0), make_bill(30, day=1)
    await _seed(store, [old, new])

    result = await pay_bill(store, new.id, "20", PaymentMethod.CARD, "for the newer bill")

    assert len(result.events) == 1
    event = result.events[0]
    assert (event.sale_id, event.amount) == (new.id, Decimal("20.00"))
    assert event.previous_balance == Decimal("30.00")
    assert event.resulting_balance == Decimal("10.00")
    assert event.payment_method == PaymentMethod.CARD
    assert result.updated_bills[0].payment_status == PaymentStatus.PARTIAL
    assert store.bills[old.id].amount_paid == Decimal("0.00")
    assert store.bills[new.id].amount_paid == Decimal("20.00")
    assert store.write_log == [("update", new.id), ("append", new.id)]


@pytest.mark.asyncio
async def test_pay_bill_checks_that_bills_balance(store, make_bill):
    small, big = make_bill(30, day=0), make_bill(500, day=1)
    await _seed(store, [small, big])

    with pytest.raises(ExceedsOutstanding) as excinfo:
        await pay_bill(store, small.id, "30.01")

    assert excinfo.value.outstanding == Decimal("30.00")
    assert store.write_log == []


@pytest.mark.parametrize("amount", [0, "-1", "abc", "1e30"])
@pytest.mark.asyncio
async def test_pay_bill_rejects_invalid_amount(store, make_bill, amount):
    bill = make_bill(30)
    await _seed(store, [bill])

    with pytest.raises(InvalidAmount):
        await pay_bill(store, bill.id, amount)

    assert store.write_log == []


@pytest.mark.asyncio
async def test_pay_bill_missing_or_returned(store, make_bill):
    returned = make_bill(30, status=PaymentStatus.FULL_RETURN)
    await _seed(store, [returned])

    with pytest.raises(BillNotFound):
        await pay_bill(store, "nope", 10)
    with pytest.raises(BillNotFound):
        await pay_bill(store, returned.id, 10)
