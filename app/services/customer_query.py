"""Filtering and sorting of consolidated customers for display."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel

from app.models.ledger import Bill, ConsolidatedCustomer
from app.utils.money import add
from app.utils.time_utils import to_date, utcnow

DUE_SOON_DAYS = 7


class StatusFilter(str, Enum):
    ALL = "all"
    PAID = "paid"
    UNPAID = "unpaid"


class SortOrder(str, Enum):
    HIGHEST = "highest"
    LOWEST = "lowest"
    OLDEST = "oldest"
    NEWEST = "newest"
    NAME = "name"


class DueStatus(str, Enum):
    ALL = "all"
    OVERDUE = "overdue"
    DUE_SOON = "due_soon"
    NO_DUE_DATE = "no_due_date"
    FUTURE = "future"


class CustomerQuery(BaseModel):
    """Query options. With show_all_bills off only customers who still owe
    money are returned, whatever status_filter says."""
    status_filter: StatusFilter = StatusFilter.ALL
    show_all_bills: bool = False
    search: str = ""
    sort: SortOrder = SortOrder.OLDEST
    min_outstanding: Optional[Decimal] = None
    max_outstanding: Optional[Decimal] = None
    min_days_overdue: Optional[int] = None
    due_status: DueStatus = DueStatus.ALL
    due_from: Optional[date] = None
    due_to: Optional[date] = None


def bill_due_status(bill: Bill, today: date, due_soon_days: int = DUE_SOON_DAYS) -> DueStatus:
    due = to_date(bill.due_date)
    if due is None:
        return DueStatus.NO_DUE_DATE
    diff = (due - today).days
    if diff < 0:
        return DueStatus.OVERDUE
    if diff <= due_soon_days:
        return DueStatus.DUE_SOON
    return DueStatus.FUTURE


def _digits(value: str) -> str:
    return "".join(ch for ch in value if ch.isdigit())


def _matches(name: str, phone: str, search: str) -> bool:
    needle = search.strip()
    if not needle:
        return True
    if needle.casefold() in name.casefold():
        return True
    if needle in phone:
        return True
    digits = _digits(needle)
    return bool(digits) and digits in _digits(phone)


def matches_search(customer: ConsolidatedCustomer, search: str) -> bool:
    return _matches(customer.customer_name, customer.customer_phone, search)


def _in_due_range(bill: Bill, due_from: Optional[date], due_to: Optional[date]) -> bool:
    due = to_date(bill.due_date)
    if due is None:
        return False
    if due_from and due < due_from:
        return False
    if due_to and due > due_to:
        return False
    return True


def _sort(customers: List[ConsolidatedCustomer], order: SortOrder) -> List[ConsolidatedCustomer]:
    if order == SortOrder.HIGHEST:
        return sorted(customers, key=lambda c: c.total_outstanding, reverse=True)
    if order == SortOrder.LOWEST:
        return sorted(customers, key=lambda c: c.total_outstanding)
    if order == SortOrder.NEWEST:
        return sorted(customers, key=lambda c: c.oldest_bill_date, reverse=True)
    if order == SortOrder.NAME:
        return sorted(customers, key=lambda c: c.customer_name.casefold())
    return sorted(customers, key=lambda c: c.oldest_bill_date)


def query_customers(
    customers: Iterable[ConsolidatedCustomer],
    query: Optional[CustomerQuery] = None,
    today: Optional[date] = None,
    due_soon_days: int = DUE_SOON_DAYS,
) -> List[ConsolidatedCustomer]:
    """Apply the query's filters, then its (stable) sort."""
    query = query or CustomerQuery()
    today = today or utcnow().date()
    result = list(customers)

    if not query.show_all_bills:
        result = [c for c in result if c.total_outstanding > 0]
    elif query.status_filter == StatusFilter.UNPAID:
        result = [c for c in result if c.total_outstanding > 0]
    elif query.status_filter == StatusFilter.PAID:
        result = [c for c in result if c.total_outstanding <= 0]

    if query.search:
        result = [c for c in result if matches_search(c, query.search)]

    if query.min_outstanding is not None:
        result = [c for c in result if c.total_outstanding >= query.min_outstanding]
    if query.max_outstanding is not None:
        result = [c for c in result if c.total_outstanding <= query.max_outstanding]

    if query.min_days_overdue is not None:
        result = [c for c in result if c.days_overdue >= query.min_days_overdue]

    if query.due_status != DueStatus.ALL:
        result = [
            c for c in result
            if any(bill_due_status(b, today, due_soon_days) == query.due_status for b in c.bills)
        ]

    if query.due_from or query.due_to:
        result = [
            c for c in result
            if any(_in_due_range(b, query.due_from, query.due_to) for b in c.bills)
        ]

    return _sort(result, query.sort)


class CustomerSuggestion(BaseModel):
    """A known customer, for filling in the name and phone at the till."""
    customer_name: str
    customer_phone: str
    last_sale_date: datetime
    total_spent: Decimal
    transaction_count: int


def suggest_customers(bills: Iterable[Bill], search: str = "") -> List[CustomerSuggestion]:
    """
    Every phone that has bought something, most recent buyer first.

    Paid and returned bills count too: this is purchase history, not debt.
    Bills without a phone are skipped.
    """
    by_phone: Dict[str, CustomerSuggestion] = {}

    for bill in sorted(bills, key=lambda b: (b.created_at, b.id)):
        if bill.key.is_unknown:
            continue
        phone = bill.key.phone
        seen = by_phone.get(phone)
        if seen is None:
            by_phone[phone] = CustomerSuggestion(
                customer_name=bill.customer_name.strip(),
                customer_phone=phone,
                last_sale_date=bill.created_at,
                total_spent=bill.total_amount,
                transaction_count=1,
            )
            continue
        seen.total_spent = add(seen.total_spent, bill.total_amount)
        seen.transaction_count += 1
        seen.last_sale_date = bill.created_at
        if bill.customer_name.strip():
            seen.customer_name = bill.customer_name.strip()

    suggestions = [
        s for s in by_phone.values()
        if _matches(s.customer_name, s.customer_phone, search)
    ]
    return sorted(suggestions, key=lambda s: s.last_sale_date, reverse=True)
