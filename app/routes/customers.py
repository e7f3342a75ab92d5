from datetime import date
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.core.auth import PERM_PAYMENT_EDIT, Operator, get_current_operator, require_permission
from app.core.config import settings
from app.db.mongo import get_ledger_repo
from app.models.ledger import CustomerKey
from app.repositories.ledger_repo import LedgerRepository
from app.routes.errors import to_http_error
from app.schemas.ledger import (
    AllocationResponse,
    CustomerResponse,
    PaymentRequest,
)
from app.services.consolidation_service import consolidate, find_customer
from app.services.customer_query import (
    CustomerQuery,
    CustomerSuggestion,
    DueStatus,
    SortOrder,
    StatusFilter,
    query_customers,
    suggest_customers,
)
from app.services.payment_allocator import record_customer_payment
from app.services.statement_service import CustomerStatement, build_statement
from app.utils.ledger_errors import LedgerError

router = APIRouter(prefix="/customers", tags=["customers"])


@router.get("", response_model=List[CustomerResponse])
async def list_customers(
    status_filter: StatusFilter = StatusFilter.ALL,
    show_all_bills: bool = False,
    search: str = "",
    sort: SortOrder = SortOrder.OLDEST,
    min_outstanding: Optional[Decimal] = None,
    max_outstanding: Optional[Decimal] = None,
    min_days_overdue: Optional[int] = Query(None, ge=0),
    due_status: DueStatus = DueStatus.ALL,
    due_from: Optional[date] = None,
    due_to: Optional[date] = None,
    operator: Operator = Depends(get_current_operator),
    repo: LedgerRepository = Depends(get_ledger_repo)
):
    """Consolidated customer positions, filtered and sorted."""
    bills = await repo.list_bills()
    credits = await repo.list_return_credits()
    query = CustomerQuery(
        status_filter=status_filter,
        show_all_bills=show_all_bills,
        search=search,
        sort=sort,
        min_outstanding=min_outstanding,
        max_outstanding=max_outstanding,
        min_days_overdue=min_days_overdue,
        due_status=due_status,
        due_from=due_from,
        due_to=due_to
    )
    customers = query_customers(
        consolidate(bills, credits), query, due_soon_days=settings.DUE_SOON_DAYS
    )
    return [CustomerResponse.from_customer(c) for c in customers]


@router.get("/suggestions", response_model=List[CustomerSuggestion])
async def get_customer_suggestions(
    search: str = "",
    operator: Operator = Depends(get_current_operator),
    repo: LedgerRepository = Depends(get_ledger_repo)
):
    """Known customers, most recent buyer first."""
    bills = await repo.list_bills()
    return suggest_customers(bills, search)


@router.get("/{phone}", response_model=CustomerResponse)
async def get_customer(
    phone: str,
    operator: Operator = Depends(get_current_operator),
    repo: LedgerRepository = Depends(get_ledger_repo)
):
    """One customer's consolidated position."""
    key = CustomerKey.from_phone(phone)
    bills = await repo.list_bills_for_customer(key)
    credits = await repo.list_return_credits_for_customer(key)
    customer = find_customer(consolidate(bills, credits), key.phone)
    if customer is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Customer not found"
        )
    return CustomerResponse.from_customer(customer)


@router.get("/{phone}/statement", response_model=CustomerStatement)
async def get_customer_statement(
    phone: str,
    operator: Operator = Depends(get_current_operator),
    repo: LedgerRepository = Depends(get_ledger_repo)
):
    """Chronological statement with running balance."""
    key = CustomerKey.from_phone(phone)
    bills = await repo.list_bills_for_customer(key)
    if not bills:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Customer not found"
        )
    credits = await repo.list_return_credits_for_customer(key)
    events = await repo.list_payment_events(customer=key)
    return build_statement(key.phone, bills, credits, events)


@router.post("/{phone}/payments", response_model=AllocationResponse)
async def record_payment(
    phone: str,
    payload: PaymentRequest,
    operator: Operator = Depends(require_permission(PERM_PAYMENT_EDIT)),
    repo: LedgerRepository = Depends(get_ledger_repo)
):
    """Apply a payment across the customer's open bills, oldest first."""
    try:
        result = await record_customer_payment(
            repo,
            phone,
            payload.amount,
            payload.payment_method,
            payload.notes
        )
    except LedgerError as exc:
        raise to_http_error(exc)

    return AllocationResponse.from_result(result)
