from fastapi import APIRouter, Depends, HTTPException, status

from app.core.auth import (
    PERM_PAYMENT_EDIT,
    PERM_SALES_EDIT,
    Operator,
    get_current_operator,
    require_permission,
)
from app.db.mongo import get_ledger_repo
from app.repositories.ledger_repo import LedgerRepository
from app.routes.errors import to_http_error
from app.schemas.ledger import (
    AllocationResponse,
    BillResponse,
    DueDateUpdate,
    ManualBalanceCreate,
    PaymentRequest,
)
from app.services.manual_balance_service import issue_manual_balance, update_due_date
from app.services.payment_allocator import pay_bill
from app.utils.ledger_errors import LedgerError

router = APIRouter(prefix="/bills", tags=["bills"])


@router.post("/manual-balance", response_model=BillResponse, status_code=status.HTTP_201_CREATED)
async def create_manual_balance(
    payload: ManualBalanceCreate,
    operator: Operator = Depends(require_permission(PERM_SALES_EDIT)),
    repo: LedgerRepository = Depends(get_ledger_repo)
):
    """Record a pending balance that is not backed by a sale."""
    try:
        bill = await issue_manual_balance(
            repo,
            payload.customer_name,
            payload.customer_phone,
            payload.total_amount,
            due_date=payload.due_date,
            notes=payload.notes
        )
    except LedgerError as exc:
        raise to_http_error(exc)
    return BillResponse.from_bill(bill)


@router.patch("/{bill_id}/due-date", response_model=BillResponse)
async def set_due_date(
    bill_id: str,
    payload: DueDateUpdate,
    operator: Operator = Depends(require_permission(PERM_SALES_EDIT)),
    repo: LedgerRepository = Depends(get_ledger_repo)
):
    """Set or clear a bill's due date."""
    try:
        bill = await update_due_date(repo, bill_id, payload.due_date, payload.notes)
    except LedgerError as exc:
        raise to_http_error(exc)
    return BillResponse.from_bill(bill)


@router.get("/{bill_id}", response_model=BillResponse)
async def get_bill(
    bill_id: str,
    operator: Operator = Depends(get_current_operator),
    repo: LedgerRepository = Depends(get_ledger_repo)
):
    """One bill, including fully returned ones."""
    bill = await repo.get_bill(bill_id)
    if not bill:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Bill not found"
        )
    return BillResponse.from_bill(bill)


@router.post("/{bill_id}/payments", response_model=AllocationResponse)
async def record_bill_payment(
    bill_id: str,
    payload: PaymentRequest,
    operator: Operator = Depends(require_permission(PERM_PAYMENT_EDIT)),
    repo: LedgerRepository = Depends(get_ledger_repo)
):
    """Pay one specific bill instead of the customer's oldest first."""
    try:
        result = await pay_bill(
            repo,
            bill_id,
            payload.amount,
            payload.payment_method,
            payload.notes
        )
    except LedgerError as exc:
        raise to_http_error(exc)
    return AllocationResponse.from_result(result)
