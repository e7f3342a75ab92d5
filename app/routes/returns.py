import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, status

from app.core.auth import PERM_SALES_EDIT, Operator, get_current_operator, require_permission
from app.db.mongo import get_ledger_repo
from app.models.ledger import CustomerKey, ReturnCredit
from app.repositories.ledger_repo import LedgerRepository
from app.routes.errors import to_http_error
from app.schemas.ledger import ReturnCreditCreate, ReturnCreditResponse
from app.utils.ledger_errors import LedgerError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/returns", tags=["returns"])


@router.post("", response_model=ReturnCreditResponse, status_code=status.HTTP_201_CREATED)
async def record_return(
    payload: ReturnCreditCreate,
    operator: Operator = Depends(require_permission(PERM_SALES_EDIT)),
    repo: LedgerRepository = Depends(get_ledger_repo)
):
    """Record a refund against a customer account.

    Only credited refunds reduce what the customer owes.
    """
    credit = ReturnCredit(**payload.model_dump())
    try:
        created = await repo.create_return_credit(credit)
    except LedgerError as exc:
        raise to_http_error(exc)
    logger.info("Return %s of %s (%s) recorded for %s",
                created.id, created.total_refund, created.refund_method.value, created.customer_phone)
    return ReturnCreditResponse.from_credit(created)


@router.get("", response_model=List[ReturnCreditResponse])
async def list_returns(
    customer_phone: Optional[str] = None,
    operator: Operator = Depends(get_current_operator),
    repo: LedgerRepository = Depends(get_ledger_repo)
):
    """Recorded returns, oldest first, optionally for one customer."""
    if customer_phone is None:
        credits = await repo.list_return_credits()
    else:
        credits = await repo.list_return_credits_for_customer(CustomerKey.from_phone(customer_phone))
    return [ReturnCreditResponse.from_credit(c) for c in credits]
