from typing import List, Optional

from fastapi import APIRouter, Depends

from app.core.auth import Operator, get_current_operator
from app.db.mongo import get_ledger_repo
from app.models.ledger import CustomerKey
from app.repositories.ledger_repo import LedgerRepository
from app.schemas.ledger import PaymentEventResponse

router = APIRouter(prefix="/payments", tags=["payments"])


@router.get("", response_model=List[PaymentEventResponse])
async def list_payments(
    customer_phone: Optional[str] = None,
    sale_id: Optional[str] = None,
    operator: Operator = Depends(get_current_operator),
    repo: LedgerRepository = Depends(get_ledger_repo)
):
    """Payment history, newest first, optionally for one customer or bill."""
    customer = CustomerKey.from_phone(customer_phone) if customer_phone is not None else None
    events = await repo.list_payment_events(customer=customer, sale_id=sale_id)
    return [PaymentEventResponse.from_event(e) for e in events]
