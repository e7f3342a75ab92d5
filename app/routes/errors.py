from fastapi import HTTPException, status

from app.schemas.ledger import PaymentEventResponse
from app.utils.ledger_errors import (
    BillNotFound,
    CustomerNotFound,
    ExceedsOutstanding,
    InvalidAmount,
    InvalidInput,
    LedgerError,
    StoreWriteFailure,
)


def to_http_error(exc: LedgerError) -> HTTPException:
    """Translate a ledger error into the HTTP error the client sees."""
    if isinstance(exc, (CustomerNotFound, BillNotFound)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))

    if isinstance(exc, ExceedsOutstanding):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "exceeds_outstanding",
                "message": str(exc),
                "outstanding": str(exc.outstanding),
            }
        )

    if isinstance(exc, (InvalidAmount, InvalidInput)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    if isinstance(exc, StoreWriteFailure):
        # Partial progress must reach the caller so it can reconcile.
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={
                "error": "store_write_failure",
                "message": str(exc),
                "failed_bill_id": exc.failed_bill_id,
                "completed_events": [
                    PaymentEventResponse.from_event(e).model_dump(mode="json")
                    for e in exc.completed_events
                ],
            }
        )

    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
