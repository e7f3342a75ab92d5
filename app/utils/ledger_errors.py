"""Ledger error types."""
from typing import List, Optional


class LedgerError(Exception):
    """Base class for ledger errors."""
    pass


class InvalidAmount(LedgerError):
    """Payment or balance amount is non-positive or not a number."""
    pass


class ExceedsOutstanding(LedgerError):
    """Payment is larger than what the customer owes."""

    def __init__(self, amount, outstanding):
        self.amount = amount
        self.outstanding = outstanding
        super().__init__(
            f"Payment amount ({amount}) exceeds outstanding balance ({outstanding})"
        )


class InvalidInput(LedgerError):
    """Required identity fields are missing."""
    pass


class CustomerNotFound(LedgerError):
    pass


class BillNotFound(LedgerError):
    pass


class StoreWriteFailure(LedgerError):
    """
    A ledger store write did not succeed.

    When raised from the payment allocator, ``completed_events`` lists the
    payment events whose writes went through before the failure. Those
    writes stay applied.
    """

    def __init__(
        self,
        message: str,
        completed_events: Optional[List] = None,
        failed_bill_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.completed_events = list(completed_events or [])
        self.failed_bill_id = failed_bill_id
