"""
LedgerRepository - the ledger record store.

Collections:
- bills: one document per sale or manual balance
- return_credits: refunds against a customer account (immutable)
- payment_events: append-only audit trail of payments per bill

Money is stored as 2dp strings, timestamps as UTC-naive datetimes.
"""

import logging
import re
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from app.models.ledger import Bill, CustomerKey, PaymentEvent, PaymentStatus, ReturnCredit
from app.utils.ledger_errors import StoreWriteFailure
from app.utils.money import money_str

logger = logging.getLogger(__name__)

# Phones that are missing or blank once stripped.
_BLANK_PHONE = re.compile(r"^\s*$")


def customer_filter(key: CustomerKey) -> dict:
    """Mongo filter for the records consolidated under `key`.

    The unknown key has no stored phone of its own: it collects every
    record whose phone is missing or blank.
    """
    if key.is_unknown:
        return {"customer_phone": {"$in": [None, _BLANK_PHONE]}}
    return {"customer_phone": key.phone}


class LedgerRepository:
    """Repository for bills, return credits and payment events."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.bills = db["bills"]
        self.return_credits = db["return_credits"]
        self.payment_events = db["payment_events"]

    async def create_indexes(self) -> None:
        await self.bills.create_index("customer_phone")
        await self.bills.create_index([("created_at", 1), ("_id", 1)])
        await self.return_credits.create_index("customer_phone")
        await self.payment_events.create_index("sale_id")
        await self.payment_events.create_index("customer_phone")

    # ===== READS =====

    async def list_bills(self) -> List[Bill]:
        """All bills, including full returns. No pagination."""
        docs = await self.bills.find({}).sort([("created_at", 1), ("_id", 1)]).to_list(None)
        return [Bill(**doc) for doc in docs]

    async def list_bills_for_customer(self, key: CustomerKey) -> List[Bill]:
        docs = await self.bills.find(
            customer_filter(key)
        ).sort([("created_at", 1), ("_id", 1)]).to_list(None)
        return [Bill(**doc) for doc in docs]

    async def get_bill(self, bill_id: str) -> Optional[Bill]:
        doc = await self.bills.find_one({"_id": bill_id})
        if doc:
            return Bill(**doc)
        return None

    async def list_return_credits(self) -> List[ReturnCredit]:
        docs = await self.return_credits.find({}).sort("created_at", 1).to_list(None)
        return [ReturnCredit(**doc) for doc in docs]

    async def list_return_credits_for_customer(self, key: CustomerKey) -> List[ReturnCredit]:
        docs = await self.return_credits.find(
            customer_filter(key)
        ).sort("created_at", 1).to_list(None)
        return [ReturnCredit(**doc) for doc in docs]

    async def list_payment_events(
        self,
        customer: Optional[CustomerKey] = None,
        sale_id: Optional[str] = None,
    ) -> List[PaymentEvent]:
        """Payment history, newest first."""
        query = {}
        if customer is not None:
            query.update(customer_filter(customer))
        if sale_id is not None:
            query["sale_id"] = sale_id
        docs = await self.payment_events.find(query).sort("created_at", -1).to_list(None)
        return [PaymentEvent(**doc) for doc in docs]

    # ===== WRITES =====

    async def create_bill(self, bill: Bill) -> Bill:
        try:
            await self.bills.insert_one(bill.to_document())
        except PyMongoError as exc:
            raise StoreWriteFailure(f"Failed to create bill {bill.id}: {exc}") from exc
        return bill

    async def create_return_credit(self, credit: ReturnCredit) -> ReturnCredit:
        try:
            await self.return_credits.insert_one(credit.to_document())
        except PyMongoError as exc:
            raise StoreWriteFailure(f"Failed to record return {credit.id}: {exc}") from exc
        return credit

    async def update_bill_payment(
        self,
        bill_id: str,
        new_amount_paid: Decimal,
        new_status: PaymentStatus,
        expected_amount_paid: Optional[Decimal] = None,
    ) -> None:
        """
        Single-row conditional update of a bill's payment fields.

        When expected_amount_paid is given the write only applies if the
        stored amount_paid still matches it, so two allocators racing on the
        same bill cannot both succeed. This service writes amount_paid as a
        2dp string; a plain number left by another writer is matched too.
        """
        query = {"_id": bill_id, "payment_status": {"$ne": PaymentStatus.FULL_RETURN.value}}
        if expected_amount_paid is not None:
            query["amount_paid"] = {
                "$in": [money_str(expected_amount_paid), float(expected_amount_paid)]
            }

        try:
            result = await self.bills.update_one(
                query,
                {"$set": {
                    "amount_paid": money_str(new_amount_paid),
                    "payment_status": new_status.value,
                }}
            )
        except PyMongoError as exc:
            raise StoreWriteFailure(
                f"Failed to update bill {bill_id}: {exc}", failed_bill_id=bill_id
            ) from exc

        if result.matched_count == 0:
            raise StoreWriteFailure(
                f"Bill {bill_id} not found or changed since it was read",
                failed_bill_id=bill_id,
            )

    async def append_payment_event(self, event: PaymentEvent) -> PaymentEvent:
        try:
            await self.payment_events.insert_one(event.to_document())
        except PyMongoError as exc:
            raise StoreWriteFailure(
                f"Failed to record payment event for bill {event.sale_id}: {exc}",
                failed_bill_id=event.sale_id,
            ) from exc
        return event

    async def update_bill_due_date(
        self,
        bill_id: str,
        due_date: Optional[datetime],
        notes: Optional[str] = None,
    ) -> Optional[Bill]:
        """Set or clear a bill's due date. Returns None if the bill is missing."""
        update = {"due_date": due_date}
        if notes is not None:
            update["notes"] = notes

        try:
            result = await self.bills.find_one_and_update(
                {"_id": bill_id},
                {"$set": update},
                return_document=True
            )
        except PyMongoError as exc:
            raise StoreWriteFailure(
                f"Failed to update due date for bill {bill_id}: {exc}",
                failed_bill_id=bill_id,
            ) from exc

        if result:
            return Bill(**result)
        return None
