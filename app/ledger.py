import logging
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from app.models import (
    ConfirmedOrderDB,
    PaymentRequestDB,
    PaymentStatus,
    PendingOrderDB,
    TransactionLogDB,
    allowed_sources,
)

logger = logging.getLogger(__name__)


class Collections:
    PENDING_ORDERS = "pending_orders"
    ORDERS = "orders"
    PAYMENT_REQUESTS = "payment_requests"
    PAYMENT_ERRORS = "payment_errors"
    VERIFICATION_ERRORS = "verification_errors"
    TRANSACTION_LOGS = "transaction_logs"


def _bson_safe(value: Any) -> Any:
    # BSON has no Decimal or Enum; amounts are stored as floats
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _bson_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_bson_safe(v) for v in value]
    return value


class OrderLedger:
    """Document-store access for orders, payment requests and their logs."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def ensure_indexes(self):
        await self.db[Collections.ORDERS].create_index("user_id")
        await self.db[Collections.ORDERS].create_index("delhivery_retry_needed")
        await self.db[Collections.PENDING_ORDERS].create_index("created_at")
        await self.db[Collections.PAYMENT_REQUESTS].create_index("user_id")
        await self.db[Collections.TRANSACTION_LOGS].create_index("generated_at")
        await self.db[Collections.PAYMENT_ERRORS].create_index("order_id")
        await self.db[Collections.VERIFICATION_ERRORS].create_index("merchant_order_id")

    async def ping(self) -> bool:
        await self.db.command("ping")
        return True

    # --- Pending orders ---
    async def create_pending_order(self, order: PendingOrderDB) -> str:
        doc = _bson_safe(order.dict(by_alias=True))
        result = await self.db[Collections.PENDING_ORDERS].insert_one(doc)
        return str(result.inserted_id)

    async def get_pending_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        return await self.db[Collections.PENDING_ORDERS].find_one({"_id": order_id})

    async def delete_pending_order(self, order_id: str) -> bool:
        result = await self.db[Collections.PENDING_ORDERS].delete_one({"_id": order_id})
        return result.deleted_count > 0

    async def claim_pending_order(self, order_id: str, ttl: timedelta) -> Optional[Dict[str, Any]]:
        """
        Atomically mark a pending order as being materialized.

        Returns the claimed document, or None when the order is missing or
        another worker holds a claim younger than `ttl`. A stale claim (the
        holder crashed) can be taken over.
        """
        now = datetime.utcnow()
        return await self.db[Collections.PENDING_ORDERS].find_one_and_update(
            {
                "_id": order_id,
                "$or": [{"claimed_at": None}, {"claimed_at": {"$lt": now - ttl}}],
            },
            {"$set": {"claimed_at": now}},
            return_document=ReturnDocument.AFTER,
        )

    async def release_pending_claim(self, order_id: str):
        await self.db[Collections.PENDING_ORDERS].update_one({"_id": order_id}, {"$set": {"claimed_at": None}})

    # --- Confirmed orders ---
    async def insert_order(self, order: ConfirmedOrderDB) -> str:
        doc = _bson_safe(order.dict(by_alias=True))
        result = await self.db[Collections.ORDERS].insert_one(doc)
        return str(result.inserted_id)

    async def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        return await self.db[Collections.ORDERS].find_one({"_id": order_id})

    async def update_order(self, order_id: str, fields: Dict[str, Any]) -> bool:
        fields = dict(fields)
        fields.setdefault("updated_at", datetime.utcnow())
        result = await self.db[Collections.ORDERS].update_one({"_id": order_id}, {"$set": _bson_safe(fields)})
        return result.matched_count > 0

    async def claim_order_for_retry(self, order_id: str, ttl: timedelta) -> Optional[Dict[str, Any]]:
        now = datetime.utcnow()
        return await self.db[Collections.ORDERS].find_one_and_update(
            {
                "_id": order_id,
                "delhivery_retry_needed": True,
                "$or": [{"shipment_claimed_at": None}, {"shipment_claimed_at": {"$lt": now - ttl}}],
            },
            {"$set": {"shipment_claimed_at": now}},
            return_document=ReturnDocument.AFTER,
        )

    async def release_retry_claim(self, order_id: str):
        await self.db[Collections.ORDERS].update_one({"_id": order_id}, {"$unset": {"shipment_claimed_at": ""}})

    # --- Payment requests ---
    async def create_payment_request(self, request: PaymentRequestDB):
        doc = _bson_safe(request.dict(by_alias=True))
        # a re-initiated payment for the same merchant order id starts over
        await self.db[Collections.PAYMENT_REQUESTS].replace_one({"_id": doc["_id"]}, doc, upsert=True)

    async def get_payment_request(self, order_id: str) -> Optional[Dict[str, Any]]:
        return await self.db[Collections.PAYMENT_REQUESTS].find_one({"_id": order_id})

    async def update_payment_request(self, order_id: str, fields: Dict[str, Any]) -> bool:
        fields = dict(fields)
        fields.setdefault("updated_at", datetime.utcnow())
        result = await self.db[Collections.PAYMENT_REQUESTS].update_one({"_id": order_id}, {"$set": _bson_safe(fields)})
        return result.matched_count > 0

    async def transition_payment_status(
        self, order_id: str, target: PaymentStatus, fields: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Move a payment request to `target` only from a state the lifecycle
        allows. Returns False (and writes nothing) otherwise, including when
        the request is already terminal.
        """
        update = dict(fields or {})
        update["status"] = target.value
        update["updated_at"] = datetime.utcnow()
        result = await self.db[Collections.PAYMENT_REQUESTS].update_one(
            {"_id": order_id, "status": {"$in": allowed_sources(target)}},
            {"$set": _bson_safe(update)},
        )
        if result.matched_count == 0:
            logger.warning(
                "Payment status transition skipped",
                extra={"merchant_order_id": order_id, "target": target.value},
            )
        return result.matched_count > 0

    # --- Logs ---
    async def log_error(self, collection: str, doc: Dict[str, Any]):
        doc = dict(doc)
        doc.setdefault("timestamp", datetime.utcnow())
        try:
            await self.db[collection].insert_one(_bson_safe(doc))
        except PyMongoError:
            logger.exception("Failed to write error log", extra={"collection": collection})

    async def log_transaction(self, entry: TransactionLogDB):
        await self.db[Collections.TRANSACTION_LOGS].insert_one(_bson_safe(entry.dict()))

    async def delete_older_than(self, collection: str, field: str, cutoff: datetime, limit: int) -> int:
        ids = []
        async for doc in self.db[collection].find({field: {"$lt": cutoff}}, {"_id": 1}).limit(limit):
            ids.append(doc["_id"])
        if not ids:
            return 0
        result = await self.db[collection].delete_many({"_id": {"$in": ids}})
        return result.deleted_count
