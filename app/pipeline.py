"""
Payment confirmation pipeline.

A merchant order moves through three stores: the checkout flow writes a
pending order, payment initiation writes a payment request, and once the
gateway reports COMPLETED the pending order is materialized into a
confirmed order and handed to the carrier.

Payment success is final. Nothing that happens after the confirmed order is
written (shipping failures included) rolls it back; a failed shipment is
recorded on the order and retried out of band.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from shared.utils import (
    AuthenticationException,
    InternalException,
    NotFoundException,
    PermissionDeniedException,
    Settings,
    ValidationException,
    settings as default_settings,
)
from app.address import DefaultRecipient, PincodePolicy, normalize_shipping
from app.delhivery import CarrierError, DelhiveryClient, build_shipment
from app.ledger import Collections, OrderLedger
from app.models import (
    ConfirmedOrderDB,
    DiscountLine,
    LineItem,
    OrderStatus,
    PaymentRequestDB,
    PaymentStatus,
    PendingOrderDB,
    ShipmentRecord,
)
from app.phonepe import (
    GatewayAuthError,
    GatewayError,
    GatewayNotFoundError,
    GatewayValidationError,
    PhonePeClient,
)
from app.schemas import (
    MaterializationResult,
    OrderTrackingInfo,
    PaymentInitiateResponse,
    RetryShipmentResponse,
    ShipmentCreate,
    ShipmentResponse,
    VerificationResult,
)

logger = logging.getLogger(__name__)

ONE_DECIMAL = Decimal("0.1")
MIN_AMOUNT_MINOR = 100
DELAYED_WARNING = "Order processing delayed but payment completed"


class PartialFailureError(Exception):
    """Payment succeeded but the shipment could not be manifested."""


class OrderMaterializationError(Exception):
    pass


class DiscountSummary(BaseModel):
    original_total: Decimal
    discounted_total: Decimal
    total_savings: Decimal
    lines: List[DiscountLine] = []

    @property
    def has_discounts(self) -> bool:
        return bool(self.lines)


def compute_discount_summary(items: List[LineItem]) -> DiscountSummary:
    original_total = Decimal("0")
    discounted_total = Decimal("0")
    lines = []

    for item in items:
        # an "original" price below the selling price is not a discount
        original_price = max(item.original_price if item.original_price is not None else item.price, item.price)
        item_original = original_price * item.quantity
        item_discounted = item.price * item.quantity
        savings = item_original - item_discounted

        original_total += item_original
        discounted_total += item_discounted

        if savings > 0:
            percentage = (savings / item_original * 100).quantize(ONE_DECIMAL, ROUND_HALF_UP)
            lines.append(
                DiscountLine(
                    product_name=item.name,
                    original_price=original_price,
                    discounted_price=item.price,
                    quantity=item.quantity,
                    savings_amount=savings,
                    discount_percentage=percentage,
                )
            )

    return DiscountSummary(
        original_total=original_total,
        discounted_total=discounted_total,
        total_savings=original_total - discounted_total,
        lines=lines,
    )


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), ROUND_HALF_UP))


def _payment_id(order_data: Dict[str, Any]) -> Optional[str]:
    details = order_data.get("paymentDetails") or []
    if details and isinstance(details[0], dict) and details[0].get("transactionId"):
        return details[0]["transactionId"]
    return order_data.get("orderId")


class PaymentConfirmationPipeline:
    def __init__(
        self,
        ledger: OrderLedger,
        gateway: PhonePeClient,
        carrier: DelhiveryClient,
        config: Settings = default_settings,
        defaults: Optional[DefaultRecipient] = None,
        pincode_policy: Optional[PincodePolicy] = None,
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.carrier = carrier
        self.config = config
        self.defaults = defaults or DefaultRecipient.from_settings(config)
        if pincode_policy is None:
            pincode_policy = PincodePolicy.STRICT if config.STRICT_PINCODE_ON_CONFIRMATION else PincodePolicy.LENIENT
        self.pincode_policy = pincode_policy
        self.claim_ttl = timedelta(seconds=config.MATERIALIZATION_CLAIM_TTL_SECONDS)

    # --- Initiation ---
    async def initiate_payment(
        self,
        user_id: str,
        order_id: str,
        amount: Decimal,
        user_phone: Optional[str] = None,
        redirect_url: Optional[str] = None,
    ) -> PaymentInitiateResponse:
        amount_minor = to_minor_units(amount)
        if amount_minor < MIN_AMOUNT_MINOR:
            raise ValidationException("Amount too low. Minimum amount is ₹1")

        redirect = redirect_url or f"{self.config.PAYMENT_REDIRECT_BASE_URL}/payment-verification/{order_id}"
        meta_info = {
            "udf1": user_id,
            "udf2": user_phone or self.config.PAYMENT_DEFAULT_PHONE,
            "udf3": self.config.PAYMENT_UDF3,
            "udf4": self.config.PAYMENT_UDF4,
            "udf5": self.config.PAYMENT_UDF5,
        }

        try:
            response = await self.gateway.initiate_payment(order_id, amount_minor, meta_info, redirect)
        except GatewayError as exc:
            logger.error(
                "Payment initiation failed",
                extra={"merchant_order_id": order_id, "status_code": exc.status_code, "error": exc.message},
            )
            await self.ledger.log_error(
                Collections.PAYMENT_ERRORS,
                {
                    "order_id": order_id,
                    "user_id": user_id,
                    "amount": amount,
                    "error": exc.message,
                    "status_code": exc.status_code,
                    "response": exc.payload,
                    "environment": self.config.ENVIRONMENT,
                },
            )
            if isinstance(exc, GatewayAuthError):
                raise AuthenticationException("PhonePe authentication failed. Check client credentials.")
            if isinstance(exc, GatewayValidationError):
                raise ValidationException(f"Invalid payment request: {exc.message}")
            raise InternalException(f"Payment initiation failed: {exc.message}")

        await self.ledger.create_payment_request(
            PaymentRequestDB(
                _id=order_id,
                user_id=user_id,
                order_id=order_id,
                amount=amount,
                amount_minor=amount_minor,
                gateway_response=response,
                environment=self.config.ENVIRONMENT,
            )
        )
        logger.info("Payment initiated", extra={"merchant_order_id": order_id, "user_id": user_id})

        return PaymentInitiateResponse(
            merchant_order_id=order_id,
            amount_minor=amount_minor,
            redirect_url=response.get("redirectUrl"),
            gateway_order_id=response.get("orderId"),
            state=response.get("state"),
            expire_at=response.get("expireAt"),
        )

    # --- Confirmation ---
    async def confirm_payment(self, merchant_order_id: str) -> VerificationResult:
        try:
            order_data = await self.gateway.get_order_status(merchant_order_id)
        except GatewayAuthError:
            raise AuthenticationException("PhonePe authentication failed. Check client credentials.")
        except GatewayNotFoundError:
            return VerificationResult(
                success=False,
                status="not_found",
                message="Order not found at payment gateway yet. Please retry.",
                retry=True,
                error="ORDER_NOT_FOUND",
            )
        except GatewayError as exc:
            await self.ledger.log_error(
                Collections.VERIFICATION_ERRORS,
                {
                    "merchant_order_id": merchant_order_id,
                    "error": exc.message,
                    "status_code": exc.status_code,
                    "response": exc.payload,
                    "environment": self.config.ENVIRONMENT,
                },
            )
            raise InternalException(f"Payment verification failed: {exc.message}")

        return await self.apply_order_state(merchant_order_id, order_data, source="verification")

    async def apply_order_state(
        self, merchant_order_id: str, order_data: Dict[str, Any], source: str = "verification"
    ) -> VerificationResult:
        """
        Apply a gateway order state to the ledger.

        Shared by status polling and the webhook so both reach the same
        terminal state for the same gateway report.
        """
        now = datetime.utcnow()
        if source == "webhook":
            await self.ledger.update_payment_request(
                merchant_order_id, {"webhook_response": order_data, "webhook_received_at": now}
            )
        else:
            await self.ledger.update_payment_request(
                merchant_order_id, {"verification_response": order_data, "last_verification_attempt": now}
            )

        state = str(order_data.get("state") or "").upper()
        logger.info(
            "Applying gateway order state",
            extra={"merchant_order_id": merchant_order_id, "state": state, "source": source},
        )

        if state == "COMPLETED":
            await self.ledger.transition_payment_status(
                merchant_order_id, PaymentStatus.COMPLETED, {"completed_at": now}
            )
            data = {
                "merchant_order_id": merchant_order_id,
                "transaction_id": _payment_id(order_data),
                "amount": order_data.get("amount"),
                "state": state,
            }
            try:
                result = await self.materialize_order(merchant_order_id, order_data)
            except Exception:
                logger.exception(
                    "Order materialization failed after payment",
                    extra={"merchant_order_id": merchant_order_id},
                )
                return VerificationResult(
                    success=True,
                    status="completed",
                    message="Payment completed successfully",
                    data=data,
                    warning=DELAYED_WARNING,
                )
            data["order_outcome"] = result.outcome
            return VerificationResult(
                success=True, status="completed", message="Payment completed successfully", data=data
            )

        if state == "PENDING":
            await self.ledger.transition_payment_status(merchant_order_id, PaymentStatus.PENDING)
            return VerificationResult(
                success=False,
                status="pending",
                message="Payment is still being processed. Please check again shortly.",
                data={"merchant_order_id": merchant_order_id, "state": state},
                retry=True,
            )

        if state == "FAILED":
            error_code = order_data.get("errorCode")
            context = order_data.get("errorContext") or {}
            await self.ledger.transition_payment_status(
                merchant_order_id,
                PaymentStatus.FAILED,
                {"failure_reason": error_code or "Payment failed", "failed_at": now},
            )
            return VerificationResult(
                success=False,
                status="failed",
                message=context.get("description") or "Payment failed",
                data={"merchant_order_id": merchant_order_id, "state": state},
                error=error_code or "PAYMENT_FAILED",
            )

        return VerificationResult(
            success=False,
            status=state.lower() or "unknown",
            message="Payment status is not final yet. Please retry.",
            data={"merchant_order_id": merchant_order_id, "state": state},
            retry=True,
        )

    # --- Materialization ---
    async def materialize_order(self, merchant_order_id: str, payment_data: Dict[str, Any]) -> MaterializationResult:
        claimed = await self.ledger.claim_pending_order(merchant_order_id, self.claim_ttl)
        if claimed is None:
            if await self.ledger.get_order(merchant_order_id):
                return MaterializationResult(order_id=merchant_order_id, outcome="already_materialized")
            if await self.ledger.get_pending_order(merchant_order_id):
                return MaterializationResult(order_id=merchant_order_id, outcome="in_progress")
            raise OrderMaterializationError(f"Pending order {merchant_order_id} not found")

        existing = await self.ledger.get_order(merchant_order_id)
        if existing:
            # a previous run confirmed the order but died before cleanup
            shipment = existing.get("shipment") or {}
            if not shipment.get("waybill") and not existing.get("delhivery_retry_needed"):
                logger.warning("Unshipped order recovered, flagging for retry", extra={"order_id": merchant_order_id})
                await self.ledger.update_order(
                    merchant_order_id,
                    {
                        "delhivery_error": "Shipment creation interrupted before an outcome was recorded",
                        "delhivery_retry_needed": True,
                        "shipping_partner": "delhivery",
                        "note": "Order confirmed. Shipment creation pending retry.",
                    },
                )
            await self.ledger.delete_pending_order(merchant_order_id)
            return MaterializationResult(order_id=merchant_order_id, outcome="already_materialized")

        try:
            pending = PendingOrderDB(**claimed)
            summary = compute_discount_summary(pending.items)
            now = datetime.utcnow()
            order = ConfirmedOrderDB(
                _id=merchant_order_id,
                user_id=pending.user_id,
                items=pending.items,
                total=pending.total,
                original_total=summary.original_total,
                total_savings=summary.total_savings,
                discount_details=summary.lines,
                has_discounts=summary.has_discounts,
                shipping_address=pending.shipping_address,
                customer_details=pending.customer_details,
                payment_id=_payment_id(payment_data),
                payment_data=payment_data,
                environment=self.config.ENVIRONMENT,
                created_at=now,
                updated_at=now,
                payment_completed_at=now,
            )
            await self.ledger.insert_order(order)
        except Exception:
            await self.ledger.release_pending_claim(merchant_order_id)
            raise

        logger.info("Order confirmed", extra={"order_id": merchant_order_id, "user_id": pending.user_id})
        shipment = await self.ship_order(order)
        await self.ledger.delete_pending_order(merchant_order_id)

        return MaterializationResult(order_id=merchant_order_id, outcome="materialized", shipped=shipment is not None)

    # --- Shipping ---
    async def _manifest(self, order: ConfirmedOrderDB, payment_mode: str, policy: PincodePolicy):
        try:
            record = normalize_shipping(order.shipping_address, order.customer_details, self.defaults, policy)
            shipment = build_shipment(order.id, order.items, order.total, record, payment_mode, self.config)
            result = await self.carrier.create_shipment(shipment)
        except CarrierError as exc:
            raise PartialFailureError(f"Delhivery shipment creation failed: {exc.message}") from exc
        except Exception as exc:
            # any failure here must leave the order flagged for retry
            logger.exception("Unexpected error while manifesting shipment", extra={"order_id": order.id})
            raise PartialFailureError(f"Delhivery shipment creation failed: {exc!r}") from exc
        if not result.success:
            raise PartialFailureError(f"Delhivery shipment creation failed: {result.remark or 'Unknown error'}")
        return record, result

    async def ship_order(self, order: ConfirmedOrderDB, payment_mode: str = "Prepaid") -> Optional[ShipmentRecord]:
        """
        Manifest a confirmed order with the carrier and record the outcome
        on the order. Returns the shipment record, or None when shipping
        failed and the order was flagged for retry.
        """
        try:
            record, result = await self._manifest(order, payment_mode, self.pincode_policy)
        except PartialFailureError as exc:
            logger.warning(
                "Shipment creation failed, order flagged for retry",
                extra={"order_id": order.id, "error": str(exc)},
            )
            await self.ledger.update_order(
                order.id,
                {
                    "delhivery_error": str(exc),
                    "delhivery_retry_needed": True,
                    "shipping_partner": "delhivery",
                    "note": "Order confirmed. Shipment creation pending retry.",
                },
            )
            return None

        shipment = ShipmentRecord(
            waybill=result.waybill,
            tracking_url=self.carrier.tracking_api_url(result.waybill) if result.waybill else None,
            payment_mode=payment_mode,
            used_defaults=record.used_defaults,
            response=result.raw,
        )
        fields = {
            "shipping_status": "manifested",
            "status": OrderStatus.PROCESSING.value,
            "shipping_partner": "delhivery",
            "delhivery_retry_needed": False,
            "delhivery_error": None,
        }
        # never replace a shipment that has a waybill with one that doesn't
        if shipment.waybill or not (order.shipment and order.shipment.waybill):
            fields["shipment"] = shipment.dict()
        await self.ledger.update_order(order.id, fields)
        logger.info("Shipment manifested", extra={"order_id": order.id, "waybill": shipment.waybill})
        return shipment

    async def retry_shipment(self, order_id: str) -> RetryShipmentResponse:
        stored = await self.ledger.get_order(order_id)
        if not stored:
            raise NotFoundException("Order not found")

        claimed = await self.ledger.claim_order_for_retry(order_id, self.claim_ttl)
        if claimed is None:
            if not stored.get("delhivery_retry_needed"):
                message = "Order does not need Delhivery retry"
            else:
                message = "Shipment retry already in progress"
            return RetryShipmentResponse(success=False, order_id=order_id, message=message)

        try:
            shipment = await self.ship_order(ConfirmedOrderDB(**claimed))
        finally:
            await self.ledger.release_retry_claim(order_id)

        if shipment is None:
            return RetryShipmentResponse(
                success=False, order_id=order_id, message="Delhivery shipment retry failed. Order remains flagged."
            )
        return RetryShipmentResponse(
            success=True,
            order_id=order_id,
            message="Delhivery shipment created successfully",
            waybill=shipment.waybill,
        )

    async def create_shipment(self, request: ShipmentCreate) -> ShipmentResponse:
        """Manifest a shipment directly, outside the payment flow. Nothing is stored."""
        order = ConfirmedOrderDB(
            _id=request.order_id,
            user_id="",
            items=request.items,
            total=request.total,
            original_total=request.total,
            total_savings=Decimal("0"),
            shipping_address=request.shipping_address,
            customer_details=request.customer_details,
        )
        try:
            record, result = await self._manifest(order, request.payment_mode, PincodePolicy.LENIENT)
        except PartialFailureError as exc:
            raise InternalException(str(exc))

        return ShipmentResponse(
            order_id=request.order_id,
            waybill=result.waybill,
            tracking_url=self.carrier.tracking_api_url(result.waybill) if result.waybill else None,
            used_defaults=record.used_defaults,
            response=result.raw,
        )

    # --- Tracking ---
    async def get_order_tracking(self, order_id: str, user_id: str) -> OrderTrackingInfo:
        stored = await self.ledger.get_order(order_id)
        if not stored:
            raise NotFoundException("Order not found")
        if stored.get("user_id") != user_id:
            raise PermissionDeniedException("Not authorized to view this order")

        order = ConfirmedOrderDB(**stored)
        info = OrderTrackingInfo(
            order_id=order_id,
            status=order.status,
            payment_status=order.payment_status,
            shipping_status=order.shipping_status,
            shipment=order.shipment,
            delhivery_retry_needed=order.delhivery_retry_needed,
            delhivery_error=order.delhivery_error,
        )
        if order.shipment and order.shipment.waybill:
            try:
                info.tracking = await self.carrier.track_shipment(waybill=order.shipment.waybill)
            except CarrierError as exc:
                logger.warning("Tracking fetch failed", extra={"order_id": order_id, "error": exc.message})
                info.tracking_error = exc.message
        return info
