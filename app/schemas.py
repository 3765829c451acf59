from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from shared.security_config import ORDER_ID_PATTERN, sanitize_input
from app.models import LineItem, ShipmentRecord

CENT = Decimal("0.01")


class PendingOrderCreate(BaseModel):
    order_id: str = Field(..., pattern=ORDER_ID_PATTERN.pattern)
    items: List[LineItem] = Field(..., min_length=1)
    total: Decimal = Field(..., ge=0)
    shipping_address: Optional[Union[Dict[str, Any], str]] = None
    customer_details: Dict[str, Any] = {}

    @field_validator("shipping_address")
    def sanitize_address(cls, v):
        return sanitize_input(v)

    @model_validator(mode="after")
    def total_matches_items(self):
        computed = sum((item.price * item.quantity for item in self.items), Decimal("0"))
        if computed.quantize(CENT, ROUND_HALF_UP) != self.total.quantize(CENT, ROUND_HALF_UP):
            raise ValueError(f"total {self.total} does not match sum of items {computed}")
        return self


class PendingOrderResponse(BaseModel):
    order_id: str
    total: Decimal
    created_at: datetime


class PaymentInitiate(BaseModel):
    order_id: str = Field(..., pattern=ORDER_ID_PATTERN.pattern)
    amount: Decimal = Field(..., gt=0)
    user_phone: Optional[str] = None
    redirect_url: Optional[str] = None


class PaymentInitiateResponse(BaseModel):
    merchant_order_id: str
    amount_minor: int
    redirect_url: Optional[str] = None
    gateway_order_id: Optional[str] = None
    state: Optional[str] = None
    expire_at: Optional[int] = None


class PaymentVerify(BaseModel):
    merchant_order_id: str = Field(..., pattern=ORDER_ID_PATTERN.pattern)


class VerificationResult(BaseModel):
    success: bool
    status: str
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    retry: bool = False
    error: Optional[str] = None
    warning: Optional[str] = None


class MaterializationResult(BaseModel):
    order_id: str
    outcome: str  # materialized | already_materialized | in_progress
    shipped: bool = False


class GatewayCheckResponse(BaseModel):
    configured: bool
    token_obtained: bool
    base_url: str
    client_version: str
    error: Optional[str] = None


class ShipmentCreate(BaseModel):
    order_id: str = Field(..., pattern=ORDER_ID_PATTERN.pattern)
    customer_details: Dict[str, Any] = {}
    shipping_address: Optional[Union[Dict[str, Any], str]] = None
    items: List[LineItem] = Field(..., min_length=1)
    total: Decimal = Field(..., ge=0)
    payment_mode: str = Field("Prepaid", pattern="^(Prepaid|COD)$")


class ShipmentResponse(BaseModel):
    order_id: str
    waybill: Optional[str] = None
    tracking_url: Optional[str] = None
    used_defaults: bool = False
    response: Optional[Dict[str, Any]] = None


class ScanEvent(BaseModel):
    date: Optional[str] = None
    status: Optional[str] = None
    location: Optional[str] = None
    remarks: Optional[str] = None
    description: Optional[str] = None


class TrackingResult(BaseModel):
    success: bool
    waybill: Optional[str] = None
    order_id: Optional[str] = None
    current_status: Optional[str] = None
    estimated_delivery: Optional[str] = None
    scans: List[ScanEvent] = []
    shipment_info: Dict[str, Any] = {}
    tracking_url: Optional[str] = None
    message: Optional[str] = None
    last_updated: Optional[datetime] = None


class ServiceabilityResult(BaseModel):
    pincode: str
    serviceable: bool
    cod_available: bool = False
    prepaid_available: bool = False
    cash_available: bool = False
    pickup_available: bool = False
    repl_available: bool = False
    district: Optional[str] = None
    state_code: Optional[str] = None
    message: Optional[str] = None


class OrderTrackingInfo(BaseModel):
    order_id: str
    status: str
    payment_status: Optional[str] = None
    shipping_status: Optional[str] = None
    shipment: Optional[ShipmentRecord] = None
    delhivery_retry_needed: bool = False
    delhivery_error: Optional[str] = None
    tracking: Optional[TrackingResult] = None
    tracking_error: Optional[str] = None


class RetryShipmentResponse(BaseModel):
    success: bool
    order_id: str
    message: str
    waybill: Optional[str] = None


class TransactionIdResponse(BaseModel):
    transaction_id: str
    generated_at: datetime
