from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


class PaymentStatus(str, Enum):
    INITIATED = "payment_initiated"
    PENDING = "payment_pending"
    COMPLETED = "payment_completed"
    FAILED = "payment_failed"


# target -> states it may be entered from; completed and failed are terminal
PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.INITIATED, PaymentStatus.PENDING},
    PaymentStatus.COMPLETED: {PaymentStatus.INITIATED, PaymentStatus.PENDING},
    PaymentStatus.FAILED: {PaymentStatus.INITIATED, PaymentStatus.PENDING},
}


def allowed_sources(target: PaymentStatus) -> List[str]:
    return sorted(s.value for s in PAYMENT_TRANSITIONS.get(target, set()))


class OrderStatus(str, Enum):
    CONFIRMED = "confirmed"
    PROCESSING = "processing"


class LineItem(BaseModel):
    name: str = "Product"
    price: Decimal = Field(..., ge=0)
    original_price: Optional[Decimal] = Field(None, ge=0)
    quantity: int = Field(1, gt=0)
    product_id: Optional[str] = None


class DiscountLine(BaseModel):
    product_name: str
    original_price: Decimal
    discounted_price: Decimal
    quantity: int
    savings_amount: Decimal
    discount_percentage: Decimal


class ShipmentRecord(BaseModel):
    waybill: Optional[str] = None
    status: str = "Manifested"
    tracking_url: Optional[str] = None
    payment_mode: str = "Prepaid"
    used_defaults: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    response: Optional[Dict[str, Any]] = None


class PendingOrderDB(BaseModel):
    id: str = Field(..., alias="_id")
    user_id: str
    items: List[LineItem]
    total: Decimal
    shipping_address: Optional[Union[Dict[str, Any], str]] = None
    customer_details: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=datetime.utcnow)
    claimed_at: Optional[datetime] = None

    class Config:
        populate_by_name = True


class ConfirmedOrderDB(BaseModel):
    id: str = Field(..., alias="_id")
    user_id: str
    items: List[LineItem]
    total: Decimal
    original_total: Decimal
    total_savings: Decimal
    discount_details: List[DiscountLine] = []
    has_discounts: bool = False
    shipping_address: Optional[Union[Dict[str, Any], str]] = None
    customer_details: Dict[str, Any] = {}
    status: OrderStatus = OrderStatus.CONFIRMED
    payment_status: str = "completed"
    payment_id: Optional[str] = None
    payment_data: Optional[Dict[str, Any]] = None
    shipment: Optional[ShipmentRecord] = None
    shipping_status: Optional[str] = None
    shipping_partner: str = "delhivery"
    delhivery_error: Optional[str] = None
    delhivery_retry_needed: bool = False
    note: Optional[str] = None
    environment: str = "production"
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    payment_completed_at: Optional[datetime] = None
    shipment_claimed_at: Optional[datetime] = None

    class Config:
        populate_by_name = True
        use_enum_values = True


class PaymentRequestDB(BaseModel):
    id: str = Field(..., alias="_id")
    user_id: str
    order_id: str
    amount: Decimal
    amount_minor: int
    status: PaymentStatus = PaymentStatus.INITIATED
    flow: str = "PG_CHECKOUT"
    environment: str = "production"
    shipping_partner: str = "delhivery"
    gateway_response: Optional[Dict[str, Any]] = None
    verification_response: Optional[Dict[str, Any]] = None
    webhook_response: Optional[Dict[str, Any]] = None
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True
        use_enum_values = True


class TransactionLogDB(BaseModel):
    user_id: str
    transaction_id: str
    flow: str = "PG_CHECKOUT"
    environment: str = "production"
    generated_at: datetime = Field(default_factory=datetime.utcnow)
