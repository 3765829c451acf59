"""
Delhivery B2C client: shipment manifesting, tracking and pincode
serviceability.
"""
import json
import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

import httpx

from shared.utils import Settings, settings as default_settings
from app.address import ShippingRecord
from app.models import LineItem
from app.schemas import ScanEvent, ServiceabilityResult, TrackingResult

logger = logging.getLogger(__name__)


class CarrierError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload


class ShipmentResult:
    def __init__(self, success: bool, waybill: Optional[str], remark: Optional[str], raw: Dict[str, Any]):
        self.success = success
        self.waybill = waybill
        self.remark = remark
        self.raw = raw


def shipment_succeeded(data: Dict[str, Any]) -> bool:
    """
    Decide whether a create.json response means the shipment was manifested.

    Delhivery has no single success indicator: depending on account and
    payload it sets `success`, or `rmk == "Success"`, or only returns a
    `packages` list. Anything without an `error` key is also accepted. This
    is carrier-specific technical debt; keep every such check in here.
    """
    if not isinstance(data, dict):
        return False
    return (
        data.get("success") is True
        or data.get("rmk") == "Success"
        or bool(data.get("packages"))
        or not data.get("error")
    )


def extract_waybill(data: Dict[str, Any]) -> Optional[str]:
    packages = data.get("packages") or []
    if packages and isinstance(packages[0], dict) and packages[0].get("waybill"):
        return str(packages[0]["waybill"])
    if data.get("waybill"):
        return str(data["waybill"])
    return None


def discount_percent(price: Decimal, original_price: Optional[Decimal]) -> Optional[int]:
    if not original_price or price >= original_price:
        return None
    percent = (original_price - price) / original_price * 100
    return int(percent.quantize(Decimal("1"), ROUND_HALF_UP))


def describe_items(items: List[LineItem], default: str) -> str:
    if not items:
        return default
    parts = []
    for item in items:
        desc = f"{item.name} (Qty: {item.quantity})"
        off = discount_percent(item.price, item.original_price)
        if off is not None:
            desc += f" [{off}% OFF]"
        parts.append(desc)
    return ", ".join(parts)


def package_dimensions(item_count: int) -> Dict[str, Any]:
    count = max(item_count, 1)
    return {
        "weight": max(0.5, round(count * 0.3, 2)),
        "length": max(15, count * 5),
        "breadth": 15,
        "height": max(10, count * 2),
    }


def pickup_location(config: Settings = default_settings) -> Dict[str, Any]:
    return {
        "name": config.PICKUP_NAME,
        "add": config.PICKUP_ADDRESS,
        "city": config.PICKUP_CITY,
        "pin_code": config.PICKUP_PINCODE,
        "country": config.PICKUP_COUNTRY,
        "phone": config.PICKUP_PHONE,
    }


def build_shipment(
    order_id: str,
    items: List[LineItem],
    total: Decimal,
    record: ShippingRecord,
    payment_mode: str = "Prepaid",
    config: Settings = default_settings,
) -> Dict[str, Any]:
    package = package_dimensions(len(items))
    quantity = sum(item.quantity for item in items) if items else 1
    return {
        "name": record.name,
        "add": record.street,
        "pin": record.pincode,
        "city": record.city,
        "state": record.state,
        "country": record.country,
        "phone": record.phone,
        "email": record.email,
        "order": order_id,
        "payment_mode": payment_mode,
        "return_pin": config.PICKUP_PINCODE,
        "return_city": config.PICKUP_CITY,
        "return_phone": config.PICKUP_PHONE,
        "return_add": config.PICKUP_ADDRESS,
        "return_state": config.PICKUP_STATE,
        "return_country": config.PICKUP_COUNTRY,
        "products_desc": describe_items(items, config.SHIPMENT_DEFAULT_DESCRIPTION),
        "hsn_code": config.SHIPMENT_HSN_CODE,
        "cod_amount": str(total) if payment_mode == "COD" else "0",
        "order_date": datetime.utcnow().isoformat(),
        "total_amount": str(total),
        "seller_add": config.SELLER_ADDRESS,
        "seller_name": config.SELLER_NAME,
        "seller_inv": config.SELLER_INVOICE_PREFIX,
        "seller_gst_tin": config.SELLER_GST_TIN,
        "quantity": str(quantity),
        "waybill": "",
        "shipment_length": str(package["length"]),
        "shipment_width": str(package["breadth"]),
        "shipment_height": str(package["height"]),
        "weight": str(package["weight"]),
        "shipping_mode": "Surface",
        "address_type": "home",
    }


def _scan_event(scan: Dict[str, Any]) -> ScanEvent:
    detail = scan.get("ScanDetail", scan)
    return ScanEvent(
        date=detail.get("ScanDateTime"),
        status=detail.get("Scan") or detail.get("ScanType"),
        location=detail.get("ScannedLocation"),
        remarks=detail.get("Instructions"),
        description=detail.get("StatusDescription") or detail.get("ScanType"),
    )


class DelhiveryClient:
    def __init__(self, config: Settings = default_settings, http: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.http = http or httpx.AsyncClient(timeout=config.HTTP_TIMEOUT_SECONDS)

    @property
    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Token {self.config.DELHIVERY_TOKEN}", "Accept": "application/json"}

    async def aclose(self):
        await self.http.aclose()

    async def _get(self, url: str, params: Dict[str, str]) -> Dict[str, Any]:
        try:
            response = await self.http.get(url, params=params, headers=self.headers)
        except httpx.RequestError as exc:
            raise CarrierError(f"Delhivery unreachable: {exc}") from exc
        if response.status_code != 200:
            raise CarrierError(f"Delhivery API error: HTTP {response.status_code}", response.status_code, response.text)
        try:
            return response.json()
        except ValueError as exc:
            raise CarrierError("Delhivery returned a non-JSON body", 200, response.text) from exc
        if not isinstance(data, dict):
            raise CarrierError("Delhivery returned an unexpected response shape", 200, response.text)

    def tracking_api_url(self, waybill: str) -> str:
        return f"{self.config.DELHIVERY_TRACKING_URL}/api/v1/packages/json/?waybill={waybill}"

    def public_tracking_url(self, waybill: str) -> str:
        return f"{self.config.DELHIVERY_PUBLIC_TRACKING_URL}/{waybill}"

    async def create_shipment(self, shipment: Dict[str, Any], pickup: Optional[Dict[str, Any]] = None) -> ShipmentResult:
        payload = {"shipments": [shipment], "pickup_location": pickup or pickup_location(self.config)}
        try:
            response = await self.http.post(
                f"{self.config.DELHIVERY_BASE_URL}/api/cmu/create.json",
                data={"format": "json", "data": json.dumps(payload, default=str)},
                headers=self.headers,
            )
        except httpx.RequestError as exc:
            raise CarrierError(f"Delhivery unreachable: {exc}") from exc

        if response.status_code != 200:
            raise CarrierError(f"Delhivery API error: HTTP {response.status_code}", response.status_code, response.text)
        try:
            data = response.json()
        except ValueError as exc:
            raise CarrierError("Delhivery returned a non-JSON body", 200, response.text) from exc

        success = shipment_succeeded(data)
        waybill = extract_waybill(data) if success else None
        remark = data.get("rmk") or data.get("error")
        logger.info(
            "Delhivery create shipment response",
            extra={"order_id": shipment.get("order"), "waybill": waybill, "outcome": "success" if success else "failed"},
        )
        return ShipmentResult(success, waybill, str(remark) if remark else None, data)

    async def track_shipment(self, waybill: Optional[str] = None, reference_id: Optional[str] = None) -> TrackingResult:
        if not waybill and not reference_id:
            raise ValueError("waybill or reference_id is required")
        params = {"waybill": waybill} if waybill else {"ref_ids": reference_id}
        data = await self._get(f"{self.config.DELHIVERY_TRACKING_URL}/api/v1/packages/json/", params)

        shipments = data.get("ShipmentData") or []
        if not shipments:
            return TrackingResult(
                success=False,
                waybill=waybill,
                order_id=reference_id,
                message="No tracking information found",
            )

        info = shipments[0].get("Shipment") or {}
        status = info.get("Status") or {}
        scans = [_scan_event(scan) for scan in info.get("Scans") or []]
        scans.reverse()
        resolved = waybill or info.get("AWB")

        return TrackingResult(
            success=True,
            waybill=resolved,
            order_id=reference_id or info.get("ReferenceNo"),
            current_status=status.get("Status") or "In Transit",
            estimated_delivery=info.get("ExpectedDeliveryDate"),
            scans=scans,
            shipment_info=info,
            tracking_url=self.public_tracking_url(resolved) if resolved else None,
            last_updated=datetime.utcnow(),
        )

    async def check_serviceability(self, pincode: str) -> ServiceabilityResult:
        data = await self._get(f"{self.config.DELHIVERY_BASE_URL}/c/api/pin-codes/json/", {"filter_codes": pincode})

        codes = data.get("delivery_codes") or []
        if not codes:
            return ServiceabilityResult(
                pincode=pincode,
                serviceable=False,
                message=f"Pincode {pincode} is not serviceable by Delhivery",
            )

        entry = codes[0]
        if isinstance(entry.get("postal_code"), dict):
            entry = entry["postal_code"]
        return ServiceabilityResult(
            pincode=str(entry.get("pin") or pincode),
            serviceable=True,
            cod_available=entry.get("cod") == "Y",
            prepaid_available=entry.get("pre_paid") == "Y",
            cash_available=entry.get("cash") == "Y",
            pickup_available=entry.get("pickup") == "Y",
            repl_available=entry.get("repl") == "Y",
            district=entry.get("district"),
            state_code=entry.get("state_code"),
            message=f"Pincode {pincode} is serviceable by Delhivery",
        )
