import json
from decimal import Decimal
from urllib.parse import parse_qs

import httpx

from app.models import LineItem

USER_ID = "user-1"
OTHER_USER_ID = "user-2"


class PhonePeStub:
    """httpx handler standing in for the PhonePe identity and checkout APIs."""

    def __init__(self):
        self.token_calls = 0
        self.pay_bodies = []
        self.status_calls = []
        self.token_response = (200, {"access_token": "tok-1", "expires_at": 1999999999})
        self.pay_response = (
            200,
            {"orderId": "OMO123", "state": "PENDING", "expireAt": 1700001200, "redirectUrl": "https://pay.test/r/1"},
        )
        self.status_response = (200, completed_status())

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/v1/oauth/token"):
            self.token_calls += 1
            code, body = self.token_response
            return httpx.Response(code, json=body)
        if path.endswith("/checkout/v2/pay"):
            self.pay_bodies.append(json.loads(request.content))
            code, body = self.pay_response
            return httpx.Response(code, json=body)
        if "/checkout/v2/order/" in path:
            self.status_calls.append(request)
            code, body = self.status_response
            return httpx.Response(code, json=body)
        return httpx.Response(404, json={"message": "no route"})


class DelhiveryStub:
    """httpx handler standing in for the Delhivery B2C API."""

    def __init__(self):
        self.created = []
        self.create_response = (200, {"success": True, "rmk": "Success", "packages": [{"waybill": "WB1"}]})
        self.track_response = (200, tracking_payload())
        self.pincode_response = (200, {"delivery_codes": []})
        self.track_requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/cmu/create.json":
            form = parse_qs(request.content.decode())
            self.created.append(json.loads(form["data"][0]))
            code, body = self.create_response
            return httpx.Response(code, json=body)
        if path == "/api/v1/packages/json/":
            self.track_requests.append(request)
            code, body = self.track_response
            return httpx.Response(code, json=body)
        if path == "/c/api/pin-codes/json/":
            code, body = self.pincode_response
            return httpx.Response(code, json=body)
        return httpx.Response(404, text="no route")


def completed_status(amount=50000):
    return {
        "orderId": "OMO123",
        "state": "COMPLETED",
        "amount": amount,
        "paymentDetails": [{"transactionId": "TX-PP-1", "paymentMode": "UPI_QR", "state": "COMPLETED"}],
    }


def tracking_payload(waybill="WB1"):
    return {
        "ShipmentData": [
            {
                "Shipment": {
                    "AWB": waybill,
                    "ReferenceNo": "ORD1001",
                    "Status": {"Status": "In Transit", "StatusLocation": "Jaipur_Hub"},
                    "ExpectedDeliveryDate": "2026-10-25T00:00:00",
                    "Scans": [
                        {"ScanDetail": {"ScanType": "UD", "Scan": "Manifested", "ScanDateTime": "2026-10-19T10:00:00", "ScannedLocation": "Hanumangarh"}},
                        {"ScanDetail": {"ScanType": "UD", "Scan": "In Transit", "ScanDateTime": "2026-10-20T08:00:00", "ScannedLocation": "Jaipur_Hub", "Instructions": "Bag received"}},
                    ],
                }
            }
        ]
    }


def sample_items():
    return [
        LineItem(name="Ashwagandha Capsules", price=Decimal("200"), original_price=Decimal("250"), quantity=2),
        LineItem(name="Tulsi Drops", price=Decimal("100"), quantity=1),
    ]


def sample_address():
    return {
        "addressLine1": "12 Park Rd",
        "addressLine2": "Near Lake",
        "city": "Pune",
        "state": "Maharashtra",
        "pinCode": "411001",
    }


def sample_customer():
    return {"name": "Asha", "lastName": "Verma", "email": "asha@example.com", "phone": "9876543210"}

