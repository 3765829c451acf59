from decimal import Decimal

import pytest

from app.address import DefaultRecipient, normalize_shipping
from app.delhivery import CarrierError, build_shipment, extract_waybill, shipment_succeeded
from app.models import LineItem


@pytest.mark.parametrize(
    "response, expected",
    [
        ({"success": True, "error": "ignored"}, True),
        ({"rmk": "Success", "error": "x"}, True),
        ({"packages": [{"waybill": "WB9"}], "error": "x"}, True),
        ({"upload_wbn": "UPL1"}, True),
        ({"success": False, "error": "Duplicate order id"}, False),
        ({"rmk": "Failed", "packages": [], "error": True}, False),
    ],
)
def test_shipment_succeeded_any_of_four(response, expected):
    assert shipment_succeeded(response) is expected


def test_extract_waybill_prefers_first_package():
    assert extract_waybill({"packages": [{"waybill": "P1"}, {"waybill": "P2"}], "waybill": "TOP"}) == "P1"
    assert extract_waybill({"packages": [], "waybill": "TOP"}) == "TOP"
    assert extract_waybill({}) is None


def test_build_shipment_payload(test_settings):
    defaults = DefaultRecipient.from_settings(test_settings)
    record = normalize_shipping(
        "12 Park Rd, Near Lake, Pune, MH, 411001",
        {"name": "Asha", "lastName": "Verma", "email": "asha@example.com", "phone": "9876543210"},
        defaults,
    )
    items = [
        LineItem(name="Shilajit", price=Decimal("80"), original_price=Decimal("100"), quantity=2),
        LineItem(name="Tulsi Drops", price=Decimal("100"), quantity=1),
    ]

    shipment = build_shipment("ORD1001", items, Decimal("260"), record, "Prepaid", test_settings)

    assert shipment["name"] == "Asha Verma"
    assert shipment["add"] == "12 Park Rd, Near Lake"
    assert shipment["pin"] == "411001"
    assert shipment["country"] == "India"
    assert shipment["products_desc"] == "Shilajit (Qty: 2) [20% OFF], Tulsi Drops (Qty: 1)"
    assert shipment["quantity"] == "3"
    assert shipment["cod_amount"] == "0"
    assert shipment["total_amount"] == "260"
    assert shipment["weight"] == "0.6"
    assert shipment["shipment_length"] == "15"
    assert shipment["shipment_width"] == "15"
    assert shipment["shipment_height"] == "10"
    assert shipment["return_pin"] == test_settings.PICKUP_PINCODE


def test_build_shipment_cod_and_large_package(test_settings):
    record = normalize_shipping(None, None, DefaultRecipient.from_settings(test_settings))
    items = [LineItem(name=f"Item {i}", price=Decimal("10")) for i in range(10)]

    shipment = build_shipment("ORD2", items, Decimal("100"), record, "COD", test_settings)

    assert shipment["cod_amount"] == "100"
    assert shipment["weight"] == "3.0"
    assert shipment["shipment_length"] == "50"
    assert shipment["shipment_height"] == "20"


async def test_create_shipment_posts_form_payload(delhivery, delhivery_stub, test_settings):
    result = await delhivery.create_shipment({"order": "ORD1001", "name": "Asha"})

    assert result.success
    assert result.waybill == "WB1"
    sent = delhivery_stub.created[0]
    assert sent["shipments"][0]["order"] == "ORD1001"
    assert sent["pickup_location"]["name"] == test_settings.PICKUP_NAME


async def test_create_shipment_reports_carrier_error_body(delhivery, delhivery_stub):
    delhivery_stub.create_response = (200, {"success": False, "error": "Pincode not serviceable", "rmk": "Failed"})

    result = await delhivery.create_shipment({"order": "ORD1001"})

    assert not result.success
    assert result.waybill is None
    assert result.remark == "Failed"


async def test_create_shipment_rejects_non_object_body(delhivery, delhivery_stub):
    delhivery_stub.create_response = (200, [])
    with pytest.raises(CarrierError):
        await delhivery.create_shipment({"order": "ORD1001"})


async def test_create_shipment_http_error_raises(delhivery, delhivery_stub):
    delhivery_stub.create_response = (500, {"detail": "boom"})
    with pytest.raises(CarrierError):
        await delhivery.create_shipment({"order": "ORD1001"})


async def test_track_shipment_parses_scans_newest_first(delhivery, delhivery_stub):
    result = await delhivery.track_shipment(waybill="WB1")

    assert result.success
    assert result.current_status == "In Transit"
    assert result.estimated_delivery == "2026-10-25T00:00:00"
    assert [scan.status for scan in result.scans] == ["In Transit", "Manifested"]
    assert result.scans[0].remarks == "Bag received"
    assert result.tracking_url == "https://www.delhivery.test/track/package/WB1"
    assert delhivery_stub.track_requests[0].url.params["waybill"] == "WB1"


async def test_track_by_reference_id(delhivery, delhivery_stub):
    result = await delhivery.track_shipment(reference_id="ORD1001")

    assert result.waybill == "WB1"
    assert result.order_id == "ORD1001"
    assert delhivery_stub.track_requests[0].url.params["ref_ids"] == "ORD1001"


async def test_track_without_shipment_data(delhivery, delhivery_stub):
    delhivery_stub.track_response = (200, {"ShipmentData": []})

    result = await delhivery.track_shipment(waybill="WB404")

    assert not result.success
    assert result.message == "No tracking information found"


async def test_serviceability_flags(delhivery, delhivery_stub):
    delhivery_stub.pincode_response = (
        200,
        {
            "delivery_codes": [
                {
                    "postal_code": {
                        "pin": 411001,
                        "district": "Pune",
                        "state_code": "MH",
                        "cod": "Y",
                        "pre_paid": "Y",
                        "cash": "N",
                        "pickup": "Y",
                        "repl": "N",
                    }
                }
            ]
        },
    )

    result = await delhivery.check_serviceability("411001")

    assert result.serviceable
    assert result.cod_available and result.prepaid_available and result.pickup_available
    assert not result.cash_available
    assert not result.repl_available
    assert result.district == "Pune"


async def test_serviceability_not_serviceable(delhivery):
    result = await delhivery.check_serviceability("999999")
    assert not result.serviceable
    assert result.pincode == "999999"
