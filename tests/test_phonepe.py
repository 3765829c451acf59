import asyncio
import hashlib
from datetime import timedelta

import httpx
import pytest

from app.phonepe import (
    GatewayAuthError,
    GatewayNotFoundError,
    GatewayTransientError,
    GatewayValidationError,
    PhonePeClient,
    PhonePeCredentials,
    verify_webhook_authorization,
)


async def test_token_is_cached_between_calls(phonepe, phonepe_stub):
    await phonepe.get_order_status("ORD1001")
    await phonepe.get_order_status("ORD1001")

    assert phonepe_stub.token_calls == 1
    sent = phonepe_stub.status_calls[0]
    assert sent.headers["Authorization"] == "O-Bearer tok-1"
    assert sent.url.params["details"] == "true"
    assert sent.url.params["errorContext"] == "true"


async def test_concurrent_refresh_is_single_flight():
    calls = 0

    async def fetch():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        return f"tok-{calls}"

    credentials = PhonePeCredentials(fetch, timedelta(minutes=50))
    tokens = await asyncio.gather(*(credentials.get_token() for _ in range(5)))

    assert calls == 1
    assert set(tokens) == {"tok-1"}


async def test_expired_token_is_refreshed():
    calls = 0

    async def fetch():
        nonlocal calls
        calls += 1
        return f"tok-{calls}"

    credentials = PhonePeCredentials(fetch, timedelta(seconds=-1))
    assert await credentials.get_token() == "tok-1"
    assert await credentials.get_token() == "tok-2"


async def test_unauthorized_response_invalidates_token(phonepe, phonepe_stub):
    phonepe_stub.status_response = (401, {"message": "Unauthorized"})

    with pytest.raises(GatewayAuthError):
        await phonepe.get_order_status("ORD1001")
    with pytest.raises(GatewayAuthError):
        await phonepe.get_order_status("ORD1001")

    assert phonepe_stub.token_calls == 2


@pytest.mark.parametrize(
    "status_code, error",
    [(400, GatewayValidationError), (404, GatewayNotFoundError), (500, GatewayTransientError), (429, GatewayTransientError)],
)
async def test_status_codes_map_to_errors(phonepe, phonepe_stub, status_code, error):
    phonepe_stub.status_response = (status_code, {"code": "ERR", "message": "nope"})

    with pytest.raises(error) as info:
        await phonepe.get_order_status("ORD1001")
    assert info.value.status_code == status_code
    assert info.value.payload["code"] == "ERR"


async def test_token_exchange_rejection_is_auth_error(phonepe, phonepe_stub):
    phonepe_stub.token_response = (400, {"message": "invalid client"})

    with pytest.raises(GatewayAuthError):
        await phonepe.fetch_access_token()


async def test_transport_timeout_is_transient(test_settings):
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    client = PhonePeClient(test_settings, http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    with pytest.raises(GatewayTransientError):
        await client.fetch_access_token()
    await client.aclose()


async def test_initiate_payment_body(phonepe, phonepe_stub):
    response = await phonepe.initiate_payment(
        "ORD1001", 50000, {"udf1": "user-1", "udf2": "9999999999"}, "https://shop.test/payment-verification/ORD1001"
    )

    assert response["redirectUrl"] == "https://pay.test/r/1"
    body = phonepe_stub.pay_bodies[0]
    assert body["merchantOrderId"] == "ORD1001"
    assert body["amount"] == 50000
    assert body["expireAfter"] == 1200
    assert body["paymentFlow"]["type"] == "PG_CHECKOUT"
    assert body["paymentFlow"]["merchantUrls"]["redirectUrl"].endswith("/ORD1001")


def test_webhook_authorization():
    digest = hashlib.sha256(b"hook-user:hook-pass").hexdigest()

    assert verify_webhook_authorization(digest, "hook-user", "hook-pass")
    assert verify_webhook_authorization(f"SHA256 {digest}", "hook-user", "hook-pass")
    assert not verify_webhook_authorization(digest, "hook-user", "other")
    assert not verify_webhook_authorization(None, "hook-user", "hook-pass")
    assert not verify_webhook_authorization(digest, "", "")
