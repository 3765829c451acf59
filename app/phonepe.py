"""
PhonePe Standard Checkout (v2) client.

Access tokens come from a client-credentials exchange and are valid for
roughly an hour. PhonePeCredentials caches one token per process and
refreshes it lazily; concurrent callers that find it expired wait on a
single refresh instead of each hitting the identity endpoint.
"""
import asyncio
import hashlib
import hmac
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from shared.utils import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload


class GatewayAuthError(GatewayError):
    pass


class GatewayValidationError(GatewayError):
    pass


class GatewayNotFoundError(GatewayError):
    pass


class GatewayTransientError(GatewayError):
    pass


def _error_for_status(response: httpx.Response) -> GatewayError:
    try:
        payload = response.json()
    except ValueError:
        payload = {"raw": response.text}
    message = payload.get("message") if isinstance(payload, dict) else None
    message = message or f"PhonePe returned HTTP {response.status_code}"

    if response.status_code == 401:
        return GatewayAuthError(message, 401, payload)
    if response.status_code == 400:
        return GatewayValidationError(message, 400, payload)
    if response.status_code == 404:
        return GatewayNotFoundError(message, 404, payload)
    return GatewayTransientError(message, response.status_code, payload)


class PhonePeCredentials:
    def __init__(self, fetch_token: Callable[[], Awaitable[str]], ttl: timedelta):
        self._fetch_token = fetch_token
        self._ttl = ttl
        self._token: Optional[str] = None
        self._expires_at: Optional[datetime] = None
        self._lock = asyncio.Lock()

    def _valid(self, now: datetime) -> bool:
        return self._token is not None and self._expires_at is not None and now < self._expires_at

    async def get_token(self) -> str:
        if self._valid(datetime.utcnow()):
            return self._token
        async with self._lock:
            # another waiter may have refreshed while we were queued
            if self._valid(datetime.utcnow()):
                return self._token
            token = await self._fetch_token()
            self._token = token
            self._expires_at = datetime.utcnow() + self._ttl
            logger.info("PhonePe access token refreshed")
            return token

    def invalidate(self):
        self._token = None
        self._expires_at = None


class PhonePeClient:
    def __init__(self, config: Settings = default_settings, http: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.http = http or httpx.AsyncClient(timeout=config.HTTP_TIMEOUT_SECONDS)
        self.credentials = PhonePeCredentials(
            self.fetch_access_token,
            timedelta(minutes=config.PHONEPE_TOKEN_TTL_MINUTES),
        )

    @property
    def configured(self) -> bool:
        return bool(self.config.PHONEPE_CLIENT_ID and self.config.PHONEPE_CLIENT_SECRET)

    async def aclose(self):
        await self.http.aclose()

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self.http.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise GatewayTransientError(f"PhonePe request timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise GatewayTransientError(f"PhonePe unreachable: {exc}") from exc

    async def fetch_access_token(self) -> str:
        response = await self._send(
            "POST",
            f"{self.config.PHONEPE_AUTH_URL}/v1/oauth/token",
            data={
                "client_id": self.config.PHONEPE_CLIENT_ID,
                "client_version": self.config.PHONEPE_CLIENT_VERSION,
                "client_secret": self.config.PHONEPE_CLIENT_SECRET,
                "grant_type": "client_credentials",
            },
        )
        if response.status_code != 200:
            error = _error_for_status(response)
            # any rejection of our client credentials is an auth failure
            if response.status_code in (400, 401, 403):
                raise GatewayAuthError(error.message, response.status_code, error.payload)
            raise error

        token = response.json().get("access_token")
        if not token:
            raise GatewayAuthError("No access_token in PhonePe auth response", 200, response.json())
        return token

    async def _authorized(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        token = await self.credentials.get_token()
        headers = {"Content-Type": "application/json", "Authorization": f"O-Bearer {token}"}
        response = await self._send(method, url, headers=headers, **kwargs)
        if response.status_code != 200:
            error = _error_for_status(response)
            if isinstance(error, GatewayAuthError):
                self.credentials.invalidate()
            raise error
        return response.json()

    async def initiate_payment(
        self,
        merchant_order_id: str,
        amount_minor: int,
        meta_info: Dict[str, str],
        redirect_url: str,
    ) -> Dict[str, Any]:
        body = {
            "merchantOrderId": merchant_order_id,
            "amount": amount_minor,
            "expireAfter": self.config.PHONEPE_PAYMENT_EXPIRE_SECONDS,
            "metaInfo": meta_info,
            "paymentFlow": {
                "type": "PG_CHECKOUT",
                "message": f"Payment for order {merchant_order_id}",
                "merchantUrls": {"redirectUrl": redirect_url},
            },
        }
        logger.info("Initiating PhonePe payment", extra={"merchant_order_id": merchant_order_id})
        return await self._authorized("POST", f"{self.config.PHONEPE_BASE_URL}/checkout/v2/pay", json=body)

    async def get_order_status(self, merchant_order_id: str) -> Dict[str, Any]:
        return await self._authorized(
            "GET",
            f"{self.config.PHONEPE_BASE_URL}/checkout/v2/order/{merchant_order_id}/status",
            params={"details": "true", "errorContext": "true"},
        )


def webhook_authorization(username: str, password: str) -> str:
    return hashlib.sha256(f"{username}:{password}".encode()).hexdigest()


def verify_webhook_authorization(header: Optional[str], username: str, password: str) -> bool:
    if not header or not username or not password:
        return False
    expected = webhook_authorization(username, password)
    # some deployments send "SHA256 <hash>"
    candidate = header.split(" ", 1)[-1].strip().lower()
    return hmac.compare_digest(candidate, expected)
