from fastapi import Request, FastAPI
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
import re

from shared.utils import settings, ValidationException

# --- Rate Limiting ---
def rate_limit_key(request: Request) -> str:
    """
    Authenticated routes are limited per user so shoppers behind one NAT
    don't share a payment quota. Anything else falls back to the client IP.
    """
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"
    return get_remote_address(request)

limiter = Limiter(key_func=rate_limit_key, enabled=settings.RATE_LIMIT_ENABLED)

def setup_rate_limiting(app: FastAPI):
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# --- Security Headers Middleware ---
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    # JSON-only API: nothing is ever framed, scripted or cached
    HEADERS = {
        "X-Frame-Options": "DENY",
        "X-Content-Type-Options": "nosniff",
        "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
        "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none';",
        "Referrer-Policy": "strict-origin-when-cross-origin",
        "Cache-Control": "no-store",
    }

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers.update(self.HEADERS)
        return response

# --- Input Sanitization ---
# Merchant order ids travel into gateway URLs, so they are held to a narrow alphabet.
ORDER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_\-]{1,63}$")
WAYBILL_PATTERN = re.compile(r"^[A-Za-z0-9]{1,32}$")
PINCODE_PATTERN = re.compile(r"^\d{6}$")

def sanitize_input(text: str) -> str:
    """
    Strip surrounding whitespace from free text that ends up on a
    shipping label. The text is otherwise stored as typed; escaping
    belongs to whatever renders it.
    """
    if not isinstance(text, str):
        return text
    return text.strip()

def _matches(pattern, value) -> bool:
    # fullmatch: a trailing newline must not slip past the $ anchor
    return isinstance(value, str) and bool(pattern.fullmatch(value))

def is_valid_order_id(value: str) -> bool:
    return _matches(ORDER_ID_PATTERN, value)

def is_valid_waybill(value: str) -> bool:
    return _matches(WAYBILL_PATTERN, value)

def is_valid_pincode(value: str) -> bool:
    return _matches(PINCODE_PATTERN, value)

def require_order_id(value: str) -> str:
    if not is_valid_order_id(value):
        raise ValidationException("Invalid order id")
    return value
