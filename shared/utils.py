from datetime import datetime, timedelta
from typing import Optional, Generic, TypeVar, Any
from fastapi import FastAPI, HTTPException, Request, status, Header
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import BaseModel
from pydantic_settings import BaseSettings
from jose import JWTError, jwt
import uuid

# --- Configuration ---
class Settings(BaseSettings):
    SERVICE_NAME: str = "checkout-service"
    ENVIRONMENT: str = "production"
    LOG_LEVEL: str = "INFO"

    MONGO_URL: str = "mongodb://mongodb:27017"
    MONGO_DB_NAME: str = "checkout_db"

    SECRET_KEY: str = "secret"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # Outbound calls to PhonePe and Delhivery share one timeout
    HTTP_TIMEOUT_SECONDS: float = 15.0

    # PhonePe
    PHONEPE_CLIENT_ID: str = ""
    PHONEPE_CLIENT_SECRET: str = ""
    PHONEPE_CLIENT_VERSION: str = "1"
    PHONEPE_BASE_URL: str = "https://api.phonepe.com/apis/pg"
    PHONEPE_AUTH_URL: str = "https://api.phonepe.com/apis/identity-manager"
    PHONEPE_TOKEN_TTL_MINUTES: int = 50
    PHONEPE_PAYMENT_EXPIRE_SECONDS: int = 1200
    PHONEPE_WEBHOOK_USERNAME: str = ""
    PHONEPE_WEBHOOK_PASSWORD: str = ""
    PAYMENT_REDIRECT_BASE_URL: str = ""
    PAYMENT_DEFAULT_PHONE: str = "9999999999"
    PAYMENT_UDF3: str = "Production Payment"
    PAYMENT_UDF4: str = "Keiway Wellness"
    PAYMENT_UDF5: str = "V2"

    # Delhivery
    DELHIVERY_TOKEN: str = ""
    DELHIVERY_CLIENT_NAME: str = ""
    DELHIVERY_BASE_URL: str = "https://track.delhivery.com"
    DELHIVERY_TRACKING_URL: str = "https://track.delhivery.com"
    DELHIVERY_PUBLIC_TRACKING_URL: str = "https://www.delhivery.com/track/package"

    PICKUP_NAME: str = "Keiway Wellness Private Limited"
    PICKUP_ADDRESS: str = "Shop no 201, Green City ,Hanumangarh town"
    PICKUP_CITY: str = "Hanumangarh"
    PICKUP_STATE: str = "Rajasthan"
    PICKUP_PINCODE: str = "335513"
    PICKUP_COUNTRY: str = "India"
    PICKUP_PHONE: str = "9461230876"

    SELLER_NAME: str = "Keiway Wellness Store"
    SELLER_ADDRESS: str = "N-1/8 gka dalmia kothi lane 1, Varanasi, Uttar Pradesh - 221005"
    SELLER_GST_TIN: str = ""
    SELLER_INVOICE_PREFIX: str = "KW"
    SHIPMENT_HSN_CODE: str = "30049099"
    SHIPMENT_DEFAULT_DESCRIPTION: str = "Wellness Products"

    # Recipient profile substituted for missing shipping fields
    DEFAULT_CUSTOMER_NAME: str = "Customer"
    DEFAULT_CUSTOMER_ADDRESS: str = "New Abadi, Street No 18"
    DEFAULT_CUSTOMER_CITY: str = "Hanumangarh Town"
    DEFAULT_CUSTOMER_STATE: str = "Rajasthan"
    DEFAULT_CUSTOMER_PINCODE: str = "335513"
    DEFAULT_CUSTOMER_PHONE: str = "7800119990"
    DEFAULT_CUSTOMER_EMAIL: str = "customer@example.com"
    SHIPPING_COUNTRY: str = "India"
    STRICT_PINCODE_ON_CONFIRMATION: bool = True

    # Pipeline / jobs
    MATERIALIZATION_CLAIM_TTL_SECONDS: int = 300
    RETENTION_DAYS: int = 30
    CLEANUP_BATCH_SIZE: int = 500
    CLEANUP_INTERVAL_HOURS: int = 24
    CLEANUP_ENABLED: bool = True

    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_DEFAULT: str = "60/minute"
    RATE_LIMIT_PAYMENTS: str = "10/minute"

    class Config:
        env_file = ".env"

settings = Settings()

# --- Database ---
def get_db_client(url: str = settings.MONGO_URL) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(url)

# --- Authentication ---
def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    if "jti" not in to_encode:
        to_encode.update({"jti": str(uuid.uuid4())})

    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return encoded_jwt

def verify_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise UnauthorizedException("Could not validate credentials")
    if not payload.get("sub"):
        raise UnauthorizedException("Token has no subject")
    return payload

# --- Response Models ---
T = TypeVar("T")

class SuccessResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None

class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    message: Optional[str] = None
    details: Optional[Any] = None

class HealthResponse(BaseModel):
    service: str
    status: str
    timestamp: datetime
    version: str
    environment: Optional[str] = None
    database: Optional[str] = None
    dependencies: Optional[dict] = None


# --- Exceptions ---
# Every caller-facing error carries a stable machine-readable code.
class AppException(HTTPException):
    code = "internal"

    def __init__(
        self,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        detail: str = "An error occurred",
        headers: Optional[dict] = None,
        code: Optional[str] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        if code:
            self.code = code

class ValidationException(AppException):
    code = "invalid-argument"

    def __init__(self, detail: str = "Invalid request"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

class NotFoundException(AppException):
    code = "not-found"

    def __init__(self, detail: str = "Resource not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)

class UnauthorizedException(AppException):
    code = "unauthenticated"

    def __init__(self, detail: str = "Unauthorized"):
         super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"}
        )

class AuthenticationException(AppException):
    """A third party rejected our credentials (not the caller's)."""
    code = "unauthenticated"

    def __init__(self, detail: str = "Upstream authentication failed"):
        super().__init__(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)

class PermissionDeniedException(AppException):
    code = "permission-denied"

    def __init__(self, detail: str = "Access denied"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)

class InternalException(AppException):
    code = "internal"

    def __init__(self, detail: str = "Internal error"):
        super().__init__(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)


def setup_exception_handlers(app: FastAPI):
    async def app_exception_handler(request: Request, exc: AppException):
        body = ErrorResponse(error=exc.code, message=str(exc.detail))
        return JSONResponse(status_code=exc.status_code, content=body.dict(), headers=exc.headers)

    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        body = ErrorResponse(
            error=ValidationException.code,
            message="Request validation failed",
            details=jsonable_encoder(jsonable_errors(exc.errors())),
        )
        return JSONResponse(status_code=422, content=body.dict())

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

def jsonable_errors(errors) -> list:
    # pydantic may put the raw exception object under "ctx"
    cleaned = []
    for err in errors:
        err = dict(err)
        if "ctx" in err:
            err["ctx"] = {k: str(v) for k, v in err["ctx"].items()}
        cleaned.append(err)
    return cleaned

# --- Decorators/Dependencies ---
async def require_auth(authorization: str = Header(None)) -> dict:
    if not authorization:
        raise UnauthorizedException(detail="Missing Authorization header")
    scheme, _, param = authorization.partition(" ")
    if scheme.lower() != "bearer" or not param:
         raise UnauthorizedException(detail="Invalid authentication credentials")
    return verify_token(param)
