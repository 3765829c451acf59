from fastapi import FastAPI, Depends, Header, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from datetime import datetime
from typing import Optional
from pymongo.errors import DuplicateKeyError, PyMongoError

from shared.utils import (
    get_db_client, settings, SuccessResponse, HealthResponse,
    ValidationException, UnauthorizedException, InternalException,
    setup_exception_handlers, require_auth
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import (
    setup_rate_limiting, SecurityHeadersMiddleware, limiter,
    is_valid_order_id, is_valid_waybill, is_valid_pincode, require_order_id
)

from app.delhivery import CarrierError, DelhiveryClient
from app.jobs import RetentionCleanupJob, create_scheduler
from app.ledger import OrderLedger
from app.models import PendingOrderDB, TransactionLogDB
from app.phonepe import GatewayError, PhonePeClient, verify_webhook_authorization
from app.pipeline import PaymentConfirmationPipeline
from app.schemas import (
    GatewayCheckResponse, OrderTrackingInfo, PaymentInitiate, PaymentInitiateResponse,
    PaymentVerify, PendingOrderCreate, PendingOrderResponse, RetryShipmentResponse,
    ServiceabilityResult, ShipmentCreate, ShipmentResponse, TrackingResult,
    TransactionIdResponse, VerificationResult
)
from app.transaction_ids import generate_transaction_id

# Setup Logging
logger = setup_logging(settings.SERVICE_NAME, settings.LOG_LEVEL, settings.ENVIRONMENT)

app = FastAPI(title="Checkout Service")

# Security Setup
setup_rate_limiting(app)
setup_exception_handlers(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name=settings.SERVICE_NAME)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def startup():
    app.state.mongodb_client = get_db_client()
    app.state.ledger = OrderLedger(app.state.mongodb_client[settings.MONGO_DB_NAME])
    await app.state.ledger.ensure_indexes()

    app.state.phonepe = PhonePeClient(settings)
    app.state.delhivery = DelhiveryClient(settings)
    app.state.pipeline = PaymentConfirmationPipeline(
        app.state.ledger, app.state.phonepe, app.state.delhivery, settings
    )

    app.state.scheduler = None
    if settings.CLEANUP_ENABLED:
        job = RetentionCleanupJob(app.state.ledger, settings.RETENTION_DAYS, settings.CLEANUP_BATCH_SIZE)
        app.state.scheduler = create_scheduler(job, settings.CLEANUP_INTERVAL_HOURS)
        app.state.scheduler.start()
        logger.info("Retention cleanup scheduled")

@app.on_event("shutdown")
async def shutdown():
    if app.state.scheduler:
        app.state.scheduler.shutdown(wait=False)
    await app.state.phonepe.aclose()
    await app.state.delhivery.aclose()
    app.state.mongodb_client.close()

# --- Dependencies ---
def get_ledger(request: Request) -> OrderLedger:
    return request.app.state.ledger

def get_phonepe(request: Request) -> PhonePeClient:
    return request.app.state.phonepe

def get_delhivery(request: Request) -> DelhiveryClient:
    return request.app.state.delhivery

def get_pipeline(request: Request) -> PaymentConfirmationPipeline:
    return request.app.state.pipeline

async def get_current_user(request: Request, payload: dict = Depends(require_auth)) -> dict:
    request.state.user_id = payload["sub"]
    return payload

# --- Orders ---

@app.post("/orders/pending", response_model=SuccessResponse[PendingOrderResponse], status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.RATE_LIMIT_DEFAULT)
async def create_pending_order(
    order: PendingOrderCreate,
    request: Request,
    user: dict = Depends(get_current_user),
    ledger: OrderLedger = Depends(get_ledger),
):
    pending = PendingOrderDB(
        _id=order.order_id,
        user_id=user["sub"],
        items=order.items,
        total=order.total,
        shipping_address=order.shipping_address,
        customer_details=order.customer_details,
    )
    try:
        await ledger.create_pending_order(pending)
    except DuplicateKeyError:
        raise ValidationException(f"Order {order.order_id} already exists")

    return SuccessResponse(
        data=PendingOrderResponse(order_id=pending.id, total=pending.total, created_at=pending.created_at),
        message="Pending order created",
    )

@app.get("/orders/{order_id}/tracking", response_model=SuccessResponse[OrderTrackingInfo])
@limiter.limit(settings.RATE_LIMIT_DEFAULT)
async def get_order_tracking(
    order_id: str,
    request: Request,
    user: dict = Depends(get_current_user),
    pipeline: PaymentConfirmationPipeline = Depends(get_pipeline),
):
    info = await pipeline.get_order_tracking(require_order_id(order_id), user["sub"])
    return SuccessResponse(data=info)

@app.post("/orders/{order_id}/retry-shipment", response_model=SuccessResponse[RetryShipmentResponse])
@limiter.limit(settings.RATE_LIMIT_PAYMENTS)
async def retry_shipment(
    order_id: str,
    request: Request,
    user: dict = Depends(get_current_user),
    pipeline: PaymentConfirmationPipeline = Depends(get_pipeline),
):
    result = await pipeline.retry_shipment(require_order_id(order_id))
    return SuccessResponse(data=result, message=result.message)

# --- Payments ---

@app.post("/payments/initiate", response_model=SuccessResponse[PaymentInitiateResponse])
@limiter.limit(settings.RATE_LIMIT_PAYMENTS)
async def initiate_payment(
    payment: PaymentInitiate,
    request: Request,
    user: dict = Depends(get_current_user),
    pipeline: PaymentConfirmationPipeline = Depends(get_pipeline),
):
    result = await pipeline.initiate_payment(
        user["sub"], payment.order_id, payment.amount, payment.user_phone, payment.redirect_url
    )
    return SuccessResponse(data=result, message="Payment initiated")

@app.post("/payments/verify", response_model=SuccessResponse[VerificationResult])
@limiter.limit(settings.RATE_LIMIT_PAYMENTS)
async def verify_payment(
    payment: PaymentVerify,
    request: Request,
    user: dict = Depends(get_current_user),
    pipeline: PaymentConfirmationPipeline = Depends(get_pipeline),
):
    result = await pipeline.confirm_payment(payment.merchant_order_id)
    return SuccessResponse(success=result.success, data=result, message=result.message)

@app.post("/payments/webhook", response_model=SuccessResponse[VerificationResult])
async def payment_webhook(
    request: Request,
    authorization: Optional[str] = Header(None),
    pipeline: PaymentConfirmationPipeline = Depends(get_pipeline),
):
    if not verify_webhook_authorization(
        authorization, settings.PHONEPE_WEBHOOK_USERNAME, settings.PHONEPE_WEBHOOK_PASSWORD
    ):
        raise UnauthorizedException("Invalid webhook authorization")

    try:
        body = await request.json()
    except ValueError:
        raise ValidationException("Webhook body must be JSON")

    # PhonePe wraps the order in {"event": ..., "payload": {...}}
    payload = body.get("payload") if isinstance(body, dict) and isinstance(body.get("payload"), dict) else body
    if not isinstance(payload, dict):
        raise ValidationException("Webhook body must be a JSON object")
    merchant_order_id = payload.get("merchantOrderId")
    if not merchant_order_id or not is_valid_order_id(str(merchant_order_id)):
        raise ValidationException("Webhook payload has no valid merchantOrderId")

    logger.info(
        "PhonePe webhook received",
        extra={"merchant_order_id": merchant_order_id, "state": payload.get("state"), "source": "webhook"},
    )
    result = await pipeline.apply_order_state(str(merchant_order_id), payload, source="webhook")
    return SuccessResponse(success=result.success, data=result, message=result.message)

@app.get("/payments/gateway-check", response_model=SuccessResponse[GatewayCheckResponse])
@limiter.limit(settings.RATE_LIMIT_PAYMENTS)
async def gateway_check(
    request: Request,
    user: dict = Depends(get_current_user),
    phonepe: PhonePeClient = Depends(get_phonepe),
):
    check = GatewayCheckResponse(
        configured=phonepe.configured,
        token_obtained=False,
        base_url=phonepe.config.PHONEPE_BASE_URL,
        client_version=phonepe.config.PHONEPE_CLIENT_VERSION,
    )
    if check.configured:
        try:
            await phonepe.credentials.get_token()
            check.token_obtained = True
        except GatewayError as exc:
            check.error = exc.message
    else:
        check.error = "PhonePe client credentials are not configured"
    return SuccessResponse(success=check.token_obtained, data=check)

# --- Shipments ---

@app.post("/shipments", response_model=SuccessResponse[ShipmentResponse])
@limiter.limit(settings.RATE_LIMIT_DEFAULT)
async def create_shipment(
    shipment: ShipmentCreate,
    request: Request,
    user: dict = Depends(get_current_user),
    pipeline: PaymentConfirmationPipeline = Depends(get_pipeline),
):
    result = await pipeline.create_shipment(shipment)
    return SuccessResponse(data=result, message="Delhivery shipment created")

@app.get("/shipments/track", response_model=SuccessResponse[TrackingResult])
@limiter.limit(settings.RATE_LIMIT_DEFAULT)
async def track_shipment(
    request: Request,
    waybill: Optional[str] = Query(None),
    order_id: Optional[str] = Query(None),
    user: dict = Depends(get_current_user),
    delhivery: DelhiveryClient = Depends(get_delhivery),
):
    if not waybill and not order_id:
        raise ValidationException("Either waybill or order_id is required")
    if waybill and not is_valid_waybill(waybill):
        raise ValidationException("Invalid waybill")
    if order_id:
        require_order_id(order_id)

    try:
        result = await delhivery.track_shipment(waybill=waybill, reference_id=order_id)
    except CarrierError as exc:
        raise InternalException(f"Failed to fetch tracking information: {exc.message}")
    return SuccessResponse(success=result.success, data=result, message=result.message)

@app.get("/shipments/serviceability/{pincode}", response_model=SuccessResponse[ServiceabilityResult])
@limiter.limit(settings.RATE_LIMIT_DEFAULT)
async def check_serviceability(
    pincode: str,
    request: Request,
    user: dict = Depends(get_current_user),
    delhivery: DelhiveryClient = Depends(get_delhivery),
):
    if not is_valid_pincode(pincode):
        raise ValidationException("Valid 6-digit pincode is required")
    try:
        result = await delhivery.check_serviceability(pincode)
    except CarrierError as exc:
        raise InternalException(f"Serviceability check failed: {exc.message}")
    return SuccessResponse(data=result, message=result.message)

# --- Transactions ---

@app.post("/transactions", response_model=SuccessResponse[TransactionIdResponse])
@limiter.limit(settings.RATE_LIMIT_DEFAULT)
async def create_transaction_id(
    request: Request,
    user: dict = Depends(get_current_user),
    ledger: OrderLedger = Depends(get_ledger),
):
    entry = TransactionLogDB(
        user_id=user["sub"],
        transaction_id=generate_transaction_id(),
        environment=settings.ENVIRONMENT,
    )
    await ledger.log_transaction(entry)
    return SuccessResponse(
        data=TransactionIdResponse(transaction_id=entry.transaction_id, generated_at=entry.generated_at)
    )

# --- Health ---

@app.get("/health", response_model=HealthResponse)
async def health_check(
    ledger: OrderLedger = Depends(get_ledger),
    phonepe: PhonePeClient = Depends(get_phonepe),
):
    db_status = "disconnected"
    gateway_status = "unknown"

    # Check DB
    try:
        await ledger.ping()
        db_status = "connected"
    except PyMongoError:
        db_status = "disconnected"

    # Check PhonePe credentials
    try:
        await phonepe.credentials.get_token()
        gateway_status = "healthy"
    except GatewayError as exc:
        logger.warning("PhonePe health check failed", extra={"error": exc.message})
        gateway_status = "unhealthy"

    overall_status = "healthy" if db_status == "connected" and gateway_status == "healthy" else "unhealthy"

    health = HealthResponse(
        service=settings.SERVICE_NAME,
        status=overall_status,
        timestamp=datetime.utcnow(),
        version="1.0.0",
        environment=settings.ENVIRONMENT,
        database=db_status,
        dependencies={"phonepe": gateway_status},
    )
    if overall_status == "unhealthy":
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=jsonable_encoder(health))
    return health

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
