import logging
import time
from functools import lru_cache
from typing import List, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from payment_orchestrator.callback import InvalidCallback
from payment_orchestrator.card import CardGateway
from payment_orchestrator.config import get_settings
from payment_orchestrator.database import get_session, init_db
from payment_orchestrator.errors import (
    GatewayError,
    IncompleteGatewayResponse,
    OrderNotFound,
    PaymentError,
    PaymentStillProcessing,
    RateLimited,
)
from payment_orchestrator.messaging import close_rabbitmq, setup_rabbitmq
from payment_orchestrator.models import AttemptStatus, PaymentMethod
from payment_orchestrator.mpesa import MpesaClient
from payment_orchestrator.orchestrator import PaymentOrchestrator
from payment_orchestrator.rate_limit import RateLimiter, build_rate_limiter
from payment_orchestrator.schemas import (
    CallbackAck,
    CancelResponse,
    CardConfirmRequest,
    CardIntentRequest,
    CardIntentResponse,
    OrderCreate,
    OrderRead,
    OrderRef,
    PaymentAnalytics,
    PaymentAttemptRead,
    PaymentPage,
    PaymentRecordRead,
    PaymentStatusRead,
    PaymentSummary,
    PushInitiateRequest,
    PushResponse,
    StatusQueryResponse,
)
from payment_orchestrator.store import PaymentStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Payment Orchestrator")

if get_settings().trusted_proxies:
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=list(get_settings().trusted_proxies))


@app.on_event("startup")
async def startup_event():
    await init_db()
    await setup_rabbitmq()
    settings = get_settings()
    if not get_mpesa_client().is_configured():
        logger.warning("M-Pesa is not fully configured; push payments will be rejected")
    if not settings.stripe_secret_key:
        logger.warning("STRIPE_SECRET_KEY is not set; card payments will be rejected")


@app.on_event("shutdown")
async def shutdown_event():
    await close_rabbitmq()


# ----- dependencies -----

@lru_cache
def get_mpesa_client() -> MpesaClient:
    return MpesaClient(get_settings())


@lru_cache
def get_card_gateway() -> CardGateway:
    settings = get_settings()
    return CardGateway(settings.stripe_secret_key, settings.card_currency)


@lru_cache
def get_initiate_limiter() -> RateLimiter:
    settings = get_settings()
    return build_rate_limiter(settings.push_initiate_limit, settings.rate_limit_window_seconds, settings.redis_url)


@lru_cache
def get_resend_limiter() -> RateLimiter:
    settings = get_settings()
    return build_rate_limiter(settings.push_resend_limit, settings.rate_limit_window_seconds, settings.redis_url)


def get_orchestrator(
    db: AsyncSession = Depends(get_session),
    mpesa: MpesaClient = Depends(get_mpesa_client),
    card: CardGateway = Depends(get_card_gateway),
    initiate_limiter: RateLimiter = Depends(get_initiate_limiter),
    resend_limiter: RateLimiter = Depends(get_resend_limiter),
) -> PaymentOrchestrator:
    return PaymentOrchestrator(PaymentStore(db), mpesa, card, initiate_limiter, resend_limiter)


def client_origin(request: Request) -> str:
    # Forwarded headers are only honoured through ProxyHeadersMiddleware
    return request.client.host if request.client else "unknown"


# ----- error handling -----

@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    if isinstance(exc, GatewayError) or exc.status_code >= 500:
        logger.error("%s %s -> %s: %s", request.method, request.url.path, type(exc).__name__, exc.public_message)
    headers = None
    if isinstance(exc, RateLimited):
        retry_after = max(1, int(exc.reset_at.timestamp() - time.time()))
        headers = {"Retry-After": str(retry_after)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_response(), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", ())[1:])
    message = f"Invalid request: {field} {first.get('msg', '')}".strip()
    return JSONResponse(status_code=400, content={"error": message})


# ----- orders -----

@app.post("/orders", response_model=OrderRead, status_code=201)
async def create_order(order_data: OrderCreate, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    fields = order_data.model_dump(exclude={"items"})
    items = [item.model_dump() for item in order_data.items]
    order = await orchestrator.create_order(fields, items)
    return OrderRead.model_validate(order)


@app.get("/orders/{order_id}/payment-status", response_model=PaymentStatusRead)
async def get_payment_status(order_id: str, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    order = await orchestrator.payment_status(order_id)
    return PaymentStatusRead.from_order(order)


@app.get("/orders/{order_id}/payments", response_model=List[PaymentAttemptRead])
async def list_payment_attempts(order_id: str, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    attempts = await orchestrator.payment_attempts(order_id)
    return [PaymentAttemptRead.model_validate(attempt) for attempt in attempts]


# ----- reporting -----

@app.get("/payments", response_model=PaymentPage)
async def list_payments(
    method: Optional[PaymentMethod] = None,
    status: Optional[AttemptStatus] = None,
    search: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    attempts, total = await orchestrator.payment_history(method, status, search, limit, offset)
    return PaymentPage(payments=[PaymentRecordRead.model_validate(a) for a in attempts], total=total)


@app.get("/payments/analytics", response_model=PaymentAnalytics)
async def payment_analytics(orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    return PaymentAnalytics(**await orchestrator.payment_analytics())


# ----- mobile money -----

@app.post("/payments/push/initiate", response_model=PushResponse, status_code=202)
async def initiate_push(
    body: PushInitiateRequest, request: Request, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)
):
    push = await orchestrator.initiate_push(body.order_id, body.phone, client_origin(request))
    return PushResponse(
        checkout_request_id=push.checkout_request_id,
        merchant_request_id=push.merchant_request_id,
        customer_message=push.customer_message,
    )


@app.post("/payments/push/resend", response_model=PushResponse, status_code=202)
async def resend_push(body: OrderRef, request: Request, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    push = await orchestrator.resend_push(body.order_id, client_origin(request))
    return PushResponse(
        checkout_request_id=push.checkout_request_id,
        merchant_request_id=push.merchant_request_id,
        customer_message=push.customer_message,
    )


@app.post("/payments/push/cancel", response_model=CancelResponse)
async def cancel_push(body: OrderRef, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    await orchestrator.cancel_push(body.order_id)
    return CancelResponse(success=True)


@app.post("/payments/push/query", response_model=StatusQueryResponse)
async def query_push(body: OrderRef, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    try:
        order, result = await orchestrator.query_push_status(body.order_id)
    except PaymentStillProcessing:
        return JSONResponse(status_code=202, content={"orderId": body.order_id, "status": "processing"})
    return StatusQueryResponse(
        order_id=order.id,
        mobile_money_status=order.mobile_money_status,
        result_code=result.result_code if result else None,
        result_desc=result.result_desc if result else None,
    )


@app.post("/payments/push/callback", response_model=CallbackAck)
async def push_callback(
    request: Request,
    token: Optional[str] = None,
    x_callback_token: Optional[str] = Header(None),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    try:
        payload = await request.json()
    except ValueError:
        return JSONResponse(status_code=400, content={"status": "ERROR", "message": "Invalid JSON"})

    try:
        outcome = await orchestrator.handle_callback(payload, token or x_callback_token)
    except (InvalidCallback, IncompleteGatewayResponse) as e:
        logger.warning("Rejected M-Pesa callback: %s", e.public_message)
        return JSONResponse(status_code=400, content={"status": "ERROR", "message": e.public_message})
    except OrderNotFound as e:
        return JSONResponse(status_code=404, content={"status": "ERROR", "message": e.public_message})
    except Exception:
        # Answer 200 anyway: a non-200 makes the network redeliver
        logger.exception("Error processing M-Pesa callback")
        return CallbackAck(status="ERROR", message="Internal processing error")

    return CallbackAck(status="OK", message=outcome.value)


# ----- card -----

@app.post("/payments/card/create-intent", response_model=CardIntentResponse)
async def create_card_intent(body: CardIntentRequest, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    intent = await orchestrator.create_card_intent(body.order_id, body.amount)
    return CardIntentResponse(client_secret=intent.client_secret)


@app.post("/payments/card/confirm", response_model=PaymentSummary)
async def confirm_card_payment(body: CardConfirmRequest, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    order = await orchestrator.confirm_card_payment(body.order_id, body.intent_id)
    return PaymentSummary.from_order(order)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
