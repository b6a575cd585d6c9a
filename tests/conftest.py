import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from payment_orchestrator import models  # noqa: F401
from payment_orchestrator.card import CardGateway
from payment_orchestrator.config import Settings
from payment_orchestrator.database import Base, get_session
from payment_orchestrator.main import (
    app,
    get_card_gateway,
    get_initiate_limiter,
    get_mpesa_client,
    get_resend_limiter,
)
from payment_orchestrator.mpesa import STK_PUSH_PATH, STK_QUERY_PATH, TOKEN_PATH, MpesaClient
from payment_orchestrator.rate_limit import InMemoryRateLimiter

TEST_SETTINGS = Settings(
    database_url="sqlite+aiosqlite://",
    mpesa_consumer_key="consumer-key",
    mpesa_consumer_secret="consumer-secret",
    mpesa_business_shortcode="174379",
    mpesa_passkey="passkey",
    mpesa_callback_url="https://shop.example.com/payments/push/callback",
    mpesa_callback_secret="callback-secret",
    stripe_secret_key="sk_test_123",
)

ORDER_PAYLOAD = {
    "customerName": "Wanjiku Kamau",
    "customerPhone": "0712345678",
    "customerEmail": "wanjiku@example.com",
    "deliveryAddress": "Moi Avenue, Nairobi",
    "total": 470000,
    "items": [
        {"productId": "prod-1", "productName": "Kiondo basket", "productPrice": 235000, "quantity": 2},
    ],
}


class FakeDaraja:
    """Stands in for the Safaricom Daraja API behind an ``httpx.MockTransport``."""

    def __init__(self):
        self.requests = []
        self.push_count = 0
        self.push_response = None
        self.query_response = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == TOKEN_PATH:
            return httpx.Response(200, json={"access_token": "test-token", "expires_in": "3599"})
        if path == STK_PUSH_PATH:
            if self.push_response is not None:
                status, body = self.push_response
                return httpx.Response(status, json=body)
            self.push_count += 1
            return httpx.Response(
                200,
                json={
                    "MerchantRequestID": f"mr-{self.push_count}",
                    "CheckoutRequestID": f"ws_CO_{self.push_count}",
                    "ResponseCode": "0",
                    "ResponseDescription": "Success. Request accepted for processing",
                    "CustomerMessage": "Success. Request accepted for processing",
                },
            )
        if path == STK_QUERY_PATH and self.query_response is not None:
            status, body = self.query_response
            return httpx.Response(status, json=body)
        return httpx.Response(404, json={"errorMessage": "not found"})

    def requests_to(self, path):
        return [r for r in self.requests if r.url.path == path]

    def push_bodies(self):
        return [json.loads(r.content) for r in self.requests_to(STK_PUSH_PATH)]


def stk_callback(checkout_id, result_code=0, amount=4700, receipt="QKJ4T5RXYZ", merchant_id="mr-1", desc=None):
    callback = {
        "MerchantRequestID": merchant_id,
        "CheckoutRequestID": checkout_id,
        "ResultCode": result_code,
        "ResultDesc": desc or ("The service request is processed successfully." if result_code == 0 else "Request cancelled by user"),
    }
    if result_code == 0:
        items = [
            {"Name": "Amount", "Value": amount},
            {"Name": "MpesaReceiptNumber", "Value": receipt},
            {"Name": "TransactionDate", "Value": 20261019120501},
            {"Name": "PhoneNumber", "Value": 254712345678},
        ]
        callback["CallbackMetadata"] = {"Item": [item for item in items if item["Value"] is not None]}
    return {"Body": {"stkCallback": callback}}


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def daraja():
    return FakeDaraja()


@pytest.fixture
def mpesa_client(daraja):
    return MpesaClient(TEST_SETTINGS, transport=httpx.MockTransport(daraja.handler))


@pytest.fixture
def card_gateway():
    gateway = MagicMock(spec=CardGateway)
    gateway.is_configured.return_value = True
    gateway.create_intent = AsyncMock()
    gateway.retrieve_intent = AsyncMock()
    return gateway


@pytest.fixture
def published():
    with patch("payment_orchestrator.orchestrator.publish_payment_processed", new=AsyncMock()) as processed:
        with patch("payment_orchestrator.orchestrator.publish_payment_failed", new=AsyncMock()) as failed:
            yield SimpleNamespace(processed=processed, failed=failed)


@pytest.fixture
async def client(session_factory, mpesa_client, card_gateway, published):
    async def override_get_session():
        async with session_factory() as session:
            yield session

    initiate_limiter = InMemoryRateLimiter(TEST_SETTINGS.push_initiate_limit, TEST_SETTINGS.rate_limit_window_seconds)
    resend_limiter = InMemoryRateLimiter(TEST_SETTINGS.push_resend_limit, TEST_SETTINGS.rate_limit_window_seconds)

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_mpesa_client] = lambda: mpesa_client
    app.dependency_overrides[get_card_gateway] = lambda: card_gateway
    app.dependency_overrides[get_initiate_limiter] = lambda: initiate_limiter
    app.dependency_overrides[get_resend_limiter] = lambda: resend_limiter

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
