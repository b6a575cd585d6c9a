import httpx
import pytest
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from payment_orchestrator.card import CardIntent
from payment_orchestrator.main import app
from payment_orchestrator.models import AttemptStatus, MobileMoneyStatus, Order
from payment_orchestrator.mpesa import STK_PUSH_PATH
from payment_orchestrator.store import PaymentStore

from conftest import ORDER_PAYLOAD, TEST_SETTINGS, stk_callback


async def place_order(client, **overrides):
    response = await client.post("/orders", json={**ORDER_PAYLOAD, **overrides})
    assert response.status_code == 201
    return response.json()["id"]


async def initiate(client, order_id, phone="0712345678", **kwargs):
    return await client.post("/payments/push/initiate", json={"orderId": order_id, "phone": phone}, **kwargs)


async def load_order(session_factory, order_id) -> Order:
    async with session_factory() as session:
        return await PaymentStore(session).get_order(order_id)


async def load_attempts(session_factory, order_id):
    async with session_factory() as session:
        return await PaymentStore(session).list_attempts(order_id)


@pytest.mark.asyncio
async def test_create_order(client, session_factory):
    """Test case 1: An order is stored with its items and no payment state."""
    response = await client.post("/orders", json=ORDER_PAYLOAD)

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "pending"
    assert data["total"] == 470000
    assert data["paymentMethod"] is None
    assert data["mobileMoneyStatus"] is None

    async with session_factory() as session:
        items = await PaymentStore(session).list_items(data["id"])
    assert len(items) == 1
    assert items[0].quantity == 2


@pytest.mark.asyncio
async def test_create_order_rejects_empty_items(client):
    response = await client.post("/orders", json={**ORDER_PAYLOAD, "items": []})

    assert response.status_code == 400
    assert "error" in response.json()


@pytest.mark.asyncio
async def test_payment_status_unknown_order(client):
    response = await client.get("/orders/does-not-exist/payment-status")

    assert response.status_code == 404
    assert response.json() == {"error": "Order not found"}


@pytest.mark.asyncio
async def test_push_payment_happy_path(client, daraja, published, session_factory):
    """Test case 2: Initiate, then a successful callback marks the order paid exactly once."""
    order_id = await place_order(client)

    response = await initiate(client, order_id)
    assert response.status_code == 202
    assert response.json()["checkoutRequestId"] == "ws_CO_1"

    body = daraja.push_bodies()[0]
    assert body["PhoneNumber"] == "254712345678"
    assert body["PartyA"] == "254712345678"
    assert body["Amount"] == 4700
    assert body["CallBackURL"] == TEST_SETTINGS.mpesa_callback_url

    status = (await client.get(f"/orders/{order_id}/payment-status")).json()
    assert status["mobileMoneyStatus"] == "initiated"
    assert status["paymentMethod"] == "mobile_money"
    assert status["paidAt"] is None

    response = await client.post("/payments/push/callback", json=stk_callback("ws_CO_1", amount=4700))
    assert response.status_code == 200
    assert response.json() == {"status": "OK", "message": "paid"}

    status = (await client.get(f"/orders/{order_id}/payment-status")).json()
    assert status["mobileMoneyStatus"] == "paid"
    assert status["receiptNumber"] == "QKJ4T5RXYZ"
    assert status["paidAt"] is not None
    assert status["status"] == "pending"
    published.processed.assert_awaited_once_with(order_id, "mobile_money", 470000, "QKJ4T5RXYZ")

    # The network redelivers the same callback
    response = await client.post("/payments/push/callback", json=stk_callback("ws_CO_1", amount=4700))
    assert response.status_code == 200
    assert response.json()["message"] == "duplicate"

    order = await load_order(session_factory, order_id)
    assert order.mpesa_receipt_number == "QKJ4T5RXYZ"
    published.processed.assert_awaited_once()

    attempts = await load_attempts(session_factory, order_id)
    assert [a.status for a in attempts] == [AttemptStatus.PAID]
    assert attempts[0].receipt_number == "QKJ4T5RXYZ"


@pytest.mark.asyncio
async def test_callback_amount_mismatch_fails_order(client, published, session_factory):
    """Test case 3: A success callback for the wrong amount never marks the order paid."""
    order_id = await place_order(client)
    await initiate(client, order_id)

    response = await client.post("/payments/push/callback", json=stk_callback("ws_CO_1", amount=4000))

    assert response.status_code == 200
    assert response.json()["message"] == "amount_mismatch"
    order = await load_order(session_factory, order_id)
    assert order.mobile_money_status is MobileMoneyStatus.FAILED
    assert order.paid_at is None
    assert "mismatch" in order.payment_failure_reason.lower()
    published.processed.assert_not_awaited()
    published.failed.assert_awaited_once()


@pytest.mark.asyncio
async def test_failure_callback_then_resend_then_success(client, daraja, published, session_factory):
    """Test case 4: After a failed push, resend issues a new request that can still pay the order."""
    order_id = await place_order(client)
    await initiate(client, order_id)

    response = await client.post("/payments/push/callback", json=stk_callback("ws_CO_1", result_code=1032))
    assert response.json()["message"] == "failed"
    order = await load_order(session_factory, order_id)
    assert order.mobile_money_status is MobileMoneyStatus.FAILED
    assert order.payment_failure_reason == "Request cancelled by user"

    response = await client.post("/payments/push/resend", json={"orderId": order_id})
    assert response.status_code == 202
    assert response.json()["checkoutRequestId"] == "ws_CO_2"
    assert daraja.push_bodies()[1]["PhoneNumber"] == "254712345678"

    order = await load_order(session_factory, order_id)
    assert order.mobile_money_status is MobileMoneyStatus.INITIATED
    assert order.mpesa_checkout_request_id == "ws_CO_2"
    assert order.payment_retry_count == 1

    response = await client.post(
        "/payments/push/callback", json=stk_callback("ws_CO_2", merchant_id="mr-2", receipt="QKJ9ABCDEF")
    )
    assert response.json()["message"] == "paid"

    order = await load_order(session_factory, order_id)
    assert order.mobile_money_status is MobileMoneyStatus.PAID
    assert order.mpesa_receipt_number == "QKJ9ABCDEF"

    attempts = await load_attempts(session_factory, order_id)
    assert [a.status for a in attempts] == [AttemptStatus.FAILED, AttemptStatus.PAID]


@pytest.mark.asyncio
async def test_stale_failure_callback_is_ignored(client, published, session_factory):
    """Test case 5: A failure for a superseded request leaves the active one untouched."""
    order_id = await place_order(client)
    await initiate(client, order_id)
    await client.post("/payments/push/resend", json={"orderId": order_id})

    response = await client.post("/payments/push/callback", json=stk_callback("ws_CO_1", result_code=1037))

    assert response.status_code == 200
    assert response.json()["message"] == "ignored"
    order = await load_order(session_factory, order_id)
    assert order.mobile_money_status is MobileMoneyStatus.INITIATED
    assert order.mpesa_checkout_request_id == "ws_CO_2"
    published.failed.assert_not_awaited()

    attempts = await load_attempts(session_factory, order_id)
    assert [a.status for a in attempts] == [AttemptStatus.FAILED, AttemptStatus.INITIATED]


@pytest.mark.asyncio
async def test_stale_wrong_amount_success_leaves_active_request_open(client, published, session_factory):
    """Test case 6: A wrong-amount success for a superseded request fails only that attempt."""
    order_id = await place_order(client)
    await initiate(client, order_id)
    await client.post("/payments/push/resend", json={"orderId": order_id})

    response = await client.post("/payments/push/callback", json=stk_callback("ws_CO_1", amount=10))

    assert response.status_code == 200
    assert response.json()["message"] == "amount_mismatch"
    order = await load_order(session_factory, order_id)
    assert order.mobile_money_status is MobileMoneyStatus.INITIATED
    assert order.mpesa_checkout_request_id == "ws_CO_2"
    assert order.payment_failure_reason is None
    published.failed.assert_not_awaited()

    attempts = await load_attempts(session_factory, order_id)
    assert [a.status for a in attempts] == [AttemptStatus.FAILED, AttemptStatus.INITIATED]

    response = await client.post("/payments/push/callback", json=stk_callback("ws_CO_2", merchant_id="mr-2"))
    assert response.json()["message"] == "paid"


@pytest.mark.asyncio
async def test_initiate_rate_limited(client):
    order_id = await place_order(client)

    responses = [await initiate(client, order_id) for _ in range(6)]

    assert responses[0].status_code == 202
    assert all(r.status_code == 400 for r in responses[1:5])
    assert responses[5].status_code == 429
    assert "resetAt" in responses[5].json()
    assert int(responses[5].headers["Retry-After"]) > 0


@pytest.mark.asyncio
async def test_forwarded_for_ignored_without_trusted_proxy(client):
    """Test case 7: A client rotating X-Forwarded-For still shares one window."""
    order_id = await place_order(client)

    responses = [
        await initiate(client, order_id, headers={"X-Forwarded-For": f"203.0.113.{n}"}) for n in range(6)
    ]

    assert responses[0].status_code == 202
    assert all(r.status_code == 400 for r in responses[1:5])
    assert responses[5].status_code == 429


@pytest.mark.asyncio
async def test_forwarded_for_honoured_from_trusted_proxy(client):
    order_id = await place_order(client)
    proxied = ProxyHeadersMiddleware(app, trusted_hosts=["127.0.0.1"])

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=proxied), base_url="http://test") as behind_proxy:
        for _ in range(5):
            await initiate(behind_proxy, order_id, headers={"X-Forwarded-For": "203.0.113.7"})
        limited = await initiate(behind_proxy, order_id, headers={"X-Forwarded-For": "203.0.113.7"})
        other = await initiate(behind_proxy, order_id, headers={"X-Forwarded-For": "198.51.100.20"})

    assert limited.status_code == 429
    # Another origin has its own window
    assert other.status_code == 400


@pytest.mark.asyncio
async def test_initiate_invalid_phone_makes_no_gateway_call(client, daraja, session_factory):
    order_id = await place_order(client)

    response = await initiate(client, order_id, phone="12345")

    assert response.status_code == 400
    assert "too short" in response.json()["error"]
    assert daraja.requests == []
    order = await load_order(session_factory, order_id)
    assert order.mobile_money_status is None


@pytest.mark.asyncio
async def test_initiate_rejects_fractional_shilling_total(client, daraja):
    order_id = await place_order(client, total=470050)

    response = await initiate(client, order_id)

    assert response.status_code == 400
    assert daraja.requests_to(STK_PUSH_PATH) == []


@pytest.mark.asyncio
async def test_initiate_gateway_decline(client, daraja, session_factory):
    daraja.push_response = (400, {"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid PhoneNumber"})
    order_id = await place_order(client)

    response = await initiate(client, order_id)

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid phone number. Please check and try again."}
    order = await load_order(session_factory, order_id)
    assert order.mobile_money_status is None


@pytest.mark.asyncio
async def test_resend_rejected_once_paid(client):
    order_id = await place_order(client)
    await initiate(client, order_id)
    await client.post("/payments/push/callback", json=stk_callback("ws_CO_1"))

    response = await client.post("/payments/push/resend", json={"orderId": order_id})

    assert response.status_code == 400
    assert "error" in response.json()


@pytest.mark.asyncio
async def test_cancel_then_late_success_still_settles(client, daraja, published, session_factory):
    """Test case 8: Cancelling stops tracking only; the money that arrives later is reconciled."""
    order_id = await place_order(client)
    await initiate(client, order_id)

    response = await client.post("/payments/push/cancel", json={"orderId": order_id})
    assert response.status_code == 200
    assert response.json() == {"success": True}
    assert len(daraja.requests_to(STK_PUSH_PATH)) == 1

    order = await load_order(session_factory, order_id)
    assert order.mobile_money_status is MobileMoneyStatus.FAILED
    assert order.payment_failure_reason == "cancelled by user"
    published.failed.assert_awaited_once_with(order_id, "mobile_money", "cancelled by user")

    response = await client.post("/payments/push/callback", json=stk_callback("ws_CO_1"))
    assert response.json()["message"] == "paid"
    order = await load_order(session_factory, order_id)
    assert order.mobile_money_status is MobileMoneyStatus.PAID
    assert order.payment_failure_reason is None


@pytest.mark.asyncio
async def test_cancel_without_push_is_rejected(client):
    order_id = await place_order(client)

    response = await client.post("/payments/push/cancel", json={"orderId": order_id})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_callback_rejects_malformed_payload(client):
    response = await client.post("/payments/push/callback", json={"Body": {}})
    assert response.status_code == 400

    response = await client.post(
        "/payments/push/callback", content=b"not json", headers={"Content-Type": "application/json"}
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_callback_success_without_receipt_is_rejected(client, session_factory):
    order_id = await place_order(client)
    await initiate(client, order_id)

    response = await client.post("/payments/push/callback", json=stk_callback("ws_CO_1", receipt=None))

    assert response.status_code == 400
    order = await load_order(session_factory, order_id)
    assert order.mobile_money_status is MobileMoneyStatus.INITIATED
    assert order.paid_at is None


@pytest.mark.asyncio
async def test_callback_unknown_checkout_id(client):
    response = await client.post("/payments/push/callback", json=stk_callback("ws_CO_unknown"))

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_callback_token(client, mpesa_client, session_factory):
    order_id = await place_order(client)
    await initiate(client, order_id)

    response = await client.post("/payments/push/callback?token=forged", json=stk_callback("ws_CO_1"))
    assert response.status_code == 400
    order = await load_order(session_factory, order_id)
    assert order.mobile_money_status is MobileMoneyStatus.INITIATED

    token = mpesa_client.callback_token("ws_CO_1")
    response = await client.post(
        "/payments/push/callback", json=stk_callback("ws_CO_1"), headers={"X-Callback-Token": token}
    )
    assert response.status_code == 200
    assert response.json()["message"] == "paid"


@pytest.mark.asyncio
async def test_query_confirms_then_callback_settles(client, daraja, session_factory):
    order_id = await place_order(client)
    await initiate(client, order_id)
    daraja.query_response = (
        200,
        {
            "ResponseCode": "0",
            "ResponseDescription": "The service request has been accepted successsfully",
            "MerchantRequestID": "mr-1",
            "CheckoutRequestID": "ws_CO_1",
            "ResultCode": "0",
            "ResultDesc": "The service request is processed successfully.",
        },
    )

    response = await client.post("/payments/push/query", json={"orderId": order_id})

    assert response.status_code == 200
    assert response.json()["mobileMoneyStatus"] == "pending"
    assert response.json()["resultCode"] == "0"

    response = await client.post("/payments/push/callback", json=stk_callback("ws_CO_1"))
    assert response.json()["message"] == "paid"
    order = await load_order(session_factory, order_id)
    assert order.mobile_money_status is MobileMoneyStatus.PAID


@pytest.mark.asyncio
async def test_query_failure_code_fails_order(client, daraja, published, session_factory):
    order_id = await place_order(client)
    await initiate(client, order_id)
    daraja.query_response = (
        200,
        {
            "ResponseCode": "0",
            "MerchantRequestID": "mr-1",
            "CheckoutRequestID": "ws_CO_1",
            "ResultCode": "1032",
            "ResultDesc": "Request cancelled by user",
        },
    )

    response = await client.post("/payments/push/query", json={"orderId": order_id})

    assert response.status_code == 200
    assert response.json()["mobileMoneyStatus"] == "failed"
    order = await load_order(session_factory, order_id)
    assert order.payment_failure_reason == "Request cancelled by user"
    published.failed.assert_awaited_once()


@pytest.mark.asyncio
async def test_query_missing_result_code_is_not_success(client, daraja, session_factory):
    order_id = await place_order(client)
    await initiate(client, order_id)
    daraja.query_response = (200, {"ResponseCode": "0", "MerchantRequestID": "mr-1", "CheckoutRequestID": "ws_CO_1"})

    response = await client.post("/payments/push/query", json={"orderId": order_id})

    assert response.status_code == 502
    order = await load_order(session_factory, order_id)
    assert order.mobile_money_status is MobileMoneyStatus.INITIATED


@pytest.mark.asyncio
async def test_query_still_processing(client, daraja):
    order_id = await place_order(client)
    await initiate(client, order_id)
    daraja.query_response = (500, {"errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"})

    response = await client.post("/payments/push/query", json={"orderId": order_id})

    assert response.status_code == 202
    assert response.json()["status"] == "processing"


@pytest.mark.asyncio
async def test_list_payment_attempts(client):
    order_id = await place_order(client)
    await initiate(client, order_id)
    await client.post("/payments/push/resend", json={"orderId": order_id})

    response = await client.get(f"/orders/{order_id}/payments")

    assert response.status_code == 200
    attempts = response.json()
    assert [a["status"] for a in attempts] == ["superseded", "initiated"]
    assert [a["checkoutRequestId"] for a in attempts] == ["ws_CO_1", "ws_CO_2"]
    assert all(a["amount"] == 470000 for a in attempts)


@pytest.mark.asyncio
async def test_request_validation_returns_400(client):
    response = await client.post("/payments/push/initiate", json={"phone": "0712345678"})

    assert response.status_code == 400
    assert "orderId" in response.json()["error"] or "order_id" in response.json()["error"]


# ----- card -----


def intent(order_id, status="succeeded", amount=470000, intent_id="pi_3Nx"):
    return CardIntent(
        id=intent_id,
        status=status,
        amount=amount,
        currency="kes",
        client_secret=f"{intent_id}_secret_abc",
        metadata={"order_id": order_id},
    )


@pytest.mark.asyncio
async def test_card_create_intent(client, card_gateway, session_factory):
    order_id = await place_order(client)
    card_gateway.create_intent.return_value = intent(order_id, status="requires_payment_method")

    response = await client.post("/payments/card/create-intent", json={"orderId": order_id, "amount": 4700})

    assert response.status_code == 200
    assert response.json() == {"clientSecret": "pi_3Nx_secret_abc"}
    card_gateway.create_intent.assert_awaited_once_with(470000, metadata={"order_id": order_id})
    order = await load_order(session_factory, order_id)
    assert order.payment_method.value == "card"
    assert order.paid_at is None


@pytest.mark.asyncio
async def test_card_create_intent_amount_mismatch(client, card_gateway):
    order_id = await place_order(client)

    response = await client.post("/payments/card/create-intent", json={"orderId": order_id, "amount": 10})

    assert response.status_code == 400
    card_gateway.create_intent.assert_not_awaited()


@pytest.mark.asyncio
async def test_card_unconfigured(client, card_gateway):
    order_id = await place_order(client)
    card_gateway.is_configured.return_value = False

    response = await client.post("/payments/card/create-intent", json={"orderId": order_id})

    assert response.status_code == 500
    assert "Stripe" in response.json()["error"]


@pytest.mark.asyncio
async def test_card_confirm_is_idempotent(client, card_gateway, published):
    """Test case 9: Confirming a succeeded intent pays the order once, however often it is called."""
    order_id = await place_order(client)
    card_gateway.create_intent.return_value = intent(order_id, status="requires_payment_method")
    await client.post("/payments/card/create-intent", json={"orderId": order_id})
    card_gateway.retrieve_intent.return_value = intent(order_id)

    first = await client.post("/payments/card/confirm", json={"orderId": order_id, "intentId": "pi_3Nx"})
    second = await client.post("/payments/card/confirm", json={"orderId": order_id, "intentId": "pi_3Nx"})

    assert first.status_code == 200
    assert second.status_code == 200
    assert first.json()["paymentMethod"] == "card"
    assert first.json()["cardTransactionRef"] == "pi_3Nx"
    assert first.json()["paidAt"] is not None
    published.processed.assert_awaited_once_with(order_id, "card", 470000, "pi_3Nx")


@pytest.mark.asyncio
async def test_card_confirm_unsucceeded_intent(client, card_gateway, session_factory):
    order_id = await place_order(client)
    card_gateway.retrieve_intent.return_value = intent(order_id, status="requires_action")

    response = await client.post("/payments/card/confirm", json={"orderId": order_id, "intentId": "pi_3Nx"})

    assert response.status_code == 400
    assert "requires_action" in response.json()["error"]
    order = await load_order(session_factory, order_id)
    assert order.paid_at is None


@pytest.mark.asyncio
async def test_card_confirm_intent_for_other_order(client, card_gateway):
    order_id = await place_order(client)
    card_gateway.retrieve_intent.return_value = intent("another-order")

    response = await client.post("/payments/card/confirm", json={"orderId": order_id, "intentId": "pi_3Nx"})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_push_success_after_card_payment_is_not_applied(client, card_gateway, session_factory):
    order_id = await place_order(client)
    await initiate(client, order_id)
    card_gateway.retrieve_intent.return_value = intent(order_id)
    await client.post("/payments/card/confirm", json={"orderId": order_id, "intentId": "pi_3Nx"})

    response = await client.post("/payments/push/callback", json=stk_callback("ws_CO_1"))

    assert response.status_code == 200
    assert response.json()["message"] == "duplicate"
    order = await load_order(session_factory, order_id)
    assert order.card_transaction_ref == "pi_3Nx"
    assert order.mpesa_receipt_number is None


# ----- reporting -----


async def seed_payments(client, card_gateway):
    """One paid push, one resent push and one card intent: four attempts in total."""
    paid_order = await place_order(client)
    await initiate(client, paid_order)
    await client.post("/payments/push/callback", json=stk_callback("ws_CO_1"))

    resent_order = await place_order(client)
    await initiate(client, resent_order)
    await client.post("/payments/push/resend", json={"orderId": resent_order})

    card_order = await place_order(client)
    card_gateway.create_intent.return_value = intent(card_order, status="requires_payment_method")
    await client.post("/payments/card/create-intent", json={"orderId": card_order})
    return paid_order, resent_order, card_order


@pytest.mark.asyncio
async def test_list_payments_filters(client, card_gateway):
    paid_order, resent_order, card_order = await seed_payments(client, card_gateway)

    response = await client.get("/payments")
    assert response.status_code == 200
    assert response.json()["total"] == 4
    assert len(response.json()["payments"]) == 4

    cards = (await client.get("/payments", params={"method": "card"})).json()
    assert cards["total"] == 1
    assert cards["payments"][0]["orderId"] == card_order
    assert cards["payments"][0]["cardIntentId"] == "pi_3Nx"

    paid = (await client.get("/payments", params={"status": "paid"})).json()
    assert paid["total"] == 1
    assert paid["payments"][0]["orderId"] == paid_order
    assert paid["payments"][0]["receiptNumber"] == "QKJ4T5RXYZ"

    found = (await client.get("/payments", params={"search": "ws_CO_3"})).json()
    assert found["total"] == 1
    assert found["payments"][0]["orderId"] == resent_order
    assert found["payments"][0]["status"] == "initiated"


@pytest.mark.asyncio
async def test_list_payments_paginates(client, card_gateway):
    await seed_payments(client, card_gateway)

    first = (await client.get("/payments", params={"limit": 2, "offset": 0})).json()
    second = (await client.get("/payments", params={"limit": 2, "offset": 2})).json()
    beyond = (await client.get("/payments", params={"limit": 2, "offset": 4})).json()

    assert first["total"] == second["total"] == beyond["total"] == 4
    assert len(first["payments"]) == len(second["payments"]) == 2
    assert beyond["payments"] == []
    first_ids = {p["id"] for p in first["payments"]}
    assert first_ids.isdisjoint(p["id"] for p in second["payments"])


@pytest.mark.asyncio
async def test_list_payments_rejects_bad_filters(client):
    assert (await client.get("/payments", params={"status": "refunded"})).status_code == 400
    assert (await client.get("/payments", params={"limit": 0})).status_code == 400


@pytest.mark.asyncio
async def test_payment_analytics(client, card_gateway):
    await seed_payments(client, card_gateway)

    response = await client.get("/payments/analytics")

    assert response.status_code == 200
    analytics = response.json()
    assert analytics["totalAttempts"] == 4
    assert analytics["paidAttempts"] == 1
    assert analytics["failedAttempts"] == 0
    assert analytics["totalRevenue"] == 470000
    assert analytics["successRate"] == 0.25
    assert analytics["statusBreakdown"] == {"paid": 1, "superseded": 1, "initiated": 2}
    assert analytics["methodBreakdown"] == {"mobile_money": 3, "card": 1}


@pytest.mark.asyncio
async def test_payment_analytics_empty(client):
    analytics = (await client.get("/payments/analytics")).json()

    assert analytics["totalAttempts"] == 0
    assert analytics["totalRevenue"] == 0
    assert analytics["successRate"] == 0.0
    assert analytics["statusBreakdown"] == {}
