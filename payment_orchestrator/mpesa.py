"""M-Pesa (Daraja) STK push client.

Only ``get_access_token`` and ``query_status`` are retried on transport
failures: both are read-only. ``initiate`` prompts the customer's phone, so a
retry could charge twice and is left to an explicit user resend.
"""

import base64
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from payment_orchestrator.config import Settings
from payment_orchestrator.errors import (
    AuthError,
    GatewayError,
    GatewayUnconfigured,
    IncompleteGatewayResponse,
    InvalidAmount,
    NetworkError,
    PaymentStillProcessing,
)
from payment_orchestrator.phone import normalize_phone

logger = logging.getLogger(__name__)

TOKEN_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

INITIATE_TIMEOUT = 30.0
QUERY_TIMEOUT = 10.0
TOKEN_TIMEOUT = 10.0
TOKEN_EXPIRY_MARGIN = 60

STILL_PROCESSING_CODE = "500.001.1001"

# (substring in the gateway error, message shown to the customer)
KNOWN_PUSH_ERRORS = (
    ("insufficient funds", "Insufficient funds in your M-Pesa account."),
    ("invalid phone", "Invalid phone number. Please check and try again."),
    ("duplicate", "Duplicate transaction. Please wait a moment before trying again."),
)

_retry_transport = retry(
    retry=retry_if_exception_type(NetworkError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, max=2),
    reraise=True,
)


@dataclass(frozen=True)
class PushRequest:
    merchant_request_id: str
    checkout_request_id: str
    customer_message: str
    phone: str
    response_code: Optional[str] = None


@dataclass(frozen=True)
class StatusResult:
    result_code: str
    result_desc: str
    merchant_request_id: str
    checkout_request_id: str
    response_code: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.result_code == "0"


def _present(value: Any) -> bool:
    return value is not None and value != ""


def _pick(data: dict, *keys: str) -> Any:
    for key in keys:
        if _present(data.get(key)):
            return data[key]
    return None


class MpesaClient:
    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock=time.monotonic,
    ):
        self.settings = settings
        self._transport = transport
        self._clock = clock
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def is_configured(self) -> bool:
        s = self.settings
        return all(
            [
                s.mpesa_consumer_key,
                s.mpesa_consumer_secret,
                s.mpesa_business_shortcode,
                s.mpesa_passkey,
                s.mpesa_callback_url,
            ]
        )

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.settings.mpesa_base_url,
            timeout=timeout,
            transport=self._transport,
        )

    @staticmethod
    def generate_timestamp(now: Optional[datetime] = None) -> str:
        return (now or datetime.now()).strftime("%Y%m%d%H%M%S")

    def generate_password(self, timestamp: str) -> str:
        raw = f"{self.settings.mpesa_business_shortcode}{self.settings.mpesa_passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    def callback_token(self, checkout_request_id: str) -> str:
        secret = self.settings.mpesa_callback_secret.encode()
        return hmac.new(secret, checkout_request_id.encode(), hashlib.sha256).hexdigest()

    def verify_callback_token(self, checkout_request_id: str, token: str) -> bool:
        if not self.settings.mpesa_callback_secret:
            logger.warning("Callback token supplied but MPESA_CALLBACK_SECRET is not set")
            return False
        return hmac.compare_digest(self.callback_token(checkout_request_id), token)

    @_retry_transport
    async def get_access_token(self) -> str:
        if self._token and self._clock() < self._token_expires_at:
            return self._token

        credentials = f"{self.settings.mpesa_consumer_key}:{self.settings.mpesa_consumer_secret}"
        auth = base64.b64encode(credentials.encode()).decode()
        try:
            async with self._client(TOKEN_TIMEOUT) as client:
                response = await client.get(
                    TOKEN_PATH,
                    params={"grant_type": "client_credentials"},
                    headers={"Authorization": f"Basic {auth}"},
                )
        except httpx.TransportError as e:
            logger.warning("Network error fetching M-Pesa OAuth token: %s", e)
            raise NetworkError(detail=str(e)) from e

        if not response.is_success:
            logger.error("M-Pesa OAuth token request failed: %s %s", response.status_code, response.text)
            raise AuthError(detail={"status": response.status_code, "body": response.text})

        try:
            data = response.json()
        except ValueError as e:
            raise AuthError(detail=response.text) from e
        token = data.get("access_token")
        if not token:
            logger.error("M-Pesa OAuth response has no access_token: %s", data)
            raise AuthError(detail=data)

        expires_in = int(data.get("expires_in") or 3599)
        self._token = token
        self._token_expires_at = self._clock() + max(0, expires_in - TOKEN_EXPIRY_MARGIN)
        return token

    async def initiate(self, phone: str, amount, order_ref: str, description: str) -> PushRequest:
        if not self.is_configured():
            raise GatewayUnconfigured("M-Pesa is not properly configured")

        max_amount = self.settings.mpesa_max_amount
        if amount is None or amount <= 0 or amount > max_amount:
            raise InvalidAmount(f"Invalid amount. Amount must be between KSh 1 and KSh {max_amount:,}")
        if int(amount) != amount:
            raise InvalidAmount("Invalid amount. M-Pesa payments must be in whole shillings")

        normalized_phone = normalize_phone(phone)
        token = await self.get_access_token()

        timestamp = self.generate_timestamp()
        body = {
            "BusinessShortCode": self.settings.mpesa_business_shortcode,
            "Password": self.generate_password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(amount),
            "PartyA": normalized_phone,
            "PartyB": self.settings.mpesa_business_shortcode,
            "PhoneNumber": normalized_phone,
            "CallBackURL": self.settings.mpesa_callback_url,
            "AccountReference": order_ref,
            "TransactionDesc": description,
        }
        logger.info(
            "Initiating STK push for %s: phone=%s amount=%s timestamp=%s",
            order_ref, normalized_phone, amount, timestamp,
        )

        try:
            async with self._client(INITIATE_TIMEOUT) as client:
                response = await client.post(
                    STK_PUSH_PATH, json=body, headers={"Authorization": f"Bearer {token}"}
                )
        except httpx.TimeoutException as e:
            logger.error("STK push for %s timed out: %s", order_ref, e)
            raise NetworkError("The payment request timed out. Please try again.", detail=str(e)) from e
        except httpx.TransportError as e:
            logger.error("Network error during STK push for %s: %s", order_ref, e)
            raise NetworkError(detail=str(e)) from e

        try:
            data = response.json()
        except ValueError as e:
            logger.error("Invalid JSON from M-Pesa STK push for %s: %s", order_ref, response.text)
            raise GatewayError("Invalid response from M-Pesa. Please try again.", detail=response.text) from e

        if not response.is_success:
            logger.error("STK push for %s failed (%s): %s", order_ref, response.status_code, data)
            raise self._map_push_error(response.status_code, data)

        merchant_request_id = data.get("MerchantRequestID")
        checkout_request_id = data.get("CheckoutRequestID")
        if not _present(merchant_request_id) or not _present(checkout_request_id):
            logger.error("STK push response for %s is missing request identifiers: %s", order_ref, data)
            raise IncompleteGatewayResponse("Invalid response from M-Pesa. Please try again.", detail=data)

        return PushRequest(
            merchant_request_id=merchant_request_id,
            checkout_request_id=checkout_request_id,
            customer_message=data.get("CustomerMessage") or "Please complete payment on your phone",
            phone=normalized_phone,
            response_code=data.get("ResponseCode"),
        )

    @staticmethod
    def _map_push_error(status_code: int, data: Any) -> Exception:
        data = data if isinstance(data, dict) else {}
        error_message = str(data.get("errorMessage") or data.get("errorCode") or "Unknown error")
        lowered = error_message.lower()

        for needle, message in KNOWN_PUSH_ERRORS:
            if needle in lowered:
                return GatewayError(message, detail=data, status_code=400)
        if status_code == 401:
            return AuthError("Authentication failed. Please contact support.", detail=data)
        if status_code >= 500:
            return GatewayError(
                "M-Pesa service is temporarily unavailable. Please try again later.", detail=data
            )
        return GatewayError(f"Payment failed: {error_message}", detail=data, status_code=400)

    @_retry_transport
    async def query_status(self, checkout_request_id: str) -> StatusResult:
        if not self.is_configured():
            raise GatewayUnconfigured("M-Pesa is not properly configured")

        token = await self.get_access_token()
        timestamp = self.generate_timestamp()
        body = {
            "BusinessShortCode": self.settings.mpesa_business_shortcode,
            "Password": self.generate_password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }

        try:
            async with self._client(QUERY_TIMEOUT) as client:
                response = await client.post(
                    STK_QUERY_PATH, json=body, headers={"Authorization": f"Bearer {token}"}
                )
        except httpx.TransportError as e:
            logger.warning("Network error querying STK status for %s: %s", checkout_request_id, e)
            raise NetworkError(detail=str(e)) from e

        try:
            data = response.json()
        except ValueError as e:
            logger.error("Invalid JSON from STK query for %s: %s", checkout_request_id, response.text)
            raise GatewayError("Invalid response from M-Pesa status query.", detail=response.text) from e

        if not response.is_success:
            if isinstance(data, dict) and data.get("errorCode") == STILL_PROCESSING_CODE:
                raise PaymentStillProcessing(detail=data)
            logger.error("STK query for %s failed (%s): %s", checkout_request_id, response.status_code, data)
            message = data.get("errorMessage") if isinstance(data, dict) else None
            raise GatewayError(f"Status query failed: {message or 'Unknown error'}", detail=data)

        return self._parse_status(checkout_request_id, data)

    @staticmethod
    def _parse_status(requested_id: str, data: dict) -> StatusResult:
        result_code = _pick(data, "ResultCode", "resultCode")
        merchant_request_id = _pick(data, "MerchantRequestID", "merchantRequestID")
        checkout_request_id = _pick(data, "CheckoutRequestID", "checkoutRequestID")

        # A missing ResultCode must never be read as "0" (success)
        if result_code is None:
            logger.critical("ResultCode missing from STK query response for %s: %s", requested_id, data)
            raise IncompleteGatewayResponse(detail=data)
        if merchant_request_id is None or checkout_request_id is None:
            logger.critical(
                "Request identifiers missing from STK query response for %s: %s", requested_id, data
            )
            raise IncompleteGatewayResponse(detail=data)

        result = StatusResult(
            result_code=str(result_code),
            result_desc=_pick(data, "ResultDesc", "resultDesc") or "No description provided",
            merchant_request_id=merchant_request_id,
            checkout_request_id=checkout_request_id,
            response_code=_pick(data, "ResponseCode", "responseCode"),
        )
        logger.info(
            "STK query for %s: resultCode=%s resultDesc=%s",
            requested_id, result.result_code, result.result_desc,
        )
        return result
