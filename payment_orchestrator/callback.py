"""Validation and extraction of M-Pesa STK callback payloads.

A callback looks like::

    {"Body": {"stkCallback": {
        "MerchantRequestID": "...", "CheckoutRequestID": "...",
        "ResultCode": 0, "ResultDesc": "...",
        "CallbackMetadata": {"Item": [{"Name": "Amount", "Value": 4700}, ...]}}}}

``CallbackMetadata`` is only sent for successful payments.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from payment_orchestrator.errors import IncompleteGatewayResponse, ValidationError

logger = logging.getLogger(__name__)


class InvalidCallback(ValidationError):
    default_message = "Invalid callback payload"


@dataclass(frozen=True)
class CallbackDetails:
    merchant_request_id: str
    checkout_request_id: str
    result_code: str
    result_desc: str
    amount: Optional[Decimal] = None
    receipt_number: Optional[str] = None
    transaction_date: Optional[datetime] = None
    phone: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.result_code == "0"


def _stk_callback(payload: Any) -> Optional[dict]:
    if not isinstance(payload, dict):
        return None
    body = payload.get("Body")
    if not isinstance(body, dict):
        return None
    callback = body.get("stkCallback")
    return callback if isinstance(callback, dict) else None


def validate_callback(payload: Any, auth_token: Optional[str] = None, verify_token=None) -> dict:
    """Return the ``stkCallback`` object, or raise ``InvalidCallback``.

    ``verify_token(checkout_request_id, token)`` is consulted only when the
    request carried a token.
    """
    callback = _stk_callback(payload)
    if callback is None:
        raise InvalidCallback("Callback payload is missing Body.stkCallback")

    if not callback.get("MerchantRequestID") or not callback.get("CheckoutRequestID"):
        raise InvalidCallback("Callback payload is missing request identifiers")
    if callback.get("ResultCode") is None or callback.get("ResultCode") == "":
        raise InvalidCallback("Callback payload is missing ResultCode")

    if auth_token:
        if verify_token is None or not verify_token(callback["CheckoutRequestID"], auth_token):
            raise InvalidCallback("Callback authentication failed")

    return callback


def _parse_transaction_date(value: Any) -> Optional[datetime]:
    try:
        return datetime.strptime(str(value), "%Y%m%d%H%M%S")
    except ValueError:
        logger.warning("Unparseable TransactionDate in callback: %r", value)
        return None


def extract_details(callback: dict) -> CallbackDetails:
    result_code = str(callback["ResultCode"]).strip()
    fields = {
        "merchant_request_id": callback["MerchantRequestID"],
        "checkout_request_id": callback["CheckoutRequestID"],
        "result_code": result_code,
        "result_desc": callback.get("ResultDesc") or "",
    }
    if result_code != "0":
        return CallbackDetails(**fields)

    items = (callback.get("CallbackMetadata") or {}).get("Item") or []
    for item in items:
        if not isinstance(item, dict):
            continue
        name, value = item.get("Name"), item.get("Value")
        if value is None:
            continue
        if name == "Amount":
            try:
                fields["amount"] = Decimal(str(value))
            except InvalidOperation:
                logger.warning("Unparseable Amount in callback: %r", value)
        elif name == "MpesaReceiptNumber":
            fields["receipt_number"] = str(value)
        elif name == "TransactionDate":
            fields["transaction_date"] = _parse_transaction_date(value)
        elif name == "PhoneNumber":
            fields["phone"] = str(value)

    if fields.get("amount") is None or not fields.get("receipt_number"):
        logger.critical(
            "Successful callback for %s lacks amount or receipt: %s",
            fields["checkout_request_id"], callback,
        )
        raise IncompleteGatewayResponse("Successful callback is missing amount or receipt", detail=callback)

    return CallbackDetails(**fields)
