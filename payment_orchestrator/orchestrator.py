import enum
import logging
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from payment_orchestrator.callback import extract_details, validate_callback
from payment_orchestrator.card import CardGateway, CardIntent
from payment_orchestrator.errors import (
    AmountMismatch,
    GatewayError,
    GatewayUnconfigured,
    InvalidAmount,
    InvalidTransition,
    OrderNotFound,
    PaymentError,
    RateLimited,
    ValidationError,
)
from payment_orchestrator.messaging import publish_payment_failed, publish_payment_processed
from payment_orchestrator.models import AttemptStatus, MobileMoneyStatus, Order, PaymentAttempt, PaymentMethod
from payment_orchestrator.mpesa import MpesaClient, PushRequest, StatusResult
from payment_orchestrator.rate_limit import RateLimiter
from payment_orchestrator.store import PaymentStore

logger = logging.getLogger(__name__)

# Callback amounts are in shillings, order totals in cents
AMOUNT_TOLERANCE = 1

CANCELLED_REASON = "cancelled by user"
PUSH_DESCRIPTION = "Order payment"

INITIATABLE = frozenset({None, MobileMoneyStatus.FAILED})
RESENDABLE = frozenset({MobileMoneyStatus.INITIATED, MobileMoneyStatus.FAILED})
CANCELLABLE = frozenset({MobileMoneyStatus.INITIATED, MobileMoneyStatus.FAILED})

MOBILE_MONEY = "mobile_money"
CARD = "card"


class CallbackOutcome(enum.Enum):
    PAID = "paid"
    FAILED = "failed"
    AMOUNT_MISMATCH = "amount_mismatch"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


def push_amount(total: int) -> int:
    """Whole-shilling amount for an order total held in cents."""
    if total % 100:
        raise InvalidAmount("Invalid amount. M-Pesa payments must be in whole shillings")
    return total // 100


def amount_matches(total: int, amount: Decimal) -> bool:
    return abs(Decimal(total) - amount * 100) <= AMOUNT_TOLERANCE


def account_reference(order_id: str) -> str:
    # Daraja caps AccountReference at 12 characters
    return order_id.replace("-", "")[:12].upper()


class PaymentOrchestrator:
    def __init__(
        self,
        store: PaymentStore,
        mpesa: MpesaClient,
        card: CardGateway,
        initiate_limiter: RateLimiter,
        resend_limiter: RateLimiter,
    ):
        self.store = store
        self.mpesa = mpesa
        self.card = card
        self.initiate_limiter = initiate_limiter
        self.resend_limiter = resend_limiter

    async def _check_rate(self, limiter: RateLimiter, action: str, origin: str):
        result = await limiter.check(f"{action}:{origin}")
        if not result.allowed:
            raise RateLimited(result.reset_at)

    # ----- orders -----

    async def create_order(self, order_fields: dict, items: Iterable[dict]) -> Order:
        order = await self.store.create_order(order_fields, items)
        logger.info("Order %s created (total=%s)", order.id, order.total)
        return order

    async def payment_status(self, order_id: str) -> Order:
        return await self.store.get_order(order_id)

    async def payment_attempts(self, order_id: str):
        await self.store.get_order(order_id)
        return await self.store.list_attempts(order_id)

    # ----- reporting -----

    async def payment_history(
        self,
        method: Optional[PaymentMethod] = None,
        status: Optional[AttemptStatus] = None,
        search: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[PaymentAttempt], int]:
        return await self.store.search_attempts(method, status, search, limit, offset)

    async def payment_analytics(self) -> dict:
        stats = await self.store.attempt_analytics()
        by_status = stats["status_breakdown"]
        total = sum(by_status.values())
        paid = by_status.get(AttemptStatus.PAID.value, 0)
        return {
            **stats,
            "total_attempts": total,
            "paid_attempts": paid,
            "failed_attempts": by_status.get(AttemptStatus.FAILED.value, 0),
            # Fraction of all attempts that were paid, 0.0 when there are none
            "success_rate": round(paid / total, 4) if total else 0.0,
        }

    # ----- mobile money -----

    async def _send_push(self, order: Order, phone: str) -> PushRequest:
        order_id = order.id
        try:
            return await self.mpesa.initiate(
                phone, push_amount(order.total), account_reference(order_id), PUSH_DESCRIPTION
            )
        except ValidationError:
            raise
        except PaymentError as e:
            logger.error(
                "Push payment for order %s failed: %s (%s) detail=%s",
                order_id, e.public_message, type(e).__name__, e.detail,
            )
            raise

    async def _record_push(self, order_id: str, total: int, push: PushRequest, allowed_from, is_retry: bool):
        try:
            await self.store.record_push_initiated(
                order_id,
                amount=total,
                phone=push.phone,
                merchant_request_id=push.merchant_request_id,
                checkout_request_id=push.checkout_request_id,
                allowed_from=allowed_from,
                is_retry=is_retry,
            )
        except InvalidTransition:
            # Another request moved the order first, but this push already
            # reached the customer's phone and may still be approved
            logger.warning(
                "Order %s changed while pushing checkout %s; recording it as superseded",
                order_id, push.checkout_request_id,
            )
            await self.store.record_superseded_push(
                order_id,
                amount=total,
                phone=push.phone,
                merchant_request_id=push.merchant_request_id,
                checkout_request_id=push.checkout_request_id,
            )
            raise

    async def initiate_push(self, order_id: str, phone: str, origin: str) -> PushRequest:
        await self._check_rate(self.initiate_limiter, "initiate", origin)
        order = await self.store.get_order(order_id)

        if order.paid_at is not None:
            raise InvalidTransition(order.mobile_money_status, MobileMoneyStatus.INITIATED, "Order has already been paid")
        if order.mobile_money_status not in INITIATABLE:
            raise InvalidTransition(
                order.mobile_money_status,
                MobileMoneyStatus.INITIATED,
                "A payment request is already in progress for this order",
            )
        is_retry = order.mobile_money_status is MobileMoneyStatus.FAILED
        total = order.total

        push = await self._send_push(order, phone)
        await self._record_push(order_id, total, push, INITIATABLE, is_retry)
        logger.info("Push payment initiated for order %s: checkout=%s", order_id, push.checkout_request_id)
        return push

    async def resend_push(self, order_id: str, origin: str) -> PushRequest:
        await self._check_rate(self.resend_limiter, "resend", origin)
        order = await self.store.get_order(order_id)

        if order.paid_at is not None or order.mobile_money_status not in RESENDABLE:
            raise InvalidTransition(
                order.mobile_money_status,
                MobileMoneyStatus.INITIATED,
                "Payment cannot be resent in its current state",
            )
        if not order.mpesa_phone:
            raise ValidationError("No M-Pesa phone number on record for this order")
        previous_checkout_id = order.mpesa_checkout_request_id
        total = order.total

        push = await self._send_push(order, order.mpesa_phone)
        if push.checkout_request_id == previous_checkout_id:
            logger.error("Gateway reused checkout id %s on resend for order %s", previous_checkout_id, order_id)
            raise GatewayError(detail={"checkout_request_id": previous_checkout_id})

        await self._record_push(order_id, total, push, RESENDABLE, is_retry=True)
        logger.info(
            "Push payment resent for order %s: checkout %s supersedes %s",
            order_id, push.checkout_request_id, previous_checkout_id,
        )
        return push

    async def cancel_push(self, order_id: str) -> Order:
        order = await self.store.get_order(order_id)
        if order.mobile_money_status not in CANCELLABLE:
            raise InvalidTransition(
                order.mobile_money_status, MobileMoneyStatus.FAILED, "Payment cannot be cancelled in its current state"
            )
        # The in-flight push is not aborted; a late callback is still reconciled
        order = await self.store.mark_failed(order_id, CANCELLED_REASON, allowed_from=CANCELLABLE)
        logger.info("Push payment for order %s cancelled by user", order_id)
        await publish_payment_failed(order_id, MOBILE_MONEY, CANCELLED_REASON)
        return order

    async def query_push_status(self, order_id: str) -> Tuple[Order, Optional[StatusResult]]:
        order = await self.store.get_order(order_id)
        checkout_id = order.mpesa_checkout_request_id
        if not checkout_id:
            raise InvalidTransition(message="No mobile money payment has been initiated for this order")
        if order.mobile_money_status is MobileMoneyStatus.PAID:
            return order, None
        status = order.mobile_money_status

        try:
            result = await self.mpesa.query_status(checkout_id)
        except PaymentError as e:
            logger.error(
                "Status query for order %s (checkout %s) failed: %s detail=%s",
                order_id, checkout_id, type(e).__name__, e.detail,
            )
            raise

        attempt = await self.store.find_attempt_by_checkout_id(checkout_id)
        attempt_id = attempt.id if attempt is not None else None
        try:
            if result.succeeded and status is MobileMoneyStatus.INITIATED:
                order = await self.store.mark_pending(order_id, attempt_id, result.result_code, result.result_desc)
            elif not result.succeeded and status in (MobileMoneyStatus.INITIATED, MobileMoneyStatus.PENDING):
                order = await self.store.mark_failed(
                    order_id, result.result_desc, attempt_id, result.result_code,
                    allowed_from=(MobileMoneyStatus.INITIATED, MobileMoneyStatus.PENDING),
                )
                await publish_payment_failed(order_id, MOBILE_MONEY, result.result_desc)
        except InvalidTransition:
            # A callback settled the order while the query was in flight
            order = await self.store.get_order(order_id)
        return order, result

    async def handle_callback(self, payload, auth_token: Optional[str] = None) -> CallbackOutcome:
        callback = validate_callback(payload, auth_token, self.mpesa.verify_callback_token)
        details = extract_details(callback)

        attempt = await self.store.find_attempt_by_checkout_id(details.checkout_request_id)
        if attempt is None:
            logger.warning("Callback for unknown checkout id %s", details.checkout_request_id)
            raise OrderNotFound("No order matches this checkout request")
        order = await self.store.get_order(attempt.order_id)
        order_id, attempt_id = order.id, attempt.id

        logger.info(
            "Callback for order %s (checkout %s): resultCode=%s %s",
            order_id, details.checkout_request_id, details.result_code, details.result_desc,
        )

        if order.mobile_money_status is MobileMoneyStatus.PAID:
            if details.succeeded and details.receipt_number != order.mpesa_receipt_number:
                logger.error(
                    "Second successful payment for already paid order %s: receipt %s (paid with %s). Refund required.",
                    order_id, details.receipt_number, order.mpesa_receipt_number,
                )
                await self.store.record_attempt_outcome(
                    attempt_id, AttemptStatus.PAID, details.result_code, details.result_desc, details.receipt_number
                )
            return CallbackOutcome.DUPLICATE

        is_active = order.mpesa_checkout_request_id == details.checkout_request_id
        if details.succeeded:
            return await self._apply_success(order, attempt, details, is_active)
        return await self._apply_failure(order, attempt, details, is_active)

    async def _apply_success(self, order: Order, attempt: PaymentAttempt, details, is_active: bool) -> CallbackOutcome:
        order_id, attempt_id, total = order.id, attempt.id, order.total

        if not amount_matches(total, details.amount):
            mismatch = AmountMismatch(total, str(details.amount))
            logger.error(
                "Amount mismatch for order %s (checkout %s): expected %s cents, received KSh %s",
                order_id, details.checkout_request_id, total, details.amount,
            )
            reason = f"Amount mismatch: expected KSh {Decimal(total) / 100}, received KSh {details.amount}"
            if not is_active:
                # The active request is still open; only the stale attempt fails
                await self.store.record_attempt_outcome(
                    attempt_id, AttemptStatus.FAILED, details.result_code, reason, details.receipt_number
                )
                return CallbackOutcome.AMOUNT_MISMATCH
            try:
                await self.store.mark_failed(order_id, reason, attempt_id, details.result_code)
            except InvalidTransition:
                await self.store.record_attempt_outcome(
                    attempt_id, AttemptStatus.FAILED, details.result_code, reason, details.receipt_number
                )
            await publish_payment_failed(order_id, MOBILE_MONEY, mismatch.public_message)
            return CallbackOutcome.AMOUNT_MISMATCH

        if order.paid_at is not None:
            logger.error(
                "M-Pesa payment %s received for order %s already paid by %s. Refund required.",
                details.receipt_number, order_id, order.payment_method,
            )
            await self.store.record_attempt_outcome(
                attempt_id, AttemptStatus.PAID, details.result_code, details.result_desc, details.receipt_number
            )
            return CallbackOutcome.DUPLICATE

        if not is_active:
            logger.warning(
                "Late success for superseded checkout %s settles order %s", details.checkout_request_id, order_id
            )
        if order.payment_failure_reason == CANCELLED_REASON:
            logger.warning("Payment for order %s completed after the user cancelled it", order_id)

        try:
            await self.store.mark_paid(
                order_id,
                attempt_id,
                receipt_number=details.receipt_number,
                merchant_request_id=details.merchant_request_id,
                checkout_request_id=details.checkout_request_id,
                result_code=details.result_code,
                result_desc=details.result_desc,
            )
        except InvalidTransition:
            current = await self.store.get_order(order_id)
            if current.mobile_money_status is MobileMoneyStatus.PAID:
                return CallbackOutcome.DUPLICATE
            raise

        logger.info("Order %s paid via M-Pesa, receipt %s", order_id, details.receipt_number)
        await publish_payment_processed(order_id, MOBILE_MONEY, total, details.receipt_number)
        return CallbackOutcome.PAID

    async def _apply_failure(self, order: Order, attempt: PaymentAttempt, details, is_active: bool) -> CallbackOutcome:
        order_id, attempt_id = order.id, attempt.id
        reason = details.result_desc or f"M-Pesa result code {details.result_code}"

        # A failure only speaks for its own request: a superseded attempt failing
        # says nothing about the newer one, and a failed order stays as it is.
        if not is_active or order.mobile_money_status is MobileMoneyStatus.FAILED:
            await self.store.record_attempt_outcome(attempt_id, AttemptStatus.FAILED, details.result_code, reason)
            return CallbackOutcome.IGNORED

        try:
            await self.store.mark_failed(order_id, reason, attempt_id, details.result_code)
        except InvalidTransition:
            current = await self.store.get_order(order_id)
            if current.mobile_money_status is MobileMoneyStatus.PAID:
                return CallbackOutcome.DUPLICATE
            raise

        logger.info("Order %s payment failed: %s", order_id, reason)
        await publish_payment_failed(order_id, MOBILE_MONEY, reason)
        return CallbackOutcome.FAILED

    # ----- card -----

    async def create_card_intent(self, order_id: str, amount: Optional[Decimal] = None) -> CardIntent:
        if not self.card.is_configured():
            raise GatewayUnconfigured("Payment processing not configured. Missing Stripe keys.")
        order = await self.store.get_order(order_id)
        if order.paid_at is not None:
            raise InvalidTransition(message="Order has already been paid")
        if amount is not None and not amount_matches(order.total, amount):
            raise AmountMismatch(order.total, str(amount))

        total = order.total
        intent = await self.card.create_intent(total, metadata={"order_id": order_id})
        await self.store.record_card_intent(order_id, intent.id, total)
        logger.info("Card payment intent %s created for order %s", intent.id, order_id)
        return intent

    async def confirm_card_payment(self, order_id: str, intent_id: str) -> Order:
        order = await self.store.get_order(order_id)
        total = order.total

        # The browser only reports that it tried; the gateway is the authority
        intent = await self.card.retrieve_intent(intent_id)
        owner = intent.metadata.get("order_id")
        if owner is not None and owner != order_id:
            logger.error("Intent %s belongs to order %s, not %s", intent_id, owner, order_id)
            raise ValidationError("Payment does not belong to this order")
        if not intent.succeeded:
            raise GatewayError(f"Payment not completed (status: {intent.status})", status_code=400)
        if intent.amount != total:
            logger.error("Intent %s amount %s does not match order %s total %s", intent_id, intent.amount, order_id, total)
            raise AmountMismatch(total, intent.amount)

        order, newly_paid = await self.store.mark_card_paid(order_id, intent.id)
        if newly_paid:
            logger.info("Order %s paid by card, intent %s", order_id, intent.id)
            await publish_payment_processed(order_id, CARD, total, intent.id)
        return order
