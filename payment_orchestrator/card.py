import logging
from dataclasses import dataclass, field
from typing import Optional

import stripe
from fastapi.concurrency import run_in_threadpool

from payment_orchestrator.errors import GatewayError, GatewayUnconfigured

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CardIntent:
    id: str
    status: str
    amount: int
    currency: str
    client_secret: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    @classmethod
    def from_stripe(cls, intent) -> "CardIntent":
        metadata = getattr(intent, "metadata", None) or {}
        return cls(
            id=intent.id,
            status=intent.status,
            amount=int(intent.amount),
            currency=intent.currency,
            client_secret=getattr(intent, "client_secret", None),
            metadata={key: metadata[key] for key in metadata.keys()},
        )


class CardGateway:
    """Stripe payment intents. The SDK is blocking, so calls run in a threadpool."""

    def __init__(self, secret_key: Optional[str], currency: str = "kes"):
        self._secret_key = secret_key
        self.currency = currency

    def is_configured(self) -> bool:
        return bool(self._secret_key)

    def _require_configured(self):
        if not self.is_configured():
            raise GatewayUnconfigured("Payment processing not configured. Missing Stripe keys.")

    async def create_intent(self, amount: int, currency: Optional[str] = None, metadata: Optional[dict] = None) -> CardIntent:
        self._require_configured()
        try:
            intent = await run_in_threadpool(
                stripe.PaymentIntent.create,
                amount=amount,
                currency=currency or self.currency,
                metadata=metadata or {},
                api_key=self._secret_key,
            )
        except stripe.StripeError as e:
            logger.error("Error creating payment intent (amount=%s, metadata=%s): %s", amount, metadata, e)
            raise GatewayError("Error creating payment intent", detail=str(e), status_code=500) from e
        return CardIntent.from_stripe(intent)

    async def retrieve_intent(self, intent_id: str) -> CardIntent:
        self._require_configured()
        try:
            intent = await run_in_threadpool(stripe.PaymentIntent.retrieve, intent_id, api_key=self._secret_key)
        except stripe.StripeError as e:
            logger.error("Error retrieving payment intent %s: %s", intent_id, e)
            raise GatewayError("Could not verify card payment", detail=str(e)) from e
        return CardIntent.from_stripe(intent)
