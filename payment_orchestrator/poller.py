"""Client side of the push-payment contract.

After ``/payments/push/initiate`` returns, the buyer's client polls the
order's payment status until the callback has settled it. The poller only
reads: giving up on a slow payment leaves the order open, and a callback that
arrives later still settles it.
"""

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 2.0
DEFAULT_TIMEOUT = 300.0


class PollOutcome(enum.Enum):
    PAID = "paid"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class PollResult:
    outcome: PollOutcome
    status: Optional[dict] = None


class PaymentStatusPoller:
    def __init__(
        self,
        client: httpx.AsyncClient,
        interval: float = DEFAULT_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
        clock=time.monotonic,
        sleep=asyncio.sleep,
    ):
        self.client = client
        self.interval = interval
        self.timeout = timeout
        self._clock = clock
        self._sleep = sleep

    async def fetch_status(self, order_id: str) -> dict:
        response = await self.client.get(f"/orders/{order_id}/payment-status")
        response.raise_for_status()
        return response.json()

    async def wait_for_resolution(self, order_id: str) -> PollResult:
        deadline = self._clock() + self.timeout
        status = None

        while True:
            try:
                status = await self.fetch_status(order_id)
            except httpx.HTTPError as e:
                logger.warning("Payment status check for order %s failed: %s", order_id, e)
            else:
                mobile_status = status.get("mobileMoneyStatus")
                if mobile_status == PollOutcome.PAID.value or status.get("paidAt"):
                    return PollResult(PollOutcome.PAID, status)
                if mobile_status == PollOutcome.FAILED.value:
                    return PollResult(PollOutcome.FAILED, status)

            if self._clock() + self.interval > deadline:
                logger.info("Stopped waiting for payment of order %s after %ss", order_id, self.timeout)
                return PollResult(PollOutcome.TIMED_OUT, status)
            await self._sleep(self.interval)

    async def resend(self, order_id: str) -> dict:
        response = await self.client.post("/payments/push/resend", json={"orderId": order_id})
        response.raise_for_status()
        return response.json()

    async def cancel(self, order_id: str) -> dict:
        response = await self.client.post("/payments/push/cancel", json={"orderId": order_id})
        response.raise_for_status()
        return response.json()
