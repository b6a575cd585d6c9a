"""Order payment state.

Every mobile-money status change goes through ``PaymentStore.transition``,
which issues a single ``UPDATE ... WHERE mobile_money_status IN (...)``. The
database row is the lock: of two concurrent writers only one sees a row count
of 1, and the loser gets ``InvalidTransition``.

After a failed unit of work the session is rolled back, which expires every
loaded instance. Callers must re-read (``get_order``) rather than touch
objects loaded before the failure.
"""

from contextlib import asynccontextmanager
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import false, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from payment_orchestrator.errors import InvalidTransition, OrderNotFound
from payment_orchestrator.models import (
    MOBILE_MONEY_TRANSITIONS,
    AttemptStatus,
    MobileMoneyStatus,
    Order,
    OrderItem,
    OrderStatus,
    PaymentAttempt,
    PaymentMethod,
    utcnow,
)


class PaymentStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    @asynccontextmanager
    async def _unit_of_work(self):
        try:
            yield
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

    # ----- orders -----

    async def create_order(self, order_fields: dict, items: Iterable[dict]) -> Order:
        """Insert an order header and its items in one transaction."""
        async with self._unit_of_work():
            order = Order(**order_fields, status=OrderStatus.PENDING, payment_retry_count=0)
            self.session.add(order)
            await self.session.flush()
            self.session.add_all([OrderItem(order_id=order.id, **item) for item in items])
        return order

    async def find_order(self, order_id: str) -> Optional[Order]:
        return await self.session.get(Order, order_id, populate_existing=True)

    async def get_order(self, order_id: str) -> Order:
        order = await self.find_order(order_id)
        if order is None:
            raise OrderNotFound()
        return order

    async def list_items(self, order_id: str) -> List[OrderItem]:
        result = await self.session.execute(select(OrderItem).where(OrderItem.order_id == order_id))
        return list(result.scalars().all())

    # ----- attempts -----

    async def list_attempts(self, order_id: str) -> List[PaymentAttempt]:
        result = await self.session.execute(
            select(PaymentAttempt)
            .where(PaymentAttempt.order_id == order_id)
            .order_by(PaymentAttempt.created_at)
        )
        return list(result.scalars().all())

    async def find_attempt_by_checkout_id(self, checkout_request_id: str) -> Optional[PaymentAttempt]:
        result = await self.session.execute(
            select(PaymentAttempt)
            .where(PaymentAttempt.checkout_request_id == checkout_request_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def search_attempts(
        self,
        method: Optional[PaymentMethod] = None,
        status: Optional[AttemptStatus] = None,
        search: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[PaymentAttempt], int]:
        """One page of attempts across all orders, newest first, with the unpaged count."""
        conditions = []
        if method is not None:
            conditions.append(PaymentAttempt.method == method)
        if status is not None:
            conditions.append(PaymentAttempt.status == status)
        if search:
            pattern = f"%{search}%"
            conditions.append(
                or_(
                    PaymentAttempt.order_id.ilike(pattern),
                    PaymentAttempt.checkout_request_id.ilike(pattern),
                    PaymentAttempt.card_intent_id.ilike(pattern),
                    PaymentAttempt.receipt_number.ilike(pattern),
                    PaymentAttempt.phone.ilike(pattern),
                )
            )

        total = await self.session.scalar(select(func.count(PaymentAttempt.id)).where(*conditions))
        result = await self.session.execute(
            select(PaymentAttempt)
            .where(*conditions)
            .order_by(PaymentAttempt.created_at.desc(), PaymentAttempt.id)
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total or 0

    async def attempt_analytics(self) -> dict:
        by_status = await self.session.execute(
            select(PaymentAttempt.status, func.count(PaymentAttempt.id)).group_by(PaymentAttempt.status)
        )
        by_method = await self.session.execute(
            select(PaymentAttempt.method, func.count(PaymentAttempt.id)).group_by(PaymentAttempt.method)
        )
        revenue = await self.session.scalar(
            select(func.coalesce(func.sum(PaymentAttempt.amount), 0)).where(
                PaymentAttempt.status == AttemptStatus.PAID
            )
        )
        return {
            "status_breakdown": {status.value: count for status, count in by_status.all()},
            "method_breakdown": {method.value: count for method, count in by_method.all()},
            "total_revenue": int(revenue or 0),
        }

    async def _update_attempt(self, attempt_id: str, status: AttemptStatus, **values):
        values.setdefault("completed_at", utcnow() if status in (AttemptStatus.PAID, AttemptStatus.FAILED) else None)
        await self.session.execute(
            update(PaymentAttempt)
            .where(PaymentAttempt.id == attempt_id)
            .values(status=status, **values)
            .execution_options(synchronize_session=False)
        )

    async def record_attempt_outcome(
        self,
        attempt_id: str,
        status: AttemptStatus,
        result_code: Optional[str] = None,
        result_desc: Optional[str] = None,
        receipt_number: Optional[str] = None,
    ):
        """Record a gateway outcome on an attempt without touching its order."""
        async with self._unit_of_work():
            await self._update_attempt(
                attempt_id,
                status,
                result_code=result_code,
                result_desc=result_desc,
                receipt_number=receipt_number,
            )

    # ----- mobile-money transitions -----

    async def transition(
        self,
        order_id: str,
        target: MobileMoneyStatus,
        allowed_from: Optional[Iterable] = None,
        **values,
    ) -> Order:
        """Compare-and-set the order's mobile-money status to ``target``.

        Does not commit. Raises ``InvalidTransition`` when the current status
        is not an allowed source, or ``OrderNotFound``.
        """
        sources = MOBILE_MONEY_TRANSITIONS.get(target, frozenset())
        if allowed_from is not None:
            sources = sources & frozenset(allowed_from)

        statuses = [s for s in sources if s is not None]
        status_clause = Order.mobile_money_status.in_(statuses) if statuses else false()
        if None in sources:
            status_clause = or_(Order.mobile_money_status.is_(None), status_clause)

        conditions = [Order.id == order_id, status_clause]
        if target is MobileMoneyStatus.PAID:
            # At most one payment per order, across both rails
            conditions.append(Order.paid_at.is_(None))

        result = await self.session.execute(
            update(Order)
            .where(*conditions)
            .values(mobile_money_status=target, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            order = await self.find_order(order_id)
            if order is None:
                raise OrderNotFound()
            raise InvalidTransition(order.mobile_money_status, target)
        return await self.find_order(order_id)

    async def record_push_initiated(
        self,
        order_id: str,
        amount: int,
        phone: str,
        merchant_request_id: str,
        checkout_request_id: str,
        allowed_from: Iterable,
        is_retry: bool,
    ) -> Order:
        """Make ``checkout_request_id`` the order's single active push request."""
        values = dict(
            payment_method=PaymentMethod.MOBILE_MONEY,
            payment_initiated_at=utcnow(),
            payment_failure_reason=None,
            mpesa_phone=phone,
            mpesa_merchant_request_id=merchant_request_id,
            mpesa_checkout_request_id=checkout_request_id,
        )
        if is_retry:
            values["payment_retry_count"] = Order.payment_retry_count + 1

        async with self._unit_of_work():
            order = await self.transition(order_id, MobileMoneyStatus.INITIATED, allowed_from, **values)
            await self.session.execute(
                update(PaymentAttempt)
                .where(
                    PaymentAttempt.order_id == order_id,
                    PaymentAttempt.method == PaymentMethod.MOBILE_MONEY,
                    PaymentAttempt.status.in_([AttemptStatus.INITIATED, AttemptStatus.PENDING]),
                )
                .values(status=AttemptStatus.SUPERSEDED)
                .execution_options(synchronize_session=False)
            )
            self.session.add(
                PaymentAttempt(
                    order_id=order_id,
                    method=PaymentMethod.MOBILE_MONEY,
                    status=AttemptStatus.INITIATED,
                    amount=amount,
                    phone=phone,
                    merchant_request_id=merchant_request_id,
                    checkout_request_id=checkout_request_id,
                )
            )
        return order

    async def record_superseded_push(
        self,
        order_id: str,
        amount: int,
        phone: str,
        merchant_request_id: str,
        checkout_request_id: str,
    ) -> PaymentAttempt:
        """Keep a push the gateway accepted but the order did not adopt.

        The customer may still approve it, so its callback must find a row.
        """
        attempt = PaymentAttempt(
            order_id=order_id,
            method=PaymentMethod.MOBILE_MONEY,
            status=AttemptStatus.SUPERSEDED,
            amount=amount,
            phone=phone,
            merchant_request_id=merchant_request_id,
            checkout_request_id=checkout_request_id,
        )
        async with self._unit_of_work():
            self.session.add(attempt)
        return attempt

    async def mark_paid(
        self,
        order_id: str,
        attempt_id: str,
        receipt_number: str,
        merchant_request_id: str,
        checkout_request_id: str,
        result_code: str = "0",
        result_desc: Optional[str] = None,
    ) -> Order:
        if not receipt_number:
            raise ValueError("A paid mobile-money order requires a receipt number")

        async with self._unit_of_work():
            order = await self.transition(
                order_id,
                MobileMoneyStatus.PAID,
                payment_method=PaymentMethod.MOBILE_MONEY,
                paid_at=utcnow(),
                payment_failure_reason=None,
                mpesa_receipt_number=receipt_number,
                mpesa_merchant_request_id=merchant_request_id,
                mpesa_checkout_request_id=checkout_request_id,
            )
            await self._update_attempt(
                attempt_id,
                AttemptStatus.PAID,
                result_code=result_code,
                result_desc=result_desc,
                receipt_number=receipt_number,
            )
        return order

    async def mark_failed(
        self,
        order_id: str,
        reason: str,
        attempt_id: Optional[str] = None,
        result_code: Optional[str] = None,
        allowed_from: Optional[Iterable] = None,
    ) -> Order:
        async with self._unit_of_work():
            order = await self.transition(
                order_id, MobileMoneyStatus.FAILED, allowed_from, payment_failure_reason=reason
            )
            if attempt_id is not None:
                await self._update_attempt(
                    attempt_id, AttemptStatus.FAILED, result_code=result_code, result_desc=reason
                )
        return order

    async def mark_pending(self, order_id: str, attempt_id: Optional[str], result_code: str, result_desc: str) -> Order:
        async with self._unit_of_work():
            order = await self.transition(order_id, MobileMoneyStatus.PENDING)
            if attempt_id is not None:
                await self._update_attempt(
                    attempt_id, AttemptStatus.PENDING, result_code=result_code, result_desc=result_desc
                )
        return order

    # ----- card -----

    async def record_card_intent(self, order_id: str, intent_id: str, amount: int) -> Order:
        async with self._unit_of_work():
            result = await self.session.execute(
                update(Order)
                .where(Order.id == order_id, Order.paid_at.is_(None))
                .values(payment_method=PaymentMethod.CARD, payment_initiated_at=utcnow(), updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.get_order(order_id)
                raise InvalidTransition(message="Order has already been paid")
            self.session.add(
                PaymentAttempt(
                    order_id=order_id,
                    method=PaymentMethod.CARD,
                    status=AttemptStatus.INITIATED,
                    amount=amount,
                    card_intent_id=intent_id,
                )
            )
        return await self.get_order(order_id)

    async def mark_card_paid(self, order_id: str, intent_id: str) -> Tuple[Order, bool]:
        """Settle the order by card. Returns ``(order, newly_paid)``.

        Confirming the same intent twice is a no-op; confirming a different
        one on an already paid order is rejected.
        """
        async with self._unit_of_work():
            result = await self.session.execute(
                update(Order)
                .where(Order.id == order_id, Order.paid_at.is_(None))
                .values(
                    payment_method=PaymentMethod.CARD,
                    paid_at=utcnow(),
                    card_transaction_ref=intent_id,
                    payment_failure_reason=None,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            newly_paid = result.rowcount == 1
            if newly_paid:
                await self.session.execute(
                    update(PaymentAttempt)
                    .where(PaymentAttempt.card_intent_id == intent_id)
                    .values(status=AttemptStatus.PAID, completed_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
            else:
                order = await self.get_order(order_id)
                if order.card_transaction_ref != intent_id:
                    raise InvalidTransition(message="Order has already been paid")
        return await self.get_order(order_id), newly_paid
