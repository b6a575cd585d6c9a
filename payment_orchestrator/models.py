import enum
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Integer, String, Text

from payment_orchestrator.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_column(enum_cls, **kwargs):
    # Store the lowercase values ("paid") rather than member names ("PAID")
    return Column(
        Enum(
            enum_cls,
            native_enum=False,
            length=32,
            values_callable=lambda members: [m.value for m in members],
        ),
        **kwargs,
    )


class OrderStatus(enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"


class PaymentMethod(enum.Enum):
    CARD = "card"
    MOBILE_MONEY = "mobile_money"


class MobileMoneyStatus(enum.Enum):
    INITIATED = "initiated"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class AttemptStatus(enum.Enum):
    INITIATED = "initiated"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    SUPERSEDED = "superseded"


# Allowed mobile-money transitions, keyed by target status. ``None`` stands for
# an order that has never been sent a push request.
MOBILE_MONEY_TRANSITIONS = {
    MobileMoneyStatus.INITIATED: frozenset({None, MobileMoneyStatus.INITIATED, MobileMoneyStatus.FAILED}),
    MobileMoneyStatus.PENDING: frozenset({MobileMoneyStatus.INITIATED}),
    MobileMoneyStatus.PAID: frozenset(
        {MobileMoneyStatus.INITIATED, MobileMoneyStatus.PENDING, MobileMoneyStatus.FAILED}
    ),
    MobileMoneyStatus.FAILED: frozenset(
        {MobileMoneyStatus.INITIATED, MobileMoneyStatus.PENDING, MobileMoneyStatus.FAILED}
    ),
}


def can_transition(current, target: MobileMoneyStatus) -> bool:
    return current in MOBILE_MONEY_TRANSITIONS.get(target, frozenset())


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, index=True, default=lambda: str(uuid4()))
    customer_name = Column(String, nullable=False)
    customer_phone = Column(String, nullable=False)
    customer_email = Column(String, nullable=True)
    delivery_address = Column(Text, nullable=False)
    total = Column(Integer, nullable=False)  # minor units (cents)
    currency = Column(String(3), nullable=False, default="KES")
    status = _enum_column(OrderStatus, default=OrderStatus.PENDING, nullable=False)

    payment_method = _enum_column(PaymentMethod, nullable=True)
    payment_initiated_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    payment_retry_count = Column(Integer, nullable=False, default=0)
    payment_failure_reason = Column(Text, nullable=True)

    card_transaction_ref = Column(String, nullable=True, unique=True)

    mpesa_merchant_request_id = Column(String, nullable=True)
    mpesa_checkout_request_id = Column(String, nullable=True, index=True)
    mpesa_receipt_number = Column(String, nullable=True)
    mpesa_phone = Column(String, nullable=True)
    mobile_money_status = _enum_column(MobileMoneyStatus, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    order_id = Column(String, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String, nullable=False)
    product_name = Column(String, nullable=False)
    product_price = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False)


class PaymentAttempt(Base):
    __tablename__ = "payment_attempts"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    order_id = Column(String, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    method = _enum_column(PaymentMethod, nullable=False)
    status = _enum_column(AttemptStatus, default=AttemptStatus.INITIATED, nullable=False)
    amount = Column(Integer, nullable=False)
    phone = Column(String, nullable=True)
    merchant_request_id = Column(String, nullable=True)
    checkout_request_id = Column(String, nullable=True, unique=True)
    card_intent_id = Column(String, nullable=True, unique=True)
    result_code = Column(String, nullable=True)
    result_desc = Column(Text, nullable=True)
    receipt_number = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
