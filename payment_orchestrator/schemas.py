from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from payment_orchestrator.models import AttemptStatus, MobileMoneyStatus, Order, OrderStatus, PaymentMethod


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


class Item(CamelModel):
    product_id: str = Field(..., examples=["product-1"])
    product_name: str
    product_price: int = Field(..., ge=0, description="Unit price in cents")
    quantity: int = Field(..., gt=0, examples=[2])


class OrderCreate(CamelModel):
    customer_name: str = Field(..., min_length=1)
    customer_phone: str = Field(..., min_length=1)
    customer_email: Optional[str] = None
    delivery_address: str = Field(..., min_length=1)
    total: int = Field(..., gt=0, description="Order total in cents")
    currency: str = "KES"
    items: List[Item] = Field(..., min_length=1)


class OrderRead(CamelModel):
    id: str
    customer_name: str
    total: int
    currency: str
    status: OrderStatus
    payment_method: Optional[PaymentMethod] = None
    mobile_money_status: Optional[MobileMoneyStatus] = None
    created_at: datetime


class PaymentStatusRead(CamelModel):
    order_id: str
    status: OrderStatus
    payment_method: Optional[PaymentMethod] = None
    mobile_money_status: Optional[MobileMoneyStatus] = None
    paid_at: Optional[datetime] = None
    receipt_number: Optional[str] = None
    total: int

    @classmethod
    def from_order(cls, order: Order) -> "PaymentStatusRead":
        return cls(
            order_id=order.id,
            status=order.status,
            payment_method=order.payment_method,
            mobile_money_status=order.mobile_money_status,
            paid_at=order.paid_at,
            receipt_number=order.mpesa_receipt_number,
            total=order.total,
        )


class PaymentSummary(PaymentStatusRead):
    card_transaction_ref: Optional[str] = None

    @classmethod
    def from_order(cls, order: Order) -> "PaymentSummary":
        base = PaymentStatusRead.from_order(order).model_dump()
        return cls(**base, card_transaction_ref=order.card_transaction_ref)


class PaymentAttemptRead(CamelModel):
    id: str
    method: PaymentMethod
    status: AttemptStatus
    amount: int
    phone: Optional[str] = None
    checkout_request_id: Optional[str] = None
    card_intent_id: Optional[str] = None
    result_code: Optional[str] = None
    result_desc: Optional[str] = None
    receipt_number: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class PaymentRecordRead(PaymentAttemptRead):
    order_id: str


class PaymentPage(CamelModel):
    payments: List[PaymentRecordRead]
    total: int


class PaymentAnalytics(CamelModel):
    """Totals over every recorded attempt; revenue is paid amounts in cents."""

    total_attempts: int
    paid_attempts: int
    failed_attempts: int
    total_revenue: int
    success_rate: float
    status_breakdown: Dict[str, int]
    method_breakdown: Dict[str, int]


class PushInitiateRequest(CamelModel):
    order_id: str
    phone: str


class OrderRef(CamelModel):
    order_id: str


class PushResponse(CamelModel):
    checkout_request_id: str
    merchant_request_id: str
    customer_message: str


class CancelResponse(CamelModel):
    success: bool = True


class StatusQueryResponse(CamelModel):
    order_id: str
    mobile_money_status: Optional[MobileMoneyStatus] = None
    result_code: Optional[str] = None
    result_desc: Optional[str] = None


class CallbackAck(BaseModel):
    status: str
    message: Optional[str] = None


class CardIntentRequest(CamelModel):
    order_id: str
    amount: Optional[Decimal] = Field(None, gt=0, description="Amount in shillings, checked against the order total")


class CardIntentResponse(CamelModel):
    client_secret: str


class CardConfirmRequest(CamelModel):
    order_id: str
    intent_id: str
