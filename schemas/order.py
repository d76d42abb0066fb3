from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from models.enums import ItemApprovalStatus, OrderStatus


class OrderItemIn(BaseModel):
    product_id: int
    quantity: int


class OrderCreate(BaseModel):
    shop_id: int
    items: List[OrderItemIn]
    delivery_address: str
    delivery_phone: str
    notes: Optional[str] = None


class ItemDecisionIn(BaseModel):
    decision: ItemApprovalStatus
    reason: Optional[str] = None


class ReasonIn(BaseModel):
    reason: Optional[str] = None


class PaymentIn(BaseModel):
    payment_method: str


class FulfillmentIn(BaseModel):
    status: OrderStatus


class OrderItemOut(BaseModel):
    id: int
    product_id: int
    quantity: int
    unit_price: float
    line_total: float
    approval_status: ItemApprovalStatus
    rejection_reason: Optional[str] = None
    decided_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class OrderOut(BaseModel):
    id: int
    customer_id: int
    shop_id: int
    status: OrderStatus
    subtotal: float
    delivery_fee: float
    total_amount: float
    delivery_address: str
    delivery_phone: str
    notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    payment_method: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemOut]

    class Config:
        from_attributes = True


class ItemDecisionOut(BaseModel):
    item: OrderItemOut
    order: OrderOut


class PaymentOut(BaseModel):
    order: OrderOut
    already_paid: bool
    delivery_setup_complete: bool
    delivery_problems: List[str] = []
