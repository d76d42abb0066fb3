from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, DateTime, ForeignKey, Numeric, Text, Enum, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base
from models.enums import OrderStatus


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("subtotal >= 0", name="ck_orders_subtotal_non_negative"),
        CheckConstraint("delivery_fee >= 0", name="ck_orders_delivery_fee_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), index=True)
    shop_id: Mapped[int] = mapped_column(ForeignKey("shops.id", ondelete="RESTRICT"), index=True)
    status: Mapped[OrderStatus] = mapped_column(
        Enum(OrderStatus, native_enum=False, length=30), default=OrderStatus.PENDING_APPROVAL, index=True
    )
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    delivery_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)

    delivery_address: Mapped[str] = mapped_column(Text)
    delivery_phone: Mapped[str] = mapped_column(String(30))
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(30), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    shop = relationship("Shop")
    customer = relationship("User", foreign_keys=[customer_id])
    items = relationship(
        "OrderItem", back_populates="order", order_by="OrderItem.id", cascade="save-update, merge"
    )
    delivery = relationship("DeliveryAssignment", back_populates="order", uselist=False)

    @staticmethod
    def amounts(subtotal: Decimal, delivery_fee: Decimal) -> dict:
        """Money column values with total = subtotal + fee; every writer goes through here."""
        if subtotal < 0 or delivery_fee < 0:
            raise ValueError("Order amounts must be non-negative")
        return {"subtotal": subtotal, "delivery_fee": delivery_fee, "total_amount": subtotal + delivery_fee}

    def set_amounts(self, subtotal: Decimal, delivery_fee: Decimal) -> None:
        for name, value in self.amounts(subtotal, delivery_fee).items():
            setattr(self, name, value)

    def __repr__(self) -> str:
        return f"<Order id={self.id} status={self.status}>"
