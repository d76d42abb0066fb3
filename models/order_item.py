from datetime import datetime
from decimal import Decimal

from sqlalchemy import ForeignKey, Integer, Numeric, Text, DateTime, Enum, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base
from models.enums import ItemApprovalStatus


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),)

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="RESTRICT"), index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), index=True)
    quantity: Mapped[int] = mapped_column(Integer)
    # Price snapshot taken at submission
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    line_total: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    approval_status: Mapped[ItemApprovalStatus] = mapped_column(
        Enum(ItemApprovalStatus, native_enum=False, length=20), default=ItemApprovalStatus.PENDING
    )
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")

    @property
    def is_decided(self) -> bool:
        return self.approval_status != ItemApprovalStatus.PENDING
