from datetime import datetime

from sqlalchemy import String, DateTime, ForeignKey, Float, Text, Enum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base
from models.enums import DeliveryStatus


class DeliveryAssignment(Base):
    __tablename__ = "delivery_assignments"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="RESTRICT"), unique=True, index=True)
    delivery_agent_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    status: Mapped[DeliveryStatus] = mapped_column(
        Enum(DeliveryStatus, native_enum=False, length=20), default=DeliveryStatus.UNASSIGNED, index=True
    )

    # Coordinates stay NULL when geocoding did not resolve
    pickup_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    pickup_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    pickup_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    drop_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    drop_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    drop_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    delivery_phone: Mapped[str | None] = mapped_column(String(30), nullable=True)

    assigned_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    picked_up_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    order = relationship("Order", back_populates="delivery")
    agent = relationship("User")
