from datetime import datetime

from sqlalchemy import String, Boolean, DateTime, Enum, Float
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base
from models.enums import UserRole


class User(Base):
    """Customer, shop owner, delivery agent or admin.

    Accounts are managed by the surrounding application; this service only
    needs identity, contact details and, for delivery agents, availability.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(150))
    email: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True, index=True)
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    role: Mapped[UserRole] = mapped_column(Enum(UserRole, native_enum=False, length=30), default=UserRole.CUSTOMER, index=True)

    # Delivery agent pool
    is_available: Mapped[bool] = mapped_column(Boolean, default=False)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<User id={self.id} role={self.role}>"
