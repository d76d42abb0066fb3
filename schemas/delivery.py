from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from models.enums import DeliveryStatus


class DeliveryAssignmentOut(BaseModel):
    id: int
    order_id: int
    delivery_agent_id: Optional[int] = None
    status: DeliveryStatus
    pickup_address: Optional[str] = None
    pickup_latitude: Optional[float] = None
    pickup_longitude: Optional[float] = None
    drop_address: Optional[str] = None
    drop_latitude: Optional[float] = None
    drop_longitude: Optional[float] = None
    delivery_phone: Optional[str] = None
    assigned_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None

    class Config:
        from_attributes = True
