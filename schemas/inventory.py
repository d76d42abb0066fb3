from typing import List, Optional

from pydantic import BaseModel

from schemas.order import OrderItemIn


class AvailabilityIn(BaseModel):
    items: List[OrderItemIn]


class ShortfallOut(BaseModel):
    product_id: int
    product_name: Optional[str] = None
    requested: int
    available: int


class AvailabilityOut(BaseModel):
    available: bool
    shortfalls: List[ShortfallOut] = []
