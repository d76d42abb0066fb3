from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.actors import Actor, get_current_actor
from core.db import get_db
from schemas.inventory import AvailabilityIn, AvailabilityOut
from services.inventory import InventoryLedger, StockLine

router = APIRouter(prefix="/inventory", tags=["inventory"])


@router.post("/availability", response_model=AvailabilityOut)
def check_availability(data: AvailabilityIn, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    """Every shortfall for a prospective cart, so the customer can fix all quantities at once."""
    shortfalls = InventoryLedger().validate_availability(
        db, [StockLine(item.product_id, item.quantity) for item in data.items]
    )
    return {"available": not shortfalls, "shortfalls": [s.as_dict() for s in shortfalls]}
