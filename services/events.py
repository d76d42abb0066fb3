"""
Domain events emitted by the order coordinator and the delivery dispatcher.

Events are named in the past tense and are immutable. The coordinator only
returns them; ``EventBus`` hands them to the best-effort consumers (delivery
setup, notifications) and keeps their failures away from the caller.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from models.enums import OrderStatus

if TYPE_CHECKING:
    from models.order import Order
    from services.delivery import DeliveryDispatcher, DispatchOutcome
    from services.notifications import NotificationEmitter

logger = logging.getLogger(__name__)


class DomainEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_id: int
    customer_id: int
    shop_id: int
    shop_owner_id: int
    occurred_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def event_type(self) -> str:
        return type(self).__name__

    @classmethod
    def for_order(cls, order: "Order", **fields):
        return cls(
            order_id=order.id,
            customer_id=order.customer_id,
            shop_id=order.shop_id,
            shop_owner_id=order.shop.owner_id,
            **fields,
        )


class OrderSubmitted(DomainEvent):
    """A customer placed an order; the shop has to review it."""
    total_amount: Decimal
    item_count: int


class OrderApproved(DomainEvent):
    """All items decided, at least one approved; the order awaits payment."""
    total_amount: Decimal
    approved_items: int
    rejected_items: int


class OrderRejected(DomainEvent):
    reason: str


class OrderPaid(DomainEvent):
    """Payment settled and stock consumed; delivery setup reacts to this."""
    total_amount: Decimal
    payment_method: str


class OrderCancelled(DomainEvent):
    reason: str
    cancelled_by: int


class FulfillmentAdvanced(DomainEvent):
    status: OrderStatus


class DeliveryAssigned(DomainEvent):
    assignment_id: int
    delivery_agent_id: int


@dataclass
class BusReport:
    published: List[DomainEvent] = field(default_factory=list)
    dispatch: Optional["DispatchOutcome"] = None


class EventBus:
    """Feeds events to the delivery dispatcher and the notification emitter.

    Events raised by a consumer (e.g. ``DeliveryAssigned``) are appended to
    the queue and published in the same pass.
    """

    def __init__(self, dispatcher: Optional["DeliveryDispatcher"] = None, emitter: Optional["NotificationEmitter"] = None):
        self.dispatcher = dispatcher
        self.emitter = emitter

    def publish(self, db: Session, events: Iterable[DomainEvent]) -> BusReport:
        report = BusReport()
        queue = list(events)
        while queue:
            event = queue.pop(0)
            report.published.append(event)
            if isinstance(event, OrderPaid) and self.dispatcher is not None:
                outcome = self.dispatcher.handle_order_paid(db, event)
                report.dispatch = outcome
                queue.extend(outcome.events)
            if self.emitter is not None:
                self.emitter.emit(event)
        return report
