"""
Application facade used by the HTTP routes and Celery tasks.

Runs a coordinator or dispatcher operation, then publishes the events it
produced. Event consumers are best-effort, so what the caller gets back is
decided by the operation alone.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from core.actors import Actor
from core.db import get_db
from core.errors import ConcurrentModification, InvalidTransition
from models.delivery import DeliveryAssignment
from models.enums import OrderStatus
from models.order import Order
from services.delivery import AssignmentResult, DeliveryDispatcher, DispatchOutcome
from services.events import EventBus
from services.notifications import DatabaseNotificationSink, NotificationEmitter
from services.orders import ItemRequest, OrderCoordinator, TransitionResult

logger = logging.getLogger(__name__)


@dataclass
class PaymentOutcome:
    """Result of ``pay``: the payment fact plus how delivery setup went."""

    order: Order
    already_paid: bool = False
    delivery: Optional[DispatchOutcome] = None

    @property
    def delivery_setup_complete(self) -> bool:
        if self.delivery is None:
            return self.order.delivery is not None
        return self.delivery.complete

    @property
    def delivery_problems(self) -> List[str]:
        return self.delivery.problem_messages() if self.delivery is not None else []


class OrderWorkflow:
    def __init__(
        self,
        db: Session,
        coordinator: Optional[OrderCoordinator] = None,
        dispatcher: Optional[DeliveryDispatcher] = None,
        emitter: Optional[NotificationEmitter] = None,
    ):
        self.db = db
        self.coordinator = coordinator or OrderCoordinator()
        self.dispatcher = dispatcher or DeliveryDispatcher()
        self.emitter = emitter or NotificationEmitter(DatabaseNotificationSink(db))
        self.bus = EventBus(dispatcher=self.dispatcher, emitter=self.emitter)

    def _publish(self, result: TransitionResult) -> TransitionResult:
        self.bus.publish(self.db, result.events)
        return result

    # ── orders ───────────────────────────────────────

    def submit_order(
        self,
        actor: Actor,
        shop_id: int,
        items: Iterable[ItemRequest],
        delivery_address: str,
        delivery_phone: str,
        notes: Optional[str] = None,
    ) -> Order:
        result = self.coordinator.submit_order(
            self.db, actor, shop_id, items, delivery_address, delivery_phone, notes=notes
        )
        return self._publish(result).order

    def get_order(self, actor: Actor, order_id: int) -> Order:
        return self.coordinator.get_order(self.db, actor, order_id)

    def list_orders(self, actor: Actor, status: Optional[OrderStatus] = None) -> List[Order]:
        return self.coordinator.list_orders(self.db, actor, status=status)

    def decide_item(
        self, actor: Actor, order_id: int, item_id: int, decision, reason: Optional[str] = None
    ) -> TransitionResult:
        """Returns the decided item together with its (possibly aggregated) order."""
        result = self.coordinator.decide_item(self.db, actor, order_id, item_id, decision, reason=reason)
        return self._publish(result)

    def approve_all(self, actor: Actor, order_id: int) -> Order:
        return self._publish(self.coordinator.approve_all(self.db, actor, order_id)).order

    def reject_order(self, actor: Actor, order_id: int, reason: str) -> Order:
        return self._publish(self.coordinator.reject_order(self.db, actor, order_id, reason)).order

    def pay(self, actor: Actor, order_id: int, payment_method: str) -> PaymentOutcome:
        result = self.coordinator.pay(self.db, actor, order_id, payment_method)
        if result.already_paid:
            return PaymentOutcome(order=result.order, already_paid=True)
        report = self.bus.publish(self.db, result.events)
        self.db.refresh(result.order)
        outcome = PaymentOutcome(order=result.order, delivery=report.dispatch)
        if not outcome.delivery_setup_complete:
            logger.warning(
                "Order %s paid, delivery setup incomplete: %s", order_id, "; ".join(outcome.delivery_problems)
            )
        return outcome

    def cancel(self, actor: Actor, order_id: int, reason: str) -> Order:
        return self._publish(self.coordinator.cancel(self.db, actor, order_id, reason)).order

    def advance_fulfillment(self, actor: Actor, order_id: int, next_status) -> Order:
        result = self.coordinator.advance_fulfillment(self.db, actor, order_id, next_status)
        return self._publish(result).order

    # ── deliveries ───────────────────────────────────

    def get_assignment(self, actor: Actor, assignment_id: int) -> DeliveryAssignment:
        return self.dispatcher.get_assignment(self.db, actor, assignment_id)

    def accept_assignment(self, actor: Actor, assignment_id: int) -> DeliveryAssignment:
        result = self.dispatcher.accept_assignment(self.db, actor, assignment_id)
        self.bus.publish(self.db, result.events)
        return result.assignment

    def mark_picked_up(self, actor: Actor, assignment_id: int) -> DeliveryAssignment:
        return self.dispatcher.mark_picked_up(self.db, actor, assignment_id).assignment

    def mark_delivered(self, actor: Actor, assignment_id: int) -> DeliveryAssignment:
        """Close the delivery and, when the shop marked it READY, the order too."""
        result: AssignmentResult = self.dispatcher.mark_delivered(self.db, actor, assignment_id)
        order = result.assignment.order
        self.db.refresh(order)
        if order.status == OrderStatus.READY:
            try:
                self._publish(
                    self.coordinator.advance_fulfillment(self.db, actor, order.id, OrderStatus.DELIVERED)
                )
            except (InvalidTransition, ConcurrentModification) as exc:
                logger.info("Order %s was moved concurrently: %s", order.id, exc.message)
        else:
            logger.warning("Delivery %s completed while order %s is %s", assignment_id, order.id, order.status.value)
        self.db.refresh(result.assignment)
        return result.assignment

    def dispatch_delivery(self, order_id: int) -> DispatchOutcome:
        outcome = self.dispatcher.dispatch(self.db, order_id)
        self.bus.publish(self.db, outcome.events)
        return outcome

    def sweep_unassigned(self, limit: int = 100) -> List[DispatchOutcome]:
        outcomes = self.dispatcher.assign_pending(self.db, limit=limit)
        for outcome in outcomes:
            self.bus.publish(self.db, outcome.events)
        return outcomes


def get_workflow(db: Session = Depends(get_db)) -> OrderWorkflow:
    """FastAPI dependency: one workflow per request session."""
    return OrderWorkflow(db)
