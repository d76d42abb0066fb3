"""
Delivery dispatcher: turns a paid order into a delivery assignment.

Setup runs in three steps (coordinates, assignment row, agent) and each one may
degrade on its own. Nothing here propagates to the payment caller: problems are
collected on the returned ``DispatchOutcome`` and logged.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.actors import Actor
from core.errors import (
    AssignmentNotFound,
    ConcurrentModification,
    GeocodingUnavailable,
    InvalidTransition,
    NoAgentAvailable,
    NotAuthorized,
    OrderLifecycleError,
    OrderNotFound,
)
from models.delivery import DeliveryAssignment
from models.enums import DeliveryStatus, OrderStatus, UserRole
from models.order import Order
from models.shop import Shop
from services.agents import AgentPool, DatabaseAgentPool
from services.events import DeliveryAssigned, DomainEvent, OrderPaid
from services.geocoding import Coordinates, GeocodingProvider, build_geocoder

logger = logging.getLogger(__name__)

assignments_table = DeliveryAssignment.__table__
shops_table = Shop.__table__

DISPATCHABLE_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.PREPARING, OrderStatus.READY})


@dataclass
class DispatchOutcome:
    order_id: int
    assignment: Optional[DeliveryAssignment] = None
    problems: List[OrderLifecycleError] = field(default_factory=list)
    events: List[DomainEvent] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.assignment is not None and not self.problems

    def problem_messages(self) -> List[str]:
        return [p.message for p in self.problems]


@dataclass
class AssignmentResult:
    assignment: DeliveryAssignment
    events: List[DomainEvent] = field(default_factory=list)


class DeliveryDispatcher:
    def __init__(
        self,
        geocoder: Optional[GeocodingProvider] = None,
        pool_factory: Callable[[Session], AgentPool] = DatabaseAgentPool,
    ):
        self.geocoder = geocoder or build_geocoder()
        self.pool_factory = pool_factory

    def handle_order_paid(self, db: Session, event: OrderPaid) -> DispatchOutcome:
        return self.dispatch(db, event.order_id)

    def dispatch(self, db: Session, order_id: int) -> DispatchOutcome:
        """Create or complete the assignment for a paid order. Safe to call repeatedly."""
        outcome = DispatchOutcome(order_id)
        try:
            order = db.get(Order, order_id, populate_existing=True)
            if order is None:
                raise OrderNotFound(order_id)
            if order.status not in DISPATCHABLE_STATUSES:
                raise InvalidTransition(
                    order.status,
                    DeliveryStatus.UNASSIGNED,
                    message=f"Order {order_id} is {order.status.value}, no delivery to set up",
                )

            assignment = self._existing(db, order_id)
            if assignment is not None and assignment.status != DeliveryStatus.UNASSIGNED:
                outcome.assignment = assignment
                return outcome

            pickup = self._pickup_coordinates(db, order.shop, outcome)
            drop = self._resolve(order.delivery_address, outcome)
            assignment = self._upsert(db, order, pickup, drop)
            outcome.assignment = assignment
            self._assign_agent(db, order, assignment, pickup or drop, outcome)
        except OrderLifecycleError as exc:
            db.rollback()
            logger.warning("Delivery setup for order %s incomplete: %s", order_id, exc.message)
            outcome.problems.append(exc)
        except Exception as exc:
            db.rollback()
            logger.exception("Delivery setup for order %s failed", order_id)
            outcome.problems.append(OrderLifecycleError(f"Delivery setup failed: {exc}", order_id=order_id))
        return outcome

    def assign_pending(self, db: Session, limit: int = 100) -> List[DispatchOutcome]:
        """Retry delivery setup for orders that still need delivering.

        Picks up UNASSIGNED assignments and paid orders whose setup failed
        before an assignment row was written.
        """
        order_ids = list(
            db.scalars(
                select(Order.id)
                .outerjoin(DeliveryAssignment, DeliveryAssignment.order_id == Order.id)
                .where(
                    Order.status.in_(DISPATCHABLE_STATUSES),
                    or_(DeliveryAssignment.id.is_(None), DeliveryAssignment.status == DeliveryStatus.UNASSIGNED),
                )
                .order_by(Order.paid_at, Order.id)
                .limit(limit)
            ).all()
        )
        outcomes = [self.dispatch(db, order_id) for order_id in order_ids]
        assigned = sum(1 for o in outcomes if o.assignment is not None and o.assignment.delivery_agent_id)
        logger.info("Unassigned delivery sweep: %s pending, %s assigned", len(order_ids), assigned)
        return outcomes

    # ── agent side ───────────────────────────────────

    def get_assignment(self, db: Session, actor: Actor, assignment_id: int) -> DeliveryAssignment:
        assignment = self._load(db, assignment_id)
        order = assignment.order
        allowed = (
            actor.is_admin
            or assignment.delivery_agent_id == actor.user_id
            or order.customer_id == actor.user_id
            or order.shop.owner_id == actor.user_id
            or (actor.role == UserRole.DELIVERY_AGENT and assignment.status == DeliveryStatus.UNASSIGNED)
        )
        if not allowed:
            raise NotAuthorized(f"Not allowed to view delivery {assignment_id}")
        return assignment

    def accept_assignment(self, db: Session, actor: Actor, assignment_id: int) -> AssignmentResult:
        if actor.role != UserRole.DELIVERY_AGENT:
            raise NotAuthorized("Only delivery agents can accept deliveries")
        assignment = self._load(db, assignment_id)
        if assignment.delivery_agent_id == actor.user_id:
            return AssignmentResult(assignment)
        if assignment.delivery_agent_id is not None or assignment.status != DeliveryStatus.UNASSIGNED:
            raise InvalidTransition(
                assignment.status,
                DeliveryStatus.ASSIGNED,
                message=f"Delivery {assignment_id} is already assigned to another agent",
            )

        self._write(
            db,
            assignment.id,
            DeliveryStatus.UNASSIGNED,
            unclaimed=True,
            delivery_agent_id=actor.user_id,
            status=DeliveryStatus.ASSIGNED,
            assigned_at=datetime.utcnow(),
        )
        db.commit()
        # The agent may have accepted without being flagged available
        self.pool_factory(db).claim(actor.user_id)
        assignment = self._load(db, assignment_id)
        logger.info("Delivery %s accepted by agent %s", assignment.id, actor.user_id)
        return AssignmentResult(assignment, [self._assigned_event(assignment)])

    def mark_picked_up(self, db: Session, actor: Actor, assignment_id: int) -> AssignmentResult:
        assignment = self._load(db, assignment_id)
        self._require_agent(actor, assignment)
        if assignment.status != DeliveryStatus.ASSIGNED:
            raise InvalidTransition(assignment.status, DeliveryStatus.PICKED_UP)
        self._write(
            db, assignment.id, DeliveryStatus.ASSIGNED, status=DeliveryStatus.PICKED_UP, picked_up_at=datetime.utcnow()
        )
        db.commit()
        logger.info("Delivery %s picked up by agent %s", assignment.id, assignment.delivery_agent_id)
        return AssignmentResult(self._load(db, assignment_id))

    def mark_delivered(self, db: Session, actor: Actor, assignment_id: int) -> AssignmentResult:
        assignment = self._load(db, assignment_id)
        self._require_agent(actor, assignment)
        if assignment.status != DeliveryStatus.PICKED_UP:
            raise InvalidTransition(assignment.status, DeliveryStatus.DELIVERED)
        self._write(
            db, assignment.id, DeliveryStatus.PICKED_UP, status=DeliveryStatus.DELIVERED, delivered_at=datetime.utcnow()
        )
        db.commit()
        if assignment.delivery_agent_id is not None:
            self.pool_factory(db).release(assignment.delivery_agent_id)
        logger.info("Delivery %s delivered by agent %s", assignment.id, assignment.delivery_agent_id)
        return AssignmentResult(self._load(db, assignment_id))

    # ── steps ────────────────────────────────────────

    def _resolve(self, address: Optional[str], outcome: DispatchOutcome) -> Optional[Coordinates]:
        if not address:
            return None
        try:
            coords = self.geocoder.resolve(address)
        except GeocodingUnavailable as exc:
            logger.warning("Geocoding unavailable for order %s: %s", outcome.order_id, exc.message)
            outcome.problems.append(exc)
            return None
        except Exception as exc:
            # A broken provider must not keep the assignment row from being written
            logger.exception("Geocoder failed on %r (order %s)", address, outcome.order_id)
            outcome.problems.append(GeocodingUnavailable(f"Geocoding failed: {exc}", address=address))
            return None
        if coords is None:
            # Unknown address: stored without coordinates
            logger.info("No coordinates for %r (order %s)", address, outcome.order_id)
        return coords

    def _pickup_coordinates(self, db: Session, shop: Shop, outcome: DispatchOutcome) -> Optional[Coordinates]:
        if shop.has_coordinates:
            return Coordinates(shop.latitude, shop.longitude)
        coords = self._resolve(shop.address, outcome)
        if coords is not None:
            db.execute(
                update(shops_table)
                .where(shops_table.c.id == shop.id)
                .values(latitude=coords.latitude, longitude=coords.longitude)
            )
            db.commit()
            db.expire(shop, ["latitude", "longitude"])
            logger.info("Cached coordinates for shop %s", shop.id)
        return coords

    def _existing(self, db: Session, order_id: int) -> Optional[DeliveryAssignment]:
        return db.scalars(
            select(DeliveryAssignment)
            .where(DeliveryAssignment.order_id == order_id)
            .execution_options(populate_existing=True)
        ).first()

    def _upsert(
        self, db: Session, order: Order, pickup: Optional[Coordinates], drop: Optional[Coordinates]
    ) -> DeliveryAssignment:
        assignment = self._existing(db, order.id)
        if assignment is None:
            assignment = DeliveryAssignment(
                order_id=order.id,
                status=DeliveryStatus.UNASSIGNED,
                pickup_address=order.shop.address,
                drop_address=order.delivery_address,
                delivery_phone=order.delivery_phone,
            )
            self._fill_coordinates(assignment, pickup, drop)
            db.add(assignment)
            try:
                db.commit()
                logger.info("Delivery assignment %s created for order %s", assignment.id, order.id)
                return assignment
            except IntegrityError:
                # Another dispatcher created it first
                db.rollback()
                assignment = self._existing(db, order.id)
                if assignment is None:
                    raise

        if self._fill_coordinates(assignment, pickup, drop):
            db.commit()
        return assignment

    @staticmethod
    def _fill_coordinates(
        assignment: DeliveryAssignment, pickup: Optional[Coordinates], drop: Optional[Coordinates]
    ) -> bool:
        changed = False
        if pickup is not None and assignment.pickup_latitude is None:
            assignment.pickup_latitude, assignment.pickup_longitude = pickup.latitude, pickup.longitude
            changed = True
        if drop is not None and assignment.drop_latitude is None:
            assignment.drop_latitude, assignment.drop_longitude = drop.latitude, drop.longitude
            changed = True
        return changed

    def _assign_agent(
        self,
        db: Session,
        order: Order,
        assignment: DeliveryAssignment,
        near: Optional[Coordinates],
        outcome: DispatchOutcome,
    ) -> None:
        if assignment.status != DeliveryStatus.UNASSIGNED or assignment.delivery_agent_id is not None:
            return
        pool = self.pool_factory(db)
        agent_id = pool.select_available(near)
        if agent_id is None:
            problem = NoAgentAvailable("No delivery agent available, left unassigned", order_id=order.id)
            logger.warning("Order %s: %s", order.id, problem.message)
            outcome.problems.append(problem)
            return
        try:
            self._write(
                db,
                assignment.id,
                DeliveryStatus.UNASSIGNED,
                unclaimed=True,
                delivery_agent_id=agent_id,
                status=DeliveryStatus.ASSIGNED,
                assigned_at=datetime.utcnow(),
            )
            db.commit()
        except ConcurrentModification:
            # An agent accepted it by hand meanwhile
            pool.release(agent_id)
            outcome.assignment = self._existing(db, order.id)
            return
        assignment = self._existing(db, order.id)
        outcome.assignment = assignment
        outcome.events.append(self._assigned_event(assignment))
        logger.info("Order %s assigned to delivery agent %s", order.id, agent_id)

    # ── helpers ──────────────────────────────────────

    def _load(self, db: Session, assignment_id: int) -> DeliveryAssignment:
        assignment = db.get(DeliveryAssignment, assignment_id, populate_existing=True)
        if assignment is None:
            raise AssignmentNotFound(assignment_id)
        return assignment

    @staticmethod
    def _write(db: Session, assignment_id: int, expected: DeliveryStatus, unclaimed: bool = False, **values) -> None:
        conditions = [assignments_table.c.id == assignment_id, assignments_table.c.status == expected]
        if unclaimed:
            conditions.append(assignments_table.c.delivery_agent_id.is_(None))
        values.setdefault("updated_at", datetime.utcnow())
        result = db.execute(update(assignments_table).where(*conditions).values(**values))
        if result.rowcount != 1:
            db.rollback()
            raise ConcurrentModification(
                f"Delivery {assignment_id} changed while it was being updated", assignment_id=assignment_id
            )

    @staticmethod
    def _require_agent(actor: Actor, assignment: DeliveryAssignment) -> None:
        if not (actor.is_admin or assignment.delivery_agent_id == actor.user_id):
            raise NotAuthorized(f"Delivery {assignment.id} is not assigned to you")

    @staticmethod
    def _assigned_event(assignment: DeliveryAssignment) -> DeliveryAssigned:
        return DeliveryAssigned.for_order(
            assignment.order,
            assignment_id=assignment.id,
            delivery_agent_id=assignment.delivery_agent_id,
        )
