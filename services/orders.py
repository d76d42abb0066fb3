"""
Order coordinator: the order and order-item state machines.

    PENDING_APPROVAL --(all items decided, >=1 approved)--> APPROVED --> PAYMENT_PENDING
    PENDING_APPROVAL --(wholesale rejection / all items rejected)--> REJECTED
    PAYMENT_PENDING --(pay + stock consumed)--> PAID --> PREPARING --> READY --> DELIVERED
    PENDING_APPROVAL | APPROVED | PAYMENT_PENDING --(customer cancels)--> CANCELLED

Every status write is conditional on the status the operation observed, so two
workers can never both apply a transition from the same state. Operations
return the refreshed order plus the domain events they produced; publishing
those events is left to ``services.events.EventBus``.
"""
import logging
import threading
import uuid
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Type, TypeVar

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from core.actors import Actor
from core.config import settings
from core.errors import (
    ConcurrentModification,
    EmptyCart,
    InvalidTransition,
    NotAuthorized,
    NotFound,
    OrderNotFound,
    ProductNotFound,
    ShopNotFound,
    ValidationError,
)
from models.delivery import DeliveryAssignment
from models.enums import COMMITTED_ORDER_STATUSES, ItemApprovalStatus, OrderStatus, UserRole
from models.order import Order
from models.order_item import OrderItem
from models.payment import Payment
from models.product import Product
from models.shop import Shop
from services.events import (
    DomainEvent,
    FulfillmentAdvanced,
    OrderApproved,
    OrderCancelled,
    OrderPaid,
    OrderRejected,
    OrderSubmitted,
)
from services.inventory import ConsumeResult, InventoryLedger, StockLine

logger = logging.getLogger(__name__)

orders_table = Order.__table__
order_items_table = OrderItem.__table__

CANCELLABLE_STATUSES = frozenset(
    {OrderStatus.PENDING_APPROVAL, OrderStatus.APPROVED, OrderStatus.PAYMENT_PENDING}
)
FULFILLMENT_STEPS = {
    OrderStatus.PAID: OrderStatus.PREPARING,
    OrderStatus.PREPARING: OrderStatus.READY,
    OrderStatus.READY: OrderStatus.DELIVERED,
}
PAYMENT_METHODS = ("UPI", "CARD", "WALLET", "NET_BANKING", "CASH_ON_DELIVERY")
ALL_ITEMS_REJECTED = "All items were rejected by the shop"

E = TypeVar("E")


@dataclass(frozen=True)
class ItemRequest:
    product_id: int
    quantity: int


@dataclass
class TransitionResult:
    order: Order
    events: List[DomainEvent] = field(default_factory=list)
    item: Optional[OrderItem] = None
    already_paid: bool = False


class OrderLocks:
    """Per-order mutexes serialising operations on one order inside a process.

    Entries live only while some caller holds a reference to the lock, so the
    registry does not grow with every order ever touched.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: "weakref.WeakValueDictionary[int, threading.Lock]" = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        return len(self._locks)

    def for_order(self, order_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(order_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[order_id] = lock
            return lock


order_locks = OrderLocks()


def _to_decimal(value: float | int | Decimal | None) -> Decimal:
    if value is None:
        return Decimal("0.00")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _clean(text: Optional[str]) -> Optional[str]:
    text = (text or "").strip()
    return text or None


def _parse_enum(enum_cls: Type[E], value, field_name: str) -> E:
    try:
        return enum_cls(getattr(value, "value", value))
    except ValueError:
        raise ValidationError(f"Invalid {field_name}: {value}", field=field_name)


class OrderCoordinator:
    def __init__(self, ledger: Optional[InventoryLedger] = None, locks: Optional[OrderLocks] = None):
        self.ledger = ledger or InventoryLedger()
        self.locks = locks or order_locks

    # ── queries ──────────────────────────────────────

    def get_order(self, db: Session, actor: Actor, order_id: int) -> Order:
        order = self._load(db, order_id)
        if not self._is_participant(actor, order):
            raise NotAuthorized(f"Not allowed to view order {order_id}")
        return order

    def list_orders(self, db: Session, actor: Actor, status: Optional[OrderStatus] = None) -> List[Order]:
        query = select(Order).options(selectinload(Order.items)).order_by(Order.created_at.desc(), Order.id.desc())
        if actor.role == UserRole.SHOPKEEPER:
            query = query.join(Shop, Shop.id == Order.shop_id).where(Shop.owner_id == actor.user_id)
        elif actor.role == UserRole.DELIVERY_AGENT:
            query = query.join(DeliveryAssignment, DeliveryAssignment.order_id == Order.id).where(
                DeliveryAssignment.delivery_agent_id == actor.user_id
            )
        elif not actor.is_admin:
            query = query.where(Order.customer_id == actor.user_id)
        if status is not None:
            query = query.where(Order.status == _parse_enum(OrderStatus, status, "status"))
        return list(db.scalars(query).all())

    # ── submission ───────────────────────────────────

    def submit_order(
        self,
        db: Session,
        actor: Actor,
        shop_id: int,
        items: Iterable[ItemRequest],
        delivery_address: str,
        delivery_phone: str,
        notes: Optional[str] = None,
    ) -> TransitionResult:
        if not actor.has_role(UserRole.CUSTOMER):
            raise NotAuthorized("Only customers can place orders")
        items = list(items)
        if not items:
            raise EmptyCart()
        for item in items:
            if item.quantity <= 0:
                raise ValidationError("Item quantity must be greater than 0", product_id=item.product_id)
        address, phone = _clean(delivery_address), _clean(delivery_phone)
        if not address:
            raise ValidationError("A delivery address is required", field="delivery_address")
        if not phone:
            raise ValidationError("A delivery phone number is required", field="delivery_phone")

        shop = db.get(Shop, shop_id)
        if shop is None or not shop.is_active:
            raise ShopNotFound(shop_id)

        # Fetch all products in a single query
        product_ids = {item.product_id for item in items}
        products_map = {p.id: p for p in db.scalars(select(Product).where(Product.id.in_(product_ids))).all()}
        for item in items:
            product = products_map.get(item.product_id)
            if product is None:
                raise ProductNotFound(item.product_id)
            if product.shop_id != shop.id:
                raise ValidationError(f"Product {product.id} is not sold by shop {shop.id}", product_id=product.id)
            if not product.is_active:
                raise ValidationError(f"Product {product.name} is no longer available", product_id=product.id)

        order = Order(
            customer_id=actor.user_id,
            shop_id=shop.id,
            status=OrderStatus.PENDING_APPROVAL,
            delivery_address=address,
            delivery_phone=phone,
            notes=_clean(notes),
        )
        subtotal = Decimal("0.00")
        for item in items:
            unit_price = _to_decimal(products_map[item.product_id].price)
            line_total = unit_price * item.quantity
            subtotal += line_total
            order.items.append(
                OrderItem(
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price=unit_price,
                    line_total=line_total,
                    approval_status=ItemApprovalStatus.PENDING,
                )
            )
        fee = _to_decimal(shop.delivery_fee) if shop.delivery_fee is not None else settings.DEFAULT_DELIVERY_FEE
        order.set_amounts(subtotal, fee)
        db.add(order)
        db.commit()

        order = self._load(db, order.id)
        logger.info("Order %s submitted by customer %s to shop %s", order.id, actor.user_id, shop.id)
        event = OrderSubmitted.for_order(order, total_amount=order.total_amount, item_count=len(order.items))
        return TransitionResult(order, [event])

    # ── shop approval ────────────────────────────────

    def decide_item(
        self,
        db: Session,
        actor: Actor,
        order_id: int,
        item_id: int,
        decision,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        decision = _parse_enum(ItemApprovalStatus, decision, "decision")
        if decision == ItemApprovalStatus.PENDING:
            raise ValidationError("Decision must be APPROVED or REJECTED", field="decision")
        reason = _clean(reason)
        if decision == ItemApprovalStatus.REJECTED and not reason:
            raise ValidationError("A rejection reason is required", field="reason")

        with self.locks.for_order(order_id):
            order = self._load(db, order_id)
            self._require_shop_owner(actor, order)
            if order.status != OrderStatus.PENDING_APPROVAL:
                raise InvalidTransition(
                    order.status,
                    decision,
                    message=f"Items can only be decided while the order is PENDING_APPROVAL (order is {order.status.value})",
                )
            item = next((i for i in order.items if i.id == item_id), None)
            if item is None:
                raise NotFound(f"Item {item_id} not found in order {order_id}", item_id=item_id)
            if item.is_decided:
                raise InvalidTransition(
                    item.approval_status, decision, message=f"Item {item_id} was already {item.approval_status.value}"
                )

            now = datetime.utcnow()
            self._write_item(
                db,
                item.id,
                approval_status=decision,
                rejection_reason=reason if decision == ItemApprovalStatus.REJECTED else None,
                decided_at=now,
            )
            self._write_order(db, order.id, OrderStatus.PENDING_APPROVAL, updated_at=now)
            db.commit()
            logger.info("Order %s item %s %s by %s", order.id, item.id, decision.value, actor.user_id)

            order = self._load(db, order_id)
            events = self._aggregate(db, order)
            order = self._load(db, order_id)
            item = next(i for i in order.items if i.id == item_id)
            return TransitionResult(order, events, item=item)

    def approve_all(self, db: Session, actor: Actor, order_id: int) -> TransitionResult:
        """Approve every item still pending; the shop's one-click "accept order"."""
        with self.locks.for_order(order_id):
            order = self._load(db, order_id)
            self._require_shop_owner(actor, order)
            if order.status != OrderStatus.PENDING_APPROVAL:
                raise InvalidTransition(order.status, OrderStatus.APPROVED)
            now = datetime.utcnow()
            for item in order.items:
                if not item.is_decided:
                    self._write_item(db, item.id, approval_status=ItemApprovalStatus.APPROVED, decided_at=now)
            self._write_order(db, order.id, OrderStatus.PENDING_APPROVAL, updated_at=now)
            db.commit()

            order = self._load(db, order_id)
            events = self._aggregate(db, order)
            return TransitionResult(self._load(db, order_id), events)

    def reject_order(self, db: Session, actor: Actor, order_id: int, reason: str) -> TransitionResult:
        reason = _clean(reason)
        if not reason:
            raise ValidationError("A rejection reason is required", field="reason")
        with self.locks.for_order(order_id):
            order = self._load(db, order_id)
            self._require_shop_owner(actor, order)
            if order.status != OrderStatus.PENDING_APPROVAL:
                raise InvalidTransition(order.status, OrderStatus.REJECTED)
            now = datetime.utcnow()
            for item in order.items:
                if not item.is_decided:
                    self._write_item(
                        db, item.id, approval_status=ItemApprovalStatus.REJECTED, rejection_reason=reason, decided_at=now
                    )
            self._write_order(
                db,
                order.id,
                OrderStatus.PENDING_APPROVAL,
                status=OrderStatus.REJECTED,
                rejection_reason=reason,
                updated_at=now,
            )
            db.commit()
            logger.info("Order %s rejected by %s: %s", order.id, actor.user_id, reason)

            order = self._load(db, order_id)
            return TransitionResult(order, [OrderRejected.for_order(order, reason=reason)])

    def _aggregate(self, db: Session, order: Order) -> List[DomainEvent]:
        """Fold item decisions into the order status once every item is decided."""
        if order.status != OrderStatus.PENDING_APPROVAL or any(not i.is_decided for i in order.items):
            return []
        approved = [i for i in order.items if i.approval_status == ItemApprovalStatus.APPROVED]
        now = datetime.utcnow()
        try:
            if not approved:
                self._write_order(
                    db,
                    order.id,
                    OrderStatus.PENDING_APPROVAL,
                    status=OrderStatus.REJECTED,
                    rejection_reason=ALL_ITEMS_REJECTED,
                    updated_at=now,
                )
            else:
                # Rejected items are never charged
                subtotal = sum((_to_decimal(i.line_total) for i in approved), Decimal("0.00"))
                amounts = Order.amounts(subtotal, _to_decimal(order.delivery_fee))
                self._write_order(
                    db, order.id, OrderStatus.PENDING_APPROVAL, status=OrderStatus.APPROVED, updated_at=now, **amounts
                )
                self._write_order(db, order.id, OrderStatus.APPROVED, status=OrderStatus.PAYMENT_PENDING, updated_at=now)
            db.commit()
        except ConcurrentModification:
            logger.info("Order %s was aggregated by another worker", order.id)
            return []

        order = self._load(db, order.id)
        if not approved:
            logger.info("Order %s rejected: every item was rejected", order.id)
            return [OrderRejected.for_order(order, reason=ALL_ITEMS_REJECTED)]
        logger.info("Order %s approved (%s of %s items), awaiting payment of %s",
                    order.id, len(approved), len(order.items), order.total_amount)
        return [
            OrderApproved.for_order(
                order,
                total_amount=order.total_amount,
                approved_items=len(approved),
                rejected_items=len(order.items) - len(approved),
            )
        ]

    # ── payment ──────────────────────────────────────

    def pay(self, db: Session, actor: Actor, order_id: int, payment_method: str) -> TransitionResult:
        """Consume stock for the approved items, then mark the order PAID.

        A repeated call on an order that is already paid succeeds without
        touching inventory. A stock failure leaves the order PAYMENT_PENDING
        with nothing consumed.
        """
        method = (payment_method or "").strip().upper()
        if method not in PAYMENT_METHODS:
            raise ValidationError(f"Unsupported payment method: {payment_method}", field="payment_method")

        with self.locks.for_order(order_id):
            order = self._load(db, order_id)
            self._require_customer(actor, order)
            if order.status in COMMITTED_ORDER_STATUSES:
                logger.info("Order %s already paid, ignoring repeated payment", order.id)
                return TransitionResult(order, [], already_paid=True)
            if order.status != OrderStatus.PAYMENT_PENDING:
                raise InvalidTransition(order.status, OrderStatus.PAID)

            lines = [
                StockLine(i.product_id, i.quantity)
                for i in order.items
                if i.approval_status == ItemApprovalStatus.APPROVED
            ]
            amount = _to_decimal(order.total_amount)
            # Ledger writes commit on their own
            db.commit()
            consumed = self.ledger.consume_all(db, lines)

            now = datetime.utcnow()
            try:
                self._write_order(
                    db,
                    order.id,
                    OrderStatus.PAYMENT_PENDING,
                    status=OrderStatus.PAID,
                    payment_method=method,
                    paid_at=now,
                    updated_at=now,
                )
                db.add(
                    Payment(
                        order_id=order.id,
                        method=method,
                        reference=uuid.uuid4().hex,
                        amount=amount,
                        currency=settings.CURRENCY,
                    )
                )
                db.commit()
            except ConcurrentModification:
                self._release(db, consumed)
                order = self._load(db, order_id)
                if order.status in COMMITTED_ORDER_STATUSES:
                    return TransitionResult(order, [], already_paid=True)
                raise
            except Exception:
                db.rollback()
                self._release(db, consumed)
                raise

            order = self._load(db, order_id)
            logger.info("Order %s paid by %s via %s (%s)", order.id, actor.user_id, method, order.total_amount)
            event = OrderPaid.for_order(order, total_amount=order.total_amount, payment_method=method)
            return TransitionResult(order, [event])

    def _release(self, db: Session, consumed: List[ConsumeResult]) -> None:
        for result in reversed(consumed):
            try:
                self.ledger.release(db, result.product_id, result.quantity)
            except Exception:
                logger.exception("Failed to release %s of product %s", result.quantity, result.product_id)

    # ── cancellation & fulfilment ────────────────────

    def cancel(self, db: Session, actor: Actor, order_id: int, reason: str) -> TransitionResult:
        reason = _clean(reason)
        if not reason:
            raise ValidationError("A cancellation reason is required", field="reason")
        with self.locks.for_order(order_id):
            order = self._load(db, order_id)
            self._require_customer(actor, order)
            if order.status not in CANCELLABLE_STATUSES:
                raise InvalidTransition(order.status, OrderStatus.CANCELLED)
            self._write_order(
                db,
                order.id,
                order.status,
                status=OrderStatus.CANCELLED,
                cancellation_reason=reason,
                cancelled_by=actor.user_id,
            )
            db.commit()
            logger.info("Order %s cancelled by %s: %s", order.id, actor.user_id, reason)

            order = self._load(db, order_id)
            return TransitionResult(
                order, [OrderCancelled.for_order(order, reason=reason, cancelled_by=actor.user_id)]
            )

    def advance_fulfillment(self, db: Session, actor: Actor, order_id: int, next_status) -> TransitionResult:
        target = _parse_enum(OrderStatus, next_status, "status")
        with self.locks.for_order(order_id):
            order = self._load(db, order_id)
            self._require_fulfiller(actor, order, target)
            if FULFILLMENT_STEPS.get(order.status) != target:
                raise InvalidTransition(order.status, target)
            self._write_order(db, order.id, order.status, status=target)
            db.commit()
            logger.info("Order %s moved to %s by %s", order.id, target.value, actor.user_id)

            order = self._load(db, order_id)
            return TransitionResult(order, [FulfillmentAdvanced.for_order(order, status=target)])

    # ── persistence helpers ──────────────────────────

    def _load(self, db: Session, order_id: int) -> Order:
        order = db.get(Order, order_id, options=[selectinload(Order.items)], populate_existing=True)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    @staticmethod
    def _write_order(db: Session, order_id: int, expected: OrderStatus, **values) -> None:
        """UPDATE ... WHERE status = expected; losing the race aborts the unit of work."""
        values.setdefault("updated_at", datetime.utcnow())
        result = db.execute(
            update(orders_table)
            .where(orders_table.c.id == order_id, orders_table.c.status == expected)
            .values(**values)
        )
        if result.rowcount != 1:
            db.rollback()
            raise ConcurrentModification(
                f"Order {order_id} changed while it was being updated, please try again", order_id=order_id
            )

    @staticmethod
    def _write_item(db: Session, item_id: int, **values) -> None:
        result = db.execute(
            update(order_items_table)
            .where(
                order_items_table.c.id == item_id,
                order_items_table.c.approval_status == ItemApprovalStatus.PENDING,
            )
            .values(**values)
        )
        if result.rowcount != 1:
            db.rollback()
            raise ConcurrentModification(f"Item {item_id} was decided concurrently", item_id=item_id)

    # ── authorisation ────────────────────────────────

    @staticmethod
    def _is_shop_owner(actor: Actor, order: Order) -> bool:
        return order.shop is not None and order.shop.owner_id == actor.user_id

    @staticmethod
    def _is_assigned_agent(actor: Actor, order: Order) -> bool:
        return order.delivery is not None and order.delivery.delivery_agent_id == actor.user_id

    def _is_participant(self, actor: Actor, order: Order) -> bool:
        return (
            actor.is_admin
            or order.customer_id == actor.user_id
            or self._is_shop_owner(actor, order)
            or self._is_assigned_agent(actor, order)
        )

    def _require_customer(self, actor: Actor, order: Order) -> None:
        if not (actor.is_admin or order.customer_id == actor.user_id):
            raise NotAuthorized(f"Only the customer who placed order {order.id} can do this")

    def _require_shop_owner(self, actor: Actor, order: Order) -> None:
        if not (actor.is_admin or self._is_shop_owner(actor, order)):
            raise NotAuthorized(f"Only the owner of shop {order.shop_id} can do this")

    def _require_fulfiller(self, actor: Actor, order: Order, target: OrderStatus) -> None:
        if actor.is_admin or self._is_shop_owner(actor, order):
            return
        if target == OrderStatus.DELIVERED and self._is_assigned_agent(actor, order):
            return
        raise NotAuthorized(f"Not allowed to move order {order.id} to {target.value}")
