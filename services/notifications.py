"""
Notification emitter: fire-and-forget messages for every party of an order.

Titles and bodies are rendered from ``templates/notifications/<type>.txt``.
A failing template or sink is logged and dropped; it never reaches the
operation that produced the event.
"""
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple

from jinja2 import Environment, FileSystemLoader, select_autoescape
from sqlalchemy import select
from sqlalchemy.orm import Session

from core.actors import Actor
from core.errors import NotFound
from models.notification import Notification
from services.events import (
    DeliveryAssigned,
    DomainEvent,
    FulfillmentAdvanced,
    OrderApproved,
    OrderCancelled,
    OrderPaid,
    OrderRejected,
    OrderSubmitted,
)

logger = logging.getLogger(__name__)

# Jinja2 environment for notification templates
_templates_env = Environment(
    loader=FileSystemLoader(searchpath=os.path.join(os.path.dirname(os.path.dirname(__file__)), "templates")),
    autoescape=select_autoescape(["html", "xml"]),
    trim_blocks=True,
    lstrip_blocks=True,
)

# (recipient attribute on the event, notification type, title)
Route = Tuple[str, str, str]

ROUTES: Dict[type, Tuple[Route, ...]] = {
    OrderSubmitted: (
        ("shop_owner_id", "order_request", "New order #{order_id}"),
        ("customer_id", "order_placed", "Order #{order_id} placed"),
    ),
    OrderApproved: (
        ("customer_id", "order_approved", "Order #{order_id} approved"),
    ),
    OrderRejected: (
        ("customer_id", "order_rejected", "Order #{order_id} rejected"),
    ),
    OrderPaid: (
        ("customer_id", "payment_confirmed", "Payment received for order #{order_id}"),
        ("shop_owner_id", "payment_received", "Order #{order_id} paid"),
    ),
    OrderCancelled: (
        ("shop_owner_id", "order_cancelled", "Order #{order_id} cancelled"),
        ("customer_id", "order_cancelled", "Order #{order_id} cancelled"),
    ),
    FulfillmentAdvanced: (
        ("customer_id", "order_{status}", "Order #{order_id} is {status}"),
    ),
    DeliveryAssigned: (
        ("delivery_agent_id", "delivery_assigned", "New delivery for order #{order_id}"),
        ("customer_id", "delivery_agent_assigned", "Delivery agent assigned to order #{order_id}"),
        ("shop_owner_id", "delivery_agent_assigned", "Delivery agent assigned to order #{order_id}"),
    ),
}


@dataclass(frozen=True)
class NotificationMessage:
    user_id: int
    order_id: Optional[int]
    type: str
    title: str
    message: str


class NotificationSink(Protocol):
    def publish(self, message: NotificationMessage) -> None:
        ...


class DatabaseNotificationSink:
    """Stores each message as a ``Notification`` row in its own unit of work."""

    def __init__(self, db: Session):
        self.db = db

    def publish(self, message: NotificationMessage) -> None:
        try:
            self.db.add(
                Notification(
                    user_id=message.user_id,
                    order_id=message.order_id,
                    type=message.type,
                    title=message.title,
                    message=message.message,
                    is_read=False,
                )
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise


def render_template(template_path: str, context: Dict[str, Any]) -> str:
    """Render a text template from templates/ directory with provided context."""
    template = _templates_env.get_template(template_path)
    return template.render(**context).strip()


def _context(event: DomainEvent) -> Dict[str, Any]:
    context = {key: getattr(value, "value", value) for key, value in event.model_dump().items()}
    context["event_type"] = event.event_type
    return context


class NotificationEmitter:
    def __init__(self, sink: NotificationSink):
        self.sink = sink

    def build(self, event: DomainEvent) -> List[NotificationMessage]:
        context = _context(event)
        fmt = {**context, "status": str(context.get("status", "")).lower()}
        messages = []
        seen = set()
        for attribute, type_pattern, title_pattern in ROUTES.get(type(event), ()):
            user_id = context.get(attribute)
            # One message per user even when roles overlap
            if user_id is None or user_id in seen:
                continue
            seen.add(user_id)
            notification_type = type_pattern.format(**fmt)
            messages.append(
                NotificationMessage(
                    user_id=user_id,
                    order_id=event.order_id,
                    type=notification_type,
                    title=title_pattern.format(**fmt),
                    message=render_template(
                        f"notifications/{notification_type}.txt",
                        {**context, "audience": attribute[: -len("_id")]},
                    ),
                )
            )
        return messages

    def emit(self, event: DomainEvent) -> int:
        """Publish every notification for ``event``; returns how many were stored."""
        try:
            messages = self.build(event)
        except Exception:
            logger.exception("Could not build notifications for %s on order %s", event.event_type, event.order_id)
            return 0
        sent = 0
        for message in messages:
            try:
                self.sink.publish(message)
                sent += 1
            except Exception:
                logger.exception("Could not deliver %s notification to user %s", message.type, message.user_id)
        logger.info("%s on order %s: %s/%s notifications sent", event.event_type, event.order_id, sent, len(messages))
        return sent


def list_notifications(db: Session, actor: Actor, unread_only: bool = False, limit: int = 50) -> List[Notification]:
    query = select(Notification).where(Notification.user_id == actor.user_id)
    if unread_only:
        query = query.where(Notification.is_read.is_(False))
    query = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)
    return list(db.scalars(query).all())


def mark_read(db: Session, actor: Actor, notification_id: int) -> Notification:
    notification = db.get(Notification, notification_id)
    if notification is None or notification.user_id != actor.user_id:
        raise NotFound(f"Notification {notification_id} not found", notification_id=notification_id)
    if not notification.is_read:
        notification.is_read = True
        db.commit()
    return notification
