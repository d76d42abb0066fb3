import logging

from celery import current_app

from core.db import db_session
from services.workflow import OrderWorkflow

logger = logging.getLogger(__name__)


@current_app.task(name="tasks.delivery_tasks.sweep_unassigned_deliveries")
def sweep_unassigned_deliveries(limit: int = 100):
    """
    Retry delivery setup for paid orders whose delivery is still UNASSIGNED
    or was never opened.
    Scheduled by celery beat every DELIVERY_SWEEP_INTERVAL_SECONDS.
    """
    with db_session() as db:
        outcomes = OrderWorkflow(db).sweep_unassigned(limit=limit)
        assigned = [o.order_id for o in outcomes if o.assignment is not None and o.assignment.delivery_agent_id]
    return {"pending": len(outcomes), "assigned": assigned}


@current_app.task(bind=True, max_retries=3, name="tasks.delivery_tasks.dispatch_delivery")
def dispatch_delivery(self, order_id: int):
    """
    Re-run delivery setup for one paid order.
    Retries with backoff while the geocoder or agent pool stays unavailable.
    """
    with db_session() as db:
        outcome = OrderWorkflow(db).dispatch_delivery(order_id)
        result = {
            "order_id": order_id,
            "assignment_id": outcome.assignment.id if outcome.assignment is not None else None,
            "complete": outcome.complete,
            "problems": outcome.problem_messages(),
        }

    if not outcome.complete and self.request.retries < self.max_retries:
        countdown = min(2 ** self.request.retries * 30, 600)  # Max 10 minutes
        logger.info("Delivery setup for order %s incomplete, retrying in %ss", order_id, countdown)
        raise self.retry(countdown=countdown)
    return result
