from contextlib import contextmanager
from unittest.mock import patch

import pytest
from celery.exceptions import Retry

from helpers import actor_for
from models.delivery import DeliveryAssignment
from models.enums import DeliveryStatus, UserRole
from models.user import User
from services.orders import ItemRequest
from tasks.delivery_tasks import dispatch_delivery, sweep_unassigned_deliveries


@pytest.fixture
def paid_order(db, coordinator, customer, shopkeeper, shop, rice):
    order = coordinator.submit_order(
        db, actor_for(customer), shop.id, [ItemRequest(rice.id, 1)], "4 Temple Street, Madurai", "9000000001"
    ).order
    coordinator.approve_all(db, actor_for(shopkeeper), order.id)
    return coordinator.pay(db, actor_for(customer), order.id, "UPI").order


@pytest.fixture
def task_session(db):
    @contextmanager
    def _session():
        yield db
        db.commit()

    with patch("tasks.delivery_tasks.db_session", _session):
        yield db


def test_dispatch_task_reports_assignment(task_session, paid_order, agent):
    result = dispatch_delivery(paid_order.id)

    assert result["order_id"] == paid_order.id
    assert result["complete"] is True
    assert result["problems"] == []
    assert result["assignment_id"] is not None


def test_dispatch_task_retries_without_agents(task_session, paid_order):
    with pytest.raises(Retry):
        dispatch_delivery(paid_order.id)


def test_sweep_picks_up_waiting_orders(task_session, paid_order):
    # Nobody is free yet, the sweep only opens the delivery
    assert sweep_unassigned_deliveries() == {"pending": 1, "assigned": []}
    assignment = task_session.query(DeliveryAssignment).filter_by(order_id=paid_order.id).one()
    assert assignment.status == DeliveryStatus.UNASSIGNED

    courier = User(name="Night Shift", role=UserRole.DELIVERY_AGENT, is_available=True)
    task_session.add(courier)
    task_session.commit()

    assert sweep_unassigned_deliveries(limit=10) == {"pending": 1, "assigned": [paid_order.id]}
