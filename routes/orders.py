from typing import List, Optional

from fastapi import APIRouter, Depends

from core.actors import Actor, get_current_actor, require_role
from models.enums import OrderStatus, UserRole
from schemas.order import (
    FulfillmentIn,
    ItemDecisionIn,
    ItemDecisionOut,
    OrderCreate,
    OrderOut,
    PaymentIn,
    PaymentOut,
    ReasonIn,
)
from services.orders import ItemRequest
from services.workflow import OrderWorkflow, get_workflow

router = APIRouter(prefix="/orders", tags=["orders"])


@router.get("/", response_model=List[OrderOut])
def list_orders(
    status: Optional[OrderStatus] = None,
    actor: Actor = Depends(get_current_actor),
    workflow: OrderWorkflow = Depends(get_workflow),
):
    return workflow.list_orders(actor, status=status)


@router.get("/{order_id}", response_model=OrderOut)
def get_order(order_id: int, actor: Actor = Depends(get_current_actor), workflow: OrderWorkflow = Depends(get_workflow)):
    return workflow.get_order(actor, order_id)


@router.post("/", response_model=OrderOut, status_code=201)
def create_order(
    data: OrderCreate,
    actor: Actor = Depends(require_role(UserRole.CUSTOMER)),
    workflow: OrderWorkflow = Depends(get_workflow),
):
    return workflow.submit_order(
        actor,
        shop_id=data.shop_id,
        items=[ItemRequest(item.product_id, item.quantity) for item in data.items],
        delivery_address=data.delivery_address,
        delivery_phone=data.delivery_phone,
        notes=data.notes,
    )


@router.post("/{order_id}/items/{item_id}/decision", response_model=ItemDecisionOut)
def decide_item(
    order_id: int,
    item_id: int,
    data: ItemDecisionIn,
    actor: Actor = Depends(require_role(UserRole.SHOPKEEPER)),
    workflow: OrderWorkflow = Depends(get_workflow),
):
    result = workflow.decide_item(actor, order_id, item_id, data.decision, reason=data.reason)
    return {"item": result.item, "order": result.order}


@router.post("/{order_id}/approve", response_model=OrderOut)
def approve_order(
    order_id: int,
    actor: Actor = Depends(require_role(UserRole.SHOPKEEPER)),
    workflow: OrderWorkflow = Depends(get_workflow),
):
    return workflow.approve_all(actor, order_id)


@router.post("/{order_id}/reject", response_model=OrderOut)
def reject_order(
    order_id: int,
    data: ReasonIn,
    actor: Actor = Depends(require_role(UserRole.SHOPKEEPER)),
    workflow: OrderWorkflow = Depends(get_workflow),
):
    return workflow.reject_order(actor, order_id, data.reason)


@router.post("/{order_id}/pay", response_model=PaymentOut)
def pay_order(
    order_id: int,
    data: PaymentIn,
    actor: Actor = Depends(require_role(UserRole.CUSTOMER)),
    workflow: OrderWorkflow = Depends(get_workflow),
):
    outcome = workflow.pay(actor, order_id, data.payment_method)
    return {
        "order": outcome.order,
        "already_paid": outcome.already_paid,
        "delivery_setup_complete": outcome.delivery_setup_complete,
        "delivery_problems": outcome.delivery_problems,
    }


@router.post("/{order_id}/cancel", response_model=OrderOut)
def cancel_order(
    order_id: int,
    data: ReasonIn,
    actor: Actor = Depends(require_role(UserRole.CUSTOMER)),
    workflow: OrderWorkflow = Depends(get_workflow),
):
    return workflow.cancel(actor, order_id, data.reason)


@router.post("/{order_id}/fulfillment", response_model=OrderOut)
def advance_fulfillment(
    order_id: int,
    data: FulfillmentIn,
    actor: Actor = Depends(get_current_actor),
    workflow: OrderWorkflow = Depends(get_workflow),
):
    return workflow.advance_fulfillment(actor, order_id, data.status)
