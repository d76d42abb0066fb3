from fastapi import APIRouter, Depends

from core.actors import Actor, get_current_actor, require_role
from models.enums import UserRole
from schemas.delivery import DeliveryAssignmentOut
from services.workflow import OrderWorkflow, get_workflow

router = APIRouter(prefix="/deliveries", tags=["deliveries"])


@router.get("/{assignment_id}", response_model=DeliveryAssignmentOut)
def get_delivery(
    assignment_id: int,
    actor: Actor = Depends(get_current_actor),
    workflow: OrderWorkflow = Depends(get_workflow),
):
    return workflow.get_assignment(actor, assignment_id)


@router.post("/{assignment_id}/accept", response_model=DeliveryAssignmentOut)
def accept_delivery(
    assignment_id: int,
    actor: Actor = Depends(require_role(UserRole.DELIVERY_AGENT)),
    workflow: OrderWorkflow = Depends(get_workflow),
):
    return workflow.accept_assignment(actor, assignment_id)


@router.post("/{assignment_id}/picked-up", response_model=DeliveryAssignmentOut)
def mark_picked_up(
    assignment_id: int,
    actor: Actor = Depends(require_role(UserRole.DELIVERY_AGENT)),
    workflow: OrderWorkflow = Depends(get_workflow),
):
    return workflow.mark_picked_up(actor, assignment_id)


@router.post("/{assignment_id}/delivered", response_model=DeliveryAssignmentOut)
def mark_delivered(
    assignment_id: int,
    actor: Actor = Depends(require_role(UserRole.DELIVERY_AGENT)),
    workflow: OrderWorkflow = Depends(get_workflow),
):
    return workflow.mark_delivered(actor, assignment_id)
