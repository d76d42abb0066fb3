from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.actors import Actor, get_current_actor
from core.db import get_db
from schemas.notification import NotificationOut
from services.notifications import list_notifications, mark_read

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("/", response_model=List[NotificationOut])
def my_notifications(
    unread_only: bool = False,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    return list_notifications(db, actor, unread_only=unread_only)


@router.post("/{notification_id}/read", response_model=NotificationOut)
def read_notification(notification_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return mark_read(db, actor, notification_id)
