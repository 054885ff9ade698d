from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from apps.api.app.api.deps import get_current_user
from apps.api.app.db.session import get_db
from apps.api.app.models.user import User
from apps.api.app.schemas.notification import ActivityOut, NotificationOut
from apps.api.app.services.activity_log import list_activity
from apps.api.app.services.notifications import list_notifications, list_unread, mark_all_read, mark_read


router = APIRouter(tags=["notifications"])


@router.get("/notifications", response_model=list[NotificationOut])
def my_notifications(
    limit: int = 50,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return list_notifications(db, current_user.id, limit=max(1, min(limit, 200)))


@router.get("/notifications/unread", response_model=list[NotificationOut])
def my_unread_notifications(
    limit: int = 10,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return list_unread(db, current_user.id, limit=max(1, min(limit, 200)))


@router.post("/notifications/read-all")
def read_all_notifications(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    updated = mark_all_read(db, current_user.id)
    db.commit()
    return {"updated": updated}


@router.post("/notifications/{notification_id}/read", response_model=NotificationOut)
def read_notification(
    notification_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    row = mark_read(db, current_user.id, notification_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    db.commit()
    return row


@router.get("/activity", response_model=list[ActivityOut])
def my_activity(
    limit: int = 50,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return list_activity(db, current_user.id, limit=max(1, min(limit, 200)))
