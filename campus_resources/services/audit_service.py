from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.resource_models import AuditLog, NotificationQueue


def log_audit(
    db: Session,
    entity_type: str,
    entity_id: int,
    action: str,
    details: str | None = None,
    user_id: int | None = None,
    now: datetime | None = None,
) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            UserID=user_id,
            CreatedAt=now or datetime.now(),
        )
    )


def enqueue_notification(
    db: Session,
    *,
    user_id: int,
    entity_type: str,
    entity_id: int,
    notification_type: str,
    payload: str,
    now: datetime | None = None,
) -> None:
    db.add(
        NotificationQueue(
            UserID=user_id,
            EntityType=entity_type,
            EntityID=entity_id,
            NotificationType=notification_type,
            Payload=payload,
            CreatedAt=now or datetime.now(),
        )
    )


def list_pending_notifications(db: Session, limit: int = 200) -> list[dict]:
    rows = db.execute(
        select(NotificationQueue)
        .where(NotificationQueue.SentAt.is_(None))
        .order_by(NotificationQueue.CreatedAt.desc(), NotificationQueue.NotificationID.desc())
        .limit(limit)
    ).scalars().all()
    return [
        {
            "notificationId": row.NotificationID,
            "userId": row.UserID,
            "entityType": row.EntityType,
            "entityId": row.EntityID,
            "notificationType": row.NotificationType,
            "payload": row.Payload,
            "createdAt": row.CreatedAt,
        }
        for row in rows
    ]
