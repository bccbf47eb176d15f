"""
Audit & Notification Sink

Consumes the EngineEvent list produced by the transactional components
and, for each event:
1. appends an AuditLogDB row
2. attempts the attached notification through the configured channel
3. records the attempt in the notifications outbox

Best-effort throughout. The events describe changes that are already
committed, so nothing here can roll them back; failures are logged and
swallowed.
"""
import logging
from typing import Iterable, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import (
    AuditLogDB, NotificationDB, NotificationStatus, RiskLevel, utcnow,
)
from ...models.engine_models import EngineEvent
from .notifications import NotificationChannel, get_notification_channel


logger = logging.getLogger(__name__)


HIGH_RISK_ACTIONS = {
    "delete",
    "vault_share",
    "inheritance_trigger",
    "access_grant",
    "heir_remove",
}

CRITICAL_RISK_ACTIONS = {
    "trigger_failed",
}


def risk_level_for(action: str) -> RiskLevel:
    """Default risk level for an audit action."""
    if action in CRITICAL_RISK_ACTIONS:
        return RiskLevel.CRITICAL
    if action in HIGH_RISK_ACTIONS:
        return RiskLevel.HIGH
    if action in ("create", "update"):
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


class AuditSink:
    """
    Records engine events and delivers their notifications.

    Usage:
        sink = AuditSink(db)
        sink.record(events)
    """

    def __init__(self, db: Session, channel: Optional[NotificationChannel] = None):
        self.db = db
        self.channel = channel or get_notification_channel()

    def record(self, events: Iterable[EngineEvent]) -> int:
        """Record every event; returns how many audit rows were written."""
        written = 0
        for event in events:
            if self._record_one(event):
                written += 1
        return written

    def _record_one(self, event: EngineEvent) -> bool:
        try:
            self.db.add(AuditLogDB(
                id=str(uuid4()),
                user_id=event.user_id,
                action=event.action,
                resource_type=event.resource_type,
                resource_id=event.resource_id,
                actor=event.actor,
                risk_level=event.risk_level,
                old_values=event.old_values,
                new_values=event.new_values,
                event_metadata={"event": event.kind.value, **event.metadata},
                created_at=utcnow(),
            ))

            if event.notification is not None:
                self._deliver(event)

            self.db.commit()
            return True
        except Exception as e:
            logger.error(f"Audit write failed for {event.kind.value} on {event.resource_id}: {e}")
            try:
                self.db.rollback()
            except Exception as rollback_error:
                logger.error(f"Audit rollback failed: {rollback_error}")
            return False

    def _deliver(self, event: EngineEvent) -> None:
        notification = event.notification
        status = NotificationStatus.SENT
        error_message = None
        try:
            self.channel.send(notification)
        except Exception as e:
            status = NotificationStatus.FAILED
            error_message = str(e)
            logger.error(
                f"Notification {notification.template} for {event.resource_id} failed: {e}"
            )

        self.db.add(NotificationDB(
            id=str(uuid4()),
            user_id=event.user_id,
            channel=self.channel.name,
            template=notification.template,
            recipient=notification.recipient,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            payload=notification.payload,
            status=status,
            error_message=error_message,
            created_at=utcnow(),
        ))

    # =========================================================================
    # READ SIDE
    # =========================================================================

    def get_user_audit_logs(self, user_id: str, limit: int = 50, offset: int = 0) -> List[AuditLogDB]:
        return (
            self.db.query(AuditLogDB)
            .filter(AuditLogDB.user_id == user_id)
            .order_by(AuditLogDB.created_at.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def get_resource_audit_logs(self, resource_type: str, resource_id: str, limit: int = 50) -> List[AuditLogDB]:
        return (
            self.db.query(AuditLogDB)
            .filter(
                AuditLogDB.resource_type == resource_type,
                AuditLogDB.resource_id == resource_id,
            )
            .order_by(AuditLogDB.created_at.desc())
            .limit(limit)
            .all()
        )
