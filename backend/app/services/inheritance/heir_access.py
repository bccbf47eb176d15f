"""
Heir Access Granter

AUTHORITY: SYSTEM
For a triggered plan, converts each active heir's pending vault and item
access into granted access, then notifies the heir.

- Grants are a conditional UPDATE that only matches heirs of triggered
  plans, so 'granted' is unreachable for a dormant plan even if called
  out of order.
- Heirs with notify_on_activation = false still get their grants.
- notification_delay_days is honoured: a heir is notified once
  now >= plan.triggered_at + delay. Grants are never delayed.
- Notification is claimed with a conditional UPDATE on notified_at IS NULL,
  so a heir is notified at most once across overlapping runs.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models.db_models import (
    HeirDB, HeirVaultAccessDB, InheritancePlanDB, AccessStatus,
    HeirNotificationStatus, RiskLevel, utcnow,
)
from ...models.engine_models import EngineEvent, EventKind
from .notifications import heir_activation_notification


logger = logging.getLogger(__name__)


def triggered_heir_ids():
    """Active heirs whose plan has been triggered: the only ones that may be granted."""
    return select(HeirDB.id).join(
        InheritancePlanDB, HeirDB.inheritance_plan_id == InheritancePlanDB.id
    ).where(
        InheritancePlanDB.is_triggered.is_(True),
        HeirDB.is_active.is_(True),
    )


# Delays beyond a century are data errors; such heirs are never due
MAX_NOTIFICATION_DELAY_DAYS = 36500


def notification_due_at(heir: HeirDB, plan: InheritancePlanDB, now: datetime) -> datetime:
    triggered_at = plan.triggered_at or now
    try:
        delay = int(heir.notification_delay_days or 0)
    except (TypeError, ValueError):
        logger.warning(f"Heir {heir.id} has unreadable notification_delay_days, treating as 0")
        delay = 0
    if delay > MAX_NOTIFICATION_DELAY_DAYS:
        logger.warning(
            f"Heir {heir.id} notification_delay_days={delay} exceeds "
            f"{MAX_NOTIFICATION_DELAY_DAYS}, notification withheld"
        )
        return datetime.max
    try:
        return triggered_at + timedelta(days=max(delay, 0))
    except OverflowError:
        return datetime.max


class HeirAccessGranter:
    """
    Grants heir access for triggered plans and notifies heirs.

    Usage:
        granter = HeirAccessGranter(db)
        grants, events = granter.grant_for_plan(plan)
    """

    def __init__(self, db_session: Session):
        """Initialize with database session."""
        self.db = db_session

    def get_active_heirs(self, plan_id: str) -> List[HeirDB]:
        return self.db.query(HeirDB).filter(
            HeirDB.inheritance_plan_id == plan_id,
            HeirDB.is_active.is_(True),
        ).order_by(HeirDB.created_at).all()

    def grant_for_plan(
        self, plan: InheritancePlanDB, now: Optional[datetime] = None
    ) -> Tuple[int, List[EngineEvent]]:
        """
        Grant every active heir's pending access and notify due heirs.

        Returns (number of access rows granted, events for the audit sink).
        Raises SQLAlchemyError after rolling back.
        """
        now = now or utcnow()
        if not plan.is_triggered:
            logger.warning(f"Plan {plan.id} is not triggered, refusing to grant heir access")
            return 0, []

        total = 0
        events: List[EngineEvent] = []
        try:
            for heir in self.get_active_heirs(plan.id):
                granted = self._grant_heir(heir.id, now)
                if granted:
                    total += granted
                    events.append(EngineEvent(
                        kind=EventKind.ACCESS_GRANTED,
                        user_id=plan.user_id,
                        resource_type="heir",
                        resource_id=heir.id,
                        action="access_grant",
                        risk_level=RiskLevel.HIGH,
                        old_values={"access_status": AccessStatus.PENDING.value},
                        new_values={"access_status": AccessStatus.GRANTED.value, "rows": granted},
                        metadata={"inheritance_plan_id": plan.id},
                    ))

                event = self._notify_if_due(heir, plan, now)
                if event is not None:
                    events.append(event)

            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(f"Heir access grant failed for plan {plan.id}")
            raise

        if total:
            logger.info(f"Granted {total} access row(s) for plan {plan.id}")
        return total, events

    def deliver_due_notifications(self, now: Optional[datetime] = None) -> List[EngineEvent]:
        """Notify heirs of triggered plans whose delay has elapsed since the last run."""
        now = now or utcnow()
        rows = self.db.query(HeirDB, InheritancePlanDB).join(
            InheritancePlanDB, HeirDB.inheritance_plan_id == InheritancePlanDB.id
        ).filter(
            InheritancePlanDB.is_triggered.is_(True),
            HeirDB.is_active.is_(True),
            HeirDB.notify_on_activation.is_(True),
            HeirDB.notified_at.is_(None),
        ).all()

        events: List[EngineEvent] = []
        try:
            for heir, plan in rows:
                event = self._notify_if_due(heir, plan, now)
                if event is not None:
                    events.append(event)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Delivering due heir notifications failed")
            raise

        if events:
            logger.info(f"Delivered {len(events)} delayed heir notification(s)")
        return events

    def _grant_heir(self, heir_id: str, now: datetime) -> int:
        return self.db.query(HeirVaultAccessDB).filter(
            HeirVaultAccessDB.heir_id == heir_id,
            HeirVaultAccessDB.access_status == AccessStatus.PENDING,
            HeirVaultAccessDB.heir_id.in_(triggered_heir_ids()),
        ).update(
            {
                HeirVaultAccessDB.access_status: AccessStatus.GRANTED,
                HeirVaultAccessDB.granted_at: now,
            },
            synchronize_session=False,
        )

    def _notify_if_due(
        self, heir: HeirDB, plan: InheritancePlanDB, now: datetime
    ) -> Optional[EngineEvent]:
        if not heir.notify_on_activation or heir.notified_at is not None:
            return None
        due_at = notification_due_at(heir, plan, now)
        if now < due_at:
            logger.debug(f"Heir {heir.id} notification not due until {due_at.isoformat()}")
            return None

        claimed = self.db.query(HeirDB).filter(
            HeirDB.id == heir.id,
            HeirDB.notified_at.is_(None),
        ).update(
            {
                HeirDB.notified_at: now,
                HeirDB.notification_status: HeirNotificationStatus.PENDING_VERIFICATION,
            },
            synchronize_session=False,
        )
        if claimed != 1:
            return None

        return EngineEvent(
            kind=EventKind.HEIR_NOTIFIED,
            user_id=plan.user_id,
            resource_type="heir",
            resource_id=heir.id,
            action="update",
            risk_level=RiskLevel.MEDIUM,
            old_values={"notification_status": HeirNotificationStatus.NOT_NOTIFIED.value},
            new_values={
                "notified_at": now.isoformat(),
                "notification_status": HeirNotificationStatus.PENDING_VERIFICATION.value,
            },
            metadata={"inheritance_plan_id": plan.id},
            notification=heir_activation_notification(heir, plan),
        )
