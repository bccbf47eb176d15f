"""
Death Certificate Verification

AUTHORITY: VERIFIER
Plans of death_certificate users wait in awaiting_verification until an
external collaborator confirms the death. This service consumes that
signal: it stamps the open triggers as verified and flips the plans with
the same compare-and-set used by the orchestrator.

It also lets an operator cancel an unverified trigger (false report).
A trigger whose plan already flipped can never be cancelled.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models.db_models import (
    InheritancePlanDB, InheritanceTriggerDB, TriggerStatus, ActorType, RiskLevel, utcnow,
)
from ...models.engine_models import ActivationResult, EngineEvent, EventKind
from .activation import flip_plan, plan_triggered_event
from .errors import VerificationError
from .plan_state import PlanState


logger = logging.getLogger(__name__)


class DeathVerificationService:
    """Applies external verification and cancellation to pending triggers."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_awaiting_triggers(self, user_id: str) -> List[InheritanceTriggerDB]:
        """Open triggers that still need verification, for plans not yet flipped."""
        return self.db.query(InheritanceTriggerDB).join(
            InheritancePlanDB,
            InheritancePlanDB.id == InheritanceTriggerDB.inheritance_plan_id,
        ).filter(
            InheritanceTriggerDB.user_id == user_id,
            InheritanceTriggerDB.status == TriggerStatus.PENDING,
            InheritanceTriggerDB.requires_verification.is_(True),
            InheritancePlanDB.is_triggered.is_(False),
        ).all()

    def verify(
        self,
        user_id: str,
        verified_by: str,
        evidence_reference: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ActivationResult:
        """
        Record a verified death for a user and flip the waiting plans.

        Raises VerificationError if nothing is awaiting verification.
        """
        now = now or utcnow()
        triggers = self.get_awaiting_triggers(user_id)
        if not triggers:
            raise VerificationError(
                f"No triggers awaiting verification for user {user_id}", not_found=True
            )

        result = ActivationResult(user_id=user_id, reason="death_certificate")
        events: List[EngineEvent] = []
        try:
            for trigger in triggers:
                trigger.verified_at = now
                trigger.verified_by = verified_by
                trigger.trigger_metadata = {
                    **(trigger.trigger_metadata or {}),
                    "evidence_reference": evidence_reference,
                }
                events.append(EngineEvent(
                    kind=EventKind.TRIGGER_VERIFIED,
                    user_id=user_id,
                    resource_type="inheritance_trigger",
                    resource_id=trigger.id,
                    action="update",
                    risk_level=RiskLevel.HIGH,
                    actor=ActorType.OPERATOR,
                    new_values={"verified_at": now.isoformat(), "verified_by": verified_by},
                    metadata={"evidence_reference": evidence_reference},
                ))
                result.trigger_ids.append(trigger.id)

                plan_id = trigger.inheritance_plan_id
                if flip_plan(self.db, plan_id, now):
                    result.triggered_plan_ids.append(plan_id)
                    event = plan_triggered_event(
                        user_id, plan_id, "death_certificate", now, actor=ActorType.OPERATOR
                    )
                    event.old_values["state"] = PlanState.AWAITING_VERIFICATION.value
                    events.append(event)

            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(f"Verification failed for user {user_id}")
            raise

        result.events = events
        logger.info(
            f"Death verified for user {user_id} by {verified_by}: "
            f"{len(result.triggered_plan_ids)} plan(s) triggered"
        )
        return result

    def cancel(self, trigger_id: str, cancelled_by: str, now: Optional[datetime] = None) -> EngineEvent:
        """
        Cancel an open trigger whose plan has not flipped.

        Returns the audit event for the cancellation.
        """
        now = now or utcnow()
        trigger = self.db.query(InheritanceTriggerDB).filter(
            InheritanceTriggerDB.id == trigger_id
        ).first()
        if trigger is None:
            raise VerificationError(f"Trigger {trigger_id} not found", not_found=True)
        if trigger.status != TriggerStatus.PENDING:
            raise VerificationError(
                f"Trigger {trigger_id} is {trigger.status.value}, only pending triggers can be cancelled"
            )
        if trigger.plan is not None and trigger.plan.is_triggered:
            raise VerificationError(
                f"Plan {trigger.inheritance_plan_id} already triggered, activation cannot be cancelled"
            )

        trigger.status = TriggerStatus.CANCELLED
        trigger.cancelled_at = now
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

        logger.info(f"Trigger {trigger_id} cancelled by {cancelled_by}")
        return EngineEvent(
            kind=EventKind.TRIGGER_CANCELLED,
            user_id=trigger.user_id,
            resource_type="inheritance_trigger",
            resource_id=trigger.id,
            action="update",
            risk_level=RiskLevel.MEDIUM,
            actor=ActorType.OPERATOR,
            old_values={"status": TriggerStatus.PENDING.value},
            new_values={"status": TriggerStatus.CANCELLED.value, "cancelled_at": now.isoformat()},
            metadata={"cancelled_by": cancelled_by},
        )
