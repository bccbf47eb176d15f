"""
Activation Orchestrator

AUTHORITY: SYSTEM
For a user whose trigger condition is met, creates the trigger records
and flips eligible plans from dormant to triggered, exactly once.

Guarantees:
- Idempotent: only plans with is_active AND NOT is_triggered are eligible,
  so a fully triggered user yields no new rows and no updates.
- At-most-once flip: the flip is a conditional UPDATE and its row count
  decides whether this run won the plan.
- Trigger records are deduplicated per plan: an open (pending) trigger is
  reused instead of inserting another. An unverified death report left
  open after the user moved off death_certificate is cancelled and replaced.
- Trigger insert and plan flip commit in one transaction.
- death_certificate users stop at awaiting_verification: triggers are
  written but plans are not flipped until a verification signal arrives.

Side effects (audit, notifications) are NOT performed here. They are
returned as EngineEvents for the audit sink.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models.db_models import (
    InheritancePlanDB, InheritanceTriggerDB, TriggerMethod, TriggerReason,
    TriggerStatus, ActorType, RiskLevel, utcnow,
)
from ...models.engine_models import ActivationResult, EngineEvent, EventKind
from .plan_state import PlanState, can_transition, derive_state
from .trigger_evaluator import normalize_method


logger = logging.getLogger(__name__)


def flip_plan(db: Session, plan_id: str, now: datetime) -> bool:
    """
    Conditionally mark a plan triggered.

    Compare-and-set at the storage layer: only a row that is still active
    and untriggered is updated. Returns True if this call won.
    """
    updated = db.query(InheritancePlanDB).filter(
        InheritancePlanDB.id == plan_id,
        InheritancePlanDB.is_active.is_(True),
        InheritancePlanDB.is_triggered.is_(False),
    ).update(
        {
            InheritancePlanDB.is_triggered: True,
            InheritancePlanDB.triggered_at: now,
            InheritancePlanDB.updated_at: now,
        },
        synchronize_session=False,
    )
    return updated == 1


def plan_triggered_event(user_id: str, plan_id: str, reason: str, now: datetime,
                         actor: ActorType = ActorType.SYSTEM) -> EngineEvent:
    return EngineEvent(
        kind=EventKind.PLAN_TRIGGERED,
        user_id=user_id,
        resource_type="inheritance_plan",
        resource_id=plan_id,
        action="inheritance_trigger",
        risk_level=RiskLevel.HIGH,
        actor=actor,
        old_values={"is_triggered": False, "state": PlanState.DORMANT.value},
        new_values={
            "is_triggered": True,
            "triggered_at": now.isoformat(),
            "state": PlanState.TRIGGERED.value,
        },
        metadata={"trigger_reason": reason},
    )


def retire_unverified_trigger(trigger: InheritanceTriggerDB, now: datetime,
                              reason: str = "trigger_method_changed") -> EngineEvent:
    """Cancel an open trigger still waiting for a death certificate that no longer applies."""
    trigger.status = TriggerStatus.CANCELLED
    trigger.cancelled_at = now
    return EngineEvent(
        kind=EventKind.TRIGGER_CANCELLED,
        user_id=trigger.user_id,
        resource_type="inheritance_trigger",
        resource_id=trigger.id,
        action="update",
        risk_level=RiskLevel.MEDIUM,
        old_values={"status": TriggerStatus.PENDING.value, "requires_verification": True},
        new_values={"status": TriggerStatus.CANCELLED.value, "cancelled_at": now.isoformat()},
        metadata={"cancelled_by": "system", "reason": reason},
    )


class ActivationOrchestrator:
    """
    Turns a met trigger condition into triggered plans.

    Usage:
        orchestrator = ActivationOrchestrator(db)
        result = orchestrator.activate(user, TriggerReason.INACTIVITY)
        sink.record(result.events)
    """

    def __init__(self, db_session: Session):
        """Initialize with database session."""
        self.db = db_session

    def get_eligible_plans(self, user_id: str) -> List[InheritancePlanDB]:
        """Active plans that have never been triggered."""
        return self.db.query(InheritancePlanDB).filter(
            InheritancePlanDB.user_id == user_id,
            InheritancePlanDB.is_active.is_(True),
            InheritancePlanDB.is_triggered.is_(False),
        ).order_by(InheritancePlanDB.created_at).all()

    def get_open_trigger(self, plan_id: str) -> Optional[InheritanceTriggerDB]:
        return self.db.query(InheritanceTriggerDB).filter(
            InheritanceTriggerDB.inheritance_plan_id == plan_id,
            InheritanceTriggerDB.status == TriggerStatus.PENDING,
        ).first()

    def activate(
        self,
        user,
        reason: TriggerReason,
        now: Optional[datetime] = None,
        actor: ActorType = ActorType.SYSTEM,
        decision_detail: Optional[Dict[str, Any]] = None,
    ) -> ActivationResult:
        """
        Create triggers and flip eligible plans for one user.

        Raises SQLAlchemyError on storage failure (after rolling back);
        the caller treats that as retryable.
        """
        now = now or utcnow()
        reason = TriggerReason(reason)
        result = ActivationResult(user_id=user.id, reason=reason.value)

        plans = self.get_eligible_plans(user.id)
        if not plans:
            logger.info(f"User {user.id} has no active untriggered plans, nothing to activate")
            return result

        requires_verification = (
            normalize_method(user.trigger_method) == TriggerMethod.DEATH_CERTIFICATE
        )
        metadata = {
            "triggered_at": now.isoformat(),
            "trigger_method": user.trigger_method,
            "trigger_settings": user.trigger_settings,
            **(decision_detail or {}),
        }

        events: List[EngineEvent] = []
        try:
            # Step 1: trigger records (deduplicated per plan)
            staged: List[Tuple[InheritancePlanDB, InheritanceTriggerDB, bool]] = []
            for plan in plans:
                trigger, created = self._ensure_trigger(
                    plan, user.id, reason, requires_verification, metadata, now, events
                )
                staged.append((plan, trigger, created))
            self.db.flush()

            # Step 2: flip plans, unless they must wait for verification
            for plan, trigger, created in staged:
                if trigger.requires_verification and trigger.verified_at is None:
                    result.awaiting_verification_plan_ids.append(plan.id)
                    result.trigger_ids.append(trigger.id)
                    if created:
                        events.append(self._trigger_created_event(user.id, plan, trigger, actor))
                    continue

                from_state = derive_state(plan, [trigger])
                allowed, message = can_transition(from_state, PlanState.TRIGGERED)
                if not allowed:
                    logger.warning(f"Plan {plan.id}: {message}")
                    continue

                if flip_plan(self.db, plan.id, now):
                    result.triggered_plan_ids.append(plan.id)
                    result.trigger_ids.append(trigger.id)
                    if created:
                        events.append(self._trigger_created_event(user.id, plan, trigger, actor))
                    events.append(plan_triggered_event(user.id, plan.id, reason.value, now, actor))
                else:
                    # Another evaluator flipped it first; drop our record
                    logger.info(f"Plan {plan.id} was triggered concurrently, skipping")
                    if created:
                        self.db.delete(trigger)

            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(f"Activation failed for user {user.id}, will retry next run")
            raise

        result.events = events
        if result.triggered_plan_ids:
            logger.info(
                f"Triggered {len(result.triggered_plan_ids)} plan(s) for user {user.id} ({reason.value})"
            )
        if result.awaiting_verification_plan_ids:
            logger.info(
                f"{len(result.awaiting_verification_plan_ids)} plan(s) for user {user.id} "
                f"awaiting death certificate verification"
            )
        return result

    def _ensure_trigger(
        self,
        plan: InheritancePlanDB,
        user_id: str,
        reason: TriggerReason,
        requires_verification: bool,
        metadata: Dict[str, Any],
        now: datetime,
        events: List[EngineEvent],
    ) -> Tuple[InheritanceTriggerDB, bool]:
        """Reuse the plan's open trigger or stage a new one."""
        existing = self.get_open_trigger(plan.id)
        if existing is not None:
            if not (existing.requires_verification and existing.verified_at is None
                    and not requires_verification):
                return existing, False
            logger.warning(
                f"Plan {plan.id} had an unverified death report but user {user_id} "
                f"no longer uses death_certificate, replacing trigger {existing.id}"
            )
            events.append(retire_unverified_trigger(existing, now))
            # Only one open trigger per plan may exist when the new one is inserted
            self.db.flush()

        trigger = InheritanceTriggerDB(
            id=str(uuid4()),
            inheritance_plan_id=plan.id,
            user_id=user_id,
            trigger_reason=reason,
            trigger_metadata=metadata,
            status=TriggerStatus.PENDING,
            requires_verification=requires_verification,
            dispatch_attempts=0,
            triggered_at=now,
        )
        self.db.add(trigger)
        return trigger, True

    @staticmethod
    def _trigger_created_event(user_id: str, plan, trigger, actor: ActorType) -> EngineEvent:
        return EngineEvent(
            kind=EventKind.TRIGGER_CREATED,
            user_id=user_id,
            resource_type="inheritance_trigger",
            resource_id=trigger.id,
            action="create",
            risk_level=RiskLevel.MEDIUM,
            actor=actor,
            new_values={
                "inheritance_plan_id": plan.id,
                "status": TriggerStatus.PENDING.value,
                "trigger_reason": getattr(trigger.trigger_reason, "value", trigger.trigger_reason),
                "requires_verification": trigger.requires_verification,
            },
        )
