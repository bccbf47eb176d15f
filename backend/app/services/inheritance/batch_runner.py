"""
Inheritance Batch Runner

AUTHORITY: SYSTEM
Periodic entry point, invoked by the scheduler endpoint (cron). Each run:

1. Resume pass: re-dispatch triggers left pending by earlier runs
   (plan flipped, dispatch incomplete).
2. Evaluate every active user with a trigger method, sequentially:
   Evaluator -> Orchestrator -> Dispatcher -> Granter -> Audit sink.
3. Deliver heir notifications whose delay has elapsed.

Failure policy:
- Storage errors or a blown time budget abort that user only; the next
  run retries from durable state.
- Vault failures keep the trigger pending. After MAX_DISPATCH_ATTEMPTS
  the trigger is marked failed and a critical audit entry is written.
- The audit sink never raises.

Every step keys off durable state, so a run with nothing new to do
writes nothing.
"""
import logging
import os
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models.db_models import (
    UserDB, InheritancePlanDB, InheritanceTriggerDB, TriggerMethod, TriggerReason,
    TriggerStatus, ActorType, RiskLevel, utcnow,
)
from ...models.engine_models import (
    ActivationResult, EngineEvent, EventKind, UserRunResult, VaultActionResult,
)
from .activation import ActivationOrchestrator
from .audit_sink import AuditSink
from .errors import (
    InheritanceEngineError, UserNotFoundError, UserProcessingTimeout, VerificationError,
)
from .heir_access import HeirAccessGranter
from .plan_state import PlanState
from .trigger_evaluator import evaluate_user, normalize_method
from .vault_disposition import VaultDispositionDispatcher
from .verification import DeathVerificationService


logger = logging.getLogger(__name__)

USER_TIMEOUT_SECONDS = float(os.getenv("TRIGGER_USER_TIMEOUT_SECONDS", "30"))
MAX_DISPATCH_ATTEMPTS = int(os.getenv("TRIGGER_MAX_DISPATCH_ATTEMPTS", "5"))


class ProcessingBudget:
    """
    Cooperative per-user time limit.

    Called at each stage boundary; raises UserProcessingTimeout once the
    budget is spent so one slow user cannot stall the rest of the run.
    """

    def __init__(self, user_id: str, seconds: float = USER_TIMEOUT_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.user_id = user_id
        self.seconds = seconds
        self.clock = clock
        self.started = clock()

    def __call__(self, stage: str) -> None:
        if self.clock() - self.started > self.seconds:
            raise UserProcessingTimeout(self.user_id, self.seconds, stage)


@dataclass
class DispatchOutcome:
    """Result of dispatching and granting for one user's triggered plans."""
    vault_results: List[VaultActionResult] = field(default_factory=list)
    grants: int = 0
    completed_trigger_ids: List[str] = field(default_factory=list)
    events: List[EngineEvent] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return all(r.success for r in self.vault_results)


class InheritanceBatchRunner:
    """
    Runs the engine over all candidate users.

    Usage:
        runner = InheritanceBatchRunner(db)
        summary = runner.run()
    """

    def __init__(
        self,
        db_session: Session,
        sink: Optional[AuditSink] = None,
        user_timeout_seconds: float = USER_TIMEOUT_SECONDS,
        max_dispatch_attempts: int = MAX_DISPATCH_ATTEMPTS,
    ):
        """Initialize with database session."""
        self.db = db_session
        self.sink = sink or AuditSink(db_session)
        self.user_timeout_seconds = user_timeout_seconds
        self.max_dispatch_attempts = max_dispatch_attempts
        self.orchestrator = ActivationOrchestrator(db_session)
        self.dispatcher = VaultDispositionDispatcher(db_session)
        self.granter = HeirAccessGranter(db_session)
        self.verification = DeathVerificationService(db_session)

    # =========================================================================
    # SCHEDULED RUN
    # =========================================================================

    def get_candidate_user_ids(self) -> List[str]:
        rows = self.db.query(UserDB.id).filter(
            UserDB.is_active.is_(True),
            UserDB.trigger_method.isnot(None),
        ).order_by(UserDB.created_at).all()
        return [row[0] for row in rows]

    def run(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Run the engine once.

        Returns {success, message, triggeredCount, totalUsers, timestamp, ...}.
        """
        now = now or utcnow()
        logger.info(f"Inheritance trigger run starting at {now.isoformat()}")

        try:
            resumed = self.resume_pending_dispatch(now)
            user_ids = self.get_candidate_user_ids()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("Inheritance trigger run could not enumerate work")
            return {
                "success": False,
                "message": f"Run aborted: {e}",
                "triggeredCount": 0,
                "totalUsers": 0,
                "timestamp": now.isoformat(),
            }

        results: List[UserRunResult] = []
        for user_id in user_ids:
            results.append(self.process_user(user_id, now))

        notifications_delivered = 0
        try:
            due_events = self.granter.deliver_due_notifications(now)
            self.sink.record(due_events)
            notifications_delivered = len(due_events)
        except SQLAlchemyError as e:
            logger.error(f"Delayed heir notifications skipped this run: {e}")
        except Exception:
            self.db.rollback()
            logger.exception("Delayed heir notifications failed this run")

        triggered = [r for r in results if r.activation and r.activation.triggered_plan_ids]
        errors = [{"user_id": r.user_id, "error": r.error} for r in results if r.error]
        errors.extend({"user_id": r["user_id"], "error": r["error"]} for r in resumed if r.get("error"))

        message = f"Processed {len(user_ids)} users, triggered {len(triggered)}"
        if errors:
            message += f", {len(errors)} error(s)"
        logger.info(f"Inheritance trigger run finished: {message}")

        return {
            "success": True,
            "message": message,
            "triggeredCount": len(triggered),
            "totalUsers": len(user_ids),
            "timestamp": now.isoformat(),
            "resumedCount": len(resumed),
            "notificationsDelivered": notifications_delivered,
            "errors": errors,
            "details": {
                "users": [r.to_dict() for r in results if r.error or (r.activation and not r.activation.is_noop)],
                "resumed": resumed,
            },
        }

    def process_user(self, user_id: str, now: Optional[datetime] = None) -> UserRunResult:
        """Evaluate one user and carry a met condition through to disposition."""
        now = now or utcnow()
        result = UserRunResult(user_id=user_id)
        budget = ProcessingBudget(user_id, self.user_timeout_seconds)
        events: List[EngineEvent] = []

        try:
            user = self.db.query(UserDB).filter(UserDB.id == user_id).first()
            if user is None:
                return result

            decision = evaluate_user(user, now)
            result.decision = decision
            if not decision.should_trigger:
                logger.debug(f"User {user_id} not triggered: {decision.reason}")
                return result

            budget("activation")
            activation = self.orchestrator.activate(
                user, TriggerReason(decision.reason), now, decision_detail=decision.detail
            )
            result.activation = activation
            events.extend(activation.events)

            if activation.triggered_plan_ids:
                outcome = self.complete_dispatch(user_id, activation.triggered_plan_ids, now, budget)
                result.vault_results = outcome.vault_results
                result.grants = outcome.grants
                events.extend(outcome.events)

        except (InheritanceEngineError, SQLAlchemyError) as e:
            self.db.rollback()
            logger.error(f"Aborted processing for user {user_id}, will retry next run: {e}")
            result.error = str(e)
        except Exception as e:
            self.db.rollback()
            logger.exception(f"Unexpected error processing user {user_id}, continuing with next user")
            result.error = f"{type(e).__name__}: {e}"
        finally:
            self.sink.record(events)

        return result

    # =========================================================================
    # DISPATCH + COMPLETION
    # =========================================================================

    def complete_dispatch(
        self,
        user_id: str,
        plan_ids: List[str],
        now: Optional[datetime] = None,
        checkpoint: Optional[Callable[[str], None]] = None,
    ) -> DispatchOutcome:
        """
        Dispose of the user's vaults, grant heirs of the given triggered
        plans, then close their open triggers.

        Vaults go first so access rows of deleted vaults are gone before
        grants are issued.
        """
        now = now or utcnow()
        checkpoint = checkpoint or ProcessingBudget(user_id, self.user_timeout_seconds)
        outcome = DispatchOutcome()

        checkpoint("vault disposition")
        vault_results, vault_events = self.dispatcher.dispatch_user(user_id, now, checkpoint)
        outcome.vault_results = vault_results
        outcome.events.extend(vault_events)

        plans = self.db.query(InheritancePlanDB).filter(
            InheritancePlanDB.id.in_(plan_ids),
            InheritancePlanDB.is_triggered.is_(True),
        ).all()
        for plan in plans:
            checkpoint("heir access")
            grants, grant_events = self.granter.grant_for_plan(plan, now)
            outcome.grants += grants
            outcome.events.extend(grant_events)

        failures = [r for r in vault_results if not r.success]
        last_error = "; ".join(f"{r.vault_id}: {r.error}" for r in failures) or None
        for plan in plans:
            event = self._finish_trigger(user_id, plan, last_error, now)
            if event is not None:
                outcome.events.append(event)
                if event.kind == EventKind.PLAN_DISPOSED:
                    outcome.completed_trigger_ids.append(event.metadata["trigger_id"])

        return outcome

    def _finish_trigger(
        self, user_id: str, plan: InheritancePlanDB, last_error: Optional[str], now: datetime
    ) -> Optional[EngineEvent]:
        """Complete the plan's open trigger, or count a failed attempt."""
        plan_id = plan.id
        trigger = self.orchestrator.get_open_trigger(plan_id)
        if trigger is None:
            return None
        trigger_id = trigger.id

        try:
            if last_error is None:
                trigger.status = TriggerStatus.COMPLETED
                trigger.completed_at = now
                trigger.last_error = None
                if plan.disposed_at is None:
                    plan.disposed_at = now
                self.db.commit()
                logger.info(f"Plan {plan_id} disposed, trigger {trigger_id} completed")
                return EngineEvent(
                    kind=EventKind.PLAN_DISPOSED,
                    user_id=user_id,
                    resource_type="inheritance_plan",
                    resource_id=plan_id,
                    action="update",
                    risk_level=RiskLevel.MEDIUM,
                    old_values={"state": PlanState.TRIGGERED.value},
                    new_values={"state": PlanState.DISPOSED.value, "disposed_at": now.isoformat()},
                    metadata={"trigger_id": trigger_id},
                )

            trigger.dispatch_attempts = (trigger.dispatch_attempts or 0) + 1
            trigger.last_error = last_error
            attempts = trigger.dispatch_attempts
            if attempts < self.max_dispatch_attempts:
                self.db.commit()
                logger.warning(
                    f"Trigger {trigger_id} dispatch attempt {attempts} incomplete, will resume next run"
                )
                return None

            trigger.status = TriggerStatus.FAILED
            self.db.commit()
            logger.error(f"Trigger {trigger_id} failed after {attempts} dispatch attempts: {last_error}")
            return EngineEvent(
                kind=EventKind.TRIGGER_FAILED,
                user_id=user_id,
                resource_type="inheritance_trigger",
                resource_id=trigger_id,
                action="trigger_failed",
                risk_level=RiskLevel.CRITICAL,
                old_values={"status": TriggerStatus.PENDING.value},
                new_values={"status": TriggerStatus.FAILED.value, "dispatch_attempts": attempts},
                metadata={"inheritance_plan_id": plan_id, "last_error": last_error},
            )
        except SQLAlchemyError:
            self.db.rollback()
            raise

    def get_pending_dispatch(self) -> List[InheritanceTriggerDB]:
        """Open triggers whose plan already flipped: dispatch still owed."""
        return self.db.query(InheritanceTriggerDB).join(
            InheritancePlanDB,
            InheritancePlanDB.id == InheritanceTriggerDB.inheritance_plan_id,
        ).filter(
            InheritanceTriggerDB.status == TriggerStatus.PENDING,
            InheritancePlanDB.is_triggered.is_(True),
        ).order_by(InheritanceTriggerDB.triggered_at).all()

    def resume_pending_dispatch(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Re-dispatch every user with triggers left pending by an earlier run."""
        now = now or utcnow()
        by_user: "OrderedDict[str, List[str]]" = OrderedDict()
        for trigger in self.get_pending_dispatch():
            by_user.setdefault(trigger.user_id, []).append(trigger.inheritance_plan_id)

        resumed = []
        for user_id, plan_ids in by_user.items():
            logger.info(f"Resuming dispatch for user {user_id} ({len(plan_ids)} plan(s))")
            entry: Dict[str, Any] = {"user_id": user_id, "plan_ids": plan_ids}
            events: List[EngineEvent] = []
            try:
                outcome = self.complete_dispatch(user_id, plan_ids, now)
                events = outcome.events
                entry["completed_trigger_ids"] = outcome.completed_trigger_ids
                entry["vault_results"] = [r.to_dict() for r in outcome.vault_results]
            except (InheritanceEngineError, SQLAlchemyError) as e:
                self.db.rollback()
                logger.error(f"Resume failed for user {user_id}: {e}")
                entry["error"] = str(e)
            except Exception as e:
                self.db.rollback()
                logger.exception(f"Unexpected error resuming user {user_id}, continuing with next user")
                entry["error"] = f"{type(e).__name__}: {e}"
            finally:
                self.sink.record(events)
            resumed.append(entry)
        return resumed

    # =========================================================================
    # OPERATOR / EXTERNAL SIGNALS
    # =========================================================================

    def _get_user(self, user_id: str) -> UserDB:
        user = self.db.query(UserDB).filter(UserDB.id == user_id).first()
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    def run_manual_trigger(
        self, user_id: str, actor: ActorType = ActorType.OPERATOR, now: Optional[datetime] = None
    ) -> UserRunResult:
        """
        Activate a user's plans without consulting the evaluator.

        death_certificate users still stop at awaiting_verification.
        """
        now = now or utcnow()
        user = self._get_user(user_id)
        logger.info(f"Manual trigger requested for user {user_id} by {actor.value}")
        return self._activate_and_dispatch(user, TriggerReason.MANUAL, actor, now)

    def report_death(self, user_id: str, now: Optional[datetime] = None) -> UserRunResult:
        """Record an observed death claim; plans wait for verification."""
        now = now or utcnow()
        user = self._get_user(user_id)
        if normalize_method(user.trigger_method) != TriggerMethod.DEATH_CERTIFICATE:
            raise VerificationError(
                f"User {user_id} trigger method is {user.trigger_method}, not death_certificate"
            )
        return self._activate_and_dispatch(user, TriggerReason.DEATH_CERTIFICATE, ActorType.OPERATOR, now)

    def verify_death(
        self,
        user_id: str,
        verified_by: str,
        evidence_reference: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> UserRunResult:
        """Apply the external verification signal, then dispatch."""
        now = now or utcnow()
        activation = self.verification.verify(user_id, verified_by, evidence_reference, now)
        return self._dispatch_after_activation(user_id, activation, now)

    def cancel_trigger(self, trigger_id: str, cancelled_by: str, now: Optional[datetime] = None) -> EngineEvent:
        event = self.verification.cancel(trigger_id, cancelled_by, now)
        self.sink.record([event])
        return event

    def _activate_and_dispatch(
        self, user: UserDB, reason: TriggerReason, actor: ActorType, now: datetime
    ) -> UserRunResult:
        user_id = user.id
        activation = self.orchestrator.activate(user, reason, now, actor=actor)
        return self._dispatch_after_activation(user_id, activation, now)

    def _dispatch_after_activation(
        self, user_id: str, activation: ActivationResult, now: datetime
    ) -> UserRunResult:
        result = UserRunResult(user_id=user_id, activation=activation)
        events = list(activation.events)
        try:
            if activation.triggered_plan_ids:
                outcome = self.complete_dispatch(user_id, activation.triggered_plan_ids, now)
                result.vault_results = outcome.vault_results
                result.grants = outcome.grants
                events.extend(outcome.events)
        except (InheritanceEngineError, SQLAlchemyError) as e:
            self.db.rollback()
            logger.error(f"Dispatch for user {user_id} incomplete, resume pass will retry: {e}")
            result.error = str(e)
        finally:
            self.sink.record(events)
        return result
