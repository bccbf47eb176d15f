"""
Sign-Off Inheritance Engine - In-Flight Value Models

Ephemeral values passed between engine components. None of these are
persisted directly: results land in vault death_settings, trigger rows
and the audit log.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .db_models import ActorType, RiskLevel, utcnow


# =============================================================================
# EVALUATOR OUTPUT
# =============================================================================

@dataclass(frozen=True)
class TriggerDecision:
    """Outcome of evaluating one user's trigger configuration."""
    should_trigger: bool
    reason: str
    method: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# DISPATCHER OUTPUT
# =============================================================================

@dataclass
class VaultActionResult:
    """One disposition attempt for one vault."""
    vault_id: str
    category: str
    action: str
    success: bool
    error: Optional[str] = None
    skipped: bool = False  # Marker already present, nothing written
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vault_id": self.vault_id,
            "category": self.category,
            "action": self.action,
            "success": self.success,
            "error": self.error,
            "skipped": self.skipped,
            "timestamp": self.timestamp.isoformat(),
        }


# =============================================================================
# EFFECT EVENTS
# =============================================================================

class EventKind(str, Enum):
    """Transitions recorded by the audit sink."""
    TRIGGER_CREATED = "trigger_created"
    PLAN_TRIGGERED = "plan_triggered"
    PLAN_DISPOSED = "plan_disposed"
    TRIGGER_VERIFIED = "trigger_verified"
    TRIGGER_CANCELLED = "trigger_cancelled"
    TRIGGER_FAILED = "trigger_failed"
    VAULT_ACTION = "vault_action"
    ACCESS_GRANTED = "access_granted"
    HEIR_NOTIFIED = "heir_notified"
    TRUSTED_CONTACT_NOTICE = "trusted_contact_notice"
    SIGNOFF_TASK_QUEUED = "signoff_task_queued"
    SIGNOFF_TASK_COMPLETED = "signoff_task_completed"


@dataclass
class Notification:
    """A message the sink should try to deliver."""
    template: str
    recipient: Optional[str]
    subject: str
    body: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class EngineEvent:
    """
    One committed state change, handed to the audit sink after the
    transactional core has finished. Carries an optional notification.
    """
    kind: EventKind
    user_id: str
    resource_type: str
    resource_id: Optional[str]
    action: str
    risk_level: RiskLevel = RiskLevel.LOW
    actor: ActorType = ActorType.SYSTEM
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    notification: Optional[Notification] = None


# =============================================================================
# RUN RESULTS
# =============================================================================

@dataclass
class ActivationResult:
    """What the orchestrator did for one user."""
    user_id: str
    reason: str
    triggered_plan_ids: List[str] = field(default_factory=list)
    awaiting_verification_plan_ids: List[str] = field(default_factory=list)
    trigger_ids: List[str] = field(default_factory=list)
    events: List[EngineEvent] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not self.triggered_plan_ids and not self.awaiting_verification_plan_ids


@dataclass
class UserRunResult:
    """Per-user line of the batch summary."""
    user_id: str
    decision: Optional[TriggerDecision] = None
    activation: Optional[ActivationResult] = None
    vault_results: List[VaultActionResult] = field(default_factory=list)
    grants: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "reason": self.decision.reason if self.decision else None,
            "triggered_plans": self.activation.triggered_plan_ids if self.activation else [],
            "awaiting_verification_plans": (
                self.activation.awaiting_verification_plan_ids if self.activation else []
            ),
            "vault_results": [r.to_dict() for r in self.vault_results],
            "grants": self.grants,
            "error": self.error,
        }
