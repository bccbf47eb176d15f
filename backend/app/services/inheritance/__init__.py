"""
Inheritance Trigger & Disposition Engine

Evaluator -> Orchestrator -> Dispatcher + Granter -> Audit sink,
driven by the batch runner.

- evaluate_trigger: pure activation decision
- ActivationOrchestrator: at-most-once plan flip
- VaultDispositionDispatcher: per-category vault actions
- HeirAccessGranter: heir grants and notifications
- AuditSink: best-effort audit log and notification outbox
- InheritanceBatchRunner: scheduled entry point
"""

from .trigger_evaluator import evaluate_trigger, evaluate_user, normalize_method
from .plan_state import PlanState, derive_state, can_transition, describe
from .activation import ActivationOrchestrator
from .verification import DeathVerificationService
from .vault_disposition import VaultDispositionDispatcher, SignoffTaskQueue, DISPOSITION_ACTIONS
from .heir_access import HeirAccessGranter
from .audit_sink import AuditSink, risk_level_for
from .activity import record_activity, update_trigger_settings
from .batch_runner import InheritanceBatchRunner, ProcessingBudget
from .errors import (
    InheritanceEngineError,
    VaultEnumerationError,
    UserProcessingTimeout,
    VerificationError,
    SignoffTaskError,
    UserNotFoundError,
)

__all__ = [
    'evaluate_trigger',
    'evaluate_user',
    'normalize_method',
    'PlanState',
    'derive_state',
    'can_transition',
    'describe',
    'ActivationOrchestrator',
    'DeathVerificationService',
    'VaultDispositionDispatcher',
    'SignoffTaskQueue',
    'DISPOSITION_ACTIONS',
    'HeirAccessGranter',
    'AuditSink',
    'risk_level_for',
    'record_activity',
    'update_trigger_settings',
    'InheritanceBatchRunner',
    'ProcessingBudget',
    # Errors
    'InheritanceEngineError',
    'VaultEnumerationError',
    'UserProcessingTimeout',
    'VerificationError',
    'SignoffTaskError',
    'UserNotFoundError',
]
