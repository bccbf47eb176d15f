"""Sign-Off Inheritance Engine - Data Models"""
from .db_models import (
    # Enums
    TriggerMethod, PlanType, TriggerReason, TriggerStatus, AccessStatus, AccessLevel,
    VaultCategory, HeirNotificationStatus, RiskLevel, ActorType, NotificationStatus,
    # Tables
    UserDB, InheritancePlanDB, InheritanceTriggerDB, HeirDB, HeirVaultAccessDB,
    VaultDB, VaultItemDB, AuditLogDB, NotificationDB,
    utcnow,
)
from .engine_models import (
    TriggerDecision, VaultActionResult, EventKind, Notification, EngineEvent,
    ActivationResult, UserRunResult,
)

__all__ = [
    "TriggerMethod", "PlanType", "TriggerReason", "TriggerStatus", "AccessStatus", "AccessLevel",
    "VaultCategory", "HeirNotificationStatus", "RiskLevel", "ActorType", "NotificationStatus",
    "UserDB", "InheritancePlanDB", "InheritanceTriggerDB", "HeirDB", "HeirVaultAccessDB",
    "VaultDB", "VaultItemDB", "AuditLogDB", "NotificationDB",
    "utcnow",
    "TriggerDecision", "VaultActionResult", "EventKind", "Notification", "EngineEvent",
    "ActivationResult", "UserRunResult",
]
