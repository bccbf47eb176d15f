"""
Sign-Off Inheritance Engine - SQLAlchemy ORM Models
Relational storage for users, inheritance plans, heirs, vaults and the audit trail
"""
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, DateTime, Text, JSON, ForeignKey, Boolean, Index,
    Enum as SQLEnum, text,
)
from sqlalchemy.orm import relationship
from ..database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_column(enum_cls):
    """Store enum values (not names) as plain VARCHAR."""
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


# =============================================================================
# ENUMS
# =============================================================================

class TriggerMethod(str, Enum):
    """Condition class that decides when a user's plans activate."""
    INACTIVITY = "inactivity"
    DEATH_CERTIFICATE = "death_certificate"
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class PlanType(str, Enum):
    FULL_ACCESS = "full_access"
    PARTIAL_ACCESS = "partial_access"
    VIEW_ONLY = "view_only"
    DESTROY = "destroy"


class TriggerReason(str, Enum):
    """Why an activation event was created."""
    INACTIVITY = "inactivity"
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    DEATH_CERTIFICATE = "death_certificate"


class TriggerStatus(str, Enum):
    """Status of an InheritanceTrigger record."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class AccessStatus(str, Enum):
    """Status of a heir's access to a vault or vault item."""
    PENDING = "pending"
    GRANTED = "granted"
    REVOKED = "revoked"


class AccessLevel(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    VIEW = "view"


class VaultCategory(str, Enum):
    """Disposition category - closed set, one action per member."""
    DELETE_AFTER_DEATH = "delete_after_death"
    SHARE_AFTER_DEATH = "share_after_death"
    HANDLE_AFTER_DEATH = "handle_after_death"
    SIGN_OFF_AFTER_DEATH = "sign_off_after_death"


class HeirNotificationStatus(str, Enum):
    NOT_NOTIFIED = "not_notified"
    PENDING_VERIFICATION = "pending_verification"
    VERIFIED = "verified"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ActorType(str, Enum):
    """Actor types for the audit trail."""
    USER = "user"
    SYSTEM = "system"
    OPERATOR = "operator"


class NotificationStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"


# =============================================================================
# ACCOUNT
# =============================================================================

class UserDB(Base):
    """
    User account. Owned by the account subsystem; the engine reads it and
    only writes last_activity and the trigger configuration fields.
    """
    __tablename__ = "users"

    id = Column(String(36), primary_key=True)  # UUID
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(255), nullable=True)
    password_hash = Column(String(255), nullable=True)
    role = Column(String(20), default="user")  # user, admin
    public_key = Column(Text, nullable=True)  # Reference only, never used for crypto here

    # Trusted contact for handle_after_death vaults
    emergency_contact_email = Column(String(255), nullable=True)
    emergency_contact_phone = Column(String(50), nullable=True)

    # ==========================================================================
    # TRIGGER CONFIGURATION
    # ==========================================================================
    # Stored as text so legacy spellings and bad values surface as data errors
    trigger_method = Column(String(50), nullable=True, index=True)
    trigger_settings = Column(JSON, nullable=True, default=dict)  # {"inactivity_days": 30}
    scheduled_date = Column(DateTime, nullable=True)
    last_activity = Column(DateTime, nullable=True)

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    plans = relationship("InheritancePlanDB", back_populates="user", cascade="all, delete-orphan")
    vaults = relationship("VaultDB", back_populates="user", cascade="all, delete-orphan")


# =============================================================================
# INHERITANCE
# =============================================================================

class InheritancePlanDB(Base):
    """
    A user's inheritance plan.
    is_triggered is monotonic: false -> true, never reverts.
    """
    __tablename__ = "inheritance_plans"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    plan_name = Column(String(255), nullable=True)
    plan_type = Column(_enum_column(PlanType), default=PlanType.FULL_ACCESS)
    instructions_encrypted = Column(Text, nullable=True)  # Opaque ciphertext

    is_active = Column(Boolean, default=True)
    is_triggered = Column(Boolean, default=False, nullable=False)
    triggered_at = Column(DateTime, nullable=True)
    disposed_at = Column(DateTime, nullable=True)  # Set once dispatch and grants complete

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    user = relationship("UserDB", back_populates="plans")
    heirs = relationship("HeirDB", back_populates="plan")
    triggers = relationship("InheritanceTriggerDB", back_populates="plan", order_by="InheritanceTriggerDB.triggered_at")


class InheritanceTriggerDB(Base):
    """
    Append-only activation record, one per (plan, activation event).
    A completed trigger is terminal for its plan.
    """
    __tablename__ = "inheritance_triggers"

    id = Column(String(36), primary_key=True)  # UUID
    inheritance_plan_id = Column(String(36), ForeignKey("inheritance_plans.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    trigger_reason = Column(_enum_column(TriggerReason), nullable=False)
    trigger_metadata = Column(JSON, nullable=True)  # Method + settings snapshot at activation
    status = Column(_enum_column(TriggerStatus), default=TriggerStatus.PENDING, nullable=False)

    # death_certificate only: never auto-completed
    requires_verification = Column(Boolean, default=False, nullable=False)
    verified_at = Column(DateTime, nullable=True)
    verified_by = Column(String(255), nullable=True)

    # Resume bookkeeping
    dispatch_attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)

    triggered_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    # Relationships
    plan = relationship("InheritancePlanDB", back_populates="triggers")

    __table_args__ = (
        # At most one open activation per plan, even across overlapping runs
        Index(
            "uq_open_trigger_per_plan",
            "inheritance_plan_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )


class HeirDB(Base):
    """Designated recipient of post-activation access."""
    __tablename__ = "heirs"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    inheritance_plan_id = Column(String(36), ForeignKey("inheritance_plans.id", ondelete="SET NULL"), nullable=True, index=True)

    # Encrypted by the client; passed through opaquely
    full_name_encrypted = Column(Text, nullable=True)
    email_encrypted = Column(Text, nullable=True)

    access_level = Column(_enum_column(AccessLevel), default=AccessLevel.VIEW)
    notify_on_activation = Column(Boolean, default=True)
    notification_delay_days = Column(Integer, default=0)
    notified_at = Column(DateTime, nullable=True)
    notification_status = Column(
        _enum_column(HeirNotificationStatus), default=HeirNotificationStatus.NOT_NOTIFIED
    )

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    plan = relationship("InheritancePlanDB", back_populates="heirs")
    vault_access = relationship("HeirVaultAccessDB", back_populates="heir", cascade="all, delete-orphan")


class HeirVaultAccessDB(Base):
    """
    Links a heir to a vault or a single vault item.
    'granted' is only reachable once the heir's plan is triggered.
    """
    __tablename__ = "heir_vault_access"

    id = Column(String(36), primary_key=True)  # UUID
    heir_id = Column(String(36), ForeignKey("heirs.id", ondelete="CASCADE"), nullable=False, index=True)
    vault_id = Column(String(36), ForeignKey("vaults.id", ondelete="CASCADE"), nullable=True, index=True)
    vault_item_id = Column(String(36), ForeignKey("vault_items.id", ondelete="CASCADE"), nullable=True, index=True)

    can_view = Column(Boolean, default=True)
    can_export = Column(Boolean, default=False)
    can_edit = Column(Boolean, default=False)
    reencrypted_key = Column(Text, nullable=True)  # Produced by the encryption subsystem

    access_status = Column(_enum_column(AccessStatus), default=AccessStatus.PENDING, nullable=False)
    granted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    heir = relationship("HeirDB", back_populates="vault_access")


# =============================================================================
# VAULTS
# =============================================================================

class VaultDB(Base):
    """Vault of encrypted items; category decides its disposition."""
    __tablename__ = "vaults"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    name = Column(String(255), nullable=True)
    category = Column(String(50), nullable=False)  # See VaultCategory
    is_shared = Column(Boolean, default=False)

    # Disposition progress markers, e.g. {"signoff_task_created": true}
    death_settings = Column(JSON, nullable=True, default=dict)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    user = relationship("UserDB", back_populates="vaults")


class VaultItemDB(Base):
    """Single encrypted item inside a vault."""
    __tablename__ = "vault_items"

    id = Column(String(36), primary_key=True)  # UUID
    vault_id = Column(String(36), ForeignKey("vaults.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    item_type = Column(String(50), default="other")
    title_encrypted = Column(Text, nullable=True)
    storage_path = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=utcnow)


# =============================================================================
# AUDIT + NOTIFICATIONS
# =============================================================================

class AuditLogDB(Base):
    """
    Append-only audit trail of every engine transition.
    Written best-effort; never modified after insert.
    """
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), nullable=False, index=True)

    action = Column(String(50), nullable=False)  # inheritance_trigger, vault_share, delete, ...
    resource_type = Column(String(50), nullable=False)  # inheritance_plan, vault, heir, ...
    resource_id = Column(String(36), nullable=True, index=True)
    actor = Column(_enum_column(ActorType), default=ActorType.SYSTEM, nullable=False)
    risk_level = Column(_enum_column(RiskLevel), default=RiskLevel.LOW, nullable=False)

    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    event_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)


class NotificationDB(Base):
    """Outbox record of every notification attempt."""
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), nullable=False, index=True)  # Owner whose plan caused it

    channel = Column(String(30), nullable=False)  # log, webhook
    template = Column(String(50), nullable=False)  # heir_activation, trusted_contact, signoff_task
    recipient = Column(Text, nullable=True)  # May be ciphertext; relay resolves it
    resource_type = Column(String(50), nullable=True)
    resource_id = Column(String(36), nullable=True)
    payload = Column(JSON, nullable=True)

    status = Column(_enum_column(NotificationStatus), nullable=False)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
