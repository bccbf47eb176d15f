"""
Vault Disposition Dispatcher

AUTHORITY: SYSTEM
Once a user's plan is triggered, every vault the user owns is disposed of
according to its category:

    delete_after_death   -> delete items, then the vault
    share_after_death    -> mark shared, grant pending heir access
    handle_after_death   -> record trusted-contact notice intent
    sign_off_after_death -> queue a manual sign-off task

The category set is closed: DISPOSITION_ACTIONS must cover every
VaultCategory or the module refuses to import. Unknown category strings
found in storage are reported as failed results, never silently skipped.

Each vault is attempted independently and commits on its own. A failure
is captured in that vault's VaultActionResult; only the inability to
enumerate vaults at all raises.

Re-dispatch is safe: every action checks its marker before writing, and
deleting an absent vault is a no-op success.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models.db_models import (
    VaultDB, VaultItemDB, HeirVaultAccessDB,
    InheritancePlanDB, VaultCategory, AccessStatus, RiskLevel, ActorType, UserDB, utcnow,
)
from ...models.engine_models import EngineEvent, EventKind, VaultActionResult
from .errors import SignoffTaskError, VaultEnumerationError
from .heir_access import triggered_heir_ids
from .notifications import signoff_task_notification, trusted_contact_notification


logger = logging.getLogger(__name__)


@dataclass
class ActionOutcome:
    """What one disposition handler did."""
    skipped: bool = False
    details: Dict[str, object] = field(default_factory=dict)
    events: List[EngineEvent] = field(default_factory=list)


@dataclass(frozen=True)
class DispositionAction:
    action: str
    audit_action: str
    risk_level: RiskLevel
    handler: Callable[[Session, VaultDB, datetime], ActionOutcome]


def _vault_item_ids(vault_id: str):
    return select(VaultItemDB.id).where(VaultItemDB.vault_id == vault_id)


# =============================================================================
# DISPOSITION HANDLERS
# =============================================================================

def delete_vault(db: Session, vault: VaultDB, now: datetime) -> ActionOutcome:
    """Children first: access rows, items, then the vault itself."""
    vault_id = vault.id
    access_deleted = db.query(HeirVaultAccessDB).filter(
        or_(
            HeirVaultAccessDB.vault_id == vault_id,
            HeirVaultAccessDB.vault_item_id.in_(_vault_item_ids(vault_id)),
        )
    ).delete(synchronize_session=False)

    items_deleted = db.query(VaultItemDB).filter(
        VaultItemDB.vault_id == vault_id
    ).delete(synchronize_session=False)

    vaults_deleted = db.query(VaultDB).filter(
        VaultDB.id == vault_id
    ).delete(synchronize_session=False)

    if vault in db:
        db.expunge(vault)

    return ActionOutcome(
        skipped=(vaults_deleted == 0 and items_deleted == 0 and access_deleted == 0),
        details={"items_deleted": items_deleted, "access_rows_deleted": access_deleted},
    )


def share_vault(db: Session, vault: VaultDB, now: datetime) -> ActionOutcome:
    """Mark shared and grant pending access held by heirs of triggered plans."""
    marked = False
    if not vault.is_shared:
        vault.is_shared = True
        vault.updated_at = now
        marked = True

    granted = db.query(HeirVaultAccessDB).filter(
        or_(
            HeirVaultAccessDB.vault_id == vault.id,
            HeirVaultAccessDB.vault_item_id.in_(_vault_item_ids(vault.id)),
        ),
        HeirVaultAccessDB.access_status == AccessStatus.PENDING,
        HeirVaultAccessDB.heir_id.in_(triggered_heir_ids()),
    ).update(
        {
            HeirVaultAccessDB.access_status: AccessStatus.GRANTED,
            HeirVaultAccessDB.granted_at: now,
        },
        synchronize_session=False,
    )

    return ActionOutcome(
        skipped=(not marked and granted == 0),
        details={"access_granted": granted},
    )


def notify_trusted_contact(db: Session, vault: VaultDB, now: datetime) -> ActionOutcome:
    """Durable marker only; delivery is the audit sink's job."""
    settings = dict(vault.death_settings or {})
    if settings.get("trusted_contact_notified"):
        return ActionOutcome(skipped=True)

    settings["trusted_contact_notified"] = True
    settings["notified_at"] = now.isoformat()
    vault.death_settings = settings
    vault.updated_at = now

    owner = db.query(UserDB).filter(UserDB.id == vault.user_id).first()
    contact_email = owner.emergency_contact_email if owner else None

    event = EngineEvent(
        kind=EventKind.TRUSTED_CONTACT_NOTICE,
        user_id=vault.user_id,
        resource_type="vault",
        resource_id=vault.id,
        action="notify_trusted",
        risk_level=RiskLevel.MEDIUM,
        new_values={"trusted_contact_notified": True},
        notification=trusted_contact_notification(vault, contact_email),
    )
    return ActionOutcome(details={"contact_on_file": contact_email is not None}, events=[event])


def create_signoff_task(db: Session, vault: VaultDB, now: datetime) -> ActionOutcome:
    """Queue the vault for the human sign-off team."""
    settings = dict(vault.death_settings or {})
    if settings.get("signoff_task_created"):
        return ActionOutcome(skipped=True)

    settings["signoff_task_created"] = True
    settings["task_created_at"] = now.isoformat()
    settings["task_status"] = "pending"
    vault.death_settings = settings
    vault.updated_at = now

    event = EngineEvent(
        kind=EventKind.SIGNOFF_TASK_QUEUED,
        user_id=vault.user_id,
        resource_type="vault",
        resource_id=vault.id,
        action="create",
        risk_level=RiskLevel.MEDIUM,
        new_values={"signoff_task_created": True, "task_status": "pending"},
        notification=signoff_task_notification(vault),
    )
    return ActionOutcome(events=[event])


# =============================================================================
# DISPOSITION TABLE
# =============================================================================

DISPOSITION_ACTIONS: Dict[VaultCategory, DispositionAction] = {
    VaultCategory.DELETE_AFTER_DEATH: DispositionAction(
        "delete", "delete", RiskLevel.HIGH, delete_vault
    ),
    VaultCategory.SHARE_AFTER_DEATH: DispositionAction(
        "share", "vault_share", RiskLevel.HIGH, share_vault
    ),
    VaultCategory.HANDLE_AFTER_DEATH: DispositionAction(
        "notify_trusted", "update", RiskLevel.MEDIUM, notify_trusted_contact
    ),
    VaultCategory.SIGN_OFF_AFTER_DEATH: DispositionAction(
        "create_signoff_task", "update", RiskLevel.MEDIUM, create_signoff_task
    ),
}

_missing_categories = set(VaultCategory) - set(DISPOSITION_ACTIONS)
if _missing_categories:
    raise RuntimeError(
        f"No disposition action for categories: {sorted(c.value for c in _missing_categories)}"
    )


# =============================================================================
# DISPATCHER
# =============================================================================

class VaultDispositionDispatcher:
    """
    Runs the category action for every vault of a triggered user.

    Usage:
        dispatcher = VaultDispositionDispatcher(db)
        results, events = dispatcher.dispatch_user(user_id)
    """

    def __init__(self, db_session: Session):
        """Initialize with database session."""
        self.db = db_session

    def list_vaults(self, user_id: str) -> List[VaultDB]:
        try:
            return self.db.query(VaultDB).filter(
                VaultDB.user_id == user_id
            ).order_by(VaultDB.created_at).all()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise VaultEnumerationError(user_id, e) from e

    def dispatch_user(
        self,
        user_id: str,
        now: Optional[datetime] = None,
        checkpoint: Optional[Callable[[str], None]] = None,
    ) -> Tuple[List[VaultActionResult], List[EngineEvent]]:
        """
        Dispose of every vault the user owns.

        Returns (per-vault results, events for the audit sink).
        Raises VaultEnumerationError only if the vaults cannot be listed.
        """
        now = now or utcnow()
        vaults = self.list_vaults(user_id)
        logger.info(f"Dispatching dispositions for {len(vaults)} vault(s) of user {user_id}")

        results: List[VaultActionResult] = []
        events: List[EngineEvent] = []
        for vault in vaults:
            if checkpoint is not None:
                checkpoint("vault disposition")
            result, vault_events = self.dispatch_vault(vault, now)
            results.append(result)
            events.extend(vault_events)

        failures = [r for r in results if not r.success]
        if failures:
            logger.warning(f"{len(failures)} of {len(results)} vault action(s) failed for user {user_id}")
        return results, events

    def dispatch_vault(
        self, vault: VaultDB, now: Optional[datetime] = None
    ) -> Tuple[VaultActionResult, List[EngineEvent]]:
        """Run one vault's action in its own transaction."""
        now = now or utcnow()
        vault_id = vault.id
        user_id = vault.user_id
        raw_category = vault.category

        try:
            category = VaultCategory(raw_category)
        except ValueError:
            logger.error(f"Vault {vault_id} has unknown category '{raw_category}'")
            result = VaultActionResult(
                vault_id=vault_id,
                category=str(raw_category),
                action="unknown",
                success=False,
                error="Unknown vault category",
                timestamp=now,
            )
            return result, [self._result_event(user_id, result, RiskLevel.HIGH, "update")]

        action = DISPOSITION_ACTIONS[category]
        try:
            outcome = action.handler(self.db, vault, now)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Vault {vault_id} {action.action} failed: {e}")
            result = VaultActionResult(
                vault_id=vault_id,
                category=category.value,
                action=action.action,
                success=False,
                error=str(e),
                timestamp=now,
            )
            return result, [self._result_event(user_id, result, RiskLevel.HIGH, action.audit_action)]

        result = VaultActionResult(
            vault_id=vault_id,
            category=category.value,
            action=action.action,
            success=True,
            skipped=outcome.skipped,
            timestamp=now,
        )
        if outcome.skipped:
            logger.debug(f"Vault {vault_id} {action.action} already applied")
            return result, []

        logger.info(f"Vault {vault_id} {action.action} complete")
        events = [self._result_event(user_id, result, action.risk_level, action.audit_action, outcome.details)]
        events.extend(outcome.events)
        return result, events

    def dispatch_vault_id(self, vault_id: str, now: Optional[datetime] = None) -> Tuple[VaultActionResult, List[EngineEvent]]:
        """Re-dispatch a single vault; an absent vault is a no-op success."""
        now = now or utcnow()
        vault = self.db.query(VaultDB).filter(VaultDB.id == vault_id).first()
        if vault is None:
            return VaultActionResult(
                vault_id=vault_id,
                category="unknown",
                action="already_absent",
                success=True,
                skipped=True,
                timestamp=now,
            ), []
        return self.dispatch_vault(vault, now)

    @staticmethod
    def _result_event(
        user_id: str,
        result: VaultActionResult,
        risk_level: RiskLevel,
        audit_action: str,
        details: Optional[Dict[str, object]] = None,
    ) -> EngineEvent:
        return EngineEvent(
            kind=EventKind.VAULT_ACTION,
            user_id=user_id,
            resource_type="vault",
            resource_id=result.vault_id,
            action=audit_action,
            risk_level=risk_level,
            new_values=result.to_dict(),
            metadata=dict(details or {}),
        )

    def owner_has_triggered_plan(self, user_id: str) -> bool:
        return self.db.query(InheritancePlanDB.id).filter(
            InheritancePlanDB.user_id == user_id,
            InheritancePlanDB.is_triggered.is_(True),
        ).first() is not None


# =============================================================================
# SIGN-OFF OPERATOR QUEUE
# =============================================================================

class SignoffTaskQueue:
    """Vaults waiting for manual handling by the sign-off team."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def list_pending(self) -> List[VaultDB]:
        return self.db.query(VaultDB).filter(
            VaultDB.category == VaultCategory.SIGN_OFF_AFTER_DEATH.value,
            VaultDB.death_settings.isnot(None),
            VaultDB.death_settings["task_status"].as_string() == "pending",
        ).order_by(VaultDB.updated_at).all()

    def complete(self, vault_id: str, completed_by: str, now: Optional[datetime] = None) -> EngineEvent:
        """Mark a queued task done. Raises SignoffTaskError if there is none."""
        now = now or utcnow()
        vault = self.db.query(VaultDB).filter(VaultDB.id == vault_id).first()
        if vault is None:
            raise SignoffTaskError(f"Vault {vault_id} not found", not_found=True)

        settings = dict(vault.death_settings or {})
        status = settings.get("task_status")
        if status != "pending":
            raise SignoffTaskError(f"Vault {vault_id} has no pending sign-off task (status: {status})")

        settings["task_status"] = "completed"
        settings["task_completed_at"] = now.isoformat()
        settings["task_completed_by"] = completed_by
        vault.death_settings = settings
        vault.updated_at = now
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

        logger.info(f"Sign-off task for vault {vault_id} completed by {completed_by}")
        return EngineEvent(
            kind=EventKind.SIGNOFF_TASK_COMPLETED,
            user_id=vault.user_id,
            resource_type="vault",
            resource_id=vault_id,
            action="update",
            risk_level=RiskLevel.MEDIUM,
            actor=ActorType.OPERATOR,
            old_values={"task_status": "pending"},
            new_values={"task_status": "completed", "task_completed_by": completed_by},
        )
