"""
Scheduler API Routes

Internal endpoints for system-automatic tasks and operator signals.
The periodic trigger check, the death-certificate verification hooks,
the resume queue and the sign-off operator queue.

All routes require the X-Internal-Key header.
"""
import os
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Header
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.db_models import VaultDB, utcnow
from ..services.inheritance import (
    InheritanceBatchRunner,
    SignoffTaskQueue,
    VaultDispositionDispatcher,
    AuditSink,
    InheritanceEngineError,
    SignoffTaskError,
    UserNotFoundError,
    VerificationError,
)


router = APIRouter(prefix="/internal", tags=["scheduler"])


# =============================================================================
# INTERNAL API KEY VALIDATION
# =============================================================================

INTERNAL_API_KEY = os.getenv("INTERNAL_API_KEY", "scheduler-internal-key-change-in-production")


async def verify_internal_key(x_internal_key: str = Header(...)):
    """Verify internal API key for scheduler endpoints."""
    if x_internal_key != INTERNAL_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True


def engine_http_error(error: InheritanceEngineError) -> HTTPException:
    """Map an engine error to the HTTP status the caller should see."""
    if isinstance(error, UserNotFoundError) or getattr(error, "not_found", False):
        return HTTPException(status_code=404, detail=str(error))
    return HTTPException(status_code=409, detail=str(error))


# =============================================================================
# REQUEST MODELS
# =============================================================================

class VerificationRequest(BaseModel):
    verified_by: str = Field(..., min_length=1, description="Verifier identity")
    evidence_reference: Optional[str] = Field(None, description="Reference to the certificate on file")


class CancelTriggerRequest(BaseModel):
    cancelled_by: str = Field(..., min_length=1)


class CompleteSignoffRequest(BaseModel):
    completed_by: str = Field(..., min_length=1)


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/check-triggers", response_model=dict)
async def run_trigger_check(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Run the periodic inheritance trigger check.

    System-automatic - no request body.
    Resumes unfinished dispatch, evaluates every candidate user, delivers
    heir notifications that have come due.
    """
    runner = InheritanceBatchRunner(db)

    return runner.run()


@router.get("/pending-dispatch", response_model=dict)
async def get_pending_dispatch(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Triggers whose plan flipped but whose dispatch has not completed.
    """
    runner = InheritanceBatchRunner(db)
    triggers = runner.get_pending_dispatch()

    return {
        "count": len(triggers),
        "triggers": [
            {
                "trigger_id": t.id,
                "user_id": t.user_id,
                "inheritance_plan_id": t.inheritance_plan_id,
                "trigger_reason": t.trigger_reason.value,
                "dispatch_attempts": t.dispatch_attempts,
                "last_error": t.last_error,
                "triggered_at": t.triggered_at.isoformat() if t.triggered_at else None,
            }
            for t in triggers
        ],
    }


# =============================================================================
# DEATH CERTIFICATE SIGNALS
# =============================================================================

@router.post("/death-reports/{user_id}", response_model=dict)
async def report_death(
    user_id: str,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Record an observed death claim.

    Creates pending triggers that require verification; plans stay
    awaiting_verification.
    """
    runner = InheritanceBatchRunner(db)
    try:
        result = runner.report_death(user_id)
    except InheritanceEngineError as e:
        raise engine_http_error(e)

    return result.to_dict()


@router.post("/verifications/{user_id}", response_model=dict)
async def verify_death(
    user_id: str,
    request: VerificationRequest,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    External verification signal: flips awaiting plans and dispatches.
    """
    runner = InheritanceBatchRunner(db)
    try:
        result = runner.verify_death(user_id, request.verified_by, request.evidence_reference)
    except InheritanceEngineError as e:
        raise engine_http_error(e)

    return result.to_dict()


@router.post("/triggers/{trigger_id}/cancel", response_model=dict)
async def cancel_trigger(
    trigger_id: str,
    request: CancelTriggerRequest,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Cancel an unverified trigger (false death report).
    Refused once the plan has been triggered.
    """
    runner = InheritanceBatchRunner(db)
    try:
        event = runner.cancel_trigger(trigger_id, request.cancelled_by)
    except InheritanceEngineError as e:
        raise engine_http_error(e)

    return {"trigger_id": trigger_id, **event.new_values}


# =============================================================================
# OPERATOR RECOVERY + SIGN-OFF QUEUE
# =============================================================================

@router.post("/vaults/{vault_id}/dispatch", response_model=dict)
async def redispatch_vault(
    vault_id: str,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Re-run the disposition of one vault of a triggered user.
    """
    vault = db.query(VaultDB).filter(VaultDB.id == vault_id).first()
    if vault is None:
        raise HTTPException(status_code=404, detail=f"Vault {vault_id} not found")

    dispatcher = VaultDispositionDispatcher(db)
    if not dispatcher.owner_has_triggered_plan(vault.user_id):
        raise HTTPException(
            status_code=409,
            detail="Vault owner has no triggered plan, disposition not allowed",
        )

    result, events = dispatcher.dispatch_vault(vault, utcnow())
    AuditSink(db).record(events)

    return result.to_dict()


@router.get("/signoff-tasks", response_model=dict)
async def list_signoff_tasks(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Vaults waiting for manual handling by the sign-off team.
    """
    vaults = SignoffTaskQueue(db).list_pending()

    return {
        "count": len(vaults),
        "tasks": [
            {
                "vault_id": v.id,
                "user_id": v.user_id,
                "vault_name": v.name,
                "task_created_at": (v.death_settings or {}).get("task_created_at"),
            }
            for v in vaults
        ],
    }


@router.post("/signoff-tasks/{vault_id}/complete", response_model=dict)
async def complete_signoff_task(
    vault_id: str,
    request: CompleteSignoffRequest,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Mark a sign-off task as handled.
    """
    try:
        event = SignoffTaskQueue(db).complete(vault_id, request.completed_by)
    except SignoffTaskError as e:
        raise engine_http_error(e)

    AuditSink(db).record([event])
    return {"vault_id": vault_id, **event.new_values}
