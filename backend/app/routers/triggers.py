"""
Inheritance Trigger API Routes

User-facing endpoints: trigger configuration, manual activation, plan
state and the audit trail. All require a bearer token.
"""
from datetime import datetime
from typing import Any, Dict, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..models.db_models import (
    UserDB, InheritancePlanDB, InheritanceTriggerDB, ActorType,
)
from ..services.inheritance import (
    AuditSink,
    InheritanceBatchRunner,
    InheritanceEngineError,
    UserNotFoundError,
    describe,
    update_trigger_settings,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/triggers", tags=["triggers"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class TriggerSettingsRequest(BaseModel):
    trigger_method: str = Field(..., description="inactivity, scheduled, manual or death_certificate")
    trigger_settings: Dict[str, Any] = Field(default_factory=dict)
    scheduled_date: Optional[datetime] = None


class TriggerSettingsResponse(BaseModel):
    user_id: str
    trigger_method: str
    trigger_settings: Dict[str, Any]
    scheduled_date: Optional[str] = None


def _format_datetime(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.put("/settings", response_model=TriggerSettingsResponse)
async def set_trigger_settings(
    request: TriggerSettingsRequest,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Set the caller's trigger method and its parameters.
    Legacy method spellings are accepted and normalised.
    """
    try:
        user = update_trigger_settings(
            db, current_user, request.trigger_method, request.trigger_settings, request.scheduled_date,
            sink=AuditSink(db),
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return TriggerSettingsResponse(
        user_id=user.id,
        trigger_method=user.trigger_method,
        trigger_settings=user.trigger_settings or {},
        scheduled_date=_format_datetime(user.scheduled_date),
    )


@router.post("/manual/{user_id}", response_model=dict)
async def manual_trigger(
    user_id: str,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Activate a user's plans now, bypassing the evaluator.

    Allowed for the user themself or an admin.
    """
    is_self = current_user.id == user_id
    if not is_self and current_user.role != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to trigger this user")

    actor = ActorType.USER if is_self else ActorType.OPERATOR
    runner = InheritanceBatchRunner(db)
    try:
        result = runner.run_manual_trigger(user_id, actor=actor)
    except UserNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InheritanceEngineError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    logger.info(f"Manual trigger for user {user_id} by {current_user.id}")
    return result.to_dict()


@router.get("/history", response_model=dict)
async def get_trigger_history(
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    The caller's activation records, newest first.
    """
    triggers = db.query(InheritanceTriggerDB).filter(
        InheritanceTriggerDB.user_id == current_user.id
    ).order_by(InheritanceTriggerDB.triggered_at.desc()).all()

    return {
        "count": len(triggers),
        "triggers": [
            {
                "id": t.id,
                "inheritance_plan_id": t.inheritance_plan_id,
                "trigger_reason": t.trigger_reason.value,
                "status": t.status.value,
                "requires_verification": t.requires_verification,
                "triggered_at": _format_datetime(t.triggered_at),
                "verified_at": _format_datetime(t.verified_at),
                "completed_at": _format_datetime(t.completed_at),
            }
            for t in triggers
        ],
    }


@router.get("/plans/{plan_id}/state", response_model=dict)
async def get_plan_state(
    plan_id: str,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Derived state of one of the caller's plans, with its trigger history.
    """
    plan = db.query(InheritancePlanDB).filter(InheritancePlanDB.id == plan_id).first()
    if plan is None or (plan.user_id != current_user.id and current_user.role != "admin"):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Plan not found")

    return describe(plan, plan.triggers)


@router.get("/audit", response_model=dict)
async def get_audit_trail(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    The caller's audit entries, newest first.
    """
    logs = AuditSink(db).get_user_audit_logs(current_user.id, limit=limit, offset=offset)

    return {
        "count": len(logs),
        "limit": limit,
        "offset": offset,
        "entries": [
            {
                "id": log.id,
                "action": log.action,
                "resource_type": log.resource_type,
                "resource_id": log.resource_id,
                "actor": log.actor.value,
                "risk_level": log.risk_level.value,
                "old_values": log.old_values,
                "new_values": log.new_values,
                "metadata": log.event_metadata,
                "created_at": _format_datetime(log.created_at),
            }
            for log in logs
        ],
    }
