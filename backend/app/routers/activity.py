"""
Activity Heartbeat Route

Called by the app on any qualifying user action. Keeps the inactivity
evaluator's baseline fresh; never moves it backward.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..models.db_models import UserDB, utcnow
from ..services.inheritance import record_activity

router = APIRouter(tags=["activity"])


@router.post("/activity", response_model=dict)
async def post_activity(
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Record a qualifying action for the caller."""
    user_id = current_user.id
    now = utcnow()
    advanced = record_activity(db, user_id, now)

    return {"user_id": user_id, "last_activity": now.isoformat(), "advanced": advanced}
