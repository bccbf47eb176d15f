"""
User-side writes the engine owns: the activity heartbeat and the trigger
configuration fields.

last_activity is written from many call sites with no ordering between
them, so it is a monotonic max enforced by the UPDATE itself: a late
write carrying an older timestamp matches no row.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models.db_models import TriggerMethod, UserDB, utcnow
from ...models.engine_models import EngineEvent
from .activation import retire_unverified_trigger
from .trigger_evaluator import coerce_datetime, normalize_method
from .verification import DeathVerificationService


logger = logging.getLogger(__name__)


def record_activity(db: Session, user_id: str, at: Optional[datetime] = None) -> bool:
    """
    Advance a user's last_activity to `at` unless it is already later.

    Returns True if the row moved forward.
    """
    at = at or utcnow()
    try:
        updated = db.query(UserDB).filter(
            UserDB.id == user_id,
            or_(UserDB.last_activity.is_(None), UserDB.last_activity < at),
        ).update({UserDB.last_activity: at}, synchronize_session=False)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(f"Recording activity for user {user_id} failed")
        raise
    return updated == 1


def update_trigger_settings(
    db: Session,
    user: UserDB,
    trigger_method: str,
    trigger_settings: Optional[Dict[str, Any]] = None,
    scheduled_date: Optional[Any] = None,
    sink=None,
) -> UserDB:
    """
    Store a user's trigger configuration, normalising legacy spellings.

    Moving off death_certificate cancels death reports still waiting for
    verification; their events go to `sink` when one is given.
    Raises ValueError for an unknown method or an unreadable date.
    """
    method = normalize_method(trigger_method)
    if method is None:
        raise ValueError(f"Unknown trigger method '{trigger_method}'")

    when = None
    if scheduled_date is not None:
        when = coerce_datetime(scheduled_date)
        if when is None:
            raise ValueError(f"Invalid scheduled date {scheduled_date!r}")

    now = utcnow()
    events: List[EngineEvent] = []
    if method != TriggerMethod.DEATH_CERTIFICATE:
        for trigger in DeathVerificationService(db).get_awaiting_triggers(user.id):
            events.append(retire_unverified_trigger(trigger, now))

    user.trigger_method = method.value
    user.trigger_settings = dict(trigger_settings or {})
    user.scheduled_date = when
    user.updated_at = now
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    db.refresh(user)

    logger.info(f"User {user.id} trigger method set to {method.value}")
    if events:
        logger.info(f"Cancelled {len(events)} unverified death report(s) for user {user.id}")
        if sink is not None:
            sink.record(events)
    return user
