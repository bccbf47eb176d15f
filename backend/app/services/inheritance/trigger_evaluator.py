"""
Trigger Condition Evaluator

AUTHORITY: SYSTEM
Pure decision function. Given a user's trigger configuration snapshot and
the current clock, decides whether the activation condition is met.

No database access, no writes, no clock reads: safe to call repeatedly
and concurrently.

Method rules:
- inactivity: days since last_activity >= inactivity threshold (default 30).
  No last_activity means no baseline, so never triggers.
- scheduled: now >= scheduled_date. No date means never triggers.
- manual: never auto-triggers (operator action only).
- death_certificate: never auto-triggers (external verification only).

Bad configuration is a data error: the decision is negative with a
reason naming the problem, and a warning is logged.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from dateutil import parser as date_parser

from ...models.db_models import TriggerMethod
from ...models.engine_models import TriggerDecision


logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

DEFAULT_INACTIVITY_DAYS = 30

# Older clients wrote these spellings
METHOD_ALIASES = {
    "manual_trigger": TriggerMethod.MANUAL,
    "scheduled_date": TriggerMethod.SCHEDULED,
}


def normalize_method(raw: Optional[str]) -> Optional[TriggerMethod]:
    """Map a stored method string to TriggerMethod, or None if unknown."""
    if raw is None:
        return None
    if isinstance(raw, TriggerMethod):
        return raw
    value = str(raw).strip().lower()
    if value in METHOD_ALIASES:
        return METHOD_ALIASES[value]
    try:
        return TriggerMethod(value)
    except ValueError:
        return None


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def coerce_datetime(value: Any) -> Optional[datetime]:
    """Accept datetimes or ISO-8601 strings; anything else is None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _as_naive_utc(value)
    if isinstance(value, str):
        try:
            return _as_naive_utc(date_parser.isoparse(value))
        except (ValueError, OverflowError):
            return None
    return None


def _settings_map(settings: Any) -> Mapping[str, Any]:
    return settings if isinstance(settings, Mapping) else {}


def inactivity_threshold(settings: Optional[Mapping[str, Any]]) -> Optional[int]:
    """
    Threshold in days from trigger settings.

    Zero or blank means unset and falls back to the default, as the
    mobile client writes it. Returns None when the value is unusable.
    """
    settings = _settings_map(settings)
    raw = settings.get("inactivity_days", settings.get("days"))
    if raw is None or raw == "":
        return DEFAULT_INACTIVITY_DAYS
    try:
        days = int(raw)
    except (TypeError, ValueError):
        return None
    if days == 0:
        return DEFAULT_INACTIVITY_DAYS
    if days < 0:
        return None
    return days


# =============================================================================
# EVALUATOR
# =============================================================================

def evaluate_trigger(
    trigger_method: Optional[str],
    trigger_settings: Optional[Mapping[str, Any]],
    scheduled_date: Optional[Any],
    last_activity: Optional[datetime],
    now: datetime,
) -> TriggerDecision:
    """
    Decide whether a user's activation condition is met.

    Returns a TriggerDecision; reason is the trigger reason when
    should_trigger is True, otherwise a short explanation.
    """
    now = _as_naive_utc(now)
    method = normalize_method(trigger_method)

    if method is None:
        if trigger_method:
            logger.warning(f"Unknown trigger method '{trigger_method}', not triggering")
            return TriggerDecision(False, "unknown_method", method=str(trigger_method))
        return TriggerDecision(False, "no_trigger_method")

    if method == TriggerMethod.INACTIVITY:
        return _evaluate_inactivity(trigger_settings, last_activity, now)

    if method == TriggerMethod.SCHEDULED:
        return _evaluate_scheduled(trigger_settings, scheduled_date, now)

    if method == TriggerMethod.MANUAL:
        return TriggerDecision(False, "manual_only", method=method.value)

    # death_certificate: waits for an externally verified event
    return TriggerDecision(False, "requires_external_verification", method=method.value)


def _evaluate_inactivity(
    settings: Optional[Mapping[str, Any]],
    last_activity: Optional[datetime],
    now: datetime,
) -> TriggerDecision:
    method = TriggerMethod.INACTIVITY.value
    threshold = inactivity_threshold(settings)
    if threshold is None:
        logger.warning(f"Invalid inactivity threshold in settings {settings!r}")
        return TriggerDecision(False, "invalid_inactivity_threshold", method=method)

    last = coerce_datetime(last_activity)
    if last is None:
        return TriggerDecision(False, "no_activity_baseline", method=method)

    days_since = (now - last).days
    detail: Dict[str, Any] = {"days_since": days_since, "threshold": threshold}

    if days_since >= threshold:
        return TriggerDecision(True, "inactivity", method=method, detail=detail)
    return TriggerDecision(False, "below_threshold", method=method, detail=detail)


def _evaluate_scheduled(
    settings: Optional[Mapping[str, Any]],
    scheduled_date: Optional[Any],
    now: datetime,
) -> TriggerDecision:
    method = TriggerMethod.SCHEDULED.value
    raw = scheduled_date if scheduled_date is not None else _settings_map(settings).get("date")
    when = coerce_datetime(raw)

    if when is None:
        if raw is not None:
            logger.warning(f"Unparseable scheduled date {raw!r}, not triggering")
        return TriggerDecision(False, "missing_scheduled_date", method=method)

    detail = {"scheduled_date": when.isoformat()}
    if now >= when:
        return TriggerDecision(True, "scheduled", method=method, detail=detail)
    return TriggerDecision(False, "scheduled_in_future", method=method, detail=detail)


def evaluate_user(user, now: datetime) -> TriggerDecision:
    """Evaluate a UserDB (or any object with the same attributes)."""
    return evaluate_trigger(
        trigger_method=user.trigger_method,
        trigger_settings=user.trigger_settings,
        scheduled_date=user.scheduled_date,
        last_activity=user.last_activity,
        now=now,
    )
