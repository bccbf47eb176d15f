"""
Tests for the Trigger Condition Evaluator.

Pure function, no database:
1. inactivity threshold boundaries and missing baseline
2. scheduled date boundaries and fallbacks
3. manual and death_certificate never auto-trigger
4. legacy spellings and bad configuration are data errors, never crashes
"""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from app.services.inheritance.trigger_evaluator import (
    DEFAULT_INACTIVITY_DAYS,
    evaluate_trigger,
    evaluate_user,
    inactivity_threshold,
    normalize_method,
)


NOW = datetime(2026, 1, 15, 12, 0, 0)


# =============================================================================
# TEST: INACTIVITY
# =============================================================================

class TestInactivity:
    """inactivity: days since last_activity >= threshold."""

    def test_29_days_below_threshold(self):
        decision = evaluate_trigger("inactivity", {"inactivity_days": 30}, None, NOW - timedelta(days=29), NOW)
        assert decision.should_trigger is False
        assert decision.reason == "below_threshold"
        assert decision.detail["days_since"] == 29

    def test_31_days_triggers(self):
        decision = evaluate_trigger("inactivity", {"inactivity_days": 30}, None, NOW - timedelta(days=31), NOW)
        assert decision.should_trigger is True
        assert decision.reason == "inactivity"
        assert decision.detail == {"days_since": 31, "threshold": 30}

    def test_exactly_threshold_triggers(self):
        decision = evaluate_trigger("inactivity", {"inactivity_days": 30}, None, NOW - timedelta(days=30), NOW)
        assert decision.should_trigger is True

    def test_partial_day_is_floored(self):
        """29 days 23 hours is still 29 days."""
        last = NOW - timedelta(days=29, hours=23)
        decision = evaluate_trigger("inactivity", {"inactivity_days": 30}, None, last, NOW)
        assert decision.should_trigger is False

    @pytest.mark.parametrize("elapsed_days", [0, 31, 3650])
    def test_null_last_activity_never_triggers(self, elapsed_days):
        decision = evaluate_trigger(
            "inactivity", {"inactivity_days": 30}, None, None, NOW + timedelta(days=elapsed_days)
        )
        assert decision.should_trigger is False
        assert decision.reason == "no_activity_baseline"

    def test_default_threshold_when_unset(self):
        assert inactivity_threshold({}) == DEFAULT_INACTIVITY_DAYS
        assert inactivity_threshold(None) == DEFAULT_INACTIVITY_DAYS
        decision = evaluate_trigger("inactivity", {}, None, NOW - timedelta(days=30), NOW)
        assert decision.should_trigger is True

    def test_legacy_days_key(self):
        decision = evaluate_trigger("inactivity", {"days": 7}, None, NOW - timedelta(days=8), NOW)
        assert decision.should_trigger is True
        assert decision.detail["threshold"] == 7

    @pytest.mark.parametrize("bad", [-5, "soon", [30]])
    def test_invalid_threshold_is_data_error(self, bad):
        decision = evaluate_trigger("inactivity", {"inactivity_days": bad}, None, NOW - timedelta(days=400), NOW)
        assert decision.should_trigger is False
        assert decision.reason == "invalid_inactivity_threshold"

    @pytest.mark.parametrize("unset", [0, "", "0"])
    def test_zero_or_blank_threshold_falls_back_to_default(self, unset):
        assert inactivity_threshold({"inactivity_days": unset}) == DEFAULT_INACTIVITY_DAYS
        decision = evaluate_trigger("inactivity", {"inactivity_days": unset}, None, NOW - timedelta(days=29), NOW)
        assert decision.should_trigger is False
        assert decision.reason != "invalid_inactivity_threshold"

    def test_numeric_string_threshold_accepted(self):
        assert inactivity_threshold({"inactivity_days": "14"}) == 14

    def test_timezone_aware_inputs(self):
        aware_now = NOW.replace(tzinfo=timezone.utc)
        decision = evaluate_trigger("inactivity", {"inactivity_days": 30}, None, NOW - timedelta(days=31), aware_now)
        assert decision.should_trigger is True

    def test_non_dict_settings_use_default(self):
        decision = evaluate_trigger("inactivity", "garbage", None, NOW - timedelta(days=31), NOW)
        assert decision.should_trigger is True
        assert decision.detail["threshold"] == DEFAULT_INACTIVITY_DAYS


# =============================================================================
# TEST: SCHEDULED
# =============================================================================

class TestScheduled:
    """scheduled: now >= scheduled_date."""

    def test_one_second_past_triggers(self):
        decision = evaluate_trigger("scheduled", {}, NOW - timedelta(seconds=1), None, NOW)
        assert decision.should_trigger is True
        assert decision.reason == "scheduled"

    def test_one_second_future_does_not_trigger(self):
        decision = evaluate_trigger("scheduled", {}, NOW + timedelta(seconds=1), None, NOW)
        assert decision.should_trigger is False
        assert decision.reason == "scheduled_in_future"

    def test_missing_date_is_data_error(self):
        decision = evaluate_trigger("scheduled", {}, None, None, NOW)
        assert decision.should_trigger is False
        assert decision.reason == "missing_scheduled_date"

    def test_falls_back_to_settings_date(self):
        settings = {"date": "2026-01-01T00:00:00Z"}
        decision = evaluate_trigger("scheduled", settings, None, None, NOW)
        assert decision.should_trigger is True
        assert decision.detail["scheduled_date"] == "2026-01-01T00:00:00"

    def test_unparseable_settings_date(self):
        decision = evaluate_trigger("scheduled", {"date": "next tuesday"}, None, None, NOW)
        assert decision.should_trigger is False
        assert decision.reason == "missing_scheduled_date"

    def test_legacy_method_spelling(self):
        decision = evaluate_trigger("scheduled_date", {}, NOW - timedelta(days=1), None, NOW)
        assert decision.should_trigger is True
        assert decision.method == "scheduled"


# =============================================================================
# TEST: NON-AUTOMATIC METHODS
# =============================================================================

class TestNonAutomaticMethods:
    """manual and death_certificate never trigger from the evaluator."""

    @pytest.mark.parametrize("method,reason", [
        ("manual", "manual_only"),
        ("manual_trigger", "manual_only"),
        ("death_certificate", "requires_external_verification"),
    ])
    def test_never_auto_triggers(self, method, reason):
        decision = evaluate_trigger(method, {}, NOW - timedelta(days=999), NOW - timedelta(days=999), NOW)
        assert decision.should_trigger is False
        assert decision.reason == reason

    def test_unknown_method(self):
        decision = evaluate_trigger("telepathy", {}, None, NOW - timedelta(days=999), NOW)
        assert decision.should_trigger is False
        assert decision.reason == "unknown_method"

    def test_no_method(self):
        decision = evaluate_trigger(None, None, None, None, NOW)
        assert decision.should_trigger is False
        assert decision.reason == "no_trigger_method"


class TestHelpers:

    def test_normalize_method(self):
        assert normalize_method("  Inactivity ").value == "inactivity"
        assert normalize_method("manual_trigger").value == "manual"
        assert normalize_method("nope") is None
        assert normalize_method(None) is None

    def test_evaluate_user_reads_attributes(self):
        user = MagicMock()
        user.trigger_method = "inactivity"
        user.trigger_settings = {"inactivity_days": 10}
        user.scheduled_date = None
        user.last_activity = NOW - timedelta(days=11)

        assert evaluate_user(user, NOW).should_trigger is True

    def test_repeated_calls_are_stable(self):
        args = ("inactivity", {"inactivity_days": 30}, None, NOW - timedelta(days=31), NOW)
        assert evaluate_trigger(*args) == evaluate_trigger(*args)
