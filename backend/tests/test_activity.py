"""
Tests for the activity heartbeat and trigger settings writes.
"""
import pytest
from datetime import timedelta
from unittest.mock import MagicMock

from app.models.db_models import InheritanceTriggerDB, TriggerReason, TriggerStatus, UserDB
from app.models.engine_models import EventKind
from app.services.inheritance.activity import record_activity, update_trigger_settings


def _user(db, user_id):
    db.expire_all()
    return db.query(UserDB).filter_by(id=user_id).one()


class TestRecordActivity:

    def test_first_activity_sets_baseline(self, db, seed, now):
        user = seed.user(last_activity=None)
        assert record_activity(db, user.id, now) is True
        assert _user(db, user.id).last_activity == now

    def test_late_write_never_moves_backward(self, db, seed, now):
        user = seed.user(last_activity=now)

        assert record_activity(db, user.id, now - timedelta(minutes=5)) is False
        assert _user(db, user.id).last_activity == now

    def test_newer_write_advances(self, db, seed, now):
        user = seed.user(last_activity=now - timedelta(days=3))
        assert record_activity(db, user.id, now) is True
        assert _user(db, user.id).last_activity == now

    def test_unknown_user(self, db, now):
        assert record_activity(db, "missing", now) is False


class TestUpdateTriggerSettings:

    def test_legacy_spelling_normalised(self, db, seed):
        user = seed.user()

        update_trigger_settings(db, user, "manual_trigger", {})

        assert _user(db, user.id).trigger_method == "manual"

    def test_scheduled_date_string(self, db, seed):
        user = seed.user()

        update_trigger_settings(db, user, "scheduled", {}, "2027-03-01T09:00:00+02:00")

        stored = _user(db, user.id)
        assert stored.trigger_method == "scheduled"
        assert stored.scheduled_date.isoformat() == "2027-03-01T07:00:00"

    def test_unknown_method_rejected(self, db, seed):
        user = seed.user()
        with pytest.raises(ValueError):
            update_trigger_settings(db, user, "horoscope", {})
        assert _user(db, user.id).trigger_method == "inactivity"

    def test_bad_date_rejected(self, db, seed):
        user = seed.user()
        with pytest.raises(ValueError):
            update_trigger_settings(db, user, "scheduled", {}, "someday")

    def test_leaving_death_certificate_cancels_unverified_reports(self, db, seed, now):
        user = seed.user(trigger_method="death_certificate")
        plan = seed.plan(user)
        report = seed.trigger(plan, reason=TriggerReason.DEATH_CERTIFICATE, requires_verification=True)
        sink = MagicMock()

        update_trigger_settings(db, user, "inactivity", {"inactivity_days": 60}, sink=sink)

        db.expire_all()
        stored = db.query(InheritanceTriggerDB).filter_by(id=report.id).one()
        assert stored.status == TriggerStatus.CANCELLED
        assert stored.cancelled_at is not None
        events = sink.record.call_args[0][0]
        assert [e.kind for e in events] == [EventKind.TRIGGER_CANCELLED]

    def test_staying_on_death_certificate_keeps_reports(self, db, seed):
        user = seed.user(trigger_method="death_certificate")
        plan = seed.plan(user)
        report = seed.trigger(plan, reason=TriggerReason.DEATH_CERTIFICATE, requires_verification=True)
        sink = MagicMock()

        update_trigger_settings(db, user, "death_certificate", {}, sink=sink)

        db.expire_all()
        assert db.query(InheritanceTriggerDB).filter_by(id=report.id).one().status == TriggerStatus.PENDING
        sink.record.assert_not_called()
