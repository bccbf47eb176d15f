"""
Tests for the Heir Access Granter.

1. Pending vault and item grants of active heirs become granted
2. Nothing is granted for an untriggered plan
3. notify_on_activation = false still grants, never notifies
4. notification_delay_days defers the notice, never the grant
5. A heir is notified at most once
6. Out-of-range delays withhold the notice instead of failing
"""
from datetime import datetime, timedelta

from app.models.db_models import (
    HeirDB, HeirVaultAccessDB, AccessStatus, HeirNotificationStatus,
)
from app.models.engine_models import EventKind
from app.services.inheritance.heir_access import (
    MAX_NOTIFICATION_DELAY_DAYS, HeirAccessGranter, notification_due_at,
)


def _access(db, row_id):
    db.expire_all()
    return db.query(HeirVaultAccessDB).filter_by(id=row_id).one()


def _heir(db, heir_id):
    db.expire_all()
    return db.query(HeirDB).filter_by(id=heir_id).one()


class TestGrantForPlan:

    def test_grants_and_notifies(self, db, seed, now):
        user = seed.user()
        plan = seed.plan(user, is_triggered=True, triggered_at=now)
        heir = seed.heir(plan)
        vault = seed.vault(user, "share_after_death")
        item = seed.item(vault)
        vault_row = seed.access(heir, vault=vault)
        item_row = seed.access(heir, item=item)

        grants, events = HeirAccessGranter(db).grant_for_plan(plan, now)

        assert grants == 2
        assert _access(db, vault_row.id).access_status == AccessStatus.GRANTED
        assert _access(db, item_row.id).access_status == AccessStatus.GRANTED
        refreshed = _heir(db, heir.id)
        assert refreshed.notified_at == now
        assert refreshed.notification_status == HeirNotificationStatus.PENDING_VERIFICATION

        notified = [e for e in events if e.kind == EventKind.HEIR_NOTIFIED][0]
        assert notified.notification.template == "heir_activation"
        assert notified.notification.recipient == "enc:heir@example.com"
        assert notified.notification.payload["instructions_encrypted"] == "enc:instructions"
        assert EventKind.ACCESS_GRANTED in [e.kind for e in events]

    def test_untriggered_plan_grants_nothing(self, db, seed, now):
        user = seed.user()
        plan = seed.plan(user)
        heir = seed.heir(plan)
        row = seed.access(heir, vault=seed.vault(user, "share_after_death"))

        grants, events = HeirAccessGranter(db).grant_for_plan(plan, now)

        assert grants == 0
        assert events == []
        assert _access(db, row.id).access_status == AccessStatus.PENDING
        assert _heir(db, heir.id).notified_at is None

    def test_notify_disabled_still_grants(self, db, seed, now):
        user = seed.user()
        plan = seed.plan(user, is_triggered=True, triggered_at=now)
        heir = seed.heir(plan, notify_on_activation=False)
        row = seed.access(heir, vault=seed.vault(user, "share_after_death"))

        grants, events = HeirAccessGranter(db).grant_for_plan(plan, now)

        assert grants == 1
        assert _access(db, row.id).access_status == AccessStatus.GRANTED
        assert EventKind.HEIR_NOTIFIED not in [e.kind for e in events]
        assert _heir(db, heir.id).notification_status == HeirNotificationStatus.NOT_NOTIFIED

    def test_inactive_heir_skipped(self, db, seed, now):
        user = seed.user()
        plan = seed.plan(user, is_triggered=True, triggered_at=now)
        heir = seed.heir(plan, is_active=False)
        row = seed.access(heir, vault=seed.vault(user, "share_after_death"))

        grants, _ = HeirAccessGranter(db).grant_for_plan(plan, now)

        assert grants == 0
        assert _access(db, row.id).access_status == AccessStatus.PENDING

    def test_second_call_is_noop(self, db, seed, now):
        user = seed.user()
        plan = seed.plan(user, is_triggered=True, triggered_at=now)
        heir = seed.heir(plan)
        seed.access(heir, vault=seed.vault(user, "share_after_death"))
        granter = HeirAccessGranter(db)
        granter.grant_for_plan(plan, now)

        grants, events = granter.grant_for_plan(plan, now + timedelta(hours=1))

        assert grants == 0
        assert events == []
        assert _heir(db, heir.id).notified_at == now


class TestDelayedNotifications:

    def test_delay_defers_notice_not_grant(self, db, seed, now):
        user = seed.user()
        plan = seed.plan(user, is_triggered=True, triggered_at=now)
        heir = seed.heir(plan, notification_delay_days=3)
        row = seed.access(heir, vault=seed.vault(user, "share_after_death"))
        granter = HeirAccessGranter(db)

        grants, events = granter.grant_for_plan(plan, now)

        assert grants == 1
        assert _access(db, row.id).access_status == AccessStatus.GRANTED
        assert EventKind.HEIR_NOTIFIED not in [e.kind for e in events]
        assert granter.deliver_due_notifications(now + timedelta(days=2)) == []

        due = granter.deliver_due_notifications(now + timedelta(days=3))

        assert [e.resource_id for e in due] == [heir.id]
        assert _heir(db, heir.id).notified_at == now + timedelta(days=3)
        assert granter.deliver_due_notifications(now + timedelta(days=4)) == []

    def test_dormant_plan_heirs_never_due(self, db, seed, now):
        user = seed.user()
        plan = seed.plan(user)
        seed.heir(plan)

        assert HeirAccessGranter(db).deliver_due_notifications(now + timedelta(days=365)) == []

    def test_oversized_delay_grants_but_never_notifies(self, db, seed, now):
        user = seed.user()
        plan = seed.plan(user, is_triggered=True, triggered_at=now)
        heir = seed.heir(plan, notification_delay_days=5_000_000)
        row = seed.access(heir, vault=seed.vault(user, "share_after_death"))
        granter = HeirAccessGranter(db)

        grants, events = granter.grant_for_plan(plan, now)

        assert grants == 1
        assert _access(db, row.id).access_status == AccessStatus.GRANTED
        assert EventKind.HEIR_NOTIFIED not in [e.kind for e in events]
        assert granter.deliver_due_notifications(now + timedelta(days=36500)) == []
        assert _heir(db, heir.id).notified_at is None


class TestNotificationDueAt:

    def test_due_after_delay(self, seed, now):
        user = seed.user()
        plan = seed.plan(user, is_triggered=True, triggered_at=now)
        heir = seed.heir(plan, notification_delay_days=2)

        assert notification_due_at(heir, plan, now) == now + timedelta(days=2)

    def test_out_of_range_delay_is_never_due(self, seed, now):
        user = seed.user()
        plan = seed.plan(user, is_triggered=True, triggered_at=now)
        heir = seed.heir(plan, notification_delay_days=MAX_NOTIFICATION_DELAY_DAYS + 1)

        assert notification_due_at(heir, plan, now) == datetime.max

    def test_date_overflow_is_never_due(self, seed):
        user = seed.user()
        plan = seed.plan(user, is_triggered=True, triggered_at=datetime(9999, 12, 1))
        heir = seed.heir(plan, notification_delay_days=365)

        assert notification_due_at(heir, plan, datetime(9999, 12, 1)) == datetime.max
