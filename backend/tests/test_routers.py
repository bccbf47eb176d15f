"""
Tests for the HTTP surface: scheduler (internal key), triggers and
activity (bearer token), auth.
"""
from datetime import timedelta

from app.auth import hash_password
from app.models.db_models import InheritancePlanDB, utcnow
from app.services.inheritance.batch_runner import InheritanceBatchRunner


def _plan(db, plan_id):
    db.expire_all()
    return db.query(InheritancePlanDB).filter_by(id=plan_id).one()


# =============================================================================
# TEST: SCHEDULER ROUTES
# =============================================================================

class TestSchedulerRoutes:

    def test_check_triggers_requires_key(self, client):
        response = client.post("/internal/check-triggers", headers={"X-Internal-Key": "wrong"})
        assert response.status_code == 403

    def test_check_triggers_summary(self, client, db, seed, internal_headers):
        user = seed.user(last_activity=utcnow() - timedelta(days=45))
        plan = seed.plan(user)

        response = client.post("/internal/check-triggers", headers=internal_headers)

        assert response.status_code == 200
        body = response.json()
        for key in ("success", "message", "triggeredCount", "totalUsers", "timestamp"):
            assert key in body
        assert body["triggeredCount"] == 1
        assert _plan(db, plan.id).is_triggered is True

    def test_death_report_then_verification(self, client, db, seed, internal_headers):
        user = seed.user(trigger_method="death_certificate")
        plan = seed.plan(user)

        reported = client.post(f"/internal/death-reports/{user.id}", headers=internal_headers)
        assert reported.status_code == 200
        assert reported.json()["awaiting_verification_plans"] == [plan.id]

        verified = client.post(
            f"/internal/verifications/{user.id}",
            json={"verified_by": "registry-clerk", "evidence_reference": "cert-9"},
            headers=internal_headers,
        )
        assert verified.status_code == 200
        assert verified.json()["triggered_plans"] == [plan.id]

        again = client.post(
            f"/internal/verifications/{user.id}",
            json={"verified_by": "registry-clerk"},
            headers=internal_headers,
        )
        assert again.status_code == 404

    def test_death_report_wrong_method_conflict(self, client, seed, internal_headers):
        user = seed.user(trigger_method="inactivity")
        response = client.post(f"/internal/death-reports/{user.id}", headers=internal_headers)
        assert response.status_code == 409

    def test_death_report_unknown_user(self, client, internal_headers):
        response = client.post("/internal/death-reports/missing", headers=internal_headers)
        assert response.status_code == 404

    def test_cancel_trigger(self, client, db, seed, internal_headers):
        user = seed.user(trigger_method="death_certificate")
        plan = seed.plan(user)
        client.post(f"/internal/death-reports/{user.id}", headers=internal_headers)
        trigger_id = _plan(db, plan.id).triggers[0].id

        response = client.post(
            f"/internal/triggers/{trigger_id}/cancel",
            json={"cancelled_by": "ops"},
            headers=internal_headers,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

    def test_pending_dispatch_lists_nothing_when_clean(self, client, internal_headers):
        response = client.get("/internal/pending-dispatch", headers=internal_headers)
        assert response.status_code == 200
        assert response.json() == {"count": 0, "triggers": []}

    def test_signoff_queue(self, client, seed, internal_headers):
        user = seed.user(trigger_method="manual")
        seed.plan(user)
        vault = seed.vault(user, "sign_off_after_death")
        admin = seed.user(role="admin")
        InheritanceBatchRunner(seed.db).run_manual_trigger(user.id)

        listed = client.get("/internal/signoff-tasks", headers=internal_headers)
        assert listed.status_code == 200
        assert [t["vault_id"] for t in listed.json()["tasks"]] == [vault.id]

        done = client.post(
            f"/internal/signoff-tasks/{vault.id}/complete",
            json={"completed_by": admin.email},
            headers=internal_headers,
        )
        assert done.status_code == 200
        assert done.json()["task_status"] == "completed"

        twice = client.post(
            f"/internal/signoff-tasks/{vault.id}/complete",
            json={"completed_by": admin.email},
            headers=internal_headers,
        )
        assert twice.status_code == 409

    def test_vault_redispatch_requires_triggered_owner(self, client, seed, internal_headers):
        user = seed.user()
        seed.plan(user)
        vault = seed.vault(user, "sign_off_after_death")

        response = client.post(f"/internal/vaults/{vault.id}/dispatch", headers=internal_headers)

        assert response.status_code == 409

    def test_vault_redispatch(self, client, seed, now, internal_headers):
        user = seed.user()
        seed.plan(user, is_triggered=True, triggered_at=now)
        vault = seed.vault(user, "handle_after_death")

        response = client.post(f"/internal/vaults/{vault.id}/dispatch", headers=internal_headers)

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["action"] == "notify_trusted"


# =============================================================================
# TEST: USER ROUTES
# =============================================================================

class TestTriggerRoutes:

    def test_requires_token(self, client):
        assert client.get("/triggers/history").status_code in (401, 403)

    def test_manual_trigger_self(self, client, db, seed, auth_headers):
        user = seed.user(trigger_method="manual")
        plan = seed.plan(user)

        response = client.post(f"/triggers/manual/{user.id}", headers=auth_headers(user))

        assert response.status_code == 200
        assert response.json()["triggered_plans"] == [plan.id]
        assert _plan(db, plan.id).is_triggered is True

    def test_manual_trigger_other_user_forbidden(self, client, seed, auth_headers):
        owner = seed.user(trigger_method="manual")
        seed.plan(owner)
        stranger = seed.user()

        response = client.post(f"/triggers/manual/{owner.id}", headers=auth_headers(stranger))

        assert response.status_code == 403

    def test_admin_manual_trigger_unknown_user(self, client, seed, auth_headers):
        admin = seed.user(role="admin")
        response = client.post("/triggers/manual/missing", headers=auth_headers(admin))
        assert response.status_code == 404

    def test_settings_update(self, client, seed, auth_headers):
        user = seed.user()

        response = client.put(
            "/triggers/settings",
            json={"trigger_method": "scheduled_date", "scheduled_date": "2027-01-01T00:00:00"},
            headers=auth_headers(user),
        )

        assert response.status_code == 200
        assert response.json()["trigger_method"] == "scheduled"
        assert response.json()["scheduled_date"] == "2027-01-01T00:00:00"

    def test_settings_unknown_method(self, client, seed, auth_headers):
        user = seed.user()
        response = client.put(
            "/triggers/settings", json={"trigger_method": "astrology"}, headers=auth_headers(user)
        )
        assert response.status_code == 400

    def test_plan_state_and_history(self, client, seed, auth_headers):
        user = seed.user(trigger_method="manual")
        plan = seed.plan(user)
        headers = auth_headers(user)
        client.post(f"/triggers/manual/{user.id}", headers=headers)

        state = client.get(f"/triggers/plans/{plan.id}/state", headers=headers)
        assert state.status_code == 200
        assert state.json()["state"] == "disposed"
        assert state.json()["triggers"][0]["status"] == "completed"

        history = client.get("/triggers/history", headers=headers)
        assert history.json()["count"] == 1

    def test_plan_state_of_other_user_hidden(self, client, seed, auth_headers):
        owner = seed.user()
        plan = seed.plan(owner)
        stranger = seed.user()

        response = client.get(f"/triggers/plans/{plan.id}/state", headers=auth_headers(stranger))

        assert response.status_code == 404

    def test_audit_trail(self, client, seed, auth_headers):
        user = seed.user(trigger_method="manual")
        seed.plan(user)
        headers = auth_headers(user)
        client.post(f"/triggers/manual/{user.id}", headers=headers)

        response = client.get("/triggers/audit?limit=2", headers=headers)

        assert response.status_code == 200
        entries = response.json()["entries"]
        assert len(entries) == 2
        assert all(e["risk_level"] in ("low", "medium", "high", "critical") for e in entries)


class TestActivityAndAuth:

    def test_activity_advances(self, client, db, seed, auth_headers):
        user = seed.user(last_activity=utcnow() - timedelta(days=10))

        response = client.post("/activity", headers=auth_headers(user))

        assert response.status_code == 200
        assert response.json()["advanced"] is True

    def test_login_and_me(self, client, seed):
        user = seed.user(email="owner@example.com", password_hash=hash_password("correct horse"))

        login = client.post("/auth/login", json={"email": "owner@example.com", "password": "correct horse"})
        assert login.status_code == 200
        token = login.json()["access_token"]

        me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert me.status_code == 200
        assert me.json()["id"] == user.id

    def test_login_wrong_password(self, client, seed):
        seed.user(email="owner2@example.com", password_hash=hash_password("correct horse"))
        response = client.post("/auth/login", json={"email": "owner2@example.com", "password": "nope"})
        assert response.status_code == 401

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"
