"""
tests/test_api_routes.py — FastAPI Route Integration Tests
==========================================================
Auth guards, the caller-facing ``/me`` reads, the ingest endpoints used by
upstream collaborators, admin settings, and the uniform error mapping.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
from conftest import T0, auth, make_token

from keystone.errors import StorageUnavailable

ISO_T0 = T0.isoformat()


@pytest.fixture
def user():
    return auth(make_token("user-1"))


@pytest.fixture
def service():
    return auth(make_token("billing-bridge", role="service"))


@pytest.fixture
def admin():
    return auth(make_token("admin-1", is_admin=True))


def _event(**overrides) -> dict:
    body = {
        "user_id": "user-1",
        "category": "buyer_analysis",
        "base_points": 100,
        "impact_multiplier": 1.5,
        "occurred_at": ISO_T0,
        "verified": True,
    }
    body.update(overrides)
    return body


# ===========================================================================
# Health endpoint
# ===========================================================================
class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


# ===========================================================================
# Auth guards
# ===========================================================================
class TestAuthGuards:
    ME_ENDPOINTS = [
        "/api/me/standing",
        "/api/me/milestones",
        "/api/me/subscription",
        "/api/me/access",
        "/api/me/access/export",
    ]

    @pytest.mark.parametrize("endpoint", ME_ENDPOINTS)
    def test_me_requires_token(self, client, endpoint):
        assert client.get(endpoint).status_code == 401

    def test_rejects_forged_token(self, client):
        import jwt

        forged = jwt.encode({"sub": "user-1"}, "x" * 64, algorithm="HS256")
        assert client.get("/api/me/standing", headers=auth(forged)).status_code == 401

    def test_rejects_token_without_subject(self, client):
        resp = client.get("/api/me/standing", headers=auth(make_token("")))
        assert resp.status_code == 401

    def test_ingest_needs_service_role(self, client, user, admin):
        assert client.post("/api/ingest/events", json=_event()).status_code == 401
        assert client.post("/api/ingest/events", json=_event(), headers=user).status_code == 403
        assert client.post("/api/ingest/events", json=_event(), headers=admin).status_code == 403

    @pytest.mark.parametrize("method, endpoint", [
        ("get", "/api/admin/settings"),
        ("put", "/api/admin/settings"),
        ("get", "/api/admin/audit"),
    ])
    def test_admin_needs_admin_claim(self, client, user, method, endpoint):
        assert getattr(client, method)(endpoint).status_code == 401
        kwargs = {"json": {"values": {}}} if method == "put" else {}
        assert getattr(client, method)(endpoint, headers=user, **kwargs).status_code == 403


# ===========================================================================
# Scored events & standing
# ===========================================================================
class TestEventsAndStanding:
    def test_submit_then_read_standing(self, client, service, user):
        resp = client.post("/api/ingest/events", json=_event(), headers=service)
        assert resp.status_code == 201
        assert resp.json()["standing"]["total_points"] == 150

        standing = client.get("/api/me/standing", headers=user).json()
        assert standing["user_id"] == "user-1"
        assert standing["total_points"] == 150
        assert standing["current_level"] == "Foundation"
        assert standing["next_level"] == "Developing"

    def test_unverified_then_verify(self, client, service, user):
        resp = client.post(
            "/api/ingest/events",
            json=_event(base_points=1000, impact_multiplier=3.0, verified=False),
            headers=service,
        )
        assert resp.json()["standing"] is None
        event_id = resp.json()["event_id"]
        assert client.get("/api/me/standing", headers=user).json()["total_points"] == 0

        verified = client.post(
            f"/api/ingest/events/{event_id}/verify",
            json={"verified_by": "coach-1", "at": ISO_T0},
            headers=service,
        )
        assert verified.status_code == 200
        assert verified.json()["standing"]["total_points"] == 3000
        assert client.get("/api/me/standing", headers=user).json()["current_level"] == "Master"

    def test_redelivery_returns_same_id(self, client, service):
        first = client.post(
            "/api/ingest/events", json=_event(source_event_id="evt-9"), headers=service,
        )
        again = client.post(
            "/api/ingest/events", json=_event(source_event_id="evt-9"), headers=service,
        )
        assert again.json()["event_id"] == first.json()["event_id"]

    @pytest.mark.parametrize("overrides", [
        {"category": "cold_calling"},
        {"base_points": -5},
        {"impact_multiplier": 0},
        {"occurred_at": "2026-01-05T09:00:00"},
    ])
    def test_malformed_event_is_422(self, client, service, overrides):
        resp = client.post("/api/ingest/events", json=_event(**overrides), headers=service)
        assert resp.status_code == 422
        assert resp.json()["error"] == "ValidationError"

    def test_schema_violation_is_422(self, client, service):
        resp = client.post("/api/ingest/events", json={"user_id": "user-1"}, headers=service)
        assert resp.status_code == 422

    def test_verify_unknown_event_is_422(self, client, service):
        resp = client.post(
            "/api/ingest/events/999/verify", json={"verified_by": "coach-1"}, headers=service,
        )
        assert resp.status_code == 422

    def test_assessment_completes_milestone(self, client, service, user):
        resp = client.post("/api/ingest/assessments", json={
            "user_id": "user-1", "taken_at": ISO_T0, "kind": "baseline",
            "scores": {"buyer_analysis": 62.5, "sales_execution": 70},
        }, headers=service)
        assert resp.status_code == 201
        assert resp.json()["standing"]["assessment"]["latest_overall"] == 66.25

        milestones = client.get("/api/me/milestones", headers=user).json()["milestones"]
        assert [(m["milestone_type"], m["status"]) for m in milestones] == [
            ("assessment_completed", "completed"),
        ]


# ===========================================================================
# Billing & access
# ===========================================================================
class TestBillingAndAccess:
    def test_activate_without_trial_is_409(self, client, service):
        resp = client.post("/api/ingest/billing", json={
            "user_id": "user-1", "kind": "activated", "effective_at": ISO_T0,
        }, headers=service)
        assert resp.status_code == 409
        body = resp.json()
        assert body["current"] == "none"
        assert body["attempted"] == "activate"

    def test_trial_then_subscription_read(self, client, service, user):
        resp = client.post("/api/ingest/billing", json={
            "user_id": "user-1", "kind": "trial_started", "effective_at": ISO_T0,
        }, headers=service)
        assert resp.status_code == 200
        assert resp.json()["status"] == "trial"

        # Far past the trial end: reads report it lapsed
        assert client.get("/api/me/subscription", headers=user).json()["status"] == "cancelled"

    def test_access_denies_without_subscription(self, client, user):
        resp = client.get("/api/me/access/icp_generator", headers=user)
        assert resp.status_code == 200
        assert resp.json()["allowed"] is False
        assert resp.json()["reason"] == "SubscriptionRequired"

    def test_access_unknown_capability(self, client, user):
        resp = client.get("/api/me/access/time_machine", headers=user)
        assert resp.json()["reason"] == "UnknownCapability"

    def test_access_many(self, client, user):
        resp = client.get(
            "/api/me/access", params=[("capability", "export"), ("capability", "resources")],
            headers=user,
        )
        assert set(resp.json()["decisions"]) == {"export", "resources"}

        everything = client.get("/api/me/access", headers=user).json()["decisions"]
        assert "founding_member_community" in everything


# ===========================================================================
# Milestone signals
# ===========================================================================
class TestMilestoneSignals:
    def test_attempt_complete_and_list(self, client, service, user):
        base = "/api/ingest/milestones/user-1/demo_viewed"
        attempt = client.post(f"{base}/attempt", json={"at": ISO_T0}, headers=service)
        assert attempt.json()["status"] == "pending"
        done = client.post(f"{base}/complete", json={"at": ISO_T0}, headers=service)
        assert done.json()["status"] == "completed"
        assert done.json()["completed_at"] == ISO_T0

        (row,) = client.get("/api/me/milestones", headers=user).json()["milestones"]
        assert row["milestone_type"] == "demo_viewed"

    def test_unknown_type_is_422(self, client, service):
        resp = client.post(
            "/api/ingest/milestones/user-1/won_the_lottery/attempt", json={}, headers=service,
        )
        assert resp.status_code == 422

    def test_expire_overdue(self, client, service):
        client.post(
            "/api/ingest/milestones/user-1/demo_viewed/attempt",
            json={"at": ISO_T0}, headers=service,
        )
        resp = client.post(
            "/api/ingest/milestones/expire-overdue",
            json={"now": "2026-01-09T09:00:00+00:00"}, headers=service,
        )
        assert resp.json() == {"expired": 1}

    def test_payment_milestone_activates_trial(self, client, service, user):
        client.post("/api/ingest/billing", json={
            "user_id": "user-1", "kind": "trial_started", "effective_at": "2026-10-01T00:00:00Z",
            "trial_end_at": "2099-01-01T00:00:00Z",
        }, headers=service)
        client.post(
            "/api/ingest/milestones/user-1/waitlist_paid/complete",
            json={"metadata": {"period_end": "2099-02-01T00:00:00+00:00"}},
            headers=service,
        )
        sub = client.get("/api/me/subscription", headers=user).json()
        assert sub["status"] == "active"
        assert sub["current_period_end"] == "2099-02-01T00:00:00+00:00"


# ===========================================================================
# Admin settings
# ===========================================================================
class TestAdminSettings:
    def test_list_settings(self, client, admin):
        resp = client.get("/api/admin/settings", headers=admin)
        keys = {s["key"] for s in resp.json()["settings"]}
        assert {"scoring.levels", "access.capabilities"} <= keys

    def test_update_is_audited_and_applied(self, client, admin, service):
        resp = client.put("/api/admin/settings", json={
            "values": {"scoring.levels": [[0, "Novice"], [100, "Pro"]],
                       "access.capabilities": {}},
            "reason": "launch tuning",
        }, headers=admin)
        assert resp.json() == {"updated": 2}

        standing = client.post("/api/ingest/events", json=_event(), headers=service).json()
        assert standing["standing"]["current_level"] == "Pro"

        audit = client.get("/api/admin/audit", headers=admin).json()
        assert audit["total"] == 2
        assert {e["target_id"] for e in audit["entries"]} == {"scoring.levels", "access.capabilities"}
        assert all(e["actor_id"] == "admin-1" for e in audit["entries"])

    def test_invalid_update_is_422(self, client, admin):
        resp = client.put("/api/admin/settings", json={
            "values": {"scoring.levels": [[50, "Late"]]},
        }, headers=admin)
        assert resp.status_code == 422


# ===========================================================================
# Storage failures
# ===========================================================================
class TestStorageUnavailable:
    def test_ingest_maps_to_503(self, client, service):
        with patch(
            "keystone.services.progression_service.submit_action",
            side_effect=StorageUnavailable("database unreachable"),
        ):
            resp = client.post("/api/ingest/events", json=_event(), headers=service)
        assert resp.status_code == 503
        assert resp.headers["Retry-After"] == "5"

    def test_me_read_maps_to_503(self, client, user):
        with patch(
            "keystone.services.standing_service.get_standing",
            side_effect=StorageUnavailable("database unreachable"),
        ):
            resp = client.get("/api/me/standing", headers=user)
        assert resp.status_code == 503
