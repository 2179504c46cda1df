"""End-to-end tests through the HTTP surface."""
from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from svix.webhooks import Webhook

from app.authz import EDUCATOR, SessionVerifier, StaticRoleProvider
from app.config import Settings
from app.main import checkout_origin, create_app
from conftest import (
    CLERK_WEBHOOK_SECRET,
    STRIPE_WEBHOOK_SECRET,
    FakeGateway,
    RecordingRedis,
    checkout_completed,
    checkout_expired,
    encode,
    seed_course,
    stripe_signature,
)


@pytest.fixture
def redis():
    return RecordingRedis()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(db_url, signing_keys, redis, gateway):
    app = create_app(
        Settings(
            database_url=db_url,
            stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
            clerk_webhook_secret=CLERK_WEBHOOK_SECRET,
            frontend_url="https://lms.example.com",
            cors_origins=["https://lms.example.com", "https://app.example.com"],
        ),
        redis=redis,
        gateway=gateway,
        roles=StaticRoleProvider({"educator_1": EDUCATOR}),
        sessions=SessionVerifier(signing_keys.public_pem),
    )
    with TestClient(app) as client:
        container = app.state.container
        client.portal.call(seed_course, container.session_factory, "free_1", 0, 0, "Free Course")
        client.portal.call(seed_course, container.session_factory, "paid_1", 100, 20, "Paid Course")
        yield client


@pytest.fixture
def auth(signing_keys):
    def _headers(user_id: str = "user_1") -> dict:
        return {"Authorization": f"Bearer {signing_keys.token(user_id)}"}
    return _headers


def _post_stripe(client, event: dict, signature: str | None = None):
    payload = encode(event)
    return client.post(
        "/stripe",
        content=payload,
        headers={
            "Content-Type": "application/json",
            "Stripe-Signature": signature or stripe_signature(payload),
        },
    )


def test_health(client):
    assert client.get("/health").json() == {"status": "ok", "service": "purchase-service"}


class TestAuthentication:
    def test_user_routes_require_session(self, client):
        resp = client.get("/api/user/data")
        assert resp.status_code == 401
        assert resp.json()["success"] is False

    def test_invalid_session_token(self, client):
        resp = client.get("/api/user/data", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    def test_session_cookie(self, client, signing_keys):
        client.cookies.set("__session", signing_keys.token("user_1"))
        try:
            resp = client.get("/api/user/data")
        finally:
            client.cookies.clear()
        assert resp.status_code == 200
        assert resp.json()["user"]["id"] == "user_1"

    def test_educator_route_requires_role(self, client, auth):
        assert client.get("/api/educator/enrolled-students", headers=auth("user_1")).status_code == 403
        assert client.get("/api/educator/enrolled-students", headers=auth("educator_1")).status_code == 200


class TestFreeEnrollment:
    def test_enrolls_and_reports(self, client, auth):
        resp = client.post("/api/user/purchase", json={"courseId": "free_1"}, headers=auth())
        body = resp.json()
        assert resp.status_code == 200
        assert body["success"] is True
        assert body["message"] == "Enrolled in free course"

        data = client.get("/api/user/data", headers=auth()).json()
        assert data["user"]["enrolled_courses"] == ["free_1"]

        again = client.post("/api/user/purchase", json={"courseId": "free_1"}, headers=auth())
        assert again.status_code == 409
        assert again.json()["code"] == "conflict"

    def test_missing_course_id(self, client, auth):
        resp = client.post("/api/user/purchase", json={}, headers=auth())
        assert resp.status_code == 400
        assert resp.json()["code"] == "validation_failed"

    def test_unknown_course(self, client, auth):
        resp = client.post("/api/user/purchase", json={"courseId": "nope"}, headers=auth())
        assert resp.status_code == 404


class TestPaidFlow:
    def test_checkout_then_webhook_enrolls(self, client, auth, gateway, redis):
        resp = client.post(
            "/api/user/purchase",
            json={"courseId": "paid_1"},
            headers={**auth(), "Origin": "https://app.example.com"},
        )
        body = resp.json()
        assert resp.status_code == 200
        purchase_id = body["purchase_id"]
        assert body["session_url"].endswith(purchase_id)
        assert gateway.requests[0].success_url == "https://app.example.com/loading/my-enrollments"

        enrolled = client.get("/api/user/enrolled-courses", headers=auth()).json()
        assert enrolled["enrolledCourses"] == []

        webhook = _post_stripe(client, checkout_completed(purchase_id))
        assert webhook.status_code == 200
        assert webhook.json() == {"received": True, "outcome": "transitioned"}

        enrolled = client.get("/api/user/enrolled-courses", headers=auth()).json()
        assert [c["id"] for c in enrolled["enrolledCourses"]] == ["paid_1"]

        replay = _post_stripe(client, checkout_completed(purchase_id))
        assert replay.json()["outcome"] == "noop"
        late_expiry = _post_stripe(client, checkout_expired(purchase_id))
        assert late_expiry.json()["outcome"] == "noop"

        history = client.get(f"/api/user/purchases/{purchase_id}/events", headers=auth()).json()
        assert history["purchase"]["status"] == "success"
        assert [e["event_type"] for e in history["events"]] == ["PurchaseCreated", "PurchaseSucceeded"]

        students = client.get(
            "/api/educator/enrolled-students", headers=auth("educator_1")
        ).json()["enrolledStudents"]
        assert [(s["student"]["id"], s["course_id"], s["amount"]) for s in students] == [
            ("user_1", "paid_1", "80.00")
        ]

    def test_purchase_history_hidden_from_others(self, client, auth):
        purchase_id = client.post(
            "/api/user/purchase", json={"courseId": "paid_1"}, headers=auth()
        ).json()["purchase_id"]
        resp = client.get(f"/api/user/purchases/{purchase_id}/events", headers=auth("user_2"))
        assert resp.status_code == 404

    def test_gateway_outage_is_retryable(self, client, auth, gateway):
        gateway.fail = True
        resp = client.post("/api/user/purchase", json={"courseId": "paid_1"}, headers=auth())
        assert resp.status_code == 503
        assert resp.json()["code"] == "gateway_unavailable"

        gateway.fail = False
        retry = client.post("/api/user/purchase", json={"courseId": "paid_1"}, headers=auth())
        assert retry.status_code == 200
        assert len({r.purchase_id for r in gateway.requests}) == 1
        assert retry.json()["purchase_id"] == gateway.requests[0].purchase_id

    def test_untrusted_origin_falls_back_to_frontend_url(self, client, auth, gateway):
        resp = client.post(
            "/api/user/purchase",
            json={"courseId": "paid_1"},
            headers={**auth(), "Origin": "https://evil.example.net"},
        )
        assert resp.status_code == 200
        [req] = gateway.requests
        assert req.success_url == "https://lms.example.com/loading/my-enrollments"
        assert req.cancel_url == "https://lms.example.com/course/paid_1"


@pytest.mark.parametrize(
    "cors_origins, header, expected",
    [
        (["*"], "https://evil.example.net", "https://lms.example.com"),
        (["https://app.example.com"], "https://app.example.com/", "https://app.example.com"),
        (["https://app.example.com"], None, "https://lms.example.com"),
    ],
)
def test_checkout_origin(cors_origins, header, expected):
    headers = [(b"origin", header.encode())] if header else []
    request = Request({"type": "http", "headers": headers})
    settings = Settings(
        database_url="sqlite+aiosqlite://",
        frontend_url="https://lms.example.com/",
        cors_origins=cors_origins,
    )
    assert checkout_origin(request, settings) == expected


class TestEducatorDashboard:
    def test_earnings_count_only_settled_purchases(self, client, auth):
        paid = client.post("/api/user/purchase", json={"courseId": "paid_1"}, headers=auth("user_1"))
        _post_stripe(client, checkout_completed(paid.json()["purchase_id"]))
        client.post("/api/user/purchase", json={"courseId": "paid_1"}, headers=auth("user_2"))
        client.post("/api/user/purchase", json={"courseId": "free_1"}, headers=auth("user_3"))

        resp = client.get("/api/educator/dashboard", headers=auth("educator_1"))
        assert resp.status_code == 200
        dashboard = resp.json()["dashboardData"]
        assert dashboard["totalEarnings"] == "80.00"
        assert dashboard["totalCourses"] == 2
        assert dashboard["totalEnrollments"] == 2
        assert sorted(s["student"]["id"] for s in dashboard["enrolledStudentsData"]) == [
            "user_1",
            "user_3",
        ]

    def test_empty_dashboard(self, client, auth):
        dashboard = client.get("/api/educator/dashboard", headers=auth("educator_1")).json()
        assert dashboard["dashboardData"] == {
            "totalEarnings": "0.00",
            "totalCourses": 2,
            "totalEnrollments": 0,
            "enrolledStudentsData": [],
        }

    def test_requires_educator_role(self, client, auth):
        assert client.get("/api/educator/dashboard", headers=auth("user_1")).status_code == 403


class TestWebhookAuthentication:
    def test_tampered_signature_never_touches_store(self, client):
        container = client.app.state.container
        original = container.session_factory
        calls = []

        def spy():
            calls.append(1)
            return original()

        container.session_factory = spy
        try:
            payload = encode(checkout_completed("anything"))
            resp = client.post(
                "/stripe",
                content=payload.replace(b"anything", b"something"),
                headers={"Stripe-Signature": stripe_signature(payload)},
            )
        finally:
            container.session_factory = original

        assert resp.status_code == 400
        assert resp.json()["code"] == "authentication_failed"
        assert calls == []

    def test_missing_signature(self, client):
        resp = client.post("/stripe", content=encode(checkout_completed("x")))
        assert resp.status_code == 400

    def test_integrity_gap_is_acknowledged(self, client, redis):
        resp = _post_stripe(client, checkout_completed("not-in-ledger"))
        assert resp.status_code == 200
        assert resp.json()["outcome"] == "integrity_error"
        assert len(redis.lists["reconciliation_issues"]) == 1

    def test_clerk_rejects_unsigned(self, client):
        body = json.dumps({"type": "user.created", "data": {"id": "user_9"}})
        resp = client.post("/clerk", content=body)
        assert resp.status_code == 400


class TestRating:
    def test_rate_enrolled_course(self, client, auth):
        client.post("/api/user/purchase", json={"courseId": "free_1"}, headers=auth())
        resp = client.post(
            "/api/user/add-rating", json={"courseId": "free_1", "rating": 4}, headers=auth()
        )
        assert resp.json() == {"success": True, "message": "Rating added"}

    def test_rate_not_enrolled(self, client, auth):
        resp = client.post(
            "/api/user/add-rating", json={"courseId": "paid_1", "rating": 4}, headers=auth()
        )
        assert resp.status_code == 400


class TestIdentityWebhook:
    def _signed(self, body: str, msg_id: str = "msg_api") -> dict:
        now = datetime.now(timezone.utc)
        return {
            "svix-id": msg_id,
            "svix-timestamp": str(int(now.timestamp())),
            "svix-signature": Webhook(CLERK_WEBHOOK_SECRET).sign(msg_id, now, body),
        }

    def test_user_created_then_deleted(self, client, auth):
        created = json.dumps({
            "type": "user.created",
            "data": {"id": "user_9", "first_name": "Ada", "email_addresses": []},
        })
        resp = client.post("/clerk", content=created, headers=self._signed(created))
        assert resp.json() == {"success": True, "outcome": "upserted"}

        user = client.get("/api/user/data", headers=auth("user_9")).json()["user"]
        assert user["name"] == "Ada"

        deleted = json.dumps({"type": "user.deleted", "data": {"id": "user_9"}})
        resp = client.post("/clerk", content=deleted, headers=self._signed(deleted, "msg_api_2"))
        assert resp.json() == {"success": True, "outcome": "deleted"}
