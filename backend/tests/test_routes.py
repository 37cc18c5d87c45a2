"""
API tests for the reply endpoints.

Uses FastAPI's TestClient with the app's database bound to in-memory
SQLite and the Gmail client mocked.
"""
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock
from fastapi.testclient import TestClient

from leavetrack.db import database
from leavetrack.db.database import session_scope
from leavetrack.db.orm_models import EmailMode, User
from leavetrack.main import app
from leavetrack.models.email import SentReply
from leavetrack.routes.replies import get_reply_checking_service, get_reply_service
from leavetrack.services.reply_service import ReplyService
from leavetrack.services.session_service import SESSION_COOKIE, create_session_token

from conftest import NOW


@pytest.fixture
def session_factory():
    """Bind the application's own database to a fresh in-memory SQLite."""
    factory = database.configure("sqlite://")
    database.init_db()
    return factory


@pytest.fixture
def api(session_factory, reply_service, user, grouped_requests, mailbox):
    """Authenticated client for `user`, with one approver reply waiting in T1."""
    mailbox.add("T1", "M1", from_user=False, received_at=NOW - timedelta(hours=3))

    app.dependency_overrides[get_reply_checking_service] = lambda: reply_service
    app.dependency_overrides[get_reply_service] = lambda: ReplyService(session_factory, clock=lambda: NOW)
    client = TestClient(app, cookies={SESSION_COOKIE: create_session_token(user.id)})
    yield client
    app.dependency_overrides.clear()


def first_reply_id(api):
    api.post("/api/check-replies")
    return api.get("/api/replies").json()["replies"][0]["id"]


class TestHealth:
    def test_health_reports_database(self, session_factory):
        response = TestClient(app).get("/api/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["database"] == "ok"


class TestAuthentication:
    def test_missing_cookie(self, session_factory):
        response = TestClient(app).post("/api/check-replies")

        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "AUTH_REQUIRED"

    def test_invalid_cookie(self, session_factory):
        client = TestClient(app, cookies={SESSION_COOKIE: "not-a-jwt"})
        response = client.get("/api/replies/count")

        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "SESSION_EXPIRED"

    def test_inactive_user(self, session_factory):
        with session_scope(session_factory) as db:
            former = User(email="former@example.com", is_active=False)
            db.add(former)

        client = TestClient(app, cookies={SESSION_COOKIE: create_session_token(former.id)})

        assert client.get("/api/replies/count").status_code == 401


class TestCheckReplies:
    def test_check_reports_new_replies(self, api, grouped_requests):
        response = api.post("/api/check-replies")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["new_replies_count"] == 1
        assert data["total_checked"] == 2
        assert data["failed_threads"] == []
        assert data["updated_requests"] == [{"id": i, "needs_review": True} for i in grouped_requests]

    def test_failed_threads_listed(self, api, gmail_client, grouped_requests):
        from leavetrack.utils.errors import GmailError

        gmail_client.check_for_replies.side_effect = GmailError()

        data = api.post("/api/check-replies").json()

        assert data["new_replies_count"] == 0
        assert data["failed_threads"][0]["thread_id"] == "T1"
        assert data["failed_threads"][0]["request_ids"] == grouped_requests

    def test_unexpected_error_is_generic_500(self, api):
        broken = MagicMock()
        broken.check_user_replies = AsyncMock(side_effect=RuntimeError("database on fire"))
        app.dependency_overrides[get_reply_checking_service] = lambda: broken

        response = api.post("/api/check-replies")

        assert response.status_code == 500
        assert response.json()["detail"]["code"] == "INTERNAL_ERROR"
        assert "fire" not in response.json()["detail"]["message"]


class TestListReplies:
    def test_needreview_list_includes_group_and_history(self, api, grouped_requests):
        api.post("/api/check-replies")

        data = api.get("/api/replies").json()

        assert data["total_count"] == 1
        assert data["total_pages"] == 1
        reply = data["replies"][0]
        assert reply["gmail_message_id"] == "M1"
        assert reply["suggested_status"] == "APPROVED"
        assert reply["request"]["id"] == grouped_requests[0]
        assert [r["id"] for r in reply["all_requests_in_group"]] == grouped_requests
        assert len(reply["thread_replies"]) == 1

    def test_count(self, api):
        assert api.get("/api/replies/count").json() == {"count": 0}

        api.post("/api/check-replies")

        assert api.get("/api/replies/count").json() == {"count": 1}

    def test_reviewed_filter_after_processing(self, api):
        reply_id = first_reply_id(api)
        api.put(f"/api/replies/{reply_id}/process", json={"status": "DENIED"})

        assert api.get("/api/replies?filter=needreview").json()["total_count"] == 0
        reviewed = api.get("/api/replies?filter=reviewed").json()
        assert [r["id"] for r in reviewed["replies"]] == [reply_id]
        assert api.get("/api/replies?filter=all").json()["total_count"] == 1

    def test_invalid_page(self, api):
        assert api.get("/api/replies?page=0").status_code == 422


class TestProcessReply:
    def test_process_updates_group(self, api, grouped_requests):
        reply_id = first_reply_id(api)

        response = api.put(f"/api/replies/{reply_id}/process", json={"status": "APPROVED"})

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Reply marked as approved"
        assert data["reply"]["is_processed"] is True
        assert data["linked_request"]["id"] == grouped_requests[0]
        assert {r["status"] for r in data["updated_requests"]} == {"APPROVED"}
        assert {r["needs_review"] for r in data["updated_requests"]} == {False}

    def test_second_decision_conflicts(self, api):
        reply_id = first_reply_id(api)
        api.put(f"/api/replies/{reply_id}/process", json={"status": "APPROVED"})

        response = api.put(f"/api/replies/{reply_id}/process", json={"status": "DENIED"})

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "STATE_CONFLICT"

    def test_unknown_reply(self, api):
        response = api.put("/api/replies/999/process", json={"status": "APPROVED"})

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "REPLY_NOT_FOUND"

    def test_invalid_status(self, api):
        reply_id = first_reply_id(api)

        response = api.put(f"/api/replies/{reply_id}/process", json={"status": "MAYBE"})

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_REQUEST"

    def test_process_individual(self, api, grouped_requests):
        reply_id = first_reply_id(api)

        response = api.put(
            f"/api/replies/{reply_id}/process-individual",
            json={"request_statuses": [
                {"request_id": grouped_requests[0], "status": "APPROVED"},
                {"request_id": grouped_requests[1], "status": "DENIED"},
            ]},
        )

        assert response.status_code == 200
        statuses = {r["id"]: r["status"] for r in response.json()["updated_requests"]}
        assert statuses == {grouped_requests[0]: "APPROVED", grouped_requests[1]: "DENIED"}


class TestRespond:
    def test_respond_sends_and_clears(self, api, gmail_client, grouped_requests):
        reply_id = first_reply_id(api)
        gmail_client.send_threaded_reply.return_value = SentReply(
            message_id="sent-1", thread_id="T1", subject="Re: Time-off Request"
        )

        response = api.post(f"/api/replies/{reply_id}/respond", json={"message": "Thanks!"})

        assert response.status_code == 200
        data = response.json()
        assert data["message_id"] == "sent-1"
        assert sorted(data["cleared_request_ids"]) == sorted(grouped_requests)
        assert api.get("/api/replies/count").json() == {"count": 0}

    def test_manual_user_forbidden(self, api, session_factory, user):
        reply_id = first_reply_id(api)
        with session_scope(session_factory) as db:
            db.get(User, user.id).email_preference = EmailMode.MANUAL.value

        response = api.post(f"/api/replies/{reply_id}/respond", json={"message": "Thanks!"})

        assert response.status_code == 403
        assert response.json()["detail"]["code"] == "FORBIDDEN"
