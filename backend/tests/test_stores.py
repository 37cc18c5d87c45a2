"""
Tests for the request and reply stores.
"""
import pytest
from datetime import date, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from leavetrack.db.database import session_scope
from leavetrack.db.orm_models import EmailReply, TimeOffRequest
from leavetrack.db.reply_store import ReplyStore
from leavetrack.db.request_store import RequestStore
from leavetrack.utils.errors import StateConflictError

from conftest import APPROVER_EMAIL, NOW, create_request

WINDOW = (date(2025, 3, 1), date(2025, 4, 30))


def add_reply(db, request_id, message_id, received_at, thread_id="T1", is_processed=False):
    reply = EmailReply(
        time_off_request_id=request_id,
        gmail_message_id=message_id,
        gmail_thread_id=thread_id,
        from_email=APPROVER_EMAIL,
        reply_content="Approved",
        received_at=received_at,
        is_processed=is_processed,
    )
    db.add(reply)
    db.flush()
    return reply


class TestRequestStore:
    def test_assign_thread_covers_whole_group(self, session_factory, user):
        first = create_request(session_factory, user.id, date(2025, 3, 20), thread_id=None, email_sent=None)
        second = create_request(session_factory, user.id, date(2025, 3, 21), thread_id=None, email_sent=None)

        with session_scope(session_factory) as db:
            store = RequestStore(db)
            members = store.assign_thread(store.get(first), "T7", NOW)

        assert sorted(m.id for m in members) == sorted([first, second])
        with session_scope(session_factory) as db:
            assert sorted(r.id for r in RequestStore(db).find_in_thread("T7", user.id)) == sorted([first, second])

    def test_assign_thread_refuses_second_thread(self, session_factory, user):
        first = create_request(session_factory, user.id, date(2025, 3, 20), thread_id="T1")

        with pytest.raises(StateConflictError):
            with session_scope(session_factory) as db:
                store = RequestStore(db)
                store.assign_thread(store.get(first), "T2", NOW)

    def test_update_fields_rejects_unknown_and_protected(self, session_factory, user):
        request_id = create_request(session_factory, user.id, date(2025, 3, 20))

        with session_scope(session_factory) as db:
            store = RequestStore(db)
            request = store.get(request_id)
            with pytest.raises(AttributeError):
                store.update_fields(request, needs_reveiw=True)
            with pytest.raises(AttributeError):
                store.update_fields(request, version=10)

    def test_pending_in_thread_ignores_resolved_and_other_users(self, session_factory, user, other_user):
        a = create_request(session_factory, user.id, date(2025, 3, 20))
        b = create_request(session_factory, user.id, date(2025, 3, 21), status="APPROVED")
        create_request(session_factory, other_user.id, date(2025, 3, 20))

        with session_scope(session_factory) as db:
            assert [r.id for r in RequestStore(db).find_pending_in_thread("T1", user.id)] == [a]

    def test_stale_version_is_detected(self, session_factory, user):
        request_id = create_request(session_factory, user.id, date(2025, 3, 20))

        stale_session = session_factory()
        stale = stale_session.get(TimeOffRequest, request_id)

        with session_scope(session_factory) as db:
            db.get(TimeOffRequest, request_id).needs_review = True

        stale.reply_count = 5
        with pytest.raises(StaleDataError):
            stale_session.commit()
        stale_session.rollback()
        stale_session.close()


class TestReplyStore:
    def test_create_if_absent_is_idempotent(self, session_factory, user):
        request_id = create_request(session_factory, user.id, date(2025, 3, 20))
        fields = dict(
            time_off_request_id=request_id,
            gmail_message_id="M1",
            gmail_thread_id="T1",
            from_email=APPROVER_EMAIL,
            reply_content="Approved",
            received_at=NOW,
        )

        with session_scope(session_factory) as db:
            store = ReplyStore(db)
            assert store.create_if_absent(**fields) is not None
            assert store.create_if_absent(**fields) is None
            assert store.exists("M1", "T1")

    def test_unique_message_per_thread(self, session_factory, user):
        request_id = create_request(session_factory, user.id, date(2025, 3, 20))

        with pytest.raises(IntegrityError):
            with session_scope(session_factory) as db:
                add_reply(db, request_id, "M1", NOW)
                add_reply(db, request_id, "M1", NOW)

    def test_latest_for_thread(self, session_factory, user):
        request_id = create_request(session_factory, user.id, date(2025, 3, 20))

        with session_scope(session_factory) as db:
            add_reply(db, request_id, "M1", NOW - timedelta(hours=2))
            add_reply(db, request_id, "M2", NOW - timedelta(hours=1), is_processed=True)
            add_reply(db, request_id, "M0", NOW - timedelta(hours=3))

        with session_scope(session_factory) as db:
            store = ReplyStore(db)
            assert store.latest_for_thread("T1").gmail_message_id == "M2"
            assert store.latest_unprocessed("T1").gmail_message_id == "M1"
            assert store.count_unprocessed("T1") == 2
            assert [r.gmail_message_id for r in store.thread_history("T1")] == ["M2", "M1", "M0"]

    def test_list_filters(self, session_factory, user, other_user):
        first = create_request(session_factory, user.id, date(2025, 3, 20), thread_id="T1")
        second = create_request(session_factory, user.id, date(2025, 3, 27), thread_id="T2", group_id="group-2")
        outside = create_request(session_factory, user.id, date(2025, 8, 1), thread_id="T3", group_id="group-3")
        foreign = create_request(session_factory, other_user.id, date(2025, 3, 20), thread_id="T4", group_id="group-4")

        with session_scope(session_factory) as db:
            add_reply(db, first, "A1", NOW - timedelta(hours=4), thread_id="T1", is_processed=True)
            add_reply(db, first, "A2", NOW - timedelta(hours=3), thread_id="T1", is_processed=True)
            add_reply(db, second, "B1", NOW - timedelta(hours=2), thread_id="T2")
            add_reply(db, outside, "C1", NOW, thread_id="T3")
            add_reply(db, foreign, "D1", NOW, thread_id="T4")

        with session_scope(session_factory) as db:
            store = ReplyStore(db)

            rows, total = store.list_for_user(user.id, *WINDOW, filter="needreview")
            assert ([r.gmail_message_id for r in rows], total) == (["B1"], 1)

            rows, total = store.list_for_user(user.id, *WINDOW, filter="reviewed")
            assert ([r.gmail_message_id for r in rows], total) == (["A2"], 1)

            rows, total = store.list_for_user(user.id, *WINDOW, filter="all", page=2, limit=2)
            assert ([r.gmail_message_id for r in rows], total) == (["A1"], 3)

            assert store.count_unprocessed_for_user(user.id, *WINDOW) == 1
