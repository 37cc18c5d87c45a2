"""
Pytest fixtures for LeaveTrack backend tests.
"""
import pytest
from datetime import date, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock
from sqlalchemy.orm import sessionmaker

from leavetrack.config import Settings
from leavetrack.db.database import Base, build_engine, session_scope
from leavetrack.db.orm_models import EmailMode, RosterPeriod, TimeOffRequest, User
from leavetrack.models.email import ThreadCheckResult, ThreadMessage
from leavetrack.services.reply_checking_service import ReplyCheckingService
from leavetrack.services.thread_locks import ThreadLockRegistry

NOW = datetime(2025, 3, 10, 12, 0, 0)
USER_EMAIL = "pilot@example.com"
APPROVER_EMAIL = "crewing@example.com"


class FakeMailbox:
    """
    In-memory stand-in for Gmail threads.

    check_for_replies honours the cursor the same way GmailClient does:
    messages after since_message_id, or all of them if it isn't found.
    """

    def __init__(self):
        self.threads = {}

    def add(self, thread_id, message_id, from_user, received_at, body="Approved, enjoy your day off."):
        message = ThreadMessage(
            id=message_id,
            thread_id=thread_id,
            sender=USER_EMAIL if from_user else f"Crewing Office <{APPROVER_EMAIL}>",
            sender_name="Test Pilot" if from_user else "Crewing Office",
            sender_email=USER_EMAIL if from_user else APPROVER_EMAIL,
            body=body,
            received_at=received_at,
            is_user_reply=from_user,
        )
        self.threads.setdefault(thread_id, []).append(message)
        return message

    async def check_for_replies(self, thread_id, since_message_id, user_email):
        messages = self.threads.get(thread_id, [])
        start = 0
        for index, message in enumerate(messages):
            if message.id == since_message_id:
                start = index + 1
                break
        return ThreadCheckResult(
            success=True,
            new_messages=messages[start:],
            total_messages=len(messages),
        )


@pytest.fixture
def session_factory(tmp_path):
    """Fresh SQLite database file per test; worker threads get their own connections."""
    engine = build_engine(f"sqlite:///{tmp_path / 'leavetrack.db'}")
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def test_settings():
    return Settings(
        thread_check_timeout_seconds=0.5,
        thread_check_concurrency=1,
        reply_check_window_days=90,
        reply_check_fallback_periods=3,
    )


@pytest.fixture
def user(session_factory):
    """Active user who sends request emails automatically."""
    with session_scope(session_factory) as db:
        user = User(
            email=USER_EMAIL,
            name="Test Pilot",
            email_preference=EmailMode.AUTOMATIC.value,
            gmail_access_token="mock-access-token",
            gmail_refresh_token="mock-refresh-token",
            gmail_token_expiry=NOW + timedelta(hours=1),
        )
        db.add(user)
    return user


@pytest.fixture
def other_user(session_factory):
    with session_scope(session_factory) as db:
        other = User(email="someone.else@example.com", name="Someone Else")
        db.add(other)
    return other


@pytest.fixture
def admin_user(session_factory):
    with session_scope(session_factory) as db:
        admin = User(email="admin@example.com", name="Admin", is_admin=True)
        db.add(admin)
    return admin


@pytest.fixture
def roster_period(session_factory):
    """Active period containing NOW."""
    with session_scope(session_factory) as db:
        period = RosterPeriod(
            publication_date=date(2025, 2, 15),
            latest_request_date=date(2025, 2, 10),
            start_period=date(2025, 3, 1),
            end_period=date(2025, 4, 30),
            description="March/April 2025",
        )
        db.add(period)
    return period


def create_request(session_factory, user_id, start_date, thread_id="T1", group_id="group-1", **fields):
    """Insert a pending, emailed request and return its id."""
    values = {
        "user_id": user_id,
        "group_id": group_id,
        "start_date": start_date,
        "end_date": start_date,
        "gmail_thread_id": thread_id,
        "email_sent": NOW - timedelta(days=2),
    }
    values.update(fields)
    with session_scope(session_factory) as db:
        request = TimeOffRequest(**values)
        db.add(request)
        db.flush()
        return request.id


@pytest.fixture
def grouped_requests(session_factory, user, roster_period):
    """R1 and R2: one group, one thread T1, both pending and emailed."""
    return [
        create_request(session_factory, user.id, date(2025, 3, 20)),
        create_request(session_factory, user.id, date(2025, 3, 21)),
    ]


@pytest.fixture
def mailbox():
    return FakeMailbox()


@pytest.fixture
def gmail_client(mailbox):
    """Mock GmailClient backed by the fake mailbox."""
    client = MagicMock()
    client.check_for_replies = AsyncMock(side_effect=mailbox.check_for_replies)
    client.send_threaded_reply = AsyncMock()
    return client


@pytest.fixture
def reply_service(session_factory, gmail_client, test_settings):
    """ReplyCheckingService wired to the test database and mock Gmail."""
    return ReplyCheckingService(
        session_factory=session_factory,
        client_factory=AsyncMock(return_value=gmail_client),
        settings=test_settings,
        locks=ThreadLockRegistry(),
        clock=lambda: NOW,
    )


@pytest.fixture
def mock_gmail_thread():
    """Gmail API thread: the user's request, an approver reply, the user's answer."""
    return {
        "id": "thread-xyz789",
        "messages": [
            {
                "id": "msg-1",
                "threadId": "thread-xyz789",
                "internalDate": "1741255200000",  # 2025-03-06 10:00:00 UTC
                "payload": {
                    "headers": [
                        {"name": "From", "value": f"Test Pilot <{USER_EMAIL}>"},
                        {"name": "Subject", "value": "Time-off Request: 20 Mar 2025"},
                        {"name": "Message-ID", "value": "<request@mail.example.com>"},
                    ],
                    "mimeType": "text/plain",
                    "body": {"data": "UGxlYXNlIGFwcHJvdmU="},  # "Please approve"
                },
            },
            {
                "id": "msg-2",
                "threadId": "thread-xyz789",
                "internalDate": "1741341600000",  # 2025-03-07 10:00:00 UTC
                "payload": {
                    "headers": [
                        {"name": "From", "value": f"Crewing Office <{APPROVER_EMAIL}>"},
                        {"name": "Subject", "value": "Re: Time-off Request: 20 Mar 2025"},
                        {"name": "Message-ID", "value": "<reply@mail.example.com>"},
                    ],
                    "mimeType": "multipart/alternative",
                    "parts": [
                        {
                            "mimeType": "text/plain",
                            "body": {"data": "QXBwcm92ZWQ="},  # "Approved"
                        },
                        {
                            "mimeType": "text/html",
                            "body": {"data": "PHA-QXBwcm92ZWQ8L3A-"},  # "<p>Approved</p>"
                        },
                    ],
                },
            },
            {
                "id": "msg-3",
                "threadId": "thread-xyz789",
                "internalDate": "1741428000000",  # 2025-03-08 10:00:00 UTC
                "payload": {
                    "headers": [
                        {"name": "From", "value": USER_EMAIL},
                        {"name": "Subject", "value": "Re: Time-off Request: 20 Mar 2025"},
                        {"name": "Message-ID", "value": "<answer@mail.example.com>"},
                    ],
                    "mimeType": "text/plain",
                    "body": {"data": "VGhhbmtzIQ=="},  # "Thanks!"
                },
            },
        ],
    }
