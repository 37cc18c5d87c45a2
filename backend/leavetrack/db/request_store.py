"""
Data access for time-off requests.
"""
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from leavetrack.db.orm_models import TimeOffRequest, RequestStatus
from leavetrack.utils.errors import StateConflictError


class RequestStore:
    """Queries and writes for TimeOffRequest rows inside one session."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, request_id: int) -> Optional[TimeOffRequest]:
        return self.db.get(TimeOffRequest, request_id)

    def get_for_user(self, request_id: int, user_id: int) -> Optional[TimeOffRequest]:
        return (
            self.db.query(TimeOffRequest)
            .filter(TimeOffRequest.id == request_id, TimeOffRequest.user_id == user_id)
            .first()
        )

    def find_needing_check(self, user_id: int, start: date, end: date) -> List[TimeOffRequest]:
        """
        Requests worth polling: pending, emailed, with a thread, and
        starting inside [start, end]. Most recently emailed first.
        """
        return (
            self.db.query(TimeOffRequest)
            .filter(
                TimeOffRequest.user_id == user_id,
                TimeOffRequest.status == RequestStatus.PENDING.value,
                TimeOffRequest.email_sent.isnot(None),
                TimeOffRequest.gmail_thread_id.isnot(None),
                TimeOffRequest.start_date >= start,
                TimeOffRequest.start_date <= end,
            )
            .order_by(TimeOffRequest.email_sent.desc(), TimeOffRequest.id.asc())
            .all()
        )

    def find_in_thread(self, thread_id: str, user_id: int) -> List[TimeOffRequest]:
        return (
            self.db.query(TimeOffRequest)
            .filter(TimeOffRequest.gmail_thread_id == thread_id, TimeOffRequest.user_id == user_id)
            .order_by(TimeOffRequest.start_date.asc(), TimeOffRequest.id.asc())
            .all()
        )

    def find_in_thread_between(self, thread_id: str, user_id: int, start: date, end: date) -> List[TimeOffRequest]:
        return [r for r in self.find_in_thread(thread_id, user_id) if start <= r.start_date <= end]

    def find_pending_in_thread(self, thread_id: str, user_id: int) -> List[TimeOffRequest]:
        return [r for r in self.find_in_thread(thread_id, user_id) if r.is_pending]

    def find_by_group(self, group_id: str, user_id: int) -> List[TimeOffRequest]:
        return (
            self.db.query(TimeOffRequest)
            .filter(TimeOffRequest.group_id == group_id, TimeOffRequest.user_id == user_id)
            .order_by(TimeOffRequest.start_date.asc())
            .all()
        )

    def update_fields(self, request: TimeOffRequest, **fields) -> TimeOffRequest:
        for key, value in fields.items():
            if not hasattr(TimeOffRequest, key) or key in ("id", "version", "created_at"):
                raise AttributeError(f"TimeOffRequest has no writable field '{key}'")
            setattr(request, key, value)
        return request

    def assign_thread(self, request: TimeOffRequest, thread_id: str, sent_at: datetime) -> List[TimeOffRequest]:
        """
        Record that the outbound message for a request went out in thread_id.

        Every request of the same group gets the same thread. A group that
        already points at a different thread is refused.
        """
        members = self.find_by_group(request.group_id, request.user_id) if request.group_id else [request]
        for member in members:
            if member.gmail_thread_id and member.gmail_thread_id != thread_id:
                raise StateConflictError(
                    f"Request {member.id} is already linked to thread {member.gmail_thread_id}.",
                    details={"request_id": member.id, "thread_id": member.gmail_thread_id},
                )
        for member in members:
            member.gmail_thread_id = thread_id
            member.email_sent = sent_at
        self.db.flush()
        return members
