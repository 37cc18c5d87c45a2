"""
Data access for email replies.
"""
from datetime import date
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from leavetrack.db.orm_models import EmailReply, TimeOffRequest

REPLY_FILTERS = ("needreview", "reviewed", "all")


class ReplyStore:
    """Queries and writes for EmailReply rows inside one session."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, reply_id: int) -> Optional[EmailReply]:
        return (
            self.db.query(EmailReply)
            .options(joinedload(EmailReply.request))
            .filter(EmailReply.id == reply_id)
            .first()
        )

    def get_for_user(self, reply_id: int, user_id: int) -> Optional[EmailReply]:
        """Reply whose anchor request belongs to user_id."""
        return (
            self.db.query(EmailReply)
            .join(EmailReply.request)
            .options(joinedload(EmailReply.request))
            .filter(EmailReply.id == reply_id, TimeOffRequest.user_id == user_id)
            .first()
        )

    def latest_for_thread(self, thread_id: str) -> Optional[EmailReply]:
        """Most recently received reply of a thread; its message id is the poll cursor."""
        return (
            self.db.query(EmailReply)
            .filter(EmailReply.gmail_thread_id == thread_id)
            .order_by(EmailReply.received_at.desc(), EmailReply.id.desc())
            .first()
        )

    def latest_unprocessed(self, thread_id: str) -> Optional[EmailReply]:
        return (
            self.db.query(EmailReply)
            .filter(EmailReply.gmail_thread_id == thread_id, EmailReply.is_processed.is_(False))
            .order_by(EmailReply.received_at.desc(), EmailReply.id.desc())
            .first()
        )

    def exists(self, message_id: str, thread_id: str) -> bool:
        return (
            self.db.query(EmailReply.id)
            .filter(EmailReply.gmail_message_id == message_id, EmailReply.gmail_thread_id == thread_id)
            .first()
        ) is not None

    def create_if_absent(self, **fields) -> Optional[EmailReply]:
        """
        Insert a reply unless (gmail_message_id, gmail_thread_id) is already
        recorded. Returns None when it was.
        """
        if self.exists(fields["gmail_message_id"], fields["gmail_thread_id"]):
            return None
        reply = EmailReply(**fields)
        self.db.add(reply)
        self.db.flush()
        return reply

    def count_unprocessed(self, thread_id: str) -> int:
        return (
            self.db.query(func.count(EmailReply.id))
            .filter(EmailReply.gmail_thread_id == thread_id, EmailReply.is_processed.is_(False))
            .scalar()
        )

    def thread_history(self, thread_id: str) -> List[EmailReply]:
        """All replies of a thread, newest first."""
        return (
            self.db.query(EmailReply)
            .filter(EmailReply.gmail_thread_id == thread_id)
            .order_by(EmailReply.received_at.desc(), EmailReply.id.desc())
            .all()
        )

    def _for_user_in_window(self, user_id: int, start: date, end: date):
        return (
            self.db.query(EmailReply)
            .join(EmailReply.request)
            .options(joinedload(EmailReply.request))
            .filter(
                TimeOffRequest.user_id == user_id,
                TimeOffRequest.start_date >= start,
                TimeOffRequest.start_date <= end,
            )
        )

    def list_for_user(
        self,
        user_id: int,
        start: date,
        end: date,
        filter: str = "needreview",
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[EmailReply], int]:
        """
        Page through a user's replies whose anchor request is in [start, end].

        "reviewed" collapses each thread to its latest processed reply.
        Returns (rows, total_count).
        """
        offset = (max(page, 1) - 1) * limit
        query = self._for_user_in_window(user_id, start, end)

        if filter == "reviewed":
            processed = (
                query.filter(EmailReply.is_processed.is_(True))
                .order_by(EmailReply.received_at.desc(), EmailReply.id.desc())
                .all()
            )
            seen = set()
            per_thread = []
            for reply in processed:
                if reply.gmail_thread_id in seen:
                    continue
                seen.add(reply.gmail_thread_id)
                per_thread.append(reply)
            return per_thread[offset:offset + limit], len(per_thread)

        if filter != "all":
            query = query.filter(EmailReply.is_processed.is_(False))

        total = query.count()
        rows = (
            query.order_by(EmailReply.received_at.desc(), EmailReply.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return rows, total

    def count_unprocessed_for_user(self, user_id: int, start: date, end: date) -> int:
        return self._for_user_in_window(user_id, start, end).filter(EmailReply.is_processed.is_(False)).count()
