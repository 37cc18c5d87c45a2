"""
Reply listing for the review screens.

Read-only: every list is bounded by the same roster window the checker
uses, and each reply carries its whole request group and the thread's
conversation history.
"""
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List

from sqlalchemy.orm import sessionmaker

from leavetrack.db.database import get_session_factory, session_scope
from leavetrack.db.orm_models import EmailReply, TimeOffRequest
from leavetrack.db.reply_store import ReplyStore, REPLY_FILTERS
from leavetrack.db.request_store import RequestStore
from leavetrack.db.roster_store import RosterStore
from leavetrack.services.window_selector import RosterWindowSelector
from leavetrack.utils.errors import InvalidRequestError


@dataclass
class ReplyView:
    reply: EmailReply
    all_requests_in_group: List[TimeOffRequest]
    thread_replies: List[EmailReply]


@dataclass
class ReplyPage:
    replies: List[ReplyView]
    total_count: int
    current_page: int
    total_pages: int


class ReplyService:
    def __init__(self, session_factory: sessionmaker = None, clock: Callable[[], datetime] = None):
        self.session_factory = session_factory or get_session_factory()
        self.clock = clock or datetime.utcnow

    def list_replies(self, user_id: int, filter: str = "needreview", page: int = 1, limit: int = 20) -> ReplyPage:
        if filter not in REPLY_FILTERS:
            filter = "needreview"
        if page < 1 or limit < 1:
            raise InvalidRequestError("page and limit must be positive")

        with session_scope(self.session_factory) as db:
            window = RosterWindowSelector(RosterStore(db)).select_check_window(self.clock())
            reply_store = ReplyStore(db)
            request_store = RequestStore(db)

            rows, total = reply_store.list_for_user(user_id, window.start, window.end, filter, page, limit)
            views = [
                ReplyView(
                    reply=reply,
                    all_requests_in_group=request_store.find_in_thread_between(
                        reply.gmail_thread_id, user_id, window.start, window.end
                    ),
                    thread_replies=reply_store.thread_history(reply.gmail_thread_id),
                )
                for reply in rows
            ]

        return ReplyPage(
            replies=views,
            total_count=total,
            current_page=page,
            total_pages=math.ceil(total / limit) if total else 0,
        )

    def count_unprocessed(self, user_id: int) -> int:
        """Badge count of replies waiting for a decision."""
        with session_scope(self.session_factory) as db:
            window = RosterWindowSelector(RosterStore(db)).select_check_window(self.clock())
            return ReplyStore(db).count_unprocessed_for_user(user_id, window.start, window.end)
