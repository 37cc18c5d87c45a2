"""
Reply checking service - keeps requests in sync with their Gmail threads.

This module provides:
1. check_user_replies: poll every thread of a user's pending requests,
   record approver messages and update review state
2. process_reply: apply a reviewer's decision to every pending request
   sharing the reply's thread
3. process_reply_individual: the same, with one decision per request
4. respond_to_reply: send the user's answer inside the thread and mark
   the thread as answered
5. check_all_users: the scheduled variant of check_user_replies

A group of consecutive-day requests shares one thread. The thread is
fetched once per check and every request of the group ends up with the
same review state.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from starlette.concurrency import run_in_threadpool

from leavetrack.config import Settings, get_settings
from leavetrack.db.database import get_session_factory, session_scope
from leavetrack.db.orm_models import EmailReply, EmailMode, RequestStatus, TimeOffRequest, User
from leavetrack.db.reply_store import ReplyStore
from leavetrack.db.request_store import RequestStore
from leavetrack.db.roster_store import RosterStore
from leavetrack.integrations.gmail_client import GmailClient
from leavetrack.models.email import SentReply, ThreadCheckResult
from leavetrack.services.auth_service import AuthService
from leavetrack.services.reply_analyzer import suggest_decision
from leavetrack.services.status_service import (
    METHOD_REPLY_PROCESSING,
    METHOD_REPLY_PROCESSING_INDIVIDUAL,
    email_prerequisites_met,
    parse_status,
    status_update_fields,
)
from leavetrack.services.thread_locks import ThreadLockRegistry, thread_locks
from leavetrack.services.window_selector import RosterWindowSelector
from leavetrack.utils.logger import get_logger
from leavetrack.utils.errors import (
    AppError,
    ForbiddenError,
    GmailError,
    InvalidRequestError,
    ReplyNotFoundError,
    RequestNotFoundError,
    StateConflictError,
    ThreadCheckTimeoutError,
)

logger = get_logger(__name__)

ClientFactory = Callable[[User], Awaitable[GmailClient]]


@dataclass
class ThreadFailure:
    """A thread that could not be checked in this run."""
    thread_id: str
    request_ids: List[int]
    code: str
    message: str


@dataclass
class ThreadOutcome:
    thread_id: str
    new_replies: List[EmailReply] = field(default_factory=list)
    updated_requests: List[TimeOffRequest] = field(default_factory=list)
    failure: Optional[ThreadFailure] = None


@dataclass
class ReplyCheckResult:
    """Aggregate of one check_user_replies run."""
    new_replies: List[EmailReply] = field(default_factory=list)
    updated_requests: List[TimeOffRequest] = field(default_factory=list)
    total_checked: int = 0
    failed_threads: List[ThreadFailure] = field(default_factory=list)


@dataclass
class ProcessReplyResult:
    reply: EmailReply
    linked_request: TimeOffRequest
    all_updated_requests: List[TimeOffRequest]


@dataclass
class UserResponseResult:
    sent: SentReply
    reply: Optional[EmailReply]
    cleared_requests: List[TimeOffRequest]


@dataclass
class BulkCheckSummary:
    results: Dict[int, ReplyCheckResult] = field(default_factory=dict)
    failures: Dict[int, str] = field(default_factory=dict)


def group_by_thread(requests: Iterable[TimeOffRequest]) -> Dict[str, List[int]]:
    """
    Map thread id -> request ids, in first-seen order.

    The first id of each list is the thread's anchor request.
    """
    groups: Dict[str, List[int]] = {}
    for request in requests:
        if not request.gmail_thread_id:
            continue
        groups.setdefault(request.gmail_thread_id, []).append(request.id)
    return groups


class ReplyCheckingService:
    """
    Reply reconciliation between requests and their Gmail threads.

    Usage:
        service = ReplyCheckingService()
        result = await service.check_user_replies(user)
        await service.process_reply(reply_id, "APPROVED", user.id)
    """

    def __init__(
        self,
        session_factory: sessionmaker = None,
        client_factory: ClientFactory = None,
        settings: Settings = None,
        locks: ThreadLockRegistry = None,
        clock: Callable[[], datetime] = None,
    ):
        """
        Args:
            session_factory: SQLAlchemy sessionmaker (defaults to the app's)
            client_factory: async callable returning a GmailClient for a user
            settings: Settings override
            locks: Per-thread lock registry (defaults to the process-wide one)
            clock: Returns "now" as naive UTC
        """
        self.session_factory = session_factory or get_session_factory()
        self.settings = settings or get_settings()
        self.client_factory = client_factory or AuthService(self.session_factory).gmail_client_for
        self.locks = locks or thread_locks
        self.clock = clock or datetime.utcnow

    # =========================================================================
    # Bulk check
    # =========================================================================

    async def check_user_replies(self, user: User) -> ReplyCheckResult:
        """
        Check every eligible thread of a user for new messages.

        A failing thread is logged and reported in failed_threads; the
        other threads are still processed.

        Raises:
            AuthError: If no Gmail client can be built for the user
        """
        logger.info(f"Checking replies for user {user.id}")

        candidates = await run_in_threadpool(self._find_candidates, user.id)
        thread_groups = group_by_thread(candidates)

        result = ReplyCheckResult(total_checked=len(candidates))
        if not thread_groups:
            logger.info(f"No requests need reply checking for user {user.id}")
            return result

        logger.info(f"Processing {len(thread_groups)} unique Gmail threads for {len(candidates)} requests")

        client = await self.client_factory(user)
        semaphore = asyncio.Semaphore(max(1, self.settings.thread_check_concurrency))

        async def run(thread_id: str, request_ids: List[int]) -> ThreadOutcome:
            async with semaphore:
                return await self._check_thread_safely(client, user, thread_id, request_ids)

        outcomes = await asyncio.gather(*(run(t, ids) for t, ids in thread_groups.items()))

        for outcome in outcomes:
            if outcome.failure:
                result.failed_threads.append(outcome.failure)
                continue
            result.new_replies.extend(outcome.new_replies)
            result.updated_requests.extend(outcome.updated_requests)

        logger.info(
            f"Reply check for user {user.id} done: {len(result.new_replies)} new replies, "
            f"{len(result.updated_requests)} requests updated, {len(result.failed_threads)} threads failed"
        )
        return result

    def _find_candidates(self, user_id: int) -> List[TimeOffRequest]:
        """Pending, emailed requests starting inside the current check window."""
        with session_scope(self.session_factory) as db:
            window = RosterWindowSelector(RosterStore(db)).select_check_window(self.clock())
            return RequestStore(db).find_needing_check(user_id, window.start, window.end)

    async def _check_thread_safely(
        self,
        client: GmailClient,
        user: User,
        thread_id: str,
        request_ids: List[int],
    ) -> ThreadOutcome:
        """Run _check_thread and turn any failure into a ThreadFailure."""
        context = f"operation=check_thread thread_id={thread_id} request_ids={request_ids} user_id={user.id}"
        try:
            return await self._check_thread(client, user, thread_id, request_ids)
        except asyncio.TimeoutError:
            error = ThreadCheckTimeoutError(thread_id, self.settings.thread_check_timeout_seconds)
            logger.error(f"Thread check timed out ({context})")
        except StaleDataError:
            error = StateConflictError(f"Requests in thread {thread_id} were modified concurrently.")
            logger.warning(f"Concurrent update detected ({context})")
        except AppError as e:
            error = e
            logger.error(f"Thread check failed [{e.code}]: {e.message} ({context})")
        except Exception as e:
            error = AppError(str(e) or e.__class__.__name__, "THREAD_CHECK_FAILED")
            logger.exception(f"Unexpected thread check error ({context})")

        return ThreadOutcome(
            thread_id=thread_id,
            failure=ThreadFailure(
                thread_id=thread_id,
                request_ids=list(request_ids),
                code=error.code,
                message=error.message,
            ),
        )

    async def _check_thread(
        self,
        client: GmailClient,
        user: User,
        thread_id: str,
        request_ids: List[int],
    ) -> ThreadOutcome:
        """Read cursor -> fetch -> write, strictly in that order, under the thread lock."""
        async with self.locks.hold(thread_id):
            cursor = await run_in_threadpool(self._read_cursor, thread_id, user.id)

            logger.info(
                f"Checking thread {thread_id} for {len(request_ids)} requests "
                f"(last processed message: {cursor or 'none'})"
            )

            check = await asyncio.wait_for(
                client.check_for_replies(thread_id, cursor, user.email),
                timeout=self.settings.thread_check_timeout_seconds,
            )
            if not check.success:
                raise GmailError(f"Gmail could not return thread {thread_id}")

            return await run_in_threadpool(self._write_thread_check, thread_id, user.id, request_ids, check)

    def _read_cursor(self, thread_id: str, user_id: int) -> Optional[str]:
        with session_scope(self.session_factory) as db:
            return self._resume_cursor(db, thread_id, RequestStore(db).find_in_thread(thread_id, user_id))

    def _write_thread_check(
        self,
        thread_id: str,
        user_id: int,
        request_ids: List[int],
        check: ThreadCheckResult,
    ) -> ThreadOutcome:
        with session_scope(self.session_factory) as db:
            return self.apply_thread_check(db, thread_id, user_id, request_ids, check, self.clock())

    @staticmethod
    def _resume_cursor(db: Session, thread_id: str, requests: Sequence[TimeOffRequest]) -> Optional[str]:
        """
        Message id to resume the thread from.

        The newest recorded reply, unless a previous check saw a later
        message (for example one the user sent, which gets no reply row).
        """
        latest_reply = ReplyStore(db).latest_for_thread(thread_id)
        seen = [r for r in requests if r.last_message_id and r.last_reply_at]
        if seen:
            newest = max(seen, key=lambda r: r.last_reply_at)
            if latest_reply is None or newest.last_reply_at >= latest_reply.received_at:
                return newest.last_message_id
        return latest_reply.gmail_message_id if latest_reply else None

    def apply_thread_check(
        self,
        db: Session,
        thread_id: str,
        user_id: int,
        request_ids: List[int],
        check: ThreadCheckResult,
        checked_at: datetime,
    ) -> ThreadOutcome:
        """
        Write the result of one thread fetch.

        request_ids are the candidates that put the thread up for checking;
        every pending request of the thread is updated, including group
        members starting outside the check window. Approver messages become
        EmailReply rows anchored to the first candidate; user messages only
        count towards reply_count. Whoever wrote the latest message decides
        needs_review for the whole group.
        """
        request_store = RequestStore(db)
        # A request resolved since the candidates were read is left alone
        requests = request_store.find_pending_in_thread(thread_id, user_id)
        outcome = ThreadOutcome(thread_id=thread_id)
        if not requests:
            return outcome

        latest = check.latest_message
        if latest is None:
            logger.info(f"No new messages in thread {thread_id}")
            for request in requests:
                request_store.update_fields(request, last_reply_check=checked_at)
            return outcome

        logger.info(f"Found {len(check.new_messages)} new messages in thread {thread_id}")

        anchor = next((r for r in requests if request_ids and r.id == request_ids[0]), requests[0])
        reply_store = ReplyStore(db)
        snippet_length = self.settings.reply_snippet_length

        for message in check.new_messages:
            if message.is_user_reply:
                logger.debug(f"Skipping user message {message.id} in thread {thread_id}")
                continue

            reply = reply_store.create_if_absent(
                time_off_request_id=anchor.id,
                gmail_message_id=message.id,
                gmail_thread_id=thread_id,
                from_email=message.sender_email or message.sender,
                from_name=message.sender_name,
                reply_content=message.body,
                reply_snippet=message.body[:snippet_length],
                received_at=message.received_at,
                suggested_status=suggest_decision(message.body),
            )
            if reply is None:
                logger.info(f"Reply for message {message.id} already recorded, skipping")
                continue

            outcome.new_replies.append(reply)
            logger.info(f"Created EmailReply {reply.id} for message {message.id} (thread {thread_id})")

        needs_review = not latest.is_user_reply
        logger.info(
            f"Latest message in thread {thread_id} is "
            f"{'a user reply' if latest.is_user_reply else 'an approver reply'} - setting needs_review={needs_review}"
        )

        for request in requests:
            request_store.update_fields(
                request,
                needs_review=needs_review,
                reply_count=(request.reply_count or 0) + len(check.new_messages),
                last_reply_at=latest.received_at,
                last_message_id=latest.id,
                last_reply_check=checked_at,
            )
            outcome.updated_requests.append(request)

        db.flush()
        return outcome

    async def check_all_users(self) -> BulkCheckSummary:
        """
        Check replies for every active user who sends email automatically.

        One user's failure is logged and recorded; the others still run.
        """
        users = await run_in_threadpool(self._users_to_check)

        summary = BulkCheckSummary()
        for user in users:
            try:
                summary.results[user.id] = await self.check_user_replies(user)
            except AppError as e:
                logger.error(f"Reply check failed [{e.code}] (operation=check_all_users user_id={user.id}): {e.message}")
                summary.failures[user.id] = e.message
            except Exception as e:
                logger.exception(f"Unexpected reply check error (operation=check_all_users user_id={user.id})")
                summary.failures[user.id] = str(e) or e.__class__.__name__

        logger.info(f"Scheduled reply check: {len(summary.results)} users checked, {len(summary.failures)} failed")
        return summary

    def _users_to_check(self) -> List[User]:
        with session_scope(self.session_factory) as db:
            return (
                db.query(User)
                .filter(
                    User.is_active.is_(True),
                    User.email_preference == EmailMode.AUTOMATIC.value,
                    User.gmail_refresh_token.isnot(None),
                )
                .order_by(User.id)
                .all()
            )

    # =========================================================================
    # Reconciliation
    # =========================================================================

    def _load_reply_for(self, db: Session, reply_id: int, acting_user_id: int) -> EmailReply:
        """Reply visible to the acting user: their own, or any for an admin."""
        reply = ReplyStore(db).get(reply_id)
        if reply is None or reply.request is None:
            raise ReplyNotFoundError(reply_id)

        if reply.request.user_id != acting_user_id:
            acting = db.get(User, acting_user_id)
            if acting is None or not acting.is_admin:
                raise ReplyNotFoundError(reply_id)
        return reply

    def _thread_of(self, reply_id: int, acting_user_id: int) -> str:
        with session_scope(self.session_factory) as db:
            return self._load_reply_for(db, reply_id, acting_user_id).gmail_thread_id

    async def process_reply(self, reply_id: int, decision: str, acting_user_id: int) -> ProcessReplyResult:
        """
        Apply a decision to every pending request in the reply's thread.

        Args:
            reply_id: EmailReply to resolve
            decision: APPROVED, DENIED or PENDING
            acting_user_id: User applying the decision

        Returns:
            ProcessReplyResult with the anchor request and every updated request

        Raises:
            InvalidRequestError: Unknown decision
            ReplyNotFoundError: Reply missing or not visible to the user
            StateConflictError: No pending request left in the thread
        """
        status = parse_status(decision)
        context = f"operation=process_reply reply_id={reply_id} user_id={acting_user_id}"

        try:
            thread_id = await run_in_threadpool(self._thread_of, reply_id, acting_user_id)
            async with self.locks.hold(thread_id):
                return await run_in_threadpool(self._apply_decision, reply_id, thread_id, status, acting_user_id)
        except StaleDataError:
            logger.warning(f"Concurrent update detected ({context})")
            raise StateConflictError("Requests in this thread were modified concurrently. Please retry.")
        except AppError as e:
            logger.warning(f"Reply processing failed [{e.code}]: {e.message} ({context})")
            raise

    def _apply_decision(
        self,
        reply_id: int,
        thread_id: str,
        status: RequestStatus,
        acting_user_id: int,
    ) -> ProcessReplyResult:
        with session_scope(self.session_factory) as db:
            reply = self._load_reply_for(db, reply_id, acting_user_id)
            linked_request = reply.request
            request_store = RequestStore(db)

            pending = [
                r for r in request_store.find_pending_in_thread(thread_id, linked_request.user_id)
                if email_prerequisites_met(r)
            ]
            if not pending:
                raise StateConflictError(
                    f"No pending requests left in thread {thread_id}.",
                    details={"reply_id": reply_id, "thread_id": thread_id},
                )

            logger.info(f"Processing reply {reply_id}: {len(pending)} pending requests in thread {thread_id}")

            reply.mark_processed(acting_user_id, self.clock())
            fields = status_update_fields(status, METHOD_REPLY_PROCESSING, self.clock())
            for request in pending:
                request_store.update_fields(request, needs_review=False, **fields)
                logger.info(f"Updated request {request.id} ({request.start_date}) to status {status.value}")
            db.flush()

            self._clear_review_if_settled(db, thread_id, pending)
            return ProcessReplyResult(reply=reply, linked_request=linked_request, all_updated_requests=pending)

    async def process_reply_individual(
        self,
        reply_id: int,
        request_statuses: Sequence[Tuple[int, str]],
        acting_user_id: int,
    ) -> ProcessReplyResult:
        """
        Resolve a reply with a separate decision per request.

        Only pending requests of the reply's thread are touched; requests
        of other threads or already resolved are left alone.

        Raises:
            InvalidRequestError: Empty list or unknown decision
            ReplyNotFoundError: Reply missing or not visible to the user
            RequestNotFoundError: A listed request is missing or not the reply owner's
            StateConflictError: None of the listed requests is eligible
        """
        if not request_statuses:
            raise InvalidRequestError("request_statuses must list at least one request")
        decisions = [(request_id, parse_status(status)) for request_id, status in request_statuses]
        context = f"operation=process_reply_individual reply_id={reply_id} user_id={acting_user_id}"

        try:
            thread_id = await run_in_threadpool(self._thread_of, reply_id, acting_user_id)
            async with self.locks.hold(thread_id):
                return await run_in_threadpool(
                    self._apply_individual_decisions, reply_id, thread_id, decisions, acting_user_id
                )
        except StaleDataError:
            logger.warning(f"Concurrent update detected ({context})")
            raise StateConflictError("Requests in this thread were modified concurrently. Please retry.")
        except AppError as e:
            logger.warning(f"Reply processing failed [{e.code}]: {e.message} ({context})")
            raise

    def _apply_individual_decisions(
        self,
        reply_id: int,
        thread_id: str,
        decisions: List[Tuple[int, RequestStatus]],
        acting_user_id: int,
    ) -> ProcessReplyResult:
        with session_scope(self.session_factory) as db:
            reply = self._load_reply_for(db, reply_id, acting_user_id)
            linked_request = reply.request
            request_store = RequestStore(db)

            eligible = []
            for request_id, status in decisions:
                request = request_store.get_for_user(request_id, linked_request.user_id)
                if request is None:
                    raise RequestNotFoundError(request_id)
                if (
                    request.gmail_thread_id != thread_id
                    or not request.is_pending
                    or not email_prerequisites_met(request)
                ):
                    logger.info(f"Skipping request {request_id}: not a pending request of thread {thread_id}")
                    continue
                eligible.append((request, status))

            if not eligible:
                raise StateConflictError(
                    f"None of the listed requests is pending in thread {thread_id}.",
                    details={"reply_id": reply_id, "thread_id": thread_id},
                )

            reply.mark_processed(acting_user_id, self.clock())
            updated = []
            for request, status in eligible:
                fields = status_update_fields(status, METHOD_REPLY_PROCESSING_INDIVIDUAL, self.clock())
                request_store.update_fields(request, needs_review=False, **fields)
                updated.append(request)
                logger.info(f"Updated request {request.id} to {status.value} via individual processing")
            db.flush()

            self._clear_review_if_settled(
                db, thread_id, request_store.find_pending_in_thread(thread_id, linked_request.user_id)
            )
            return ProcessReplyResult(reply=reply, linked_request=linked_request, all_updated_requests=updated)

    def _clear_review_if_settled(self, db: Session, thread_id: str, requests: List[TimeOffRequest]):
        """Clear needs_review once no unprocessed reply is left in the thread."""
        if ReplyStore(db).count_unprocessed(thread_id) > 0:
            return
        for request in requests:
            request.needs_review = False
        logger.info(f"Cleared needs_review on {len(requests)} requests in thread {thread_id}")

    # =========================================================================
    # Threaded responses
    # =========================================================================

    async def respond_to_reply(self, reply_id: int, message: str, user: User) -> UserResponseResult:
        """
        Send the user's answer inside the reply's thread.

        Raises:
            ForbiddenError: User sends email manually
            InvalidRequestError: Empty message
            ReplyNotFoundError: Reply missing or not the user's
            GmailError: Sending failed
        """
        if user.email_preference != EmailMode.AUTOMATIC.value:
            raise ForbiddenError("Reply feature only available for automatic email users")

        text = (message or "").strip()
        if not text:
            raise InvalidRequestError("Message content is required")

        thread_id, recipient = await run_in_threadpool(self._reply_thread_and_sender, reply_id, user.id)

        client = await self.client_factory(user)
        async with self.locks.hold(thread_id):
            try:
                sent = await asyncio.wait_for(
                    client.send_threaded_reply(thread_id, recipient, text),
                    timeout=self.settings.thread_check_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.error(f"Sending threaded reply timed out (thread_id={thread_id} user_id={user.id})")
                raise ThreadCheckTimeoutError(thread_id, self.settings.thread_check_timeout_seconds)
            answered, cleared = await run_in_threadpool(
                self.record_user_response, thread_id, user.id, text, fallback_reply_id=reply_id
            )

        logger.info(
            f"Reply sent and review status reset for {len(cleared)} requests in thread {thread_id} "
            f"(user_id={user.id} reply_id={reply_id})"
        )
        return UserResponseResult(sent=sent, reply=answered, cleared_requests=cleared)

    def _reply_thread_and_sender(self, reply_id: int, user_id: int) -> Tuple[str, str]:
        with session_scope(self.session_factory) as db:
            reply = ReplyStore(db).get_for_user(reply_id, user_id)
            if reply is None:
                raise ReplyNotFoundError(reply_id)
            return reply.gmail_thread_id, reply.from_email

    def record_user_response(
        self,
        thread_id: str,
        user_id: int,
        content: str,
        fallback_reply_id: Optional[int] = None,
    ) -> Tuple[Optional[EmailReply], List[TimeOffRequest]]:
        """
        Reflect a reply the user sent in a thread.

        The newest unprocessed reply is marked processed and tagged with
        the user's response, and needs_review is cleared on every request
        of the thread. The user spoke last, so nothing waits on them.
        """
        now = self.clock()
        with session_scope(self.session_factory) as db:
            reply_store = ReplyStore(db)
            target = reply_store.latest_unprocessed(thread_id)
            if target is None and fallback_reply_id is not None:
                target = reply_store.get(fallback_reply_id)

            if target is not None:
                target.mark_processed(user_id, now)
                target.user_reply_sent = True
                target.user_reply_content = content
                target.user_reply_sent_at = now

            requests = RequestStore(db).find_in_thread(thread_id, user_id)
            for request in requests:
                request.needs_review = False
            db.flush()
            return target, requests
