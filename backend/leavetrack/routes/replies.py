"""
Reply API endpoints.

Endpoints:
- POST /api/check-replies                   Poll the user's request threads now
- GET  /api/replies                         List replies (needreview, reviewed, all)
- GET  /api/replies/count                   Unprocessed reply count for the badge
- PUT  /api/replies/{id}/process            Apply one decision to the whole thread
- PUT  /api/replies/{id}/process-individual Apply a decision per request
- POST /api/replies/{id}/respond            Answer the approver inside the thread

Sample API Responses:

1. Check replies:
   Request: POST /api/check-replies
   Response: {
     "success": true,
     "message": "Found 1 new replies",
     "new_replies_count": 1,
     "updated_requests": [{"id": 12, "needs_review": true}, {"id": 13, "needs_review": true}],
     "total_checked": 2,
     "failed_threads": []
   }

2. Process reply:
   Request: PUT /api/replies/5/process {"status": "APPROVED"}
   Response: {
     "success": true,
     "message": "Reply marked as approved",
     "reply": {...},
     "linked_request": {...},
     "updated_requests": [{...}, {...}]
   }

3. Error:
   Response (404): {
     "detail": {"error": true, "code": "REPLY_NOT_FOUND", "message": "Reply 5 not found.", "details": {...}}
   }
"""
from typing import Awaitable, Callable, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Query
from starlette.concurrency import run_in_threadpool

from leavetrack.db.orm_models import User
from leavetrack.models.reply import (
    CheckRepliesResponse,
    ProcessIndividualRequest,
    ProcessReplyRequest,
    ProcessReplyResponse,
    ReplyCountResponse,
    ReplyItem,
    ReplyListResponse,
    ReplyWithThread,
    RequestSummary,
    RespondRequest,
    RespondResponse,
    ReviewState,
    ThreadFailureItem,
    ThreadReplyItem,
)
from leavetrack.services.reply_checking_service import ProcessReplyResult, ReplyCheckingService
from leavetrack.services.reply_service import ReplyService
from leavetrack.services.session_service import get_current_user
from leavetrack.utils.logger import get_logger
from leavetrack.utils.errors import AppError

router = APIRouter()
logger = get_logger(__name__)

T = TypeVar("T")


def get_reply_checking_service() -> ReplyCheckingService:
    return ReplyCheckingService()


def get_reply_service() -> ReplyService:
    return ReplyService()


async def _handle(operation: str, user: User, call: Callable[[], Awaitable[T]]) -> T:
    """Run a route body, mapping errors to HTTP responses."""
    try:
        return await call()
    except AppError as e:
        logger.error(f"{operation} error [{e.code}] for user {user.id}: {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
    except Exception as e:
        logger.exception(f"Unexpected {operation} error for user {user.id}: {e}")
        raise HTTPException(
            status_code=500,
            detail={
                "error": True,
                "code": "INTERNAL_ERROR",
                "message": "Something went wrong. Please try again."
            }
        )


def _process_response(result: ProcessReplyResult, message: str) -> ProcessReplyResponse:
    return ProcessReplyResponse(
        message=message,
        reply=ReplyItem.model_validate(result.reply),
        linked_request=RequestSummary.model_validate(result.linked_request),
        updated_requests=[RequestSummary.model_validate(r) for r in result.all_updated_requests],
    )


@router.post("/check-replies", response_model=CheckRepliesResponse)
async def check_replies(
    user: User = Depends(get_current_user),
    service: ReplyCheckingService = Depends(get_reply_checking_service),
):
    """
    Manually trigger reply checking for the current user.

    Threads that fail are listed in failed_threads; the others are
    still checked.
    """
    async def run():
        result = await service.check_user_replies(user)
        logger.info(
            f"Reply check completed for user {user.id}: "
            f"{len(result.new_replies)} new replies, {len(result.updated_requests)} updated requests"
        )
        return CheckRepliesResponse(
            message=f"Found {len(result.new_replies)} new replies",
            new_replies_count=len(result.new_replies),
            updated_requests=[ReviewState.model_validate(r) for r in result.updated_requests],
            total_checked=result.total_checked,
            failed_threads=[ThreadFailureItem.model_validate(f) for f in result.failed_threads],
        )

    return await _handle("check_replies", user, run)


@router.get("/replies", response_model=ReplyListResponse)
async def list_replies(
    filter: str = Query("needreview"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user),
    service: ReplyService = Depends(get_reply_service),
):
    """
    Get the user's replies.

    filter:
    - "needreview": unprocessed replies
    - "reviewed": latest processed reply of each thread
    - "all": everything
    """
    async def run():
        result = await run_in_threadpool(service.list_replies, user.id, filter=filter, page=page, limit=limit)
        return ReplyListResponse(
            replies=[
                ReplyWithThread(
                    **ReplyItem.model_validate(view.reply).model_dump(),
                    request=RequestSummary.model_validate(view.reply.request),
                    all_requests_in_group=[RequestSummary.model_validate(r) for r in view.all_requests_in_group],
                    thread_replies=[ThreadReplyItem.model_validate(r) for r in view.thread_replies],
                )
                for view in result.replies
            ],
            total_count=result.total_count,
            current_page=result.current_page,
            total_pages=result.total_pages,
        )

    return await _handle("list_replies", user, run)


@router.get("/replies/count", response_model=ReplyCountResponse)
async def replies_count(
    user: User = Depends(get_current_user),
    service: ReplyService = Depends(get_reply_service),
):
    """Unprocessed reply count for the navigation badge."""
    async def run():
        return ReplyCountResponse(count=await run_in_threadpool(service.count_unprocessed, user.id))

    return await _handle("replies_count", user, run)


@router.put("/replies/{reply_id}/process", response_model=ProcessReplyResponse)
async def process_reply(
    reply_id: int,
    body: ProcessReplyRequest,
    user: User = Depends(get_current_user),
    service: ReplyCheckingService = Depends(get_reply_checking_service),
):
    """Mark the reply processed and set the status of every pending request in its thread."""
    async def run():
        result = await service.process_reply(reply_id, body.status, user.id)
        return _process_response(result, f"Reply marked as {body.status.lower()}")

    return await _handle("process_reply", user, run)


@router.put("/replies/{reply_id}/process-individual", response_model=ProcessReplyResponse)
async def process_reply_individual(
    reply_id: int,
    body: ProcessIndividualRequest,
    user: User = Depends(get_current_user),
    service: ReplyCheckingService = Depends(get_reply_checking_service),
):
    """Mark the reply processed with a separate status per request."""
    async def run():
        result = await service.process_reply_individual(
            reply_id,
            [(item.request_id, item.status) for item in body.request_statuses],
            user.id,
        )
        return _process_response(result, "Reply processed with individual statuses")

    return await _handle("process_reply_individual", user, run)


@router.post("/replies/{reply_id}/respond", response_model=RespondResponse)
async def respond_to_reply(
    reply_id: int,
    body: RespondRequest,
    user: User = Depends(get_current_user),
    service: ReplyCheckingService = Depends(get_reply_checking_service),
):
    """Send a threaded reply (automatic email users only)."""
    async def run():
        result = await service.respond_to_reply(reply_id, body.message, user)
        return RespondResponse(
            message="Reply sent successfully",
            message_id=result.sent.message_id,
            thread_id=result.sent.thread_id,
            subject=result.sent.subject,
            cleared_request_ids=[r.id for r in result.cleared_requests],
        )

    return await _handle("respond_to_reply", user, run)
