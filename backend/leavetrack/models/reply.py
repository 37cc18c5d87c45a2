"""
Reply-related Pydantic models.
"""
from datetime import date, datetime
from pydantic import BaseModel, ConfigDict
from typing import Optional, List


class RequestSummary(BaseModel):
    """Time-off request as shown next to a reply."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    group_id: Optional[str] = None
    start_date: date
    end_date: date
    type: str
    status: str
    flight_number: Optional[str] = None
    custom_message: Optional[str] = None
    gmail_thread_id: Optional[str] = None
    needs_review: bool = False
    reply_count: int = 0
    email_sent: Optional[datetime] = None
    last_reply_at: Optional[datetime] = None
    last_reply_check: Optional[datetime] = None


class ReviewState(BaseModel):
    """needs_review of one request after a check."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    needs_review: bool


class ThreadReplyItem(BaseModel):
    """One entry of a thread's conversation history."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    from_email: str
    from_name: Optional[str] = None
    reply_content: str
    received_at: datetime
    user_reply_sent: bool = False
    user_reply_content: Optional[str] = None
    user_reply_sent_at: Optional[datetime] = None


class ReplyItem(BaseModel):
    """Stored approver reply."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    time_off_request_id: int
    gmail_message_id: str
    gmail_thread_id: str
    from_email: str
    from_name: Optional[str] = None
    reply_content: str
    reply_snippet: Optional[str] = None
    received_at: datetime
    suggested_status: Optional[str] = None
    is_processed: bool = False
    processed_at: Optional[datetime] = None
    processed_by: Optional[int] = None
    user_reply_sent: bool = False
    user_reply_content: Optional[str] = None
    user_reply_sent_at: Optional[datetime] = None


class ReplyWithThread(ReplyItem):
    """Reply with its request group and conversation history."""
    request: Optional[RequestSummary] = None
    all_requests_in_group: List[RequestSummary] = []
    thread_replies: List[ThreadReplyItem] = []


class ReplyListResponse(BaseModel):
    replies: List[ReplyWithThread]
    total_count: int
    current_page: int
    total_pages: int


class ReplyCountResponse(BaseModel):
    count: int


class ThreadFailureItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    thread_id: str
    request_ids: List[int]
    code: str
    message: str


class CheckRepliesResponse(BaseModel):
    """Summary of a manual reply check."""
    success: bool = True
    message: str
    new_replies_count: int
    updated_requests: List[ReviewState]
    total_checked: int
    failed_threads: List[ThreadFailureItem] = []


class ProcessReplyRequest(BaseModel):
    """Decision for every pending request of the reply's thread."""
    status: str


class RequestStatusUpdate(BaseModel):
    request_id: int
    status: str


class ProcessIndividualRequest(BaseModel):
    """One decision per request."""
    request_statuses: List[RequestStatusUpdate]


class ProcessReplyResponse(BaseModel):
    success: bool = True
    message: str
    reply: ReplyItem
    linked_request: RequestSummary
    updated_requests: List[RequestSummary]


class RespondRequest(BaseModel):
    """Threaded answer written by the user."""
    message: str


class RespondResponse(BaseModel):
    success: bool = True
    message: str
    message_id: str
    thread_id: Optional[str] = None
    subject: str
    cleared_request_ids: List[int]
