"""
Request status write-back helpers.
"""
from datetime import datetime
from typing import Optional

from leavetrack.db.orm_models import TimeOffRequest, RequestStatus, EmailMode
from leavetrack.utils.errors import InvalidRequestError

# status_update_method values
METHOD_REPLY_PROCESSING = "reply_processing"
METHOD_REPLY_PROCESSING_INDIVIDUAL = "reply_processing_individual"


def parse_status(value) -> RequestStatus:
    """Validate a decision coming from a caller."""
    try:
        return RequestStatus(value.upper() if isinstance(value, str) else value)
    except ValueError:
        raise InvalidRequestError("Invalid status. Must be APPROVED, DENIED, or PENDING")


def status_update_fields(status: RequestStatus, method: str, now: Optional[datetime] = None) -> dict:
    """
    Field values for a status change.

    approval_date is stamped on APPROVED and cleared otherwise.
    """
    now = now or datetime.utcnow()
    return {
        "status": status.value,
        "status_update_method": method,
        "status_updated_at": now,
        "approval_date": now if status == RequestStatus.APPROVED else None,
    }


def email_prerequisites_met(request: TimeOffRequest) -> bool:
    """Whether an email for the request went out (sent, or confirmed sent by hand)."""
    if (request.email_mode or EmailMode.AUTOMATIC.value) == EmailMode.MANUAL.value:
        return bool(request.manual_email_confirmed)
    return request.email_sent is not None
