"""
Keyword hints for approver replies.

A suggestion only pre-fills the reviewer's choice; request status is
never changed from it.
"""
import re
from typing import Iterable, Optional

from leavetrack.config import get_settings
from leavetrack.db.orm_models import RequestStatus


def _mentions_any(text: str, keywords: Iterable[str]) -> bool:
    return any(re.search(rf"\b{re.escape(k)}\b", text) for k in keywords if k)


def suggest_decision(body: str, approval_keywords=None, denial_keywords=None) -> Optional[str]:
    """
    Guess APPROVED or DENIED from a reply body.

    Returns None when neither or both kinds of keyword appear.
    """
    if not body:
        return None

    settings = get_settings()
    approvals = approval_keywords if approval_keywords is not None else settings.approval_keyword_list
    denials = denial_keywords if denial_keywords is not None else settings.denial_keyword_list

    text = body.lower()
    approved = _mentions_any(text, approvals)
    denied = _mentions_any(text, denials)

    if approved and not denied:
        return RequestStatus.APPROVED.value
    if denied and not approved:
        return RequestStatus.DENIED.value
    return None
