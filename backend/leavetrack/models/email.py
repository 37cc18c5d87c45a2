"""
Gmail thread message models.
"""
from datetime import datetime
from pydantic import BaseModel
from typing import Optional, List


class ThreadMessage(BaseModel):
    """One message of a Gmail thread, as seen by the reply checker."""
    id: str
    thread_id: str
    sender: str  # raw From header
    sender_name: str
    sender_email: str
    body: str
    received_at: datetime
    is_user_reply: bool = False


class ThreadCheckResult(BaseModel):
    """Messages of a thread newer than the cursor, in Gmail's thread order."""
    success: bool = True
    new_messages: List[ThreadMessage] = []
    total_messages: int = 0

    @property
    def latest_message(self) -> Optional[ThreadMessage]:
        """The message that decides who has the last word in the thread."""
        return self.new_messages[-1] if self.new_messages else None


class SentReply(BaseModel):
    """Result of sending a reply inside a thread."""
    message_id: str
    thread_id: Optional[str] = None
    subject: str
