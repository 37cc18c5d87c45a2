"""
SQLAlchemy ORM models.

Tables:
- users: requesting employees and their stored Gmail credentials
- time_off_requests: one row per requested day (groups share group_id)
- email_replies: inbound approver messages found in a request's thread
- roster_periods: administrative windows that bound reply polling
"""
from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Column, String, Text, Boolean, Integer, Date, DateTime,
    ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship

from leavetrack.db.database import Base


class RequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DENIED = "DENIED"


class RequestType(str, Enum):
    REQ_DO = "REQ_DO"
    PM_OFF = "PM_OFF"
    AM_OFF = "AM_OFF"
    FLIGHT = "FLIGHT"


class EmailMode(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


# =============================================================================
# User Model
# =============================================================================

class User(Base):
    """Employee account."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    google_id = Column(String(255), unique=True)
    email = Column(String(255), unique=True, nullable=False)
    name = Column(String(255))
    is_active = Column(Boolean, default=True, nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)
    email_preference = Column(String(20), default=EmailMode.MANUAL.value, nullable=False)

    # Gmail credentials (token lifecycle is handled by auth_service)
    gmail_access_token = Column(Text)
    gmail_refresh_token = Column(Text)
    gmail_token_expiry = Column(DateTime)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    requests = relationship("TimeOffRequest", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email})>"


# =============================================================================
# Time-off Request Model
# =============================================================================

class TimeOffRequest(Base):
    """
    One day of requested time off.

    Requests created together for consecutive days share a group_id and,
    once emailed automatically, a single gmail_thread_id.
    """
    __tablename__ = "time_off_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    group_id = Column(String(36), nullable=True)

    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    type = Column(String(20), nullable=False, default=RequestType.REQ_DO.value)
    flight_number = Column(String(20))
    custom_message = Column(Text)

    status = Column(String(20), nullable=False, default=RequestStatus.PENDING.value)
    status_update_method = Column(String(50))
    status_updated_at = Column(DateTime)
    approval_date = Column(DateTime)

    email_mode = Column(String(20), nullable=False, default=EmailMode.AUTOMATIC.value)
    email_sent = Column(DateTime)
    manual_email_confirmed = Column(Boolean, default=False, nullable=False)
    manual_email_confirmed_at = Column(DateTime)
    gmail_thread_id = Column(String(255))

    needs_review = Column(Boolean, default=False, nullable=False)
    reply_count = Column(Integer, default=0, nullable=False)
    last_reply_at = Column(DateTime)
    last_reply_check = Column(DateTime)
    # Newest thread message seen by a check, whoever wrote it
    last_message_id = Column(String(255))

    # Optimistic concurrency: a write against a stale row raises StaleDataError
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_time_off_requests_user_status", "user_id", "status"),
        Index("ix_time_off_requests_thread", "gmail_thread_id"),
        Index("ix_time_off_requests_group", "group_id"),
        Index("ix_time_off_requests_start_date", "start_date"),
    )
    __mapper_args__ = {"version_id_col": version}

    user = relationship("User", back_populates="requests")
    replies = relationship("EmailReply", back_populates="request", cascade="all, delete-orphan")

    @property
    def is_pending(self) -> bool:
        return self.status == RequestStatus.PENDING.value

    def __repr__(self):
        return f"<TimeOffRequest(id={self.id}, date={self.start_date}, status={self.status})>"


# =============================================================================
# Email Reply Model
# =============================================================================

class EmailReply(Base):
    """
    An inbound approver message found in a request thread.

    Anchored to one representative request of the thread, not to every
    request of a group. (gmail_message_id, gmail_thread_id) is unique so
    re-polling a thread never records the same message twice.
    """
    __tablename__ = "email_replies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    time_off_request_id = Column(
        Integer, ForeignKey("time_off_requests.id", ondelete="CASCADE"), nullable=False
    )
    gmail_message_id = Column(String(255), nullable=False)
    gmail_thread_id = Column(String(255), nullable=False)

    from_email = Column(String(255), nullable=False)
    from_name = Column(String(255))
    reply_content = Column(Text, nullable=False, default="")
    reply_snippet = Column(String(500))
    received_at = Column(DateTime, nullable=False)
    suggested_status = Column(String(20))

    is_processed = Column(Boolean, default=False, nullable=False)
    processed_at = Column(DateTime)
    processed_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))

    # Set when the user answered inside the thread
    user_reply_sent = Column(Boolean, default=False, nullable=False)
    user_reply_content = Column(Text)
    user_reply_sent_at = Column(DateTime)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("gmail_message_id", "gmail_thread_id", name="uq_email_replies_message_thread"),
        Index("ix_email_replies_request_id", "time_off_request_id"),
        Index("ix_email_replies_thread_received", "gmail_thread_id", "received_at"),
        Index("ix_email_replies_processed", "is_processed"),
    )

    request = relationship("TimeOffRequest", back_populates="replies")

    def mark_processed(self, user_id: int, at: datetime = None):
        self.is_processed = True
        self.processed_at = at or datetime.utcnow()
        self.processed_by = user_id

    def __repr__(self):
        return f"<EmailReply(id={self.id}, message_id={self.gmail_message_id}, processed={self.is_processed})>"


# =============================================================================
# Roster Period Model
# =============================================================================

class RosterPeriod(Base):
    """Roster publication window. Only used here to bound reply polling."""
    __tablename__ = "roster_periods"

    id = Column(Integer, primary_key=True, autoincrement=True)
    publication_date = Column(Date)
    latest_request_date = Column(Date)
    start_period = Column(Date, nullable=False)
    end_period = Column(Date, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    description = Column(String(255))

    __table_args__ = (
        Index("ix_roster_periods_range", "start_period", "end_period"),
    )

    def __repr__(self):
        return f"<RosterPeriod(id={self.id}, {self.start_period}..{self.end_period})>"
