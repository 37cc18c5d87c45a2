"""
Gmail API client integration.

This module handles direct communication with Gmail API for request threads:
1. Fetch a thread and return the messages newer than a cursor
2. Classify each message as written by the user or by the approver
3. Send a reply inside an existing thread
4. Parse Gmail's thread resources into ThreadMessage objects

Gmail API Reference: https://developers.google.com/gmail/api/reference/rest
"""
import asyncio
import base64
import html
import re
from datetime import datetime, timezone
from email.mime.text import MIMEText
from typing import Dict, List, Optional, Tuple

import httpx

from leavetrack.config import get_settings
from leavetrack.models.email import ThreadMessage, ThreadCheckResult, SentReply
from leavetrack.utils.logger import get_logger
from leavetrack.utils.errors import GmailError, RateLimitError, AuthError

logger = get_logger(__name__)

# Gmail API base URL
GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"

# Statuses worth another attempt
RETRYABLE_STATUS = {429, 500, 502, 503, 504}

SENDER_WITH_NAME = re.compile(r'^"?(?P<name>[^"<]+?)"?\s*<(?P<email>[^>]+)>$')
SENDER_BRACKETED = re.compile(r'^<(?P<email>[^>]+)>$')


# =============================================================================
# Message parsing
# =============================================================================

def header_map(message: dict) -> Dict[str, str]:
    """Lower-cased header name -> value for a Gmail message resource."""
    return {h["name"].lower(): h["value"] for h in message.get("payload", {}).get("headers", [])}


def parse_sender(from_header: str) -> Tuple[str, str]:
    """
    Split a From header into (name, email).

    "Jane Roe <jane@example.com>", "<jane@example.com>" and a bare address
    are accepted; without a display name the address doubles as the name.
    """
    value = from_header.strip()
    for pattern in (SENDER_WITH_NAME, SENDER_BRACKETED):
        match = pattern.match(value)
        if match:
            address = match.group("email").strip()
            name = match.groupdict().get("name")
            return (name.strip() if name else address), address
    return value, value


def decode_body(data: str) -> str:
    """Decode base64url body data; Gmail leaves the padding off."""
    try:
        decoded = base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))
        return decoded.decode("utf-8", errors="replace")
    except (ValueError, TypeError) as e:
        logger.warning(f"Failed to decode body: {e}")
        return ""


def strip_html(markup: str) -> str:
    """Rough HTML to text for approvers whose mail client sends HTML only."""
    markup = re.sub(r'<(style|script)[^>]*>.*?</\1>', '', markup, flags=re.DOTALL | re.IGNORECASE)
    markup = re.sub(r'<br\s*/?>|</p>', '\n', markup, flags=re.IGNORECASE)
    text = html.unescape(re.sub(r'<[^>]+>', ' ', markup)).replace("\xa0", " ")
    return re.sub(r'[ \t]+', ' ', text).strip()


def _find_part(payload: dict, mime_type: str) -> Optional[str]:
    """Depth-first search for the first part of mime_type with inline data."""
    if payload.get("mimeType") == mime_type and payload.get("body", {}).get("data"):
        return decode_body(payload["body"]["data"])
    for part in payload.get("parts", []):
        found = _find_part(part, mime_type)
        if found is not None:
            return found
    return None


def extract_body(payload: dict) -> str:
    """
    Text of a message payload.

    Single-part bodies are used as they are; multipart messages prefer
    text/plain anywhere in the tree and fall back to stripped text/html.
    """
    data = payload.get("body", {}).get("data")
    if data and not payload.get("parts"):
        body = decode_body(data)
        return strip_html(body) if payload.get("mimeType") == "text/html" else body

    plain = _find_part(payload, "text/plain")
    if plain is not None:
        return plain
    rich = _find_part(payload, "text/html")
    return strip_html(rich) if rich is not None else ""


def parse_received_at(internal_date: Optional[str]) -> datetime:
    """internalDate (ms since epoch) as naive UTC; now if Gmail sent none."""
    try:
        return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc).replace(tzinfo=None)
    except (ValueError, TypeError):
        return datetime.utcnow()


def is_from_user(sender_email: str, from_header: str, user_email: str) -> bool:
    if not user_email:
        return False
    user_email = user_email.lower()
    return sender_email.lower() == user_email or user_email in from_header.lower()


def parse_thread_message(message: dict, thread_id: str, user_email: str) -> ThreadMessage:
    """Convert a Gmail message resource into a ThreadMessage."""
    from_header = header_map(message).get("from", "Unknown")
    sender_name, sender_email = parse_sender(from_header)

    return ThreadMessage(
        id=message["id"],
        thread_id=message.get("threadId", thread_id),
        sender=from_header,
        sender_name=sender_name,
        sender_email=sender_email,
        body=extract_body(message.get("payload", {})).strip(),
        received_at=parse_received_at(message.get("internalDate")),
        is_user_reply=is_from_user(sender_email, from_header, user_email),
    )


# =============================================================================
# Client
# =============================================================================

class GmailClient:
    """
    Gmail API client for request thread operations.

    Usage:
        client = GmailClient(access_token)
        result = await client.check_for_replies(thread_id, last_message_id, "me@example.com")
        await client.send_threaded_reply(thread_id, "approver@example.com", "Thanks!")
    """

    def __init__(self, access_token: str, timeout: float = None, retries: int = None):
        """
        Initialize Gmail client with access token.

        Args:
            access_token: Valid Google OAuth access token with Gmail scopes
            timeout: Per-request timeout in seconds (defaults to settings)
            retries: Retries for transient errors (defaults to settings)
        """
        settings = get_settings()
        self.access_token = access_token
        self.timeout = timeout if timeout is not None else settings.gmail_request_timeout_seconds
        self.retries = retries if retries is not None else settings.gmail_max_retries
        self.headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

    async def _backoff(self, attempt: int, reason: str) -> bool:
        """Sleep before the next attempt; False when retries are used up."""
        if attempt >= self.retries:
            return False
        wait_time = 2 ** attempt  # Exponential backoff
        logger.warning(f"Gmail API {reason}, retrying in {wait_time}s...")
        await asyncio.sleep(wait_time)
        return True

    @staticmethod
    def _raise_for_status(response: httpx.Response):
        if response.status_code == 429:
            raise RateLimitError()

        if response.status_code == 401:
            logger.warning("Gmail API: Token expired or invalid")
            raise AuthError("Gmail access token expired")

        if response.status_code == 403:
            logger.warning("Gmail API: Permission denied")
            raise GmailError("Gmail permission denied. Please re-authorize.")

        error_data = response.json() if response.content else {}
        logger.error(f"Gmail API error: {response.status_code} - {error_data}")
        raise GmailError(f"Gmail API error: {response.status_code}")

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        json_data: dict = None,
        params: dict = None,
    ) -> Optional[dict]:
        """
        Make an authenticated request to Gmail API.

        Handles common error cases:
        - 401: Token expired/invalid
        - 403: Permission denied
        - 404: Returns None
        - 429 and 5xx: Retried with backoff, then RateLimitError / GmailError

        Raises:
            AuthError: Token issues
            GmailError: API errors
            RateLimitError: Rate limit exceeded
        """
        url = f"{GMAIL_API_BASE}{endpoint}"

        async with httpx.AsyncClient() as client:
            attempt = 0
            while True:
                try:
                    response = await client.request(
                        method=method,
                        url=url,
                        headers=self.headers,
                        json=json_data,
                        params=params,
                        timeout=self.timeout,
                    )
                except (httpx.TimeoutException, httpx.ConnectError) as e:
                    if await self._backoff(attempt, "connection error"):
                        attempt += 1
                        continue
                    logger.error(f"Gmail API: Request failed after {self.retries} retries - {e}")
                    raise GmailError("Gmail service unavailable. Please try again later.")

                if response.is_success:
                    return response.json() if response.content else {}

                if response.status_code == 404:
                    return None

                if response.status_code in RETRYABLE_STATUS and await self._backoff(
                    attempt, f"transient error {response.status_code}"
                ):
                    attempt += 1
                    continue

                self._raise_for_status(response)

    async def get_thread(self, thread_id: str, format: str = "full") -> Optional[dict]:
        """Fetch a raw thread resource, or None if Gmail doesn't know it."""
        return await self._make_request("GET", f"/threads/{thread_id}", params={"format": format})

    async def check_for_replies(
        self,
        thread_id: str,
        since_message_id: Optional[str],
        user_email: str,
    ) -> ThreadCheckResult:
        """
        Return the messages of a thread that come after since_message_id.

        If the cursor isn't found in the thread every message is returned.
        The thread's first message is skipped when the user wrote it: it is
        the original request, not a reply.

        Args:
            thread_id: Gmail thread ID of the request email
            since_message_id: Last message already seen (cursor)
            user_email: Address of the requesting user

        Returns:
            ThreadCheckResult with new messages in Gmail's thread order

        Raises:
            GmailError: If the thread doesn't exist or Gmail fails
        """
        thread = await self.get_thread(thread_id)
        if thread is None:
            raise GmailError(f"Gmail thread {thread_id} not found")

        messages = thread.get("messages", [])
        logger.info(
            f"Thread {thread_id} has {len(messages)} messages "
            f"(last processed: {since_message_id or 'none'})"
        )

        ids = [m.get("id") for m in messages]
        if since_message_id in ids:
            start_index = ids.index(since_message_id) + 1
        else:
            if since_message_id:
                logger.info(f"Cursor {since_message_id} not in thread {thread_id}, checking all messages")
            start_index = 0

        new_messages: List[ThreadMessage] = []
        for index, raw in enumerate(messages[start_index:], start=start_index):
            parsed = parse_thread_message(raw, thread_id, user_email)
            if index == 0 and parsed.is_user_reply:
                logger.debug(f"Skipping original request message {parsed.id}")
                continue
            new_messages.append(parsed)

        return ThreadCheckResult(
            success=True,
            new_messages=new_messages,
            total_messages=len(messages),
        )

    async def send_threaded_reply(self, thread_id: str, to: str, body: str) -> SentReply:
        """
        Send a reply inside an existing thread.

        The subject and Message-ID of the thread's last message are reused
        so mail clients keep the conversation together.

        Args:
            thread_id: Gmail thread to reply in
            to: Recipient address (the approver)
            body: Plain text body

        Returns:
            SentReply with the new message ID

        Raises:
            GmailError: If the thread is gone or sending fails
        """
        logger.info(f"Sending threaded reply in {thread_id} to {to}")

        thread = await self._make_request(
            "GET",
            f"/threads/{thread_id}",
            params={"format": "metadata", "metadataHeaders": ["Subject", "Message-ID"]},
        )
        if not thread or not thread.get("messages"):
            raise GmailError(f"Gmail thread {thread_id} not found")

        headers = header_map(thread["messages"][-1])

        subject = headers.get("subject") or "Time-off Request"
        if not subject.lower().startswith("re:"):
            subject = f"Re: {subject}"

        message = MIMEText(body, _charset="utf-8")
        message["to"] = to
        message["subject"] = subject
        if "message-id" in headers:
            message["In-Reply-To"] = headers["message-id"]
            message["References"] = headers["message-id"]

        raw = base64.urlsafe_b64encode(message.as_bytes()).decode("utf-8")

        response = await self._make_request(
            "POST",
            "/messages/send",
            json_data={"raw": raw, "threadId": thread_id},
        ) or {}

        sent = SentReply(
            message_id=response.get("id", "unknown"),
            thread_id=response.get("threadId", thread_id),
            subject=subject,
        )
        logger.info(f"Threaded reply sent, ID: {sent.message_id}")
        return sent
