"""Newsletter source: Gmail messages from newsletter senders.

Token acquisition is handled elsewhere; this connector only loads an existing
per-user token. Blocking google-api-python-client calls run in worker threads.
Transport failures are classified into SourceError kinds here so callers can
branch on kind.
"""

from __future__ import annotations

import asyncio
import base64
import html as html_lib
import logging
import os
import pickle
import re
import socket
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional, Protocol

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..config import settings
from ..errors import (
    ConfigurationError,
    RateLimitedError,
    SourceAuthError,
    SourceError,
    SourceTimeoutError,
)
from ..schemas import SourceEmail

logger = logging.getLogger(__name__)

RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded", "dailyLimitExceeded"}


class SourceConnector(Protocol):
    def is_configured(self, user_id: int) -> bool: ...

    async def fetch_since(self, since: datetime, *, user_id: int, max_results: Optional[int] = None) -> list[SourceEmail]: ...


def _resolve_path(path: str) -> str:
    if os.path.isabs(path):
        return path
    backend_dir = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    return os.path.join(backend_dir, path)


def token_path_for(user_id: int) -> str:
    if settings.token_dir:
        return os.path.join(_resolve_path(settings.token_dir), f"token_{user_id}.pickle")
    return _resolve_path(settings.token_path)


def build_query(sender_query: str, since: datetime) -> str:
    if since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    return f"{sender_query} after:{int(since.timestamp())} -in:spam -in:trash"


# ----------------------------
# Message parsing
# ----------------------------

def _decode(data: str) -> str:
    return base64.urlsafe_b64decode(data).decode("utf-8", errors="replace")


def _find_part(payload: dict, mime_type: str) -> Optional[str]:
    if payload.get("mimeType") == mime_type and payload.get("body", {}).get("data"):
        return _decode(payload["body"]["data"])
    for part in payload.get("parts", []) or []:
        found = _find_part(part, mime_type)
        if found:
            return found
    return None


def html_to_text(raw: str) -> str:
    raw = re.sub(r"(?is)<(script|style|head)[^>]*>.*?</\1>", " ", raw)
    raw = re.sub(r"(?i)<br\s*/?>|</p>|</div>|</h[1-6]>|</li>", "\n", raw)
    text = html_lib.unescape(re.sub(r"<[^>]+>", " ", raw))
    text = re.sub(r"[ \t\r\f\v]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    return re.sub(r"\n\s*\n+", "\n\n", text).strip()


def _get_headers(message: dict) -> dict:
    return {h["name"].lower(): h["value"] for h in message.get("payload", {}).get("headers", [])}


def _get_received_date(message: dict, headers: dict) -> Optional[datetime]:
    internal = message.get("internalDate")
    if internal:
        try:
            return datetime.fromtimestamp(int(internal) / 1000, tz=timezone.utc)
        except (TypeError, ValueError):
            pass
    date_str = headers.get("date")
    if not date_str:
        return None
    try:
        return parsedate_to_datetime(date_str)
    except (TypeError, ValueError):
        return None


def newsletter_name_from_sender(sender: str) -> str:
    """'Morning Brew <crew@morningbrew.substack.com>' -> 'Morning Brew'."""
    match = re.match(r"^\s*\"?(.+?)\"?\s*<[^>]*>", sender or "")
    if match and match.group(1).strip():
        return match.group(1).strip()
    domain = re.search(r"@([\w.-]+?)\.substack\.com", sender or "")
    if domain:
        return re.sub(r"[-_]", " ", domain.group(1)).title()
    return (sender or "").split("<")[0].strip() or "Unknown Newsletter"


def message_to_source_email(message: dict) -> SourceEmail:
    headers = _get_headers(message)
    payload = message.get("payload", {})
    html = _find_part(payload, "text/html")
    plain = _find_part(payload, "text/plain")
    if html is None and plain is None and payload.get("body", {}).get("data"):
        plain = _decode(payload["body"]["data"])
    sender = headers.get("from", "")
    return SourceEmail(
        external_id=message.get("id", ""),
        sender=sender,
        subject=headers.get("subject", ""),
        newsletter_name=newsletter_name_from_sender(sender),
        html=html,
        text=html_to_text(html) if html else (plain or "").strip(),
        received_at=_get_received_date(message, headers),
    )


# ----------------------------
# Error classification
# ----------------------------

def classify_http_error(e) -> SourceError:
    """Map a googleapiclient HttpError to a SourceError kind."""
    resp = getattr(e, "resp", None)
    status = getattr(resp, "status", None)
    try:
        status = int(status) if status is not None else None
    except (TypeError, ValueError):
        status = None
    reasons: set[str] = set()
    for detail in getattr(e, "error_details", None) or []:
        if isinstance(detail, dict) and detail.get("reason"):
            reasons.add(detail["reason"])
    message = str(e)
    if status == 429 or (status == 403 and reasons & RATE_LIMIT_REASONS):
        retry_after = None
        header = resp.get("retry-after") if hasattr(resp, "get") else None
        if header:
            try:
                retry_after = float(header)
            except ValueError:
                retry_after = None
        return RateLimitedError(f"Gmail rate limit: {message}", retry_after=retry_after)
    if status in (401, 403):
        return SourceAuthError(f"Gmail authorization failed: {message}")
    if status in (408, 504):
        return SourceTimeoutError(f"Gmail request timed out: {message}")
    return SourceError(f"Gmail request failed: {message}")


def _with_backoff(fn, max_retries: int = 3, base_delay_s: float = 1.0):
    """Retry transient 500/503 responses; everything else surfaces immediately."""
    for attempt in range(max_retries):
        try:
            return fn()
        except HttpError as e:
            if e.resp.status in (500, 503) and attempt < max_retries - 1:
                time.sleep(base_delay_s * (2 ** attempt))
                continue
            raise


class GmailConnector:
    def __init__(
        self,
        sender_query: Optional[str] = None,
        max_results: Optional[int] = None,
        page_size: Optional[int] = None,
        service_factory=None,
    ):
        self.sender_query = sender_query or settings.gmail_sender_query
        self.max_results = max_results or settings.gmail_max_results
        self.page_size = min(page_size or settings.gmail_page_size, 100)
        self._service_factory = service_factory

    def is_configured(self, user_id: int) -> bool:
        if self._service_factory is not None:
            return True
        return os.path.exists(token_path_for(user_id))

    def _load_credentials(self, user_id: int):
        token_path = token_path_for(user_id)
        if not os.path.exists(token_path):
            raise ConfigurationError(f"Gmail is not connected for user {user_id} (no token at {token_path})")
        with open(token_path, "rb") as token:
            creds = pickle.load(token)
        if creds and creds.valid:
            return creds
        if creds and creds.expired and creds.refresh_token:
            try:
                creds.refresh(Request())
            except RefreshError as e:
                raise SourceAuthError(f"Gmail token refresh failed: {e}") from e
            with open(token_path, "wb") as token:
                pickle.dump(creds, token)
            return creds
        raise SourceAuthError("Gmail token is invalid. Reconnect Gmail.")

    def _get_service(self, user_id: int):
        if self._service_factory is not None:
            return self._service_factory(user_id)
        creds = self._load_credentials(user_id)
        return build("gmail", "v1", credentials=creds, cache_discovery=False)

    def _fetch_blocking(self, since: datetime, user_id: int, max_results: int) -> list[SourceEmail]:
        query = build_query(self.sender_query, since)
        logger.info(f"Gmail query for user {user_id}: {query}")
        try:
            service = self._get_service(user_id)
            messages = service.users().messages()
            ids: list[str] = []
            page_token = None
            while len(ids) < max_results:
                result = _with_backoff(
                    lambda: messages.list(
                        userId="me",
                        q=query,
                        maxResults=min(self.page_size, max_results - len(ids)),
                        pageToken=page_token,
                    ).execute()
                )
                ids.extend(m["id"] for m in result.get("messages", []))
                next_token = result.get("nextPageToken")
                if not next_token or next_token == page_token:
                    break
                page_token = next_token

            emails = []
            for mid in ids[:max_results]:
                message = _with_backoff(lambda: messages.get(userId="me", id=mid, format="full").execute())
                emails.append(message_to_source_email(message))
        except HttpError as e:
            raise classify_http_error(e) from e
        except (socket.timeout, TimeoutError) as e:
            raise SourceTimeoutError(f"Gmail request timed out: {e}") from e
        logger.info(f"Fetched {len(emails)} newsletter emails for user {user_id}")
        return emails

    async def fetch_since(self, since: datetime, *, user_id: int, max_results: Optional[int] = None) -> list[SourceEmail]:
        return await asyncio.to_thread(self._fetch_blocking, since, user_id, max_results or self.max_results)
