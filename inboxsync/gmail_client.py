"""Gmail REST helper – profile, history, message listing, label mutation and push watch."""

import base64
import email.utils
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import requests

from inboxsync.errors import AuthError, MailboxAPIError, StaleCursorError

logger = logging.getLogger(__name__)

API_BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"
TOKEN_URL = "https://oauth2.googleapis.com/token"
TIMEOUT = 10  # seconds

LABEL_INBOX = "INBOX"
LABEL_SPAM = "SPAM"
LABEL_UNREAD = "UNREAD"


@dataclass
class EmailContent:
    subject: str
    from_email: str
    from_name: Optional[str]
    to_email: str
    body_text: Optional[str]
    body_html: Optional[str]
    received_at: datetime


@dataclass
class RefreshedToken:
    access_token: str
    expires_at: Optional[int]  # epoch seconds


def header_value(headers, name: str) -> str:
    """Return the first header called *name* (case-insensitive) from a Gmail header list."""
    lowered = name.lower()
    for header in headers or []:
        if header.get("name", "").lower() == lowered:
            return header.get("value") or ""
    return ""


def extract_email(raw: str) -> str:
    match = re.search(r"<(.+)>", raw)
    return match.group(1) if match else raw


def extract_name(raw: str) -> Optional[str]:
    name = re.sub(r"<.+>", "", raw).strip().replace('"', "")
    return name or None


def decode_body(data: str) -> str:
    """Decode a base64url message part body."""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def extract_bodies(payload) -> tuple:
    """Walk the MIME tree and return (text/plain, text/html) bodies."""
    body_text = ""
    body_html = ""

    def visit(part):
        nonlocal body_text, body_html
        mime_type = part.get("mimeType", "")
        data = (part.get("body") or {}).get("data")
        if mime_type == "text/plain" and data:
            body_text = decode_body(data)
        elif mime_type == "text/html" and data:
            body_html = decode_body(data)
        for child in part.get("parts") or []:
            visit(child)

    visit(payload or {})
    return body_text, body_html


def _is_stale_cursor(resp) -> bool:
    if resp.status_code == 404:
        return True
    return resp.status_code == 400 and "startHistoryId" in resp.text


class GmailClient:
    """Thin wrapper around the Gmail v1 REST API for a single access token."""

    def __init__(self, access_token: str, *, timeout: float = TIMEOUT, session=None):
        self.access_token = access_token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs):
        url = f"{API_BASE_URL}/{path}"
        headers = {"Authorization": f"Bearer {self.access_token}"}
        try:
            resp = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise MailboxAPIError(f"{method} {path}: {exc}") from exc

        if resp.status_code >= 400:
            detail = resp.text[:300]
            if path == "history" and _is_stale_cursor(resp):
                raise StaleCursorError(f"history cursor rejected: {detail}", status=resp.status_code)
            if resp.status_code == 401:
                raise AuthError(f"{method} {path} unauthorized: {detail}")
            raise MailboxAPIError(f"{method} {path} failed: {detail}", status=resp.status_code)

        if not resp.content:
            return {}
        return resp.json()

    # ── Read operations ──────────────────────────────────────────

    def get_profile(self) -> dict:
        return self._request("GET", "profile")

    def get_email_address(self) -> str:
        return self.get_profile()["emailAddress"]

    def list_history(self, start_history_id: str, label_id: Optional[str] = None) -> list:
        """Return every messageAdded history record since *start_history_id*, following pages."""
        params = {"startHistoryId": start_history_id, "historyTypes": "messageAdded"}
        if label_id:
            params["labelId"] = label_id

        records = []
        while True:
            data = self._request("GET", "history", params=params)
            records.extend(data.get("history", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                return records
            params["pageToken"] = page_token

    def list_messages(self, label_ids=None, query: Optional[str] = None, max_results: int = 5) -> list:
        """Return ids of the most recent messages matching the filters."""
        params = {"maxResults": max_results}
        if label_ids:
            params["labelIds"] = list(label_ids)
        if query:
            params["q"] = query
        data = self._request("GET", "messages", params=params)
        return [m["id"] for m in data.get("messages", []) if m.get("id")]

    def get_message(self, message_id: str, fmt: str = "minimal", metadata_headers=None) -> dict:
        params = {"format": fmt}
        if metadata_headers:
            params["metadataHeaders"] = list(metadata_headers)
        return self._request("GET", f"messages/{message_id}", params=params)

    def get_email_content(self, message_id: str) -> EmailContent:
        message = self.get_message(message_id, fmt="full")
        payload = message.get("payload") or {}
        headers = payload.get("headers", [])

        from_header = header_value(headers, "From")
        date_header = header_value(headers, "Date")
        body_text, body_html = extract_bodies(payload)

        received_at = datetime.now(timezone.utc)
        if date_header:
            try:
                received_at = email.utils.parsedate_to_datetime(date_header).astimezone(timezone.utc)
            except (TypeError, ValueError):
                logger.debug("Unparseable Date header on %s: %s", message_id, date_header)

        return EmailContent(
            subject=header_value(headers, "Subject") or "No Subject",
            from_email=extract_email(from_header),
            from_name=extract_name(from_header),
            to_email=extract_email(header_value(headers, "To")),
            body_text=body_text or None,
            body_html=body_html or None,
            received_at=received_at,
        )

    def get_labels(self, message_id: str) -> list:
        return self.get_message(message_id, fmt="minimal").get("labelIds", [])

    # ── Label mutations ──────────────────────────────────────────

    def modify_labels(self, message_id: str, add=(), remove=()) -> dict:
        body = {"addLabelIds": list(add), "removeLabelIds": list(remove)}
        return self._request("POST", f"messages/{message_id}/modify", json=body)

    def is_in_spam(self, message_id: str) -> bool:
        """Best effort; assumes not in SPAM when the labels cannot be read."""
        try:
            return LABEL_SPAM in self.get_labels(message_id)
        except MailboxAPIError as exc:
            logger.warning("Failed to check SPAM label for %s: %s", message_id, exc)
            return False

    def move_spam_to_inbox(self, message_id: str) -> bool:
        try:
            if LABEL_SPAM not in self.get_labels(message_id):
                return True
            self.modify_labels(message_id, add=[LABEL_INBOX], remove=[LABEL_SPAM])
        except MailboxAPIError as exc:
            logger.warning("Failed to move %s from SPAM to INBOX: %s", message_id, exc)
            return False
        logger.info("Moved %s from SPAM to INBOX", message_id)
        return True

    def archive(self, message_id: str) -> bool:
        """Remove INBOX and UNREAD. A message already out of the inbox counts as archived."""
        try:
            if LABEL_INBOX not in self.get_labels(message_id):
                logger.debug("%s already archived", message_id)
                return True
            self.modify_labels(message_id, remove=[LABEL_INBOX, LABEL_UNREAD])
        except MailboxAPIError as exc:
            logger.warning("Failed to archive %s: %s", message_id, exc)
            return False
        logger.info("Archived %s", message_id)
        return True

    # ── Push notifications ───────────────────────────────────────

    def watch(self, topic_name: str, label_ids=(LABEL_INBOX,)) -> dict:
        return self._request("POST", "watch", json={"topicName": topic_name, "labelIds": list(label_ids)})

    def stop(self) -> None:
        self._request("POST", "stop")


class GoogleOAuthClient:
    """Exchanges refresh tokens for new access tokens."""

    def __init__(self, client_id: str, client_secret: str, *, timeout: float = TIMEOUT, session=None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self.session = session or requests.Session()

    def refresh(self, refresh_token: str) -> RefreshedToken:
        if not self.client_id or not self.client_secret:
            raise AuthError("Missing Google OAuth credentials")
        try:
            resp = self.session.post(
                TOKEN_URL,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise AuthError(f"Token refresh failed: {exc}") from exc

        if resp.status_code >= 400:
            raise AuthError(f"Token refresh failed: {resp.status_code} {resp.text[:200]}")

        data = resp.json()
        access_token = data.get("access_token")
        if not access_token:
            raise AuthError("Token refresh returned no access_token")
        expires_in = data.get("expires_in")
        expires_at = int(time.time()) + int(expires_in) if expires_in else None
        return RefreshedToken(access_token=access_token, expires_at=expires_at)
