from __future__ import annotations

import base64
import json
from datetime import datetime, timedelta, timezone

import requests

from inboxsync.classifier import Classification
from inboxsync.errors import AuthError, MailboxAPIError, StaleCursorError
from inboxsync.extensions import db
from inboxsync.gmail_client import GmailClient, RefreshedToken
from inboxsync.models import Category, OAuthAccount, User, Watch


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def epoch_ms(dt: datetime) -> str:
    return str((dt - EPOCH) // timedelta(milliseconds=1))


def added(*message_ids: str) -> dict:
    """One history record announcing *message_ids* as messageAdded."""
    return {"messagesAdded": [{"message": {"id": message_id}} for message_id in message_ids]}


class FakeMailbox:
    """In-memory Gmail account served through GmailClient._request."""

    def __init__(self, address: str = "owner@example.test"):
        self.address = address
        self.addresses_by_token: dict[str, str] = {}
        self.history: dict[tuple[str, str | None], object] = {}
        self.listings: dict[tuple[str, ...], object] = {}
        self.messages: dict[str, dict] = {}
        self.fail_modify: set[str] = set()
        self.fail_get: set[str] = set()
        self.watch_response = {"historyId": "500", "expiration": epoch_ms(utc_now() + timedelta(days=7))}
        self.watch_calls = 0
        self.stop_calls = 0
        self.fail_stop = False
        self.requests: list[tuple[str, str]] = []

    def client(self, access_token: str) -> "FakeGmail":
        return FakeGmail(self, access_token)

    def add_message(
        self,
        message_id: str,
        *,
        received: datetime | None = None,
        labels: tuple[str, ...] = ("INBOX", "UNREAD"),
        subject: str = "Hello",
        sender: str = "Sender <sender@example.test>",
        body: str = "Body text",
        headers: list[dict] | None = None,
    ) -> None:
        self.messages[message_id] = {
            "internalDate": epoch_ms(received) if received else None,
            "labelIds": list(labels),
            "headers": headers
            if headers is not None
            else [
                {"name": "Subject", "value": subject},
                {"name": "From", "value": sender},
                {"name": "To", "value": self.address},
                {"name": "Date", "value": "Mon, 16 Feb 2026 10:00:00 +0000"},
            ],
            "body": body,
        }

    def labels(self, message_id: str) -> list[str]:
        return self.messages[message_id]["labelIds"]

    def resource(self, message_id: str) -> dict:
        stored = self.messages[message_id]
        data = base64.urlsafe_b64encode(stored["body"].encode("utf-8")).decode("ascii").rstrip("=")
        resource = {
            "id": message_id,
            "labelIds": list(stored["labelIds"]),
            "payload": {
                "mimeType": "multipart/alternative",
                "headers": stored["headers"],
                "parts": [{"mimeType": "text/plain", "body": {"data": data}}],
            },
        }
        if stored["internalDate"]:
            resource["internalDate"] = stored["internalDate"]
        return resource


class FakeGmail(GmailClient):
    def __init__(self, mailbox: FakeMailbox, access_token: str):
        super().__init__(access_token, session=object())
        self.mailbox = mailbox

    def _request(self, method, path, params=None, json=None):
        box = self.mailbox
        box.requests.append((method, path))
        params = params or {}

        if path == "profile":
            return {"emailAddress": box.addresses_by_token.get(self.access_token, box.address), "historyId": "1"}

        if path == "history":
            result = box.history.get((params["startHistoryId"], params.get("labelId")), [])
            if isinstance(result, Exception):
                raise result
            return {"history": result}

        if path == "messages":
            result = box.listings.get(tuple(params.get("labelIds", ())), [])
            if isinstance(result, Exception):
                raise result
            return {"messages": [{"id": message_id} for message_id in result]}

        if path == "watch":
            box.watch_calls += 1
            return box.watch_response

        if path == "stop":
            box.stop_calls += 1
            if box.fail_stop:
                raise MailboxAPIError("stop failed", status=500)
            return {}

        message_id = path.split("/")[1]
        if message_id not in box.messages or message_id in box.fail_get:
            raise MailboxAPIError(f"message {message_id} not found", status=404)

        if path.endswith("/modify"):
            if message_id in box.fail_modify:
                raise MailboxAPIError("modify failed", status=500)
            labels = box.labels(message_id)
            for label in json.get("removeLabelIds", []):
                if label in labels:
                    labels.remove(label)
            for label in json.get("addLabelIds", []):
                if label not in labels:
                    labels.append(label)
            return {"id": message_id, "labelIds": labels}

        return box.resource(message_id)


def stale(cursor: str = "100") -> StaleCursorError:
    return StaleCursorError(f"startHistoryId {cursor} too old", status=404)


class FakeOAuth:
    def __init__(self, token: str = "refreshed-token", fail: bool = False):
        self.token = token
        self.fail = fail
        self.calls = 0

    def refresh(self, refresh_token: str) -> RefreshedToken:
        self.calls += 1
        if self.fail:
            raise AuthError("invalid_grant")
        return RefreshedToken(access_token=self.token, expires_at=int(utc_now().timestamp()) + 3600)


class FakeClassifier:
    def __init__(self, category_name: str | None = None, fail: bool = False):
        self.category_name = category_name
        self.fail = fail
        self.calls = 0

    def classify(self, content, categories) -> Classification:
        self.calls += 1
        if self.fail:
            raise RuntimeError("model unavailable")
        category = next((c for c in categories if c.name == self.category_name), None)
        return Classification(
            category_id=category.id if category else None,
            category_name=category.name if category else None,
            summary=f"Summary of {content.subject}",
            confidence=0.9 if category else 0.0,
        )


def make_user(email: str = "user@example.test") -> User:
    user = User(email=email)
    db.session.add(user)
    db.session.commit()
    return user


def make_account(
    user: User,
    *,
    access_token: str = "token-1",
    refresh_token: str | None = "refresh-1",
    expires_in: int | None = 3600,
    provider_account_id: str = "google-1",
) -> OAuthAccount:
    account = OAuthAccount(
        user_id=user.id,
        provider=OAuthAccount.PROVIDER_GOOGLE,
        provider_account_id=provider_account_id,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=int(utc_now().timestamp()) + expires_in if expires_in is not None else None,
    )
    db.session.add(account)
    db.session.commit()
    return account


def make_watch(
    user: User,
    *,
    account_email: str = "owner@example.test",
    cursor: str = "100",
    active: bool = True,
    expires_at: datetime | None = None,
    last_processed_at: datetime | None = None,
) -> Watch:
    watch = Watch(
        user_id=user.id,
        account_email=account_email,
        cursor=cursor,
        topic="projects/test/topics/gmail",
        expires_at=expires_at or utc_now() + timedelta(days=7),
        active=active,
        last_processed_at=last_processed_at,
    )
    db.session.add(watch)
    db.session.commit()
    return watch


def make_category(user: User, name: str = "Newsletters", description: str = "Periodic mailings") -> Category:
    category = Category(user_id=user.id, name=name, description=description)
    db.session.add(category)
    db.session.commit()
    return category


def job_payload(user: User, account: OAuthAccount, *, history_id: str = "105", address: str = "owner@example.test") -> dict:
    return {
        "emailAddress": address,
        "historyId": history_id,
        "userId": user.id,
        "accountId": account.id,
        "accessToken": account.access_token,
        "refreshToken": account.refresh_token,
        "expiresAt": account.expires_at,
    }


def envelope(address: str, history_id: str) -> dict:
    data = base64.b64encode(json.dumps({"emailAddress": address, "historyId": history_id}).encode()).decode()
    return {"message": {"data": data, "messageId": "pubsub-1", "publishTime": "2026-10-18T00:00:00Z"}, "subscription": "sub"}


class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text or (json.dumps(payload) if payload is not None else "")
        self.content = self.text.encode("utf-8")

    def json(self):
        return self._payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)


class FakeSession:
    """Replays canned responses (or raises canned exceptions) in order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: list[tuple[str, str, dict]] = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)
