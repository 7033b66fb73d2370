"""
Gmail push notification handling.

Every outcome is an acknowledgement: returning an error to Pub/Sub would only
make it redeliver, so failures are logged and the notification dropped.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Optional

from inboxsync.errors import AuthError, MailboxAPIError, PublishError
from inboxsync.models import OAuthAccount, User, Watch, record_failure

logger = logging.getLogger(__name__)

ACCEPTED = "accepted"
DROPPED_EMPTY = "empty"
DROPPED_MALFORMED = "malformed"
DROPPED_UNAUTHORIZED = "unauthorized"
DROPPED_RATE_LIMITED = "rate_limited"
DROPPED_NO_ACCOUNT = "no_account"
DROPPED_DUPLICATE = "duplicate"
PUBLISH_FAILED = "publish_failed"


@dataclass
class Notification:
    email_address: str
    history_id: str


def decode_notification(envelope) -> Optional[Notification]:
    """Decode the Pub/Sub envelope; None when the payload is missing or malformed."""
    message = envelope.get("message") if isinstance(envelope, dict) else None
    data = message.get("data") if isinstance(message, dict) else None
    if not data:
        return None
    try:
        decoded = json.loads(base64.b64decode(data).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        logger.warning("Failed to decode Gmail notification data: %r", data[:200])
        return None
    if not isinstance(decoded, dict):
        return None

    email_address = decoded.get("emailAddress")
    history_id = decoded.get("historyId")
    if not email_address or not history_id:
        logger.warning(
            "Invalid Gmail notification (has email=%s, has historyId=%s)", bool(email_address), bool(history_id)
        )
        return None
    return Notification(email_address=str(email_address), history_id=str(history_id))


class NotificationReceiver:
    def __init__(self, services, verification_token: str = ""):
        self.services = services
        self.verification_token = verification_token

    def find_matching_account(self, email_address: str):
        """
        Walk the Google identities of every user watching *email_address* and
        return (user, account) for the one whose profile is that mailbox.
        """
        user_ids = [
            row.user_id
            for row in Watch.query.filter_by(account_email=email_address, active=True).all()
        ]
        if not user_ids:
            logger.warning("No active watch for %s", email_address)
            return None

        for user in User.query.filter(User.id.in_(user_ids)).all():
            for account in user.accounts:
                if account.provider != OAuthAccount.PROVIDER_GOOGLE or not account.access_token:
                    continue
                try:
                    token = self.services.broker.get_valid_token(account)
                    profile_email = self.services.client_factory(token).get_email_address()
                except (AuthError, MailboxAPIError) as exc:
                    logger.warning("Failed to test account %s: %s", account.id, exc)
                    continue
                if profile_email == email_address:
                    logger.info("Matched %s to account %s", email_address, account.id)
                    return user, account
                logger.debug("Account %s is %s, not %s", account.id, profile_email, email_address)

        logger.warning("No matching OAuth account for %s", email_address)
        return None

    def handle(self, envelope, token: str = "") -> str:
        """Process one push envelope and return the outcome label."""
        if self.verification_token and token != self.verification_token:
            logger.warning("Webhook called with a bad verification token")
            return DROPPED_UNAUTHORIZED

        message = envelope.get("message") if isinstance(envelope, dict) else None
        if not isinstance(message, dict) or not message.get("data"):
            logger.debug("Received empty Pub/Sub message")
            return DROPPED_EMPTY

        notification = decode_notification(envelope)
        if notification is None:
            return DROPPED_MALFORMED

        address = notification.email_address
        logger.info("Gmail notification for %s historyId=%s", address, notification.history_id)

        if not self.services.rate_limiter.allow(address):
            logger.error("Rate limit exceeded for %s, possible notification loop", address)
            return DROPPED_RATE_LIMITED

        match = self.find_matching_account(address)
        if match is None:
            return DROPPED_NO_ACCOUNT
        user, account = match

        watch = Watch.query.filter_by(user_id=user.id, account_email=address, active=True).first()
        if watch is not None and watch.cursor == notification.history_id:
            logger.info("Duplicate notification for %s historyId=%s", address, notification.history_id)
            return DROPPED_DUPLICATE

        payload = {
            "emailAddress": address,
            "historyId": notification.history_id,
            "userId": user.id,
            "accountId": account.id,
            "accessToken": account.access_token,
            "refreshToken": account.refresh_token,
            "expiresAt": account.expires_at,
        }
        try:
            self.services.publisher.publish(payload)
        except PublishError as exc:
            logger.critical("Failed to queue sync job for %s historyId=%s: %s", address, notification.history_id, exc)
            record_failure("publish", str(exc), user_id=user.id, account_email=address)
            return PUBLISH_FAILED

        logger.info("Queued sync job for %s (user %s, account %s)", address, user.id, account.id)
        return ACCEPTED
