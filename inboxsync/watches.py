"""Watch lifecycle – Gmail push subscription setup, cursor advance, expiry sweep and teardown."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from inboxsync.errors import AuthError, InboxSyncError, MailboxAPIError
from inboxsync.extensions import db
from inboxsync.models import OAuthAccount, Watch, utcnow

logger = logging.getLogger(__name__)

STATUS_STARTED = "started"
STATUS_ALREADY_ACTIVE = "already_active"
STATUS_ERROR = "error"


@dataclass
class WatchSetupResult:
    status: str
    account_email: Optional[str] = None
    expires_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self):
        return {
            "status": self.status,
            "accountEmail": self.account_email,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "error": self.error,
        }


class WatchManager:
    def __init__(self, client_factory, broker, topic_name: str):
        self.client_factory = client_factory
        self.broker = broker
        self.topic_name = topic_name

    # ── Setup ────────────────────────────────────────────────────

    def setup(self, user_id, access_token: str) -> WatchSetupResult:
        """
        Subscribe the mailbox behind *access_token*; a live watch makes this a no-op.

        Prior rows for (user, address) are deactivated before the subscribe
        call so two active rows never coexist.
        """
        client = self.client_factory(access_token)
        account_email = client.get_email_address()

        rows = Watch.query.filter_by(user_id=user_id, account_email=account_email).all()
        now = utcnow()
        live = next((w for w in rows if w.is_live(now)), None)
        if live is not None:
            logger.info("Watch for %s already active until %s", account_email, live.expires_at)
            return WatchSetupResult(STATUS_ALREADY_ACTIVE, account_email, live.expires_at)

        for row in rows:
            row.active = False
        db.session.commit()

        response = client.watch(self.topic_name)
        history_id = response.get("historyId")
        expiration = response.get("expiration")
        if not history_id or not expiration:
            raise MailboxAPIError("Invalid watch response from Gmail API")
        expires_at = datetime.fromtimestamp(int(expiration) / 1000, timezone.utc)

        watch = rows[0] if rows else Watch(user_id=user_id, account_email=account_email)
        watch.cursor = str(history_id)
        watch.topic = self.topic_name
        watch.expires_at = expires_at
        watch.active = True
        db.session.add(watch)
        db.session.commit()

        logger.info("Watch started for %s (cursor %s, expires %s)", account_email, watch.cursor, expires_at)
        return WatchSetupResult(STATUS_STARTED, account_email, expires_at)

    def setup_for_user(self, user) -> list:
        """Set up a watch for every Google identity of *user*; failures are reported per account."""
        results = []
        for account in user.accounts:
            if account.provider != OAuthAccount.PROVIDER_GOOGLE:
                continue
            try:
                token = self.broker.get_valid_token(account)
                results.append(self.setup(user.id, token))
            except InboxSyncError as exc:
                logger.error("Watch setup failed for account %s: %s", account.id, exc)
                results.append(WatchSetupResult(STATUS_ERROR, account.provider_account_id, error=str(exc)))
        return results

    # ── Bookkeeping ──────────────────────────────────────────────

    def find_active(self, user_id, account_email: str):
        watch = Watch.query.filter_by(user_id=user_id, account_email=account_email, active=True).first()
        if watch is not None and watch.is_live():
            return watch
        return None

    def advance_cursor(self, watch, cursor: str, processed_count: int) -> None:
        """Move the cursor; lastProcessedAt changes only when a message was actually processed."""
        previous = watch.cursor
        watch.cursor = str(cursor)
        if processed_count > 0:
            watch.last_processed_at = utcnow()
        db.session.commit()
        logger.info(
            "Cursor %s → %s for %s (%d processed)", previous, watch.cursor, watch.account_email, processed_count
        )

    def deactivate(self, user_id, account_email: str, reason: str) -> int:
        count = Watch.query.filter_by(user_id=user_id, account_email=account_email, active=True).update(
            {"active": False}
        )
        db.session.commit()
        if count:
            logger.warning("Deactivated watch for %s: %s", account_email, reason)
        return count

    def sweep_expired(self, now=None) -> int:
        """Mark active rows whose expiry has passed as inactive. No provider calls."""
        now = now or utcnow()
        count = Watch.query.filter(Watch.active.is_(True), Watch.expires_at <= now).update(
            {"active": False}, synchronize_session=False
        )
        db.session.commit()
        logger.info("Expiry sweep deactivated %d watch(es)", count)
        return count

    # ── Teardown ─────────────────────────────────────────────────

    def _stop_at_provider(self, account):
        """
        Best-effort unsubscribe. Returns (mailbox address, stopped); the address
        is None when it could not be resolved.
        """
        account_email = None
        try:
            token = self.broker.get_valid_token(account)
            client = self.client_factory(token)
            account_email = client.get_email_address()
            client.stop()
        except (AuthError, MailboxAPIError) as exc:
            logger.warning("Failed to stop Gmail watch for account %s: %s", account.id, exc)
            return account_email, False
        return account_email, True

    def teardown(self, user_id, account) -> str:
        """Unsubscribe, deactivate the local watch and delete the credential, in that order."""
        account_email, _ = self._stop_at_provider(account)
        account_email = account_email or account.provider_account_id

        Watch.query.filter_by(user_id=user_id, account_email=account_email).update({"active": False})
        db.session.delete(account)
        db.session.commit()
        logger.info("Disconnected %s for user %s", account_email, user_id)
        return account_email

    def stop_all(self, user) -> dict:
        stopped = failed = 0
        for account in user.accounts:
            _, ok = self._stop_at_provider(account)
            if ok:
                stopped += 1
            else:
                failed += 1

        Watch.query.filter_by(user_id=user.id, active=True).update({"active": False})
        db.session.commit()
        return {"stopped": stopped, "failed": failed}
