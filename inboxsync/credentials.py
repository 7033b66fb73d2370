"""Credential broker – hands out valid access tokens, refreshing expired ones once per account."""

import logging
import threading
import time
import weakref

from inboxsync.errors import AuthError
from inboxsync.extensions import db

logger = logging.getLogger(__name__)


class CredentialBroker:
    def __init__(self, oauth_client, clock=time.time):
        self.oauth_client = oauth_client
        self.clock = clock
        # entries disappear once no caller holds the lock
        self._locks = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _lock_for(self, account_id):
        with self._locks_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = self._locks[account_id] = threading.Lock()
            return lock

    def _is_expired(self, account) -> bool:
        return account.expires_at is not None and account.expires_at < self.clock()

    def get_valid_token(self, account) -> str:
        """
        Return a usable access token for *account*.

        Refresh is single-flight per account: a concurrent caller waits for the
        in-progress refresh and then picks up the rotated token from the DB.
        Raises AuthError when the token is expired and cannot be refreshed.
        """
        if account.access_token and not self._is_expired(account):
            return account.access_token

        with self._lock_for(account.id):
            # Another thread may have rotated the token while we waited
            db.session.refresh(account)
            if account.access_token and not self._is_expired(account):
                return account.access_token

            if not account.refresh_token:
                raise AuthError(f"Account {account.id} token expired and no refresh token is stored")

            logger.debug("Refreshing expired token for account %s", account.id)
            try:
                refreshed = self.oauth_client.refresh(account.refresh_token)
            except AuthError:
                logger.error("Token refresh failed for account %s", account.id)
                raise

            account.access_token = refreshed.access_token
            account.expires_at = refreshed.expires_at
            db.session.commit()
            logger.info("Token refreshed for account %s", account.id)
            return account.access_token
