"""
Change reconciler – turns (stored cursor, announced cursor) into candidate message ids.

Tiers, each tried only when the previous one found nothing or failed:

1. history since the stored cursor (INBOX, then SPAM if INBOX is empty)
2. history since the announced cursor (INBOX + SPAM)
3. recent INBOX + SPAM messages inside a short window
4. unscoped most-recent listing; only when both history cursors errored.
   Receipt-time filtering is disabled for this tier.
"""

import enum
import logging

from inboxsync.errors import MailboxAPIError, StaleCursorError
from inboxsync.gmail_client import LABEL_INBOX, LABEL_SPAM

logger = logging.getLogger(__name__)


class Tier(str, enum.Enum):
    HISTORY = "history"
    ANNOUNCED_HISTORY = "announced_history"
    RECENT = "recent"
    UNFILTERED = "unfiltered"

    @property
    def strict_filter(self) -> bool:
        return self is not Tier.UNFILTERED


def added_message_ids(history_records) -> set:
    ids = set()
    for record in history_records:
        for added in record.get("messagesAdded") or []:
            message_id = (added.get("message") or {}).get("id")
            if message_id:
                ids.add(message_id)
    return ids


class ChangeReconciler:
    def __init__(
        self,
        recent_window: str = "1h",
        fallback_max_results: int = 5,
        spam_fallback_max_results: int = 3,
    ):
        self.recent_window = recent_window
        self.fallback_max_results = fallback_max_results
        self.spam_fallback_max_results = spam_fallback_max_results

    def find_candidates(self, client, stored_cursor: str, announced_cursor: str):
        """
        Return (ids, tier).

        Raises MailboxAPIError only when every tier failed with an error, so the
        job is retried by the queue instead of advancing the cursor blindly.
        """
        if stored_cursor == announced_cursor:
            return set(), Tier.HISTORY

        stored_failed = False
        try:
            ids = set(added_message_ids(client.list_history(stored_cursor, LABEL_INBOX)))
            if not ids:
                ids = added_message_ids(client.list_history(stored_cursor, LABEL_SPAM))
            if ids:
                logger.info("Tier 1: %d message(s) from history since %s", len(ids), stored_cursor)
                return ids, Tier.HISTORY
        except StaleCursorError as exc:
            logger.warning("Stored cursor %s rejected, trying announced cursor: %s", stored_cursor, exc)
            stored_failed = True
        except MailboxAPIError as exc:
            logger.warning("History since stored cursor %s failed: %s", stored_cursor, exc)
            stored_failed = True

        announced_failed = False
        try:
            ids = added_message_ids(client.list_history(announced_cursor, LABEL_INBOX))
            ids |= added_message_ids(client.list_history(announced_cursor, LABEL_SPAM))
            if ids:
                logger.info("Tier 2: %d message(s) from history since announced %s", len(ids), announced_cursor)
                return ids, Tier.ANNOUNCED_HISTORY
        except MailboxAPIError as exc:
            logger.warning("History since announced cursor %s failed: %s", announced_cursor, exc)
            announced_failed = True

        history_broken = stored_failed and announced_failed
        last_error = None

        query = f"newer_than:{self.recent_window}"
        try:
            ids = set(client.list_messages([LABEL_INBOX], query=query, max_results=self.fallback_max_results))
            ids |= set(client.list_messages([LABEL_SPAM], query=query, max_results=self.spam_fallback_max_results))
            if ids or not history_broken:
                logger.info(
                    "Tier 3: %d recent message(s) (%s, history_broken=%s)", len(ids), query, history_broken
                )
                return ids, Tier.RECENT
        except MailboxAPIError as exc:
            logger.warning("Recent message listing failed: %s", exc)
            last_error = exc
            if not history_broken:
                return set(), Tier.RECENT

        try:
            ids = set(client.list_messages(max_results=self.fallback_max_results))
        except MailboxAPIError as exc:
            logger.error("All reconciliation tiers failed: %s", exc)
            raise exc from last_error

        logger.warning(
            "Tier 4: history unusable, taking %d most recent message(s) WITHOUT receipt-time filtering",
            len(ids),
        )
        return ids, Tier.UNFILTERED
