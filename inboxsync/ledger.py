"""
Dedup ledger – the emails table keyed by Gmail message id.

Writes rely on the unique constraint on gmail_id instead of check-then-insert,
so two workers racing on the same id cannot both store it.
"""

import enum
import logging

from sqlalchemy.exc import IntegrityError

from inboxsync.errors import LedgerConflict
from inboxsync.extensions import db
from inboxsync.models import StoredMessage, utcnow

logger = logging.getLogger(__name__)


class LedgerState(str, enum.Enum):
    NEW = "new"
    DONE = "done"  # same user, processed: skip
    RETRY = "retry"  # same user, never marked processed
    COLLISION = "collision"  # owned by another user


def lookup(gmail_id: str):
    return StoredMessage.query.filter_by(gmail_id=gmail_id).first()


def check(gmail_id: str, user_id) -> LedgerState:
    existing = lookup(gmail_id)
    if existing is None:
        return LedgerState.NEW

    if existing.user_id != user_id:
        logger.warning(
            "Gmail message id collision: %s owned by user %s, now claimed by user %s",
            gmail_id,
            existing.user_id,
            user_id,
        )
        return LedgerState.COLLISION

    if existing.processed_at is not None:
        logger.debug("Skipping %s, already processed at %s", gmail_id, existing.processed_at)
        return LedgerState.DONE

    logger.warning("Found unprocessed record for %s, reprocessing", gmail_id)
    return LedgerState.RETRY


def record(gmail_id: str, user_id, account_email: str, content, classification) -> StoredMessage:
    """
    Persist *gmail_id* as processed now.

    An unprocessed row of the same user is completed in place; otherwise a new
    row is inserted. Raises LedgerConflict when the unique constraint rejects it.
    """
    row = StoredMessage.query.filter_by(gmail_id=gmail_id, user_id=user_id, processed_at=None).first()
    if row is None:
        row = StoredMessage(gmail_id=gmail_id, user_id=user_id)
        db.session.add(row)

    row.account_email = account_email
    row.subject = content.subject
    row.from_email = content.from_email
    row.from_name = content.from_name
    row.to_email = content.to_email
    row.body_text = content.body_text
    row.body_html = content.body_html
    row.received_at = content.received_at
    row.category_id = classification.category_id
    row.ai_summary = classification.summary
    row.confidence = classification.confidence
    row.processed_at = utcnow()

    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise LedgerConflict(f"{gmail_id} is already recorded") from exc
    return row


def mark_archived(row: StoredMessage) -> None:
    row.archived = True
    db.session.commit()
