"""
Per-message pipeline: spam relocation, content fetch, classification, storage, archival.

Storage can succeed while archival fails; the reverse never happens.
"""

import logging
from dataclasses import dataclass

from inboxsync import ledger
from inboxsync.classifier import fallback_classification
from inboxsync.errors import LedgerConflict, MailboxAPIError
from inboxsync.models import Category

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    processed: bool = False
    archived: bool = False
    categorized: bool = False


class MessageProcessor:
    def __init__(self, client, classifier):
        self.client = client
        self.classifier = classifier

    def classify(self, content, user_id):
        categories = Category.query.filter_by(user_id=user_id).order_by(Category.created_at.desc()).all()
        if not categories:
            logger.warning("User %s has no categories, storing without classification", user_id)
            return fallback_classification(content, "No categories available for classification")

        try:
            result = self.classifier.classify(content, categories)
        except Exception as exc:
            # any classifier failure falls back; the message must still be stored
            logger.error("Classification failed for '%s': %s", content.subject, exc)
            return fallback_classification(content, "Classification failed")

        logger.info(
            "Classified '%s' → %s (confidence %.2f)", content.subject, result.category_name, result.confidence
        )
        return result

    def process(self, message_id: str, user_id, account_email: str) -> ProcessResult:
        if not message_id or not user_id or not account_email:
            logger.error("Invalid input for message processing: id=%r user=%r", message_id, user_id)
            return ProcessResult()

        if ledger.check(message_id, user_id) is ledger.LedgerState.DONE:
            return ProcessResult()

        if self.client.is_in_spam(message_id):
            logger.info("%s is in SPAM, moving to INBOX before processing", message_id)
            if not self.client.move_spam_to_inbox(message_id):
                logger.warning("Could not move %s out of SPAM, continuing", message_id)

        try:
            content = self.client.get_email_content(message_id)
        except MailboxAPIError as exc:
            logger.error("Failed to fetch %s: %s", message_id, exc)
            return ProcessResult()

        logger.info("Processing %s from=%s subject=%s", message_id, content.from_email, content.subject)
        classification = self.classify(content, user_id)

        try:
            row = ledger.record(message_id, user_id, account_email, content, classification)
        except LedgerConflict as exc:
            logger.warning("Not storing %s: %s", message_id, exc)
            return ProcessResult()

        archived = self.client.archive(message_id)
        if archived:
            ledger.mark_archived(row)
        else:
            logger.warning("Stored %s but archiving failed", message_id)

        return ProcessResult(
            processed=True,
            archived=archived,
            categorized=classification.category_id is not None,
        )
