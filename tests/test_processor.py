from __future__ import annotations

from inboxsync import ledger
from inboxsync.extensions import db
from inboxsync.models import StoredMessage
from inboxsync.processor import MessageProcessor
from tests.helpers import FakeClassifier, make_category, make_user, utc_now

ADDRESS = "owner@example.test"


def stored(gmail_id: str) -> list:
    return StoredMessage.query.filter_by(gmail_id=gmail_id).all()


def test_message_is_classified_stored_and_archived(app, mailbox, classifier) -> None:
    user = make_user()
    category = make_category(user, "Newsletters")
    mailbox.add_message("m1", received=utc_now(), subject="Weekly digest")

    result = MessageProcessor(mailbox.client("tok"), classifier).process("m1", user.id, ADDRESS)

    assert (result.processed, result.archived, result.categorized) == (True, True, True)
    [row] = stored("m1")
    assert row.user_id == user.id
    assert row.category_id == category.id
    assert row.ai_summary == "Summary of Weekly digest"
    assert row.processed_at is not None
    assert row.archived is True
    assert "INBOX" not in mailbox.labels("m1")
    assert "UNREAD" not in mailbox.labels("m1")


def test_processing_twice_is_a_noop(app, mailbox, classifier) -> None:
    user = make_user()
    make_category(user, "Newsletters")
    mailbox.add_message("m1", received=utc_now())
    processor = MessageProcessor(mailbox.client("tok"), classifier)

    first = processor.process("m1", user.id, ADDRESS)
    second = processor.process("m1", user.id, ADDRESS)

    assert first.processed is True
    assert second.processed is False
    assert len(stored("m1")) == 1
    assert classifier.calls == 1


def test_spam_is_moved_to_inbox_before_processing(app, mailbox, classifier) -> None:
    user = make_user()
    mailbox.add_message("s1", received=utc_now(), labels=("SPAM", "UNREAD"))

    result = MessageProcessor(mailbox.client("tok"), classifier).process("s1", user.id, ADDRESS)

    assert result.processed is True
    assert result.archived is True
    assert "SPAM" not in mailbox.labels("s1")
    assert "INBOX" not in mailbox.labels("s1")


def test_archive_failure_keeps_the_stored_record(app, mailbox, classifier) -> None:
    user = make_user()
    mailbox.add_message("m1", received=utc_now())
    mailbox.fail_modify.add("m1")

    result = MessageProcessor(mailbox.client("tok"), classifier).process("m1", user.id, ADDRESS)

    assert result.processed is True
    assert result.archived is False
    [row] = stored("m1")
    assert row.processed_at is not None
    assert row.archived is False
    assert "INBOX" in mailbox.labels("m1")


def test_spam_relocation_failure_is_not_fatal(app, mailbox, classifier) -> None:
    user = make_user()
    mailbox.add_message("s1", received=utc_now(), labels=("SPAM",))
    mailbox.fail_modify.add("s1")

    result = MessageProcessor(mailbox.client("tok"), classifier).process("s1", user.id, ADDRESS)

    assert result.processed is True
    assert len(stored("s1")) == 1


def test_user_without_categories_gets_fallback_summary(app, mailbox, classifier) -> None:
    user = make_user()
    mailbox.add_message("m1", received=utc_now(), subject="Lunch?", sender="Bob <bob@example.test>")

    result = MessageProcessor(mailbox.client("tok"), classifier).process("m1", user.id, ADDRESS)

    assert result.processed is True
    assert result.categorized is False
    assert classifier.calls == 0
    [row] = stored("m1")
    assert row.ai_summary == "Email from bob@example.test about: Lunch?"
    assert row.category_id is None


def test_classifier_failure_falls_back_and_still_stores(app, mailbox) -> None:
    user = make_user()
    make_category(user, "Newsletters")
    mailbox.add_message("m1", received=utc_now(), subject="Lunch?", sender="bob@example.test")
    classifier = FakeClassifier(fail=True)

    result = MessageProcessor(mailbox.client("tok"), classifier).process("m1", user.id, ADDRESS)

    assert result.processed is True
    assert classifier.calls == 1
    [row] = stored("m1")
    assert row.ai_summary == "Email from bob@example.test about: Lunch?"
    assert row.confidence == 0.0


def test_fetch_failure_stores_nothing(app, mailbox, classifier) -> None:
    user = make_user()
    mailbox.add_message("m1", received=utc_now())
    mailbox.fail_get.add("m1")

    result = MessageProcessor(mailbox.client("tok"), classifier).process("m1", user.id, ADDRESS)

    assert result.processed is False
    assert stored("m1") == []


def test_unprocessed_record_is_completed_on_retry(app, mailbox, classifier) -> None:
    user = make_user()
    db.session.add(StoredMessage(gmail_id="m1", user_id=user.id, account_email=ADDRESS))
    db.session.commit()
    mailbox.add_message("m1", received=utc_now())

    assert ledger.check("m1", user.id) is ledger.LedgerState.RETRY
    result = MessageProcessor(mailbox.client("tok"), classifier).process("m1", user.id, ADDRESS)

    assert result.processed is True
    [row] = stored("m1")
    assert row.processed_at is not None


def test_id_owned_by_another_user_is_not_merged(app, mailbox, classifier) -> None:
    owner = make_user("first@example.test")
    other = make_user("second@example.test")
    db.session.add(StoredMessage(gmail_id="m1", user_id=owner.id, account_email=ADDRESS, processed_at=utc_now()))
    db.session.commit()
    mailbox.add_message("m1", received=utc_now())

    assert ledger.check("m1", other.id) is ledger.LedgerState.COLLISION
    result = MessageProcessor(mailbox.client("tok"), classifier).process("m1", other.id, ADDRESS)

    assert result.processed is False
    [row] = stored("m1")
    assert row.user_id == owner.id
    assert "INBOX" in mailbox.labels("m1")


def test_missing_input_is_rejected(app, mailbox, classifier) -> None:
    processor = MessageProcessor(mailbox.client("tok"), classifier)

    assert processor.process("", 1, ADDRESS).processed is False
    assert processor.process("m1", None, ADDRESS).processed is False
    assert mailbox.requests == []
