from __future__ import annotations

import pytest

from inboxsync.errors import MailboxAPIError
from inboxsync.reconciler import ChangeReconciler, Tier, added_message_ids
from tests.helpers import added, stale


@pytest.fixture
def reconciler() -> ChangeReconciler:
    return ChangeReconciler(recent_window="1h", fallback_max_results=5, spam_fallback_max_results=3)


def test_equal_cursors_make_no_calls(reconciler, mailbox) -> None:
    ids, tier = reconciler.find_candidates(mailbox.client("tok"), "105", "105")

    assert ids == set()
    assert tier is Tier.HISTORY
    assert mailbox.requests == []


def test_inbox_history_since_stored_cursor(reconciler, mailbox) -> None:
    mailbox.history[("100", "INBOX")] = [added("m1"), added("m1", "m3")]
    mailbox.history[("100", "SPAM")] = [added("s1")]

    ids, tier = reconciler.find_candidates(mailbox.client("tok"), "100", "105")

    assert ids == {"m1", "m3"}
    assert tier is Tier.HISTORY


def test_spam_history_used_when_inbox_history_is_empty(reconciler, mailbox) -> None:
    mailbox.history[("100", "SPAM")] = [added("s1")]

    ids, tier = reconciler.find_candidates(mailbox.client("tok"), "100", "105")

    assert ids == {"s1"}
    assert tier is Tier.HISTORY


def test_stale_stored_cursor_falls_back_to_announced_cursor(reconciler, mailbox) -> None:
    mailbox.history[("100", "INBOX")] = stale("100")
    mailbox.history[("105", "INBOX")] = [added("m2")]
    mailbox.history[("105", "SPAM")] = [added("s2")]

    ids, tier = reconciler.find_candidates(mailbox.client("tok"), "100", "105")

    assert ids == {"m2", "s2"}
    assert tier is Tier.ANNOUNCED_HISTORY


def test_empty_history_falls_back_to_recent_listing(reconciler, mailbox) -> None:
    mailbox.listings[("INBOX",)] = ["r1"]
    mailbox.listings[("SPAM",)] = ["r2"]

    ids, tier = reconciler.find_candidates(mailbox.client("tok"), "100", "105")

    assert ids == {"r1", "r2"}
    assert tier is Tier.RECENT
    assert tier.strict_filter is True


def test_unfiltered_listing_needs_broken_history(reconciler, mailbox) -> None:
    mailbox.listings[()] = ["u1"]

    ids, tier = reconciler.find_candidates(mailbox.client("tok"), "100", "105")

    assert ids == set()
    assert tier is Tier.RECENT


def test_broken_history_and_empty_recent_listing_go_unfiltered(reconciler, mailbox) -> None:
    mailbox.history[("100", "INBOX")] = stale("100")
    mailbox.history[("105", "INBOX")] = MailboxAPIError("backend error", status=500)
    mailbox.listings[()] = ["u1", "u2"]

    ids, tier = reconciler.find_candidates(mailbox.client("tok"), "100", "105")

    assert ids == {"u1", "u2"}
    assert tier is Tier.UNFILTERED
    assert tier.strict_filter is False


def test_recent_listing_error_with_intact_history_yields_nothing(reconciler, mailbox) -> None:
    mailbox.listings[("INBOX",)] = MailboxAPIError("backend error", status=500)
    mailbox.listings[()] = ["u1"]

    ids, tier = reconciler.find_candidates(mailbox.client("tok"), "100", "105")

    assert ids == set()
    assert tier is Tier.RECENT


def test_every_tier_failing_raises(reconciler, mailbox) -> None:
    failure = MailboxAPIError("backend error", status=503)
    mailbox.history[("100", "INBOX")] = failure
    mailbox.history[("105", "INBOX")] = failure
    mailbox.listings[("INBOX",)] = failure
    mailbox.listings[()] = failure

    with pytest.raises(MailboxAPIError):
        reconciler.find_candidates(mailbox.client("tok"), "100", "105")


def test_added_message_ids_ignores_records_without_ids() -> None:
    records = [added("a"), {"messagesAdded": [{"message": {}}]}, {"labelsAdded": []}]

    assert added_message_ids(records) == {"a"}
