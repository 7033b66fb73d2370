"""
Message sync – one run per queued job.

Reconcile the stored cursor against the announced one, filter candidates by
receipt time, process each message, then advance the watch cursor.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta

from inboxsync.errors import AuthError, JobError, MailboxAPIError
from inboxsync.extensions import db
from inboxsync.jobs import REQUIRED_FIELDS
from inboxsync.models import OAuthAccount, record_failure, utcnow
from inboxsync.processor import MessageProcessor
from inboxsync.receipt_filter import compute_cutoff, filter_by_receipt_time

logger = logging.getLogger(__name__)


@dataclass
class SyncStats:
    processed: int = 0
    duplicates: int = 0
    archived: int = 0
    categorized: int = 0
    tier: str = ""
    complete: bool = True
    messages: list = field(default_factory=list)

    def to_dict(self):
        return {
            "processed": self.processed,
            "duplicates": self.duplicates,
            "archived": self.archived,
            "categorized": self.categorized,
            "tier": self.tier,
            "complete": self.complete,
            "messages": self.messages,
        }


def validate_payload(payload) -> None:
    if not isinstance(payload, dict) or any(not payload.get(name) for name in REQUIRED_FIELDS):
        raise JobError("Invalid request body")


class MessageSync:
    def __init__(self, services, clock=time.monotonic):
        self.services = services
        self.clock = clock

    def cutoff_for(self, watch, now):
        config = self.services.config
        return compute_cutoff(
            watch.last_processed_at,
            now,
            first_run_lookback=timedelta(minutes=config["FIRST_RUN_LOOKBACK_MINUTES"]),
            buffer=timedelta(minutes=config["CUTOFF_BUFFER_MINUTES"]),
            max_window=timedelta(hours=config["MAX_WINDOW_HOURS"]),
        )

    def run(self, payload) -> SyncStats:
        """
        Execute one sync job. Raises JobError (do not retry), AuthError (watch
        deactivated, do not retry) or MailboxAPIError (transient, retry).
        """
        started = self.clock()
        deadline = started + self.services.config["SYNC_JOB_DEADLINE"]
        validate_payload(payload)

        email_address = payload["emailAddress"]
        announced = str(payload["historyId"])
        user_id = payload["userId"]
        watches = self.services.watches

        watch = watches.find_active(user_id, email_address)
        if watch is None:
            raise JobError("No active watch found")

        account = db.session.get(OAuthAccount, payload["accountId"])
        if account is None or account.user_id != user_id:
            watches.deactivate(user_id, email_address, "credential record missing")
            raise AuthError(f"Account {payload['accountId']} not found for user {user_id}")
        if payload.get("accessToken") != account.access_token:
            logger.debug("Job token snapshot is stale for account %s, using stored credential", account.id)

        try:
            token = self.services.broker.get_valid_token(account)
        except AuthError as exc:
            watches.deactivate(user_id, email_address, f"credential failure: {exc}")
            record_failure("auth", str(exc), user_id=user_id, account_email=email_address)
            raise

        client = self.services.client_factory(token)
        now = utcnow()
        cutoff = self.cutoff_for(watch, now)
        logger.info(
            "Sync %s: cursor %s → %s, cutoff %s (first run: %s)",
            email_address,
            watch.cursor,
            announced,
            cutoff.isoformat(),
            watch.last_processed_at is None,
        )

        try:
            stats = self.sync_candidates(client, watch, announced, cutoff, deadline)
        except AuthError as exc:
            # the grant was revoked while the stored token still looked valid
            db.session.rollback()
            watches.deactivate(user_id, email_address, f"Gmail rejected credential: {exc}")
            record_failure("auth", str(exc), user_id=user_id, account_email=email_address)
            raise

        if stats.complete:
            watches.advance_cursor(watch, announced, stats.processed)
        elif stats.processed:
            # keep the cursor so the retry re-reads the same window
            watch.last_processed_at = utcnow()
            db.session.commit()

        logger.info(
            "Sync %s done: tier=%s processed=%d duplicates=%d archived=%d categorized=%d",
            email_address,
            stats.tier,
            stats.processed,
            stats.duplicates,
            stats.archived,
            stats.categorized,
        )
        return stats

    def sync_candidates(self, client, watch, announced, cutoff, deadline) -> SyncStats:
        """Reconcile, filter and process; stops fetching once *deadline* has passed."""
        user_id = watch.user_id
        email_address = watch.account_email

        deadline_hit = False

        def past_deadline():
            nonlocal deadline_hit
            deadline_hit = deadline_hit or self.clock() >= deadline
            return deadline_hit

        candidates, tier = self.services.reconciler.find_candidates(client, watch.cursor, announced)
        if tier.strict_filter:
            accepted = filter_by_receipt_time(client, candidates, cutoff, should_stop=past_deadline)
        else:
            accepted = set(candidates)
            record_failure(
                "unfiltered_fallback",
                f"history unusable; processing {len(accepted)} recent message(s) without receipt-time filter",
                user_id=user_id,
                account_email=email_address,
            )

        stats = SyncStats(tier=tier.value, messages=sorted(accepted))
        processor = MessageProcessor(client, self.services.classifier)
        for message_id in sorted(accepted):
            if past_deadline():
                remaining = len(accepted) - stats.processed - stats.duplicates
                logger.warning("Sync deadline reached for %s with %d message(s) left", email_address, remaining)
                stats.complete = False
                break
            result = processor.process(message_id, user_id, email_address)
            if result.processed:
                stats.processed += 1
                stats.archived += int(result.archived)
                stats.categorized += int(result.categorized)
            else:
                stats.duplicates += 1

        if deadline_hit:
            # some candidates were never checked or processed
            stats.complete = False
        elif not accepted:
            self.probe_connection(client)
        return stats

    def probe_connection(self, client) -> None:
        try:
            client.get_profile()
            logger.info("Gmail API reachable, no new messages")
        except MailboxAPIError as exc:
            logger.warning("Gmail API probe failed: %s", exc)


def run_job(services, job) -> None:
    """Run a claimed queue job and record the outcome on it."""
    try:
        services.sync.run(job.payload)
    except (JobError, AuthError) as exc:
        db.session.rollback()
        services.publisher.fail(job, str(exc), retryable=False)
    except MailboxAPIError as exc:
        db.session.rollback()
        services.publisher.fail(job, str(exc), retryable=True)
    except Exception as exc:
        logger.exception("Unhandled error in job %s", job.dedup_id[:12])
        db.session.rollback()
        services.publisher.fail(job, f"unhandled: {exc}", retryable=True)
    else:
        services.publisher.complete(job)


def drain_queue(services, limit: int = 100) -> int:
    """Run due jobs until the queue is empty or *limit* jobs ran."""
    ran = 0
    while ran < limit:
        job = services.publisher.claim_next()
        if job is None:
            break
        run_job(services, job)
        ran += 1
    return ran
