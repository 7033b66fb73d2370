"""
Sync job queue backed by the sync_jobs table.

Delivery is at-least-once: the worker may run a job more than once, so
everything downstream must be idempotent.
"""

import hashlib
import logging
from datetime import timedelta

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from inboxsync.errors import PublishError
from inboxsync.extensions import db
from inboxsync.models import SyncJob, record_failure, utcnow

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("emailAddress", "historyId", "userId", "accountId", "accessToken")


def dedup_id(email_address: str, history_id) -> str:
    return hashlib.sha256(f"{email_address}:{history_id}".encode("utf-8")).hexdigest()[:40]


class JobPublisher:
    def __init__(self, max_retries: int = 3, retry_delay: int = 2):
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    def publish(self, payload: dict) -> SyncJob:
        """Enqueue *payload*; republishing the same (address, historyId) returns the existing job."""
        job_id = dedup_id(payload["emailAddress"], payload["historyId"])
        try:
            existing = SyncJob.query.filter_by(dedup_id=job_id).first()
            if existing is not None:
                logger.info("Job %s already queued (%s)", job_id[:12], existing.status)
                return existing

            job = SyncJob(
                dedup_id=job_id,
                payload=payload,
                max_retries=self.max_retries,
                not_before=utcnow(),
            )
            db.session.add(job)
            db.session.commit()
            return job
        except IntegrityError:
            # lost the insert race to a concurrent publish
            db.session.rollback()
            return SyncJob.query.filter_by(dedup_id=job_id).one()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise PublishError(f"Failed to enqueue job {job_id[:12]}: {exc}") from exc

    # ── Consumer side ────────────────────────────────────────────

    def claim_next(self, stale_after: timedelta = timedelta(minutes=10)):
        """
        Claim the next due job. Jobs stuck in running longer than *stale_after*
        (worker died mid-job) are claimed again.
        """
        now = utcnow()
        job = (
            SyncJob.query.filter(
                db.or_(
                    db.and_(SyncJob.status == SyncJob.STATUS_PENDING, SyncJob.not_before <= now),
                    db.and_(SyncJob.status == SyncJob.STATUS_RUNNING, SyncJob.claimed_at < now - stale_after),
                )
            )
            .order_by(SyncJob.not_before)
            .with_for_update(skip_locked=True)
            .first()
        )
        if job is None:
            db.session.commit()
            return None

        job.status = SyncJob.STATUS_RUNNING
        job.attempts += 1
        job.claimed_at = now
        db.session.commit()
        return job

    def complete(self, job) -> None:
        job.status = SyncJob.STATUS_DONE
        job.last_error = None
        db.session.commit()

    def fail(self, job, error: str, retryable: bool = True) -> None:
        """Schedule a retry with exponential backoff, or give up and log a failure record."""
        job.last_error = error
        if retryable and job.attempts <= job.max_retries:
            delay = self.retry_delay * 2 ** (job.attempts - 1)
            job.status = SyncJob.STATUS_PENDING
            job.not_before = utcnow() + timedelta(seconds=delay)
            db.session.commit()
            logger.warning("Job %s attempt %d failed, retry in %ds: %s", job.dedup_id[:12], job.attempts, delay, error)
            return

        job.status = SyncJob.STATUS_FAILED
        db.session.commit()
        payload = job.payload or {}
        logger.error("Job %s failed permanently after %d attempt(s): %s", job.dedup_id[:12], job.attempts, error)
        record_failure(
            "job_failed",
            f"historyId={payload.get('historyId')}: {error}",
            user_id=payload.get("userId"),
            account_email=payload.get("emailAddress"),
        )

    def prune(self, older_than: timedelta = timedelta(days=1)) -> int:
        cutoff = utcnow() - older_than
        deleted = SyncJob.query.filter(
            SyncJob.status == SyncJob.STATUS_DONE, SyncJob.updated_at < cutoff
        ).delete(synchronize_session=False)
        if deleted:
            db.session.commit()
            logger.info("Pruned %d finished job(s)", deleted)
        return deleted
