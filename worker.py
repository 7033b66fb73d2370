"""
Inbox Sync Worker Daemon
────────────────────────
Drains the sync_jobs queue written by the Gmail webhook. Each job reconciles
the mailbox's history cursor, filters candidates by receipt time, classifies
and stores new messages, archives them in Gmail and advances the watch cursor.

Jobs are delivered at least once; the emails ledger keeps processing idempotent.
"""

import logging
import os
import sys
import time
from datetime import datetime, timedelta, timezone

# Ensure the project root is importable
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

from inboxsync import create_app
from inboxsync.extensions import db
from inboxsync.models import FailureLog
from inboxsync.services import get_services
from inboxsync.sync import drain_queue

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("worker")

# Idle sleep between queue scans
DEFAULT_INTERVAL = int(os.environ.get("POLL_INTERVAL", "5"))

# Housekeeping (log cleanup, job pruning, expiry sweep) runs at most this often
HOUSEKEEPING_INTERVAL = 3600


def cleanup_old_logs():
    """Remove failure logs older than 30 days."""
    cutoff = datetime.now(timezone.utc) - timedelta(days=30)
    deleted = FailureLog.query.filter(FailureLog.created_at < cutoff).delete(synchronize_session=False)
    if deleted:
        db.session.commit()
        logger.info("Cleaned up %d old failure log(s)", deleted)


def housekeeping(services):
    cleanup_old_logs()
    services.publisher.prune()
    services.watches.sweep_expired()


def run():
    """Main daemon loop."""
    app = create_app()

    with app.app_context():
        services = get_services()
        interval = app.config.get("POLL_INTERVAL") or DEFAULT_INTERVAL
        logger.info("Worker started – idle interval %ds", interval)
        last_housekeeping = 0.0

        while True:
            if time.monotonic() - last_housekeeping >= HOUSEKEEPING_INTERVAL:
                try:
                    housekeeping(services)
                except Exception:
                    logger.exception("Housekeeping failed")
                    db.session.rollback()
                last_housekeeping = time.monotonic()

            try:
                ran = drain_queue(services)
            except Exception:
                logger.exception("Unhandled error while draining the queue")
                db.session.rollback()
                ran = 0

            if ran:
                logger.info("Ran %d job(s)", ran)
                continue

            logger.debug("Queue empty – sleeping %ds", interval)
            db.session.remove()
            time.sleep(interval)


if __name__ == "__main__":
    run()
