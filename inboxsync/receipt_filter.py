"""Receipt-time filter – keeps only candidates received at or after a cutoff."""

import email.utils
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from inboxsync.errors import MailboxAPIError
from inboxsync.gmail_client import header_value
from inboxsync.models import as_utc

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
RECEIVED_DATE_PATTERN = re.compile(r"\d{1,2}\s+\w{3}\s+\d{4}\s+\d{2}:\d{2}:\d{2}")


def compute_cutoff(
    last_processed_at: Optional[datetime],
    now: datetime,
    first_run_lookback: timedelta = timedelta(minutes=30),
    buffer: timedelta = timedelta(minutes=5),
    max_window: timedelta = timedelta(hours=2),
) -> datetime:
    """
    A watch that never processed anything looks back *first_run_lookback*;
    otherwise *buffer* before the last processed time, but never further back
    than *max_window*.
    """
    if last_processed_at is None:
        return now - first_run_lookback
    return max(as_utc(last_processed_at) - buffer, now - max_window)


def _parse_date_header(value: str) -> Optional[datetime]:
    try:
        parsed = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    return as_utc(parsed)


def _parse_received_header(value: str) -> Optional[datetime]:
    # The timestamp normally follows the last ';'
    if ";" in value:
        parsed = _parse_date_header(value.rsplit(";", 1)[1].strip())
        if parsed is not None:
            return parsed
    match = RECEIVED_DATE_PATTERN.search(value)
    if not match:
        return None
    try:
        parsed = datetime.strptime(" ".join(match.group(0).split()), "%d %b %Y %H:%M:%S")
    except ValueError:
        return None
    return parsed.replace(tzinfo=timezone.utc)


def receipt_time(message: dict) -> Optional[datetime]:
    """
    Best-known receipt time of a Gmail message resource: internalDate, then the
    Date header, then a Received header. None when nothing is usable.
    """
    internal_date = message.get("internalDate")
    if internal_date:
        try:
            return EPOCH + timedelta(milliseconds=int(internal_date))
        except (TypeError, ValueError, OverflowError):
            logger.debug("Bad internalDate %r on %s", internal_date, message.get("id"))

    headers = (message.get("payload") or {}).get("headers", [])
    date_header = header_value(headers, "Date")
    if date_header:
        parsed = _parse_date_header(date_header)
        if parsed is not None:
            return parsed

    received_header = header_value(headers, "Received")
    if received_header:
        return _parse_received_header(received_header)
    return None


def filter_by_receipt_time(client, candidates, cutoff: datetime, should_stop=None) -> set:
    """
    Return the candidates received at or after *cutoff*. Unknown timestamps are
    excluded. When *should_stop* returns true, the remaining candidates are not
    fetched and the partial result is returned.
    """
    accepted = set()
    for checked, message_id in enumerate(sorted(candidates)):
        if should_stop is not None and should_stop():
            logger.warning(
                "Receipt-time filter stopped with %d of %d unchecked", len(candidates) - checked, len(candidates)
            )
            break
        try:
            message = client.get_message(message_id, fmt="metadata", metadata_headers=["Date", "Received"])
        except MailboxAPIError as exc:
            logger.warning("Failed to read timestamp for %s, excluding: %s", message_id, exc)
            continue

        received = receipt_time(message)
        if received is None:
            logger.warning("No usable timestamp for %s, excluding", message_id)
            continue

        if received >= cutoff:
            accepted.add(message_id)
        else:
            logger.debug(
                "Skipped old message %s received=%s cutoff=%s", message_id, received.isoformat(), cutoff.isoformat()
            )

    logger.info("Receipt-time filter kept %d of %d (cutoff %s)", len(accepted), len(candidates), cutoff.isoformat())
    return accepted
