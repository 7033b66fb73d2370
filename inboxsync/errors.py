"""Exception types shared across the sync pipeline."""


class InboxSyncError(Exception):
    """Base class for all inboxsync errors."""


class AuthError(InboxSyncError):
    """The account credential is unusable (expired without refresh, revoked grant)."""


class MailboxAPIError(InboxSyncError):
    """A Gmail API call failed."""

    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status


class StaleCursorError(MailboxAPIError):
    """The history API rejected a startHistoryId as too old or invalid."""


class PublishError(InboxSyncError):
    """A sync job could not be enqueued."""


class JobError(InboxSyncError):
    """A sync job cannot be executed; retrying will not help."""


class LedgerConflict(InboxSyncError):
    """The message id is already recorded and cannot be written again."""
