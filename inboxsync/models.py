from datetime import datetime, timezone

from inboxsync.extensions import db


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(dt):
    """Return *dt* as an aware UTC datetime (naive values read back from the DB are UTC)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    accounts = db.relationship(
        "OAuthAccount", back_populates="user", cascade="all, delete-orphan"
    )
    categories = db.relationship(
        "Category", back_populates="user", cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<User {self.email}>"


class OAuthAccount(db.Model):
    """OAuth identity linked to a user. Tokens are rotated only by the credential broker."""

    __tablename__ = "accounts"
    __table_args__ = (
        db.UniqueConstraint("provider", "provider_account_id", name="uq_accounts_provider_account"),
    )

    PROVIDER_GOOGLE = "google"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    provider = db.Column(db.String(40), nullable=False, default=PROVIDER_GOOGLE)
    provider_account_id = db.Column(db.String(255), nullable=False)
    access_token = db.Column(db.Text, nullable=True)
    refresh_token = db.Column(db.Text, nullable=True)
    expires_at = db.Column(db.Integer, nullable=True)  # epoch seconds
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    user = db.relationship("User", back_populates="accounts")

    def __repr__(self):
        return f"<OAuthAccount {self.provider}:{self.provider_account_id}>"


class Category(db.Model):
    """User-defined classification target."""

    __tablename__ = "categories"
    __table_args__ = (
        db.UniqueConstraint("user_id", "name", name="uq_categories_user_name"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False, default="")
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    user = db.relationship("User", back_populates="categories")

    def __repr__(self):
        return f"<Category {self.name}>"


class Watch(db.Model):
    """Local mirror of a Gmail push subscription for one mailbox."""

    __tablename__ = "gmail_watches"
    __table_args__ = (
        db.UniqueConstraint("user_id", "account_email", name="uq_gmail_watches_user_email"),
        db.Index("ix_gmail_watches_active_expires", "active", "expires_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    account_email = db.Column(db.String(255), nullable=False)
    cursor = db.Column(db.String(64), nullable=False)  # Gmail historyId
    topic = db.Column(db.String(500), nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    active = db.Column(db.Boolean, nullable=False, default=True)
    last_processed_at = db.Column(db.DateTime, nullable=True)  # None: never processed a message
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    user = db.relationship("User")

    def is_live(self, now=None):
        now = now or utcnow()
        return bool(self.active) and as_utc(self.expires_at) > now

    def __repr__(self):
        return f"<Watch {self.account_email} cursor={self.cursor} active={self.active}>"


class StoredMessage(db.Model):
    """Dedup ledger entry and stored copy of a processed Gmail message."""

    __tablename__ = "emails"
    __table_args__ = (
        db.Index("ix_emails_user_account", "user_id", "account_email"),
        db.Index("ix_emails_category", "category_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    gmail_id = db.Column(db.String(64), nullable=False, unique=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    category_id = db.Column(
        db.Integer, db.ForeignKey("categories.id", ondelete="SET NULL"), nullable=True
    )
    account_email = db.Column(db.String(255), nullable=False)
    subject = db.Column(db.String(1000), nullable=False, default="")
    from_email = db.Column(db.String(500), nullable=False, default="")
    from_name = db.Column(db.String(500), nullable=True)
    to_email = db.Column(db.String(500), nullable=False, default="")
    body_text = db.Column(db.Text, nullable=True)
    body_html = db.Column(db.Text, nullable=True)
    ai_summary = db.Column(db.Text, nullable=True)
    confidence = db.Column(db.Float, nullable=True)
    archived = db.Column(db.Boolean, nullable=False, default=False)
    received_at = db.Column(db.DateTime, nullable=True)
    processed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    category = db.relationship("Category")

    def __repr__(self):
        return f"<StoredMessage {self.gmail_id} user={self.user_id}>"


class SyncJob(db.Model):
    """Queued sync request; dedup_id collapses redundant notifications into one job."""

    __tablename__ = "sync_jobs"
    __table_args__ = (
        db.Index("ix_sync_jobs_status_not_before", "status", "not_before"),
    )

    STATUS_PENDING = "pending"
    STATUS_RUNNING = "running"
    STATUS_DONE = "done"
    STATUS_FAILED = "failed"

    id = db.Column(db.Integer, primary_key=True)
    dedup_id = db.Column(db.String(64), nullable=False, unique=True)
    payload = db.Column(db.JSON, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    max_retries = db.Column(db.Integer, nullable=False, default=3)
    not_before = db.Column(db.DateTime, nullable=False, default=utcnow)
    claimed_at = db.Column(db.DateTime, nullable=True)
    last_error = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<SyncJob {self.dedup_id[:12]} {self.status} attempts={self.attempts}>"


class FailureLog(db.Model):
    """Operator-visible failure records (kept 30 days)."""

    __tablename__ = "failure_logs"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    account_email = db.Column(db.String(255), nullable=True)
    gmail_id = db.Column(db.String(64), nullable=True)
    kind = db.Column(db.String(40), nullable=False)
    error_message = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<FailureLog {self.kind} @ {self.created_at}>"


def record_failure(kind, error_message, *, user_id=None, account_email=None, gmail_id=None):
    """Add a FailureLog row and commit it."""
    db.session.add(
        FailureLog(
            kind=kind,
            error_message=error_message,
            user_id=user_id,
            account_email=account_email,
            gmail_id=gmail_id,
        )
    )
    db.session.commit()
