from __future__ import annotations

import pytest

from inboxsync import create_app
from inboxsync.config import Config
from inboxsync.extensions import db
from inboxsync.ratelimit import InMemoryCounterStore
from inboxsync.services import get_services
from tests.helpers import FakeClassifier, FakeMailbox, FakeOAuth


class UnitConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    GMAIL_TOPIC_NAME = "projects/test/topics/gmail"
    PUBSUB_VERIFICATION_TOKEN = ""
    CRON_SECRET = ""
    CLASSIFIER_API_KEY = ""
    SYNC_JOB_DEADLINE = 50.0
    WEBHOOK_RATE_LIMIT = 10
    JOB_MAX_RETRIES = 3
    JOB_RETRY_DELAY = 2


@pytest.fixture
def mailbox() -> FakeMailbox:
    return FakeMailbox()


@pytest.fixture
def oauth() -> FakeOAuth:
    return FakeOAuth()


@pytest.fixture
def classifier() -> FakeClassifier:
    return FakeClassifier(category_name="Newsletters")


@pytest.fixture
def app(mailbox, oauth, classifier):
    app = create_app(
        UnitConfig,
        client_factory=mailbox.client,
        oauth_client=oauth,
        classifier=classifier,
        counter_store=InMemoryCounterStore(),
    )
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def services(app):
    return get_services()


@pytest.fixture
def http(app):
    return app.test_client()
