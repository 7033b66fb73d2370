"""Service wiring – builds the collaborators shared by routes, CLI and the worker."""

from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable

from flask import current_app

from inboxsync.classifier import ChatCompletionClassifier
from inboxsync.credentials import CredentialBroker
from inboxsync.gmail_client import GmailClient, GoogleOAuthClient
from inboxsync.jobs import JobPublisher
from inboxsync.ratelimit import InMemoryCounterStore, RateLimiter
from inboxsync.reconciler import ChangeReconciler
from inboxsync.sync import MessageSync
from inboxsync.watches import WatchManager

EXTENSION_KEY = "inboxsync"


@dataclass
class Services:
    config: Any
    client_factory: Callable
    oauth_client: Any
    classifier: Any
    counter_store: Any
    broker: CredentialBroker = field(init=False)
    rate_limiter: RateLimiter = field(init=False)
    reconciler: ChangeReconciler = field(init=False)
    publisher: JobPublisher = field(init=False)
    watches: WatchManager = field(init=False)
    sync: MessageSync = field(init=False)

    def __post_init__(self):
        config = self.config
        self.broker = CredentialBroker(self.oauth_client)
        self.rate_limiter = RateLimiter(self.counter_store, limit=config["WEBHOOK_RATE_LIMIT"])
        self.reconciler = ChangeReconciler(
            recent_window=config["RECENT_FALLBACK_WINDOW"],
            fallback_max_results=config["FALLBACK_MAX_RESULTS"],
            spam_fallback_max_results=config["SPAM_FALLBACK_MAX_RESULTS"],
        )
        self.publisher = JobPublisher(
            max_retries=config["JOB_MAX_RETRIES"], retry_delay=config["JOB_RETRY_DELAY"]
        )
        self.watches = WatchManager(self.client_factory, self.broker, config["GMAIL_TOPIC_NAME"])
        self.sync = MessageSync(self)


def build_services(config, client_factory=None, oauth_client=None, classifier=None, counter_store=None):
    """Default collaborators from *config*; any argument given replaces the default."""
    timeout = config["HTTP_TIMEOUT"]
    if client_factory is None:
        client_factory = partial(GmailClient, timeout=timeout)
    if oauth_client is None:
        oauth_client = GoogleOAuthClient(
            config["GOOGLE_CLIENT_ID"], config["GOOGLE_CLIENT_SECRET"], timeout=timeout
        )
    if classifier is None:
        classifier = ChatCompletionClassifier(
            config["CLASSIFIER_API_KEY"],
            config["CLASSIFIER_MODEL"],
            config["CLASSIFIER_API_BASE_URL"],
            timeout=timeout,
        )
    if counter_store is None:
        counter_store = InMemoryCounterStore()
    return Services(
        config=config,
        client_factory=client_factory,
        oauth_client=oauth_client,
        classifier=classifier,
        counter_store=counter_store,
    )


def get_services() -> Services:
    return current_app.extensions[EXTENSION_KEY]
