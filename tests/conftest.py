import os
import sys

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tools.rate_limit import reset_rate_limiters
from tools.slack import slack_notifier
from tools.store import MemoryStore, set_store

API_KEY = "test-api-key"


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Fresh in-memory store, rate limiters and mock Slack for every test."""
    monkeypatch.setenv("STORE_BACKEND", "memory")
    monkeypatch.setenv("WEBHOOK_ENABLE_SIGNATURE_VALIDATION", "false")
    monkeypatch.setenv("WEBHOOK_ENABLE_RATE_LIMITING", "false")
    monkeypatch.setenv("WEBHOOK_RETRY_API_KEY", API_KEY)
    for name in (
        "LEAD_SUBMISSION_HISTORY_LIMIT",
        "WEBHOOK_MAX_REQUESTS_PER_HOUR",
        "WEBHOOK_RETRY_MAX_ATTEMPTS",
        "WEBHOOK_RETRY_BASE_DELAY_SECONDS",
        "WEBHOOK_RETRY_MAX_DELAY_SECONDS",
        "WEBHOOK_RETRY_LEASE_SECONDS",
        "WEBHOOK_ALERT_DEAD_LETTER_COUNT",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(slack_notifier, "client", None)

    store = MemoryStore()
    set_store(store)
    reset_rate_limiters()
    yield store
    set_store(None)
    reset_rate_limiters()


@pytest.fixture
def store(isolated_environment):
    return isolated_environment
