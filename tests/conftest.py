"""
Shared fixtures for the Kii SDK tests.

Clients run against InMemoryTransport, so no network access is needed.
"""

import pytest

from kii_sdk import EventLoopWorker, InMemoryTransport, KiiClient, KiiSettings


@pytest.fixture
def settings():
    """Settings for a test application."""
    return KiiSettings(app_id="test-app", app_key="test-key")


@pytest.fixture
def transport():
    """Fresh in-memory backend with small chunks to exercise progress."""
    return InMemoryTransport(chunk_size=4)


@pytest.fixture
def client(settings, transport):
    """Client without a worker (blocking and coroutine forms only)."""
    return KiiClient(settings, transport=transport)


@pytest.fixture
def worker():
    """Running worker, stopped after the test."""
    with EventLoopWorker(name="kii-test-worker") as w:
        yield w


@pytest.fixture
def background_client(settings, transport, worker):
    """Client that also supports the *_in_background forms."""
    return KiiClient(settings, transport=transport, worker=worker)


@pytest.fixture
def alice(client):
    """Registered and logged-in user."""
    client.user_with_username("alice123", "abc123$$").perform_registration()
    return client.authenticate("alice123", "abc123$$")


@pytest.fixture
def bob(client):
    """Registered user that is not logged in."""
    return client.user_with_username("bob_b", "bobpass1").perform_registration()
