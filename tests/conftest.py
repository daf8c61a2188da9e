"""
Pytest fixtures for broker chat tests.
"""

import httpx
import pytest
import pytest_asyncio

from broker_chat import RegistryBrokerClient

from .broker_app import BrokerState, create_app

BROKER_URL = "http://broker.test"


@pytest.fixture
def broker_state():
    """Fresh in-memory broker state per test."""
    return BrokerState()


@pytest.fixture
def broker_app(broker_state):
    return create_app(broker_state)


@pytest_asyncio.fixture
async def make_client(broker_app):
    """Factory for clients wired to the in-memory broker, closed after the test."""
    clients = []

    def factory(**overrides):
        options = {"base_url": BROKER_URL, "poll_interval": 0.01, "handshake_timeout": 2.0}
        options.update(overrides)
        client = RegistryBrokerClient(transport=httpx.ASGITransport(app=broker_app), **options)
        clients.append(client)
        return client

    yield factory

    for client in clients:
        await client.aclose()
