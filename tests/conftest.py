"""
Shared pytest fixtures.

Everything runs against in-process collaborators: the mock transport and the
in-memory stores. No network or database is needed.
"""

from datetime import datetime, timezone

import pytest

from connector.bitrix import BitrixClient
from connector.gateway import GatewayClient
from connector.mock import MockTransport, default_routes
from services.memory import MemoryBindingStore, MemoryCredentialStore


class FakeClock:
    """Settable UTC clock for code that takes a ``clock`` callable."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mock_transport() -> MockTransport:
    return MockTransport(default_routes())


@pytest.fixture
def gateway(mock_transport) -> GatewayClient:
    return GatewayClient(mock_transport)


@pytest.fixture
def bitrix(mock_transport) -> BitrixClient:
    return BitrixClient(mock_transport)


@pytest.fixture
def binding_store() -> MemoryBindingStore:
    return MemoryBindingStore()


@pytest.fixture
def credential_store() -> MemoryCredentialStore:
    return MemoryCredentialStore()
