"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import random
import sys
from pathlib import Path

import pytest

# Add tests directory to path so fakes can be imported
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

from fakes import FakeClock, FakeTransport  # noqa: E402

from courier.config import DeliveryPolicy  # noqa: E402
from courier.storage import InMemoryDeliveryStore  # noqa: E402
from courier.webhooks import WebhookDispatcher  # noqa: E402


@pytest.fixture
def store() -> InMemoryDeliveryStore:
    """Fresh in-memory delivery store."""
    return InMemoryDeliveryStore()


@pytest.fixture
def transport() -> FakeTransport:
    """Transport answering 200 unless scripted otherwise."""
    return FakeTransport()


@pytest.fixture
def clock() -> FakeClock:
    """Fixed clock, advanced explicitly by tests."""
    return FakeClock()


@pytest.fixture
def policy() -> DeliveryPolicy:
    """Default delivery policy (5 attempts, 10s base, 1h cap, 20% jitter)."""
    return DeliveryPolicy()


@pytest.fixture
def dispatcher(
    store: InMemoryDeliveryStore,
    transport: FakeTransport,
    policy: DeliveryPolicy,
    clock: FakeClock,
) -> WebhookDispatcher:
    """Dispatcher without workers, so dispatch attempts inline."""
    return WebhookDispatcher(
        store,
        transport,
        policy,
        queue_size=10,
        workers=2,
        clock=clock,
        rng=random.Random(1234),
    )
