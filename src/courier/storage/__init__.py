"""Storage backends for Courier.

Two implementations of the DeliveryStore protocol are provided: an
in-memory store for development and tests, and a PostgreSQL store for
multi-process deployments.

Example:
    ```python
    from courier.storage import create_store

    store = create_store(settings)
    await store.initialize()
    delivery = await store.create_delivery(webhook, event)
    ```
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .base import UPDATABLE_WEBHOOK_FIELDS, DeliveryStore, resolve_transition_fields
from .memory import InMemoryDeliveryStore
from .postgres import PostgresDeliveryStore

if TYPE_CHECKING:
    from courier.config import Settings


def create_store(settings: Settings) -> DeliveryStore:
    """Build the store selected by configuration.

    Uses PostgreSQL when ``database_url`` is set, the in-memory store otherwise.
    """
    if settings.database_url:
        return PostgresDeliveryStore(
            settings.database_url,
            min_size=settings.database_pool_min_size,
            max_size=settings.database_pool_max_size,
        )
    return InMemoryDeliveryStore()


__all__ = [
    "UPDATABLE_WEBHOOK_FIELDS",
    "DeliveryStore",
    "InMemoryDeliveryStore",
    "PostgresDeliveryStore",
    "create_store",
    "resolve_transition_fields",
]
