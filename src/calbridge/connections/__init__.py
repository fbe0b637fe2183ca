"""Provider connection records, their persistence, and their lifecycle.

Import the service and adapters from their modules directly; this package
only re-exports the data layer.
"""

from calbridge.connections.models import (
    PROVIDER_CATALOG,
    ConnectionStatus,
    IntegrationConnection,
    Scope,
)
from calbridge.connections.store import (
    ConnectionStore,
    InMemoryConnectionStore,
    PostgresConnectionStore,
)

__all__ = [
    "PROVIDER_CATALOG",
    "ConnectionStatus",
    "ConnectionStore",
    "InMemoryConnectionStore",
    "IntegrationConnection",
    "PostgresConnectionStore",
    "Scope",
]
