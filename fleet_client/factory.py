"""
Keyed cache of remote clients, one per instance.

A cache miss only costs building a new session, so the factory is not a
source of truth; its job is to avoid rebuilding sessions on every sync
cycle and to make sure stale credentials are dropped when an instance is
deleted or its credentials rotate.
"""

import logging
import threading

from fleet_common.models import Instance

from .client import DEFAULT_TIMEOUT, RemoteClient

logger = logging.getLogger(__name__)


class ClientFactory:
    """Creates and caches RemoteClient objects keyed by instance id."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout
        self._clients: dict[str, RemoteClient] = {}
        # Clients are used from worker threads during sync passes
        self._lock = threading.Lock()

    def get_client(self, instance: Instance) -> RemoteClient:
        """Return the cached client for an instance, creating it on a miss."""
        with self._lock:
            client = self._clients.get(instance.id)
            if client is None:
                client = RemoteClient(instance, timeout=self.timeout)
                self._clients[instance.id] = client
                logger.debug(f"Created client for instance {instance.name}")
            return client

    def remove_client(self, instance_id: str) -> None:
        """Evict and close the client of an instance, if cached."""
        with self._lock:
            client = self._clients.pop(instance_id, None)
        if client is not None:
            client.close()
            logger.debug(f"Evicted client for instance {instance_id}")

    def clear_all(self) -> None:
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            client.close()

    def __contains__(self, instance_id: str) -> bool:
        return instance_id in self._clients

    def __len__(self) -> int:
        return len(self._clients)


# Process-wide default; components accept an injected factory instead
default_factory = ClientFactory()
