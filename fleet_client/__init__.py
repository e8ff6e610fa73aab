"""
Fleet Client module.

Per-instance HTTP client for remote CI masters, the typed payloads it
returns, and the factory that caches one client per instance.
"""

from .client import RemoteClient
from .errors import (
    RemoteAPIError,
    RemoteAuthError,
    RemoteConnectionError,
    RemoteDataError,
)
from .factory import ClientFactory, default_factory

__all__ = [
    "ClientFactory",
    "RemoteAPIError",
    "RemoteAuthError",
    "RemoteClient",
    "RemoteConnectionError",
    "RemoteDataError",
    "default_factory",
]
