"""
Fleet Controller module.

This module contains the sync engine, the load balancer and the fleet
service facade. The sync engine reconciles remote CI state (jobs, builds,
executors on every registered master) into the local mirror; the load
balancer reads the same mirror to route new work.

The controller can run as a separate process from any API server that
embeds the fleet service, allowing the sync loop to be scaled and
restarted independently.
"""

from .load_balancer import LoadBalancer
from .service import FleetService
from .sync import SyncEngine

__all__ = ["FleetService", "LoadBalancer", "SyncEngine"]
