"""
Fleet service: the operations request-handling code calls.

Wires the load balancer, sync engine, client factory and mirror together
and implements the administrative flows (registration, updates,
promotion, removal) that touch more than one of them.
"""

import asyncio
import logging
import uuid
from typing import Any
from urllib.parse import urlparse

from fleet_client.client import RemoteClient
from fleet_client.errors import RemoteAPIError
from fleet_client.factory import ClientFactory
from fleet_common.cache import KeyValueCache
from fleet_common.errors import (
    IdentityConflictError,
    InstanceNotFoundError,
    RegistrationError,
)
from fleet_common.models import Instance, InstanceConfig
from fleet_common.repository import FleetRepository

from .load_balancer import LoadBalancer, Strategy
from .sync import SyncEngine

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 5.0


def _validate_url(value: str | None, field_name: str) -> None:
    if value is None:
        return
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise RegistrationError(f"Invalid {field_name}: {value!r}")


class FleetService:
    """Facade over the fleet core for API handlers and the admin CLI."""

    def __init__(
        self,
        repository: FleetRepository,
        client_factory: ClientFactory,
        load_balancer: LoadBalancer,
        sync_engine: SyncEngine,
    ):
        self.repository = repository
        self.client_factory = client_factory
        self.load_balancer = load_balancer
        self.sync_engine = sync_engine

    # Selection and load

    async def select_instance(
        self, strategy: Strategy = "least_load", cluster_id: str | None = None
    ) -> Instance | None:
        """Pick an instance for new work; None means no instance is available."""
        return await self.load_balancer.select_instance(strategy, cluster_id)

    async def increment_load(self, instance_id: str) -> None:
        await self.load_balancer.increment_load(instance_id)

    async def decrement_load(self, instance_id: str) -> None:
        await self.load_balancer.decrement_load(instance_id)

    async def perform_health_checks(self) -> dict[str, str]:
        return await self.load_balancer.perform_health_checks()

    # Administration

    async def _require_instance(self, instance_id: str) -> Instance:
        instance = await self.repository.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        return instance

    async def _ensure_no_other_primary(
        self, cluster_id: str | None, exclude_id: str | None = None
    ) -> None:
        for other in await self.repository.list_instances():
            if (
                other.is_primary
                and other.cluster_id == cluster_id
                and other.id != exclude_id
            ):
                raise IdentityConflictError(
                    f"Cluster {cluster_id or 'default'!r} already has primary "
                    f"instance {other.name!r}"
                )

    async def _probe(self, instance: Instance) -> None:
        """Connectivity probe with a throwaway client (never cached)."""
        client = RemoteClient(instance, timeout=PROBE_TIMEOUT)
        try:
            await asyncio.to_thread(client.get_system_info)
        except RemoteAPIError as e:
            raise RegistrationError(
                f"Cannot connect to CI instance at {instance.effective_base_url}: {e}"
            ) from e
        finally:
            client.close()

    async def register_instance(self, config: InstanceConfig) -> Instance:
        """
        Register a new instance after a live connectivity probe.

        Raises:
            RegistrationError: If validation or the probe fails
            IdentityConflictError: If the name is taken or the cluster
                already has a primary
        """
        _validate_url(config.url, "url")
        _validate_url(config.load_balancer_url, "load balancer url")
        _validate_url(config.health_check_url, "health check url")
        if not config.name.strip():
            raise RegistrationError("Instance name must not be empty")
        if config.priority < 0:
            raise RegistrationError("Priority must be zero or greater")
        if config.max_connections < 1:
            raise RegistrationError("Max connections must be at least 1")

        if config.is_primary:
            await self._ensure_no_other_primary(config.cluster_id)

        instance = config.to_instance(str(uuid.uuid4()))
        await self._probe(instance)

        await self.repository.create_instance(instance)
        logger.info(f"Registered CI instance {instance.name} ({instance.id})")
        return instance

    async def test_connection(
        self, url: str, username: str, api_token: str
    ) -> dict[str, Any]:
        """
        Check credentials against a CI master without registering it.

        Raises:
            RegistrationError: If the master cannot be reached
        """
        _validate_url(url, "url")
        instance = Instance(
            id="connection-test",
            name="connection-test",
            url=url,
            username=username,
            api_token=api_token,
        )
        client = RemoteClient(instance, timeout=PROBE_TIMEOUT)
        try:
            info = await asyncio.to_thread(client.get_system_info)
        except RemoteAPIError as e:
            raise RegistrationError(f"Connection failed: {e}") from e
        finally:
            client.close()
        return {
            "success": True,
            "version": info.version or "Unknown",
            "mode": info.mode,
            "num_executors": info.num_executors,
        }

    async def update_instance(self, instance_id: str, **changes: Any) -> Instance:
        """
        Update administrative fields of an instance.

        The cached client and snapshot are evicted so rotated credentials
        or URLs take effect on the next call.
        """
        instance = await self._require_instance(instance_id)

        for field_name in ("url", "load_balancer_url", "health_check_url"):
            if field_name in changes:
                _validate_url(changes[field_name], field_name.replace("_", " "))
        if changes.get("priority", 0) < 0:
            raise RegistrationError("Priority must be zero or greater")
        if "max_connections" in changes and changes["max_connections"] < 1:
            raise RegistrationError("Max connections must be at least 1")
        if instance.is_primary and "cluster_id" in changes:
            await self._ensure_no_other_primary(changes["cluster_id"], instance_id)

        await self.repository.update_instance_fields(instance_id, changes)
        self.client_factory.remove_client(instance_id)
        await self.load_balancer.invalidate_instance(instance_id)
        logger.info(f"Updated CI instance {instance_id}: {', '.join(sorted(changes))}")
        return await self._require_instance(instance_id)

    async def promote_instance(self, instance_id: str) -> Instance:
        """Make an instance its cluster's primary, demoting the previous one."""
        instance = await self._require_instance(instance_id)
        demoted = [
            other
            for other in await self.repository.list_instances()
            if other.is_primary
            and other.cluster_id == instance.cluster_id
            and other.id != instance_id
        ]

        await self.repository.set_primary(instance_id)
        for affected in [instance, *demoted]:
            await self.load_balancer.invalidate_instance(affected.id)

        logger.info(f"Promoted {instance.name} to primary of {instance.cluster_key}")
        return await self._require_instance(instance_id)

    async def remove_instance(self, instance_id: str) -> None:
        """Delete an instance and everything mirrored from it."""
        self.client_factory.remove_client(instance_id)
        deleted = await self.repository.delete_instance(instance_id)
        await self.load_balancer.invalidate_instance(instance_id)
        if not deleted:
            raise InstanceNotFoundError(instance_id)
        logger.info(f"Removed CI instance {instance_id}")

    # Sync

    async def trigger_sync(self) -> bool:
        return await self.sync_engine.trigger_sync()

    def get_sync_status(self) -> dict[str, Any]:
        return self.sync_engine.get_status()

    # Reporting

    async def list_clusters(self) -> list[dict[str, Any]]:
        """Clusters with their instances and aggregate load/capacity/health."""
        clusters = await self.load_balancer.get_all_clusters()
        return [
            {
                "cluster_id": cluster_id,
                "instances": [
                    {
                        "id": instance.id,
                        "name": instance.name,
                        "url": instance.url,
                        "is_primary": instance.is_primary,
                        "priority": instance.priority,
                        "current_load": instance.current_load,
                        "max_connections": instance.max_connections,
                        "health_status": instance.health_status,
                        "last_health_check": instance.last_health_check.isoformat()
                        if instance.last_health_check
                        else None,
                    }
                    for instance in instances
                ],
                "total_instances": len(instances),
                "healthy_instances": sum(
                    1 for instance in instances if instance.health_status == "healthy"
                ),
                "total_load": sum(instance.current_load for instance in instances),
                "total_capacity": sum(
                    instance.max_connections for instance in instances
                ),
            }
            for cluster_id, instances in clusters.items()
        ]

    async def get_instance_stats(self, instance_id: str) -> dict[str, Any]:
        """Utilization, job and executor counts for one instance."""
        instance = await self._require_instance(instance_id)
        jobs = await self.repository.list_jobs(instance_id)
        executors = await self.repository.list_executors(instance_id)

        total_executors = len(executors)
        idle_executors = sum(1 for executor in executors if executor.idle)
        busy_executors = total_executors - idle_executors

        return {
            "instance_id": instance.id,
            "name": instance.name,
            "current_load": instance.current_load,
            "max_connections": instance.max_connections,
            "utilization_percent": instance.current_load / instance.max_connections * 100
            if instance.max_connections
            else 0.0,
            "health_status": instance.health_status,
            "last_health_check": instance.last_health_check.isoformat()
            if instance.last_health_check
            else None,
            "seconds_since_sync": instance.seconds_since_sync(),
            "total_jobs": len(jobs),
            "active_jobs": sum(1 for job in jobs if job.last_build_status == "running"),
            "total_executors": total_executors,
            "idle_executors": idle_executors,
            "busy_executors": busy_executors,
            "executor_utilization": busy_executors / total_executors * 100
            if total_executors
            else 0.0,
        }


def create_fleet_service(
    repository: FleetRepository,
    cache: KeyValueCache,
    sync_interval: float = 30.0,
    build_limit: int = 5,
    gap_build_limit: int = 50,
    health_timeout: float = 5.0,
) -> FleetService:
    """
    Assemble a FleetService with its own client factory.

    Args:
        repository: Initialized mirror
        cache: Cache backend shared by the load balancer and sync engine
        sync_interval: Seconds between sync passes
        build_limit: Builds fetched per job on a routine pass
        gap_build_limit: Builds fetched per job after a sync gap
        health_timeout: Seconds before a health probe counts as failed
    """
    client_factory = ClientFactory()
    load_balancer = LoadBalancer(
        repository, cache, client_factory, health_timeout=health_timeout
    )
    sync_engine = SyncEngine(
        repository,
        client_factory,
        cache=cache,
        interval=sync_interval,
        build_limit=build_limit,
        gap_build_limit=gap_build_limit,
    )
    return FleetService(repository, client_factory, load_balancer, sync_engine)
