"""
Load balancer over the registered CI instances.

Selects an instance for new work (least-load, round-robin, weighted
random or primary/backup), tracks per-instance load counters, probes
instance health and picks failover targets. All state lives in the mirror
and the shared cache, so any number of processes can balance together.
"""

import asyncio
import json
import logging
import random
from collections import defaultdict
from typing import Literal

from fleet_client.factory import ClientFactory, default_factory
from fleet_common.cache import KeyValueCache, instance_key, round_robin_key
from fleet_common.errors import InstanceNotFoundError
from fleet_common.models import DEFAULT_CLUSTER, HealthStatus, Instance, utcnow
from fleet_common.repository import FleetRepository

logger = logging.getLogger(__name__)

Strategy = Literal["least_load", "round_robin", "weighted", "primary_backup"]
STRATEGIES = ("least_load", "round_robin", "weighted", "primary_backup")

INSTANCE_CACHE_TTL = 300  # 5 minutes
ROUND_ROBIN_TTL = 3600


class LoadBalancer:
    """
    Picks CI instances for new work and keeps their load/health current.

    Selection reads the mirror directly; the instance cache only serves
    point lookups via get_instance and is refreshed on every write this
    class makes to an instance row.
    """

    def __init__(
        self,
        repository: FleetRepository,
        cache: KeyValueCache,
        client_factory: ClientFactory | None = None,
        health_timeout: float = 5.0,
        cache_ttl: int = INSTANCE_CACHE_TTL,
        rng: random.Random | None = None,
    ):
        """
        Initialize the load balancer.

        Args:
            repository: Mirror holding the instance rows
            cache: Shared cache for instance snapshots and round-robin state
            client_factory: Source of per-instance remote clients for probes
            health_timeout: Seconds before a health probe counts as failed
            cache_ttl: Seconds an instance snapshot stays cached
            rng: Random source for weighted selection
        """
        self.repository = repository
        self.cache = cache
        self.client_factory = client_factory or default_factory
        self.health_timeout = health_timeout
        self.cache_ttl = cache_ttl
        self.rng = rng or random.Random()

    # Selection

    async def get_healthy_instances(
        self, cluster_id: str | None = None
    ) -> list[Instance]:
        """Active, healthy instances by ascending load, then descending priority."""
        return await self.repository.list_healthy_instances(cluster_id)

    async def get_optimal_instance(
        self, cluster_id: str | None = None
    ) -> Instance | None:
        """Least-loaded healthy instance, priority as tie-break."""
        instances = await self.get_healthy_instances(cluster_id)
        if not instances:
            logger.warning("No healthy CI instances available")
            return None
        return instances[0]

    async def get_round_robin_instance(
        self, cluster_id: str | None = None
    ) -> Instance | None:
        """
        Next instance in turn for a cluster.

        The index is taken modulo the current pool size, so it resets
        naturally when instances join or leave. Concurrent callers may
        race on the index; the last write wins.
        """
        instances = await self.get_healthy_instances(cluster_id)
        if not instances:
            return None

        key = round_robin_key(cluster_id or DEFAULT_CLUSTER)
        last_index = await self.cache.get(key)
        if last_index is None:
            current_index = 0
        else:
            try:
                current_index = (int(last_index) + 1) % len(instances)
            except ValueError:
                logger.warning(f"Discarding invalid round-robin index {last_index!r}")
                current_index = 0

        await self.cache.set(key, str(current_index), ROUND_ROBIN_TTL)
        return instances[current_index]

    async def get_weighted_instance(
        self, cluster_id: str | None = None
    ) -> Instance | None:
        """
        Random instance with probability proportional to its priority.

        Falls back to round-robin when every priority is zero.
        """
        instances = await self.get_healthy_instances(cluster_id)
        if not instances:
            return None

        total_weight = sum(instance.priority for instance in instances)
        if total_weight <= 0:
            return await self.get_round_robin_instance(cluster_id)

        draw = self.rng.random() * total_weight
        cumulative = 0
        for instance in instances:
            cumulative += instance.priority
            if cumulative > draw:
                return instance

        # Only reachable through floating-point edge cases
        return instances[-1]

    async def get_primary_master(self, cluster_id: str | None) -> Instance | None:
        """The healthy, active primary of a cluster, if there is one."""
        for instance in await self.get_healthy_instances(cluster_id):
            if instance.is_primary:
                return instance
        return None

    async def get_primary_backup_instance(
        self, cluster_id: str | None = None
    ) -> Instance | None:
        """The cluster primary if healthy, else the highest-priority backup."""
        primary = await self.get_primary_master(cluster_id)
        if primary is not None:
            return primary

        backups = await self.get_healthy_instances(cluster_id)
        if not backups:
            return None
        return max(backups, key=lambda instance: instance.priority)

    async def select_instance(
        self, strategy: Strategy = "least_load", cluster_id: str | None = None
    ) -> Instance | None:
        """
        Select an instance using a named strategy.

        Returns:
            The chosen instance, or None when no healthy instance exists

        Raises:
            ValueError: If the strategy is unknown
        """
        if strategy == "least_load":
            return await self.get_optimal_instance(cluster_id)
        if strategy == "round_robin":
            return await self.get_round_robin_instance(cluster_id)
        if strategy == "weighted":
            return await self.get_weighted_instance(cluster_id)
        if strategy == "primary_backup":
            return await self.get_primary_backup_instance(cluster_id)
        raise ValueError(
            f"Unknown strategy {strategy!r}; expected one of {', '.join(STRATEGIES)}"
        )

    # Load tracking

    async def increment_load(self, instance_id: str) -> None:
        await self.repository.adjust_load(instance_id, 1)
        await self.refresh_instance_cache(instance_id)

    async def decrement_load(self, instance_id: str) -> None:
        """Callers pair every increment with one decrement; no clamping."""
        await self.repository.adjust_load(instance_id, -1)
        await self.refresh_instance_cache(instance_id)

    # Instance snapshots

    async def refresh_instance_cache(self, instance_id: str) -> Instance | None:
        """Reload an instance from the mirror into the cache."""
        instance = await self.repository.get_instance(instance_id)
        if instance is None:
            await self.cache.delete(instance_key(instance_id))
            return None
        await self.cache.set(
            instance_key(instance_id), json.dumps(instance.to_dict()), self.cache_ttl
        )
        return instance

    async def invalidate_instance(self, instance_id: str) -> None:
        await self.cache.delete(instance_key(instance_id))

    async def get_instance(self, instance_id: str) -> Instance | None:
        """Instance snapshot from the cache, falling back to the mirror."""
        cached = await self.cache.get(instance_key(instance_id))
        if cached:
            try:
                return Instance.from_dict(json.loads(cached))
            except (ValueError, TypeError) as e:
                logger.warning(f"Discarding unreadable cache entry for {instance_id}: {e}")

        return await self.refresh_instance_cache(instance_id)

    # Health

    async def perform_health_checks(self) -> dict[str, HealthStatus]:
        """
        Probe every active instance concurrently.

        Returns:
            Mapping of instance id to its new health status
        """
        instances = await self.repository.list_instances(active_only=True)
        statuses = await asyncio.gather(
            *(self.check_instance_health(instance) for instance in instances)
        )
        return {instance.id: status for instance, status in zip(instances, statuses)}

    async def check_instance_health(self, instance: Instance) -> HealthStatus:
        """
        Probe one instance and record the outcome.

        A 2xx answer marks it healthy, any other answer degraded, and an
        unreachable or slow instance unhealthy.
        """
        client = self.client_factory.get_client(instance)
        status: HealthStatus
        try:
            ok = await asyncio.wait_for(
                asyncio.to_thread(
                    client.probe_health, instance.effective_health_url, self.health_timeout
                ),
                self.health_timeout,
            )
            status = "healthy" if ok else "degraded"
            logger.info(f"Health check for {instance.name}: {status}")
        except Exception as e:
            status = "unhealthy"
            logger.error(f"Health check failed for {instance.name}: {e}")

        try:
            await self.repository.update_health(instance.id, status, utcnow())
            await self.invalidate_instance(instance.id)
        except Exception as e:
            logger.error(
                f"Failed to record health of {instance.name}: {e}", exc_info=True
            )
        return status

    # Failover

    async def failover_to_primary(
        self, cluster_id: str | None, current_master_id: str
    ) -> Instance | None:
        """
        Mark the current master unhealthy and pick its replacement.

        Returns the highest-priority healthy non-primary instance of the
        master's own cluster; an unclustered master only fails over to other
        unclustered instances. Promoting it is left to the caller.

        Raises:
            InstanceNotFoundError: If the master is not registered
            ValueError: If cluster_id is given and the master is not in it
        """
        current = await self.repository.get_instance(current_master_id)
        if current is None:
            raise InstanceNotFoundError(current_master_id)
        if cluster_id is not None and cluster_id != current.cluster_key:
            raise ValueError(
                f"Instance {current_master_id} is in cluster {current.cluster_key}, "
                f"not {cluster_id}"
            )

        await self.repository.update_health(current_master_id, "unhealthy", None)
        await self.invalidate_instance(current_master_id)

        candidates = [
            instance
            for instance in await self.get_healthy_instances()
            if instance.cluster_key == current.cluster_key
            and instance.id != current_master_id
            and not instance.is_primary
        ]
        if not candidates:
            logger.error(
                f"Failover: no healthy backup in cluster {current.cluster_key}"
            )
            return None

        backup = max(candidates, key=lambda instance: instance.priority)
        logger.info(f"Failover: switching from {current_master_id} to {backup.id}")
        return backup

    # Reporting

    async def get_all_clusters(self) -> dict[str, list[Instance]]:
        """Active instances grouped by cluster (default cluster for none)."""
        clusters: dict[str, list[Instance]] = defaultdict(list)
        for instance in await self.repository.list_instances(active_only=True):
            clusters[instance.cluster_key].append(instance)
        return dict(clusters)
