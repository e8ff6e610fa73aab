"""
Sync engine that mirrors remote job and build state.

This module implements a controller-style loop that periodically pulls the
job list, recent builds and executors of every active instance and
reconciles them into the local mirror with keyed, idempotent upserts.
Failures are isolated per build, per job and per instance so one bad
remote never stalls the rest of the fleet.
"""

import asyncio
import logging
import time
from datetime import timedelta
from typing import Any

from fleet_client.client import RemoteClient
from fleet_client.factory import ClientFactory, default_factory
from fleet_client.payloads import RemoteJobSummary
from fleet_common.cache import KeyValueCache, instance_key
from fleet_common.errors import InstanceNotFoundError
from fleet_common.models import (
    Build,
    Executor,
    Instance,
    Job,
    build_status_from_result,
    job_type_from_class,
    status_from_color,
    utcnow,
)
from fleet_common.repository import FleetRepository

logger = logging.getLogger(__name__)


class SyncEngine:
    """
    Reconciles remote CI state into the mirror.

    The engine has two states, idle and syncing. A pass requested while
    another is in flight is skipped rather than queued.
    """

    def __init__(
        self,
        repository: FleetRepository,
        client_factory: ClientFactory | None = None,
        cache: KeyValueCache | None = None,
        interval: float = 30.0,
        build_limit: int = 5,
        gap_build_limit: int = 50,
        gap_threshold: float | None = None,
    ):
        """
        Initialize the sync engine.

        Args:
            repository: Mirror the engine writes to
            client_factory: Source of per-instance remote clients
            cache: Instance snapshot cache to invalidate after writes
            interval: Seconds between sync passes
            build_limit: Builds fetched per job on a routine pass
            gap_build_limit: Builds fetched per job after a sync gap
            gap_threshold: Seconds since the last sync that count as a gap
                (default: ten intervals)
        """
        self.repository = repository
        self.client_factory = client_factory or default_factory
        self.cache = cache
        self.interval = interval
        self.build_limit = build_limit
        self.gap_build_limit = max(gap_build_limit, build_limit)
        self.gap_threshold = (
            gap_threshold if gap_threshold is not None else interval * 10
        )

        self._running = False
        self._syncing = False
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    async def start(self) -> None:
        """Arm the sync loop; the first pass runs immediately."""
        if self._running:
            logger.warning("Sync engine already running")
            return

        logger.info(f"Starting sync engine (interval: {self.interval}s)")
        self._running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        """
        Stop scheduling passes.

        A pass that is already in flight is allowed to finish.
        """
        if not self._running:
            return

        logger.info("Stopping sync engine...")
        self._running = False
        self._stop_event.set()

        if self._task:
            await self._task
            self._task = None

        logger.info("Sync engine stopped")

    async def _run_loop(self) -> None:
        """Main sync loop."""
        while self._running:
            try:
                await self.sync_all()
            except Exception as e:
                logger.error(f"Error in sync loop: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), self.interval)
            except TimeoutError:
                pass

    async def sync_all(self) -> bool:
        """
        Run one sync pass over every active instance.

        Returns:
            True if a pass ran, False if one was already in flight
        """
        # No await between the check and the set, so this is the
        # single-flight guard for the event loop.
        if self._syncing:
            logger.debug("Sync already in progress, skipping")
            return False
        self._syncing = True

        started = time.monotonic()
        try:
            instances = await self.repository.list_instances(active_only=True)
            if not instances:
                logger.warning("No active CI instances found")
                return True

            logger.info(f"Syncing {len(instances)} CI instance(s)...")
            await asyncio.gather(
                *(self._sync_instance_isolated(instance) for instance in instances)
            )

            duration_ms = (time.monotonic() - started) * 1000
            logger.info(f"Sync completed in {duration_ms:.0f}ms")
            return True
        finally:
            self._syncing = False

    async def _sync_instance_isolated(self, instance: Instance) -> None:
        try:
            await self._sync_instance(instance)
        except Exception as e:
            logger.error(f"Failed to sync instance {instance.name}: {e}", exc_info=True)

    async def sync_instance(self, instance_id: str) -> None:
        """
        Sync a single instance outside of a full pass.

        Raises:
            InstanceNotFoundError: If the instance does not exist
            RemoteAPIError: If the job listing cannot be fetched
        """
        instance = await self.repository.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        await self._sync_instance(instance)

    async def _sync_instance(self, instance: Instance) -> None:
        logger.debug(f"Syncing instance: {instance.name}")

        client = self.client_factory.get_client(instance)
        build_limit = self._build_limit_for(instance)

        remote_jobs = await asyncio.to_thread(client.get_jobs)
        logger.debug(f"Found {len(remote_jobs)} jobs on {instance.name}")

        for remote_job in remote_jobs:
            try:
                await self._sync_job(instance, client, remote_job, build_limit)
            except Exception as e:
                logger.error(
                    f"Failed to sync job {remote_job.name} on {instance.name}: {e}",
                    exc_info=True,
                )

        try:
            await self._sync_executors(instance, client)
        except Exception as e:
            logger.error(
                f"Failed to sync executors of {instance.name}: {e}", exc_info=True
            )

        await self.repository.mark_synced(instance.id, utcnow())
        if self.cache is not None:
            await self.cache.delete(instance_key(instance.id))

    def _build_limit_for(self, instance: Instance) -> int:
        """
        Choose how many builds per job to fetch for an instance.

        After a gap (never synced, or last sync older than the threshold)
        the window widens so builds that happened during an outage are
        not skipped.
        """
        if instance.last_sync_at is None:
            return self.gap_build_limit
        if utcnow() - instance.last_sync_at > timedelta(seconds=self.gap_threshold):
            logger.info(
                f"Sync gap detected for {instance.name} "
                f"(last sync {instance.last_sync_at.isoformat()}), "
                f"fetching up to {self.gap_build_limit} builds per job"
            )
            return self.gap_build_limit
        return self.build_limit

    async def _sync_job(
        self,
        instance: Instance,
        client: RemoteClient,
        remote_job: RemoteJobSummary,
        build_limit: int,
    ) -> None:
        """Upsert one job, then its recent builds."""
        detail = await asyncio.to_thread(client.get_job, remote_job.name)

        last_build = remote_job.last_build
        job = await self.repository.upsert_job(
            Job(
                instance_id=instance.id,
                name=remote_job.name,
                display_name=detail.display_name or remote_job.name,
                url=remote_job.url,
                type=job_type_from_class(detail.class_name),
                color=remote_job.color or "notbuilt",
                description=detail.description,
                buildable=detail.buildable,
                in_queue=detail.in_queue,
                last_build_number=last_build.number if last_build else 0,
                last_build_status=status_from_color(remote_job.color),
                last_build_time=last_build.timestamp if last_build else None,
                health_score=detail.health_score,
            )
        )

        if last_build is not None:
            assert job.id is not None  # Assigned by the store
            await self._sync_builds(job.id, remote_job.name, client, build_limit)

    async def _sync_builds(
        self, job_id: str, job_name: str, client: RemoteClient, limit: int
    ) -> None:
        try:
            remote_builds = await asyncio.to_thread(client.get_builds, job_name, limit)
        except Exception as e:
            logger.error(f"Failed to fetch builds for {job_name}: {e}")
            return

        for remote_build in remote_builds:
            try:
                await self.repository.upsert_build(
                    Build(
                        job_id=job_id,
                        build_number=remote_build.number,
                        status=build_status_from_result(remote_build.result),
                        url=remote_build.url,
                        duration=remote_build.duration,
                        timestamp=remote_build.timestamp,
                    )
                )
            except Exception as e:
                logger.error(
                    f"Failed to sync build #{remote_build.number} for {job_name}: {e}",
                    exc_info=True,
                )

    async def _sync_executors(self, instance: Instance, client: RemoteClient) -> None:
        nodes = await asyncio.to_thread(client.get_executors)
        executors = [
            Executor(
                instance_id=instance.id,
                node_name=node.name,
                number=executor.number,
                idle=executor.idle,
                offline=node.offline,
                current_build_url=executor.current_build_url,
            )
            for node in nodes
            for executor in node.executors
        ]
        await self.repository.replace_executors(instance.id, executors)

    async def trigger_sync(self) -> bool:
        """Run a pass now, outside the timer; skipped if one is in flight."""
        logger.info("Manual sync triggered")
        return await self.sync_all()

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "is_syncing": self._syncing,
            "interval_ms": int(self.interval * 1000),
        }
