"""
Abstract repository interface for the fleet mirror.

This module defines the contract that any database implementation must follow,
allowing easy swapping between SQLite, PostgreSQL, MySQL, etc.

Writes are either upserts keyed on a compound identity or narrow,
field-scoped updates, so concurrent writers never need a lock across the
whole mirror.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from .models import Build, Executor, HealthStatus, Instance, Job


class FleetRepository(ABC):
    """
    Abstract base class for fleet storage operations.

    Implementations must provide async-safe access to the mirror
    and handle their own connection management.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """
        Initialize the database (create tables, etc.).

        Called once at application startup.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close database connections and cleanup resources."""
        pass

    # Instance methods

    @abstractmethod
    async def create_instance(self, instance: Instance) -> None:
        """
        Persist a newly registered instance.

        Raises:
            IdentityConflictError: If an instance with the same name exists
        """
        pass

    @abstractmethod
    async def get_instance(self, instance_id: str) -> Instance | None:
        pass

    @abstractmethod
    async def list_instances(
        self, active_only: bool = False, cluster_id: str | None = None
    ) -> list[Instance]:
        """
        List instances ordered by cluster, then priority (highest first).

        Args:
            active_only: Only return instances flagged active
            cluster_id: Restrict to one cluster
        """
        pass

    @abstractmethod
    async def list_healthy_instances(
        self, cluster_id: str | None = None
    ) -> list[Instance]:
        """
        List active, healthy instances ordered by ascending load, then
        descending priority.
        """
        pass

    @abstractmethod
    async def update_instance_fields(
        self, instance_id: str, changes: dict[str, Any]
    ) -> None:
        """
        Update administrative fields of an instance.

        Only identity, credential and configuration fields may be changed
        here; load, health and sync fields have their own operations.

        Raises:
            ValueError: If a field is not updatable
            InstanceNotFoundError: If the instance does not exist
            IdentityConflictError: If the new name is taken
        """
        pass

    @abstractmethod
    async def update_health(
        self, instance_id: str, status: HealthStatus, checked_at: datetime | None
    ) -> None:
        """Set health status and, when given, the last health-check time."""
        pass

    @abstractmethod
    async def adjust_load(self, instance_id: str, delta: int) -> None:
        """
        Atomically add delta to an instance's current load.

        The counter is not clamped at zero.
        """
        pass

    @abstractmethod
    async def set_primary(self, instance_id: str) -> None:
        """
        Mark an instance primary and demote any other primary in its
        cluster, in a single transaction.

        Raises:
            InstanceNotFoundError: If the instance does not exist
        """
        pass

    @abstractmethod
    async def mark_synced(self, instance_id: str, synced_at: datetime) -> None:
        pass

    @abstractmethod
    async def delete_instance(self, instance_id: str) -> bool:
        """
        Delete an instance together with its jobs, builds and executors.

        Returns:
            True if a row was deleted
        """
        pass

    # Job methods

    @abstractmethod
    async def upsert_job(self, job: Job) -> Job:
        """
        Insert or update a job keyed on (instance_id, name).

        Returns:
            The stored job, including its persistent id
        """
        pass

    @abstractmethod
    async def get_job(self, instance_id: str, name: str) -> Job | None:
        pass

    @abstractmethod
    async def list_jobs(self, instance_id: str | None = None) -> list[Job]:
        pass

    # Build methods

    @abstractmethod
    async def upsert_build(self, build: Build) -> Build:
        """
        Insert or update a build keyed on (job_id, build_number).

        Returns:
            The stored build, including its persistent id
        """
        pass

    @abstractmethod
    async def list_builds(self, job_id: str) -> list[Build]:
        """List a job's builds, newest build number first."""
        pass

    # Executor methods

    @abstractmethod
    async def replace_executors(
        self, instance_id: str, executors: list[Executor]
    ) -> None:
        """
        Upsert the given executors and drop the instance's executors that
        are not in the list.

        Raises:
            InstanceNotFoundError: If the instance does not exist
        """
        pass

    @abstractmethod
    async def list_executors(self, instance_id: str) -> list[Executor]:
        pass
