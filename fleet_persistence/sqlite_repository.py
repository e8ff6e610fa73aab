"""
SQLite implementation of the fleet repository.

Uses aiosqlite for async operations and provides async-safe access.
Can be easily replaced with PostgreSQL/MySQL implementations.
"""

import asyncio
import sqlite3
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import aiosqlite

from fleet_common.errors import IdentityConflictError, InstanceNotFoundError
from fleet_common.models import (
    Build,
    Executor,
    HealthStatus,
    Instance,
    Job,
    utcnow,
)
from fleet_common.repository import FleetRepository

INSTANCE_COLUMNS = (
    "id",
    "name",
    "url",
    "username",
    "api_token",
    "description",
    "load_balancer_url",
    "health_check_url",
    "is_active",
    "is_primary",
    "cluster_id",
    "priority",
    "current_load",
    "max_connections",
    "health_status",
    "last_health_check",
    "last_sync_at",
    "created_at",
    "updated_at",
)

# Fields administrative updates may touch. Load, health, primary and sync
# fields are written only through their dedicated operations.
UPDATABLE_INSTANCE_FIELDS = frozenset(
    {
        "name",
        "url",
        "username",
        "api_token",
        "description",
        "load_balancer_url",
        "health_check_url",
        "is_active",
        "cluster_id",
        "priority",
        "max_connections",
    }
)

JOB_COLUMNS = (
    "id",
    "instance_id",
    "name",
    "display_name",
    "url",
    "type",
    "color",
    "description",
    "buildable",
    "in_queue",
    "last_build_number",
    "last_build_status",
    "last_build_time",
    "health_score",
    "created_at",
    "updated_at",
)

BUILD_COLUMNS = (
    "id",
    "job_id",
    "build_number",
    "status",
    "url",
    "duration",
    "timestamp",
    "created_at",
    "updated_at",
)


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_instance(row: aiosqlite.Row) -> Instance:
    return Instance(
        id=row["id"],
        name=row["name"],
        url=row["url"],
        username=row["username"],
        api_token=row["api_token"],
        description=row["description"] or "",
        load_balancer_url=row["load_balancer_url"],
        health_check_url=row["health_check_url"],
        is_active=bool(row["is_active"]),
        is_primary=bool(row["is_primary"]),
        cluster_id=row["cluster_id"],
        priority=row["priority"],
        current_load=row["current_load"],
        max_connections=row["max_connections"],
        health_status=row["health_status"],
        last_health_check=_parse(row["last_health_check"]),
        last_sync_at=_parse(row["last_sync_at"]),
        created_at=_parse(row["created_at"]),
        updated_at=_parse(row["updated_at"]),
    )


def _row_to_job(row: aiosqlite.Row) -> Job:
    return Job(
        id=row["id"],
        instance_id=row["instance_id"],
        name=row["name"],
        display_name=row["display_name"],
        url=row["url"],
        type=row["type"],
        color=row["color"],
        description=row["description"] or "",
        buildable=bool(row["buildable"]),
        in_queue=bool(row["in_queue"]),
        last_build_number=row["last_build_number"],
        last_build_status=row["last_build_status"],
        last_build_time=_parse(row["last_build_time"]),
        health_score=row["health_score"],
        created_at=_parse(row["created_at"]),
        updated_at=_parse(row["updated_at"]),
    )


def _row_to_build(row: aiosqlite.Row) -> Build:
    return Build(
        id=row["id"],
        job_id=row["job_id"],
        build_number=row["build_number"],
        status=row["status"],
        url=row["url"],
        duration=row["duration"],
        timestamp=_parse(row["timestamp"]),
        created_at=_parse(row["created_at"]),
        updated_at=_parse(row["updated_at"]),
    )


class SQLiteFleetRepository(FleetRepository):
    """
    SQLite-based fleet storage implementation.

    Uses a single database file with multiple tables:
    - instances: Registered CI masters with load and health fields
    - jobs: Mirrored jobs, unique per (instance_id, name)
    - builds: Mirrored builds, unique per (job_id, build_number)
    - executors: Live executor view per instance
    """

    def __init__(self, db_path: str = "fleet.db"):
        """
        Initialize the SQLite repository.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        # Serializes writes on the shared connection
        self._write_lock = asyncio.Lock()

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = await aiosqlite.connect(self.db_path)
            self._connection.row_factory = aiosqlite.Row
            # Enable foreign key constraints (cascading deletes)
            await self._connection.execute("PRAGMA foreign_keys = ON")
        return self._connection

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Run writes as one transaction on the shared connection.

        Commits on success and rolls back on any error. Writers hold the
        write lock for the whole transaction, so a rollback never discards
        another writer's pending statements.
        """
        conn = await self._get_connection()
        async with self._write_lock:
            try:
                yield conn
                await conn.commit()
            except BaseException:
                await conn.rollback()
                raise

    async def initialize(self) -> None:
        """
        Create database tables if they don't exist.

        Schema:
        - instances table: one row per registered master
        - jobs table: foreign key to instances, cascade on delete
        - builds table: foreign key to jobs, cascade on delete
        - executors table: foreign key to instances, cascade on delete
        """
        conn = await self._get_connection()

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS instances (
                id TEXT PRIMARY KEY,
                name TEXT UNIQUE NOT NULL,
                url TEXT NOT NULL,
                username TEXT NOT NULL,
                api_token TEXT NOT NULL,
                description TEXT,
                load_balancer_url TEXT,
                health_check_url TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                is_primary INTEGER NOT NULL DEFAULT 0,
                cluster_id TEXT,
                priority INTEGER NOT NULL DEFAULT 0,
                current_load INTEGER NOT NULL DEFAULT 0,
                max_connections INTEGER NOT NULL DEFAULT 100,
                health_status TEXT NOT NULL DEFAULT 'unknown',
                last_health_check TEXT,
                last_sync_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_instances_cluster
            ON instances(cluster_id)
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL,
                name TEXT NOT NULL,
                display_name TEXT NOT NULL,
                url TEXT NOT NULL,
                type TEXT NOT NULL,
                color TEXT NOT NULL,
                description TEXT,
                buildable INTEGER NOT NULL DEFAULT 1,
                in_queue INTEGER NOT NULL DEFAULT 0,
                last_build_number INTEGER NOT NULL DEFAULT 0,
                last_build_status TEXT NOT NULL,
                last_build_time TEXT,
                health_score INTEGER NOT NULL DEFAULT 100,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (instance_id, name),
                FOREIGN KEY (instance_id) REFERENCES instances(id) ON DELETE CASCADE
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS builds (
                id TEXT PRIMARY KEY,
                job_id TEXT NOT NULL,
                build_number INTEGER NOT NULL,
                status TEXT NOT NULL,
                url TEXT NOT NULL,
                duration INTEGER NOT NULL DEFAULT 0,
                timestamp TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (job_id, build_number),
                FOREIGN KEY (job_id) REFERENCES jobs(id) ON DELETE CASCADE
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS executors (
                id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL,
                node_name TEXT NOT NULL,
                number INTEGER NOT NULL,
                idle INTEGER NOT NULL DEFAULT 1,
                offline INTEGER NOT NULL DEFAULT 0,
                current_build_url TEXT,
                updated_at TEXT NOT NULL,
                UNIQUE (instance_id, node_name, number),
                FOREIGN KEY (instance_id) REFERENCES instances(id) ON DELETE CASCADE
            )
        """)

        await conn.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    # Instance methods

    async def create_instance(self, instance: Instance) -> None:
        """
        Persist a newly registered instance.

        Args:
            instance: Instance object to persist

        Raises:
            IdentityConflictError: If the name is already registered
        """
        placeholders = ", ".join("?" for _ in INSTANCE_COLUMNS)
        values = (
            instance.id,
            instance.name,
            instance.url,
            instance.username,
            instance.api_token,
            instance.description,
            instance.load_balancer_url,
            instance.health_check_url,
            1 if instance.is_active else 0,
            1 if instance.is_primary else 0,
            instance.cluster_id,
            instance.priority,
            instance.current_load,
            instance.max_connections,
            instance.health_status,
            _dt(instance.last_health_check),
            _dt(instance.last_sync_at),
            _dt(instance.created_at),
            _dt(instance.updated_at),
        )
        try:
            async with self._transaction() as conn:
                await conn.execute(
                    f"INSERT INTO instances ({', '.join(INSTANCE_COLUMNS)}) "
                    f"VALUES ({placeholders})",
                    values,
                )
        except sqlite3.IntegrityError as e:
            raise IdentityConflictError(
                f"Instance named {instance.name!r} already exists"
            ) from e

    async def get_instance(self, instance_id: str) -> Instance | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {', '.join(INSTANCE_COLUMNS)} FROM instances WHERE id = ?",
            (instance_id,),
        )
        row = await cursor.fetchone()
        return _row_to_instance(row) if row else None

    async def list_instances(
        self, active_only: bool = False, cluster_id: str | None = None
    ) -> list[Instance]:
        """
        List instances ordered by cluster, then priority (highest first).

        Args:
            active_only: Only return instances flagged active
            cluster_id: Restrict to one cluster
        """
        conn = await self._get_connection()

        conditions = []
        params: list[Any] = []
        if active_only:
            conditions.append("is_active = 1")
        if cluster_id is not None:
            conditions.append("cluster_id = ?")
            params.append(cluster_id)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        cursor = await conn.execute(
            f"""
            SELECT {', '.join(INSTANCE_COLUMNS)}
            FROM instances
            {where}
            ORDER BY cluster_id, priority DESC, name
            """,
            params,
        )
        rows = await cursor.fetchall()
        return [_row_to_instance(row) for row in rows]

    async def list_healthy_instances(
        self, cluster_id: str | None = None
    ) -> list[Instance]:
        """
        List active, healthy instances ordered by ascending load, then
        descending priority.
        """
        conn = await self._get_connection()

        sql = f"""
            SELECT {', '.join(INSTANCE_COLUMNS)}
            FROM instances
            WHERE is_active = 1 AND health_status = 'healthy'
        """
        params: list[Any] = []
        if cluster_id is not None:
            sql += " AND cluster_id = ?"
            params.append(cluster_id)
        sql += " ORDER BY current_load ASC, priority DESC, created_at, id"

        cursor = await conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [_row_to_instance(row) for row in rows]

    async def update_instance_fields(
        self, instance_id: str, changes: dict[str, Any]
    ) -> None:
        """
        Update administrative fields of an instance.

        Args:
            instance_id: UUID of the instance
            changes: Mapping of field name to new value

        Raises:
            ValueError: If a field is not updatable
            InstanceNotFoundError: If the instance does not exist
            IdentityConflictError: If the new name is taken
        """
        invalid = set(changes) - UPDATABLE_INSTANCE_FIELDS
        if invalid:
            raise ValueError(f"Fields cannot be updated: {', '.join(sorted(invalid))}")
        if not changes:
            return

        # Build dynamic SQL based on what's being updated
        updates = []
        params: list[Any] = []
        for name, value in changes.items():
            updates.append(f"{name} = ?")
            params.append(int(value) if isinstance(value, bool) else value)
        updates.append("updated_at = ?")
        params.append(utcnow().isoformat())
        params.append(instance_id)  # WHERE clause parameter

        try:
            async with self._transaction() as conn:
                cursor = await conn.execute(
                    f"UPDATE instances SET {', '.join(updates)} WHERE id = ?", params
                )
        except sqlite3.IntegrityError as e:
            raise IdentityConflictError(
                f"Instance named {changes.get('name')!r} already exists"
            ) from e

        if cursor.rowcount == 0:
            raise InstanceNotFoundError(instance_id)

    async def update_health(
        self, instance_id: str, status: HealthStatus, checked_at: datetime | None
    ) -> None:
        async with self._transaction() as conn:
            if checked_at is not None:
                await conn.execute(
                    "UPDATE instances SET health_status = ?, last_health_check = ? "
                    "WHERE id = ?",
                    (status, checked_at.isoformat(), instance_id),
                )
            else:
                await conn.execute(
                    "UPDATE instances SET health_status = ? WHERE id = ?",
                    (status, instance_id),
                )

    async def adjust_load(self, instance_id: str, delta: int) -> None:
        """
        Atomically add delta to an instance's current load.

        The increment happens inside the UPDATE statement, so concurrent
        callers never lose updates.
        """
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "UPDATE instances SET current_load = current_load + ? WHERE id = ?",
                (delta, instance_id),
            )

        if cursor.rowcount == 0:
            raise InstanceNotFoundError(instance_id)

    async def set_primary(self, instance_id: str) -> None:
        """
        Mark an instance primary and demote any other primary in its
        cluster, in a single transaction.
        """
        instance = await self.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)

        async with self._transaction() as conn:
            now = utcnow().isoformat()
            if instance.cluster_id is None:
                await conn.execute(
                    "UPDATE instances SET is_primary = 0, updated_at = ? "
                    "WHERE cluster_id IS NULL AND is_primary = 1 AND id != ?",
                    (now, instance_id),
                )
            else:
                await conn.execute(
                    "UPDATE instances SET is_primary = 0, updated_at = ? "
                    "WHERE cluster_id = ? AND is_primary = 1 AND id != ?",
                    (now, instance.cluster_id, instance_id),
                )
            await conn.execute(
                "UPDATE instances SET is_primary = 1, updated_at = ? WHERE id = ?",
                (now, instance_id),
            )

    async def mark_synced(self, instance_id: str, synced_at: datetime) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                "UPDATE instances SET last_sync_at = ? WHERE id = ?",
                (synced_at.isoformat(), instance_id),
            )

    async def delete_instance(self, instance_id: str) -> bool:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "DELETE FROM instances WHERE id = ?", (instance_id,)
            )
        return cursor.rowcount > 0

    # Job methods

    async def upsert_job(self, job: Job) -> Job:
        """
        Insert or update a job keyed on (instance_id, name).

        The persistent id and created_at of an existing row are kept.
        """
        now = utcnow().isoformat()
        async with self._transaction() as conn:
            await conn.execute(
                """
                INSERT INTO jobs (
                    id, instance_id, name, display_name, url, type, color,
                    description, buildable, in_queue, last_build_number,
                    last_build_status, last_build_time, health_score,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (instance_id, name) DO UPDATE SET
                    display_name = excluded.display_name,
                    url = excluded.url,
                    type = excluded.type,
                    color = excluded.color,
                    description = excluded.description,
                    buildable = excluded.buildable,
                    in_queue = excluded.in_queue,
                    last_build_number = excluded.last_build_number,
                    last_build_status = excluded.last_build_status,
                    last_build_time = excluded.last_build_time,
                    health_score = excluded.health_score,
                    updated_at = excluded.updated_at
                """,
                (
                    job.id or str(uuid.uuid4()),
                    job.instance_id,
                    job.name,
                    job.display_name,
                    job.url,
                    job.type,
                    job.color,
                    job.description,
                    1 if job.buildable else 0,
                    1 if job.in_queue else 0,
                    job.last_build_number,
                    job.last_build_status,
                    _dt(job.last_build_time),
                    job.health_score,
                    now,
                    now,
                ),
            )

        stored = await self.get_job(job.instance_id, job.name)
        assert stored is not None  # Just written
        return stored

    async def get_job(self, instance_id: str, name: str) -> Job | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {', '.join(JOB_COLUMNS)} FROM jobs "
            "WHERE instance_id = ? AND name = ?",
            (instance_id, name),
        )
        row = await cursor.fetchone()
        return _row_to_job(row) if row else None

    async def list_jobs(self, instance_id: str | None = None) -> list[Job]:
        conn = await self._get_connection()

        if instance_id is None:
            cursor = await conn.execute(
                f"SELECT {', '.join(JOB_COLUMNS)} FROM jobs ORDER BY instance_id, name"
            )
        else:
            cursor = await conn.execute(
                f"SELECT {', '.join(JOB_COLUMNS)} FROM jobs "
                "WHERE instance_id = ? ORDER BY name",
                (instance_id,),
            )
        rows = await cursor.fetchall()
        return [_row_to_job(row) for row in rows]

    # Build methods

    async def upsert_build(self, build: Build) -> Build:
        """Insert or update a build keyed on (job_id, build_number)."""
        now = utcnow().isoformat()
        async with self._transaction() as conn:
            await conn.execute(
                """
                INSERT INTO builds (
                    id, job_id, build_number, status, url, duration, timestamp,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (job_id, build_number) DO UPDATE SET
                    status = excluded.status,
                    url = excluded.url,
                    duration = excluded.duration,
                    timestamp = excluded.timestamp,
                    updated_at = excluded.updated_at
                """,
                (
                    build.id or str(uuid.uuid4()),
                    build.job_id,
                    build.build_number,
                    build.status,
                    build.url,
                    build.duration,
                    _dt(build.timestamp),
                    now,
                    now,
                ),
            )

        conn = await self._get_connection()
        cursor = await conn.execute(
            f"SELECT {', '.join(BUILD_COLUMNS)} FROM builds "
            "WHERE job_id = ? AND build_number = ?",
            (build.job_id, build.build_number),
        )
        row = await cursor.fetchone()
        return _row_to_build(row)

    async def list_builds(self, job_id: str) -> list[Build]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {', '.join(BUILD_COLUMNS)} FROM builds "
            "WHERE job_id = ? ORDER BY build_number DESC",
            (job_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_build(row) for row in rows]

    # Executor methods

    async def replace_executors(
        self, instance_id: str, executors: list[Executor]
    ) -> None:
        """
        Upsert the given executors and drop the instance's executors that
        are not in the list, in a single transaction.
        """
        now = utcnow().isoformat()
        try:
            async with self._transaction() as conn:
                for executor in executors:
                    await conn.execute(
                        """
                        INSERT INTO executors (
                            id, instance_id, node_name, number, idle, offline,
                            current_build_url, updated_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT (instance_id, node_name, number) DO UPDATE SET
                            idle = excluded.idle,
                            offline = excluded.offline,
                            current_build_url = excluded.current_build_url,
                            updated_at = excluded.updated_at
                        """,
                        (
                            executor.id or str(uuid.uuid4()),
                            instance_id,
                            executor.node_name,
                            executor.number,
                            1 if executor.idle else 0,
                            1 if executor.offline else 0,
                            executor.current_build_url,
                            now,
                        ),
                    )
                # Everything still reported was stamped with `now` above
                await conn.execute(
                    "DELETE FROM executors WHERE instance_id = ? AND updated_at != ?",
                    (instance_id, now),
                )
        except sqlite3.IntegrityError as e:
            if await self.get_instance(instance_id) is None:
                raise InstanceNotFoundError(instance_id) from e
            raise

    async def list_executors(self, instance_id: str) -> list[Executor]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT id, instance_id, node_name, number, idle, offline,
                   current_build_url, updated_at
            FROM executors
            WHERE instance_id = ?
            ORDER BY node_name, number
            """,
            (instance_id,),
        )
        rows = await cursor.fetchall()
        return [
            Executor(
                id=row["id"],
                instance_id=row["instance_id"],
                node_name=row["node_name"],
                number=row["number"],
                idle=bool(row["idle"]),
                offline=bool(row["offline"]),
                current_build_url=row["current_build_url"],
                updated_at=_parse(row["updated_at"]),
            )
            for row in rows
        ]
