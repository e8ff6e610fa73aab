"""
Data models for the CI fleet mirror.

These models represent the domain objects used throughout the application,
independent of the underlying storage mechanism, together with the tables
that translate remote CI vocabulary (ball colors, job classes, build
results) into the mirror's own status values.
"""

from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from typing import Any, Literal

HealthStatus = Literal["healthy", "degraded", "unhealthy", "unknown"]
JobType = Literal["freestyle", "pipeline", "multibranch", "folder", "maven"]
BuildStatus = Literal[
    "success", "failure", "unstable", "aborted", "not_built", "running"
]

HEALTH_STATUSES = ("healthy", "degraded", "unhealthy", "unknown")
JOB_TYPES = ("freestyle", "pipeline", "multibranch", "folder", "maven")
BUILD_STATUSES = ("success", "failure", "unstable", "aborted", "not_built", "running")

DEFAULT_CLUSTER = "default"

# Checked in order; the first substring found in the color wins.
_COLOR_STATUS = (
    ("anime", "running"),
    ("blue", "success"),
    ("red", "failure"),
    ("yellow", "unstable"),
    ("aborted", "aborted"),
)

_CLASS_JOB_TYPE = (
    ("WorkflowMultiBranchProject", "multibranch"),
    ("WorkflowJob", "pipeline"),
    ("Folder", "folder"),
    ("MavenModuleSet", "maven"),
)


def status_from_color(color: str | None) -> BuildStatus:
    """
    Derive a job's last build status from its remote ball color.

    Args:
        color: Remote color token such as "blue", "red_anime" or "notbuilt"

    Returns:
        Mirror build status; unknown colors map to "not_built"
    """
    color = color or "notbuilt"
    for token, status in _COLOR_STATUS:
        if token in color:
            return status  # type: ignore[return-value]
    return "not_built"


def job_type_from_class(class_name: str | None) -> JobType:
    """Map a remote job class name (the `_class` field) to a job type."""
    class_name = class_name or ""
    for token, job_type in _CLASS_JOB_TYPE:
        if token in class_name:
            return job_type  # type: ignore[return-value]
    return "freestyle"


def build_status_from_result(result: str | None) -> BuildStatus:
    """
    Map a remote build result to a build status.

    A missing result means the build has not finished yet.
    """
    if not result:
        return "running"
    status = result.lower()
    if status in ("success", "failure", "unstable", "aborted", "not_built"):
        return status  # type: ignore[return-value]
    return "running"


def utcnow() -> datetime:
    return datetime.now(UTC)


def _format_dt(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class Instance:
    """
    A registered remote CI master.

    Identity and credential fields are owned by administrative flows; the
    load balancer owns load and health fields; the sync engine stamps
    `last_sync_at`.
    """

    id: str  # UUID
    name: str  # Display name (unique)
    url: str  # Direct base URL
    username: str
    api_token: str
    description: str = ""
    load_balancer_url: str | None = None  # Preferred over url when set
    health_check_url: str | None = None  # Overrides the default probe URL
    is_active: bool = True
    is_primary: bool = False
    cluster_id: str | None = None
    priority: int = 0
    current_load: int = 0
    max_connections: int = 100
    health_status: HealthStatus = "unknown"
    last_health_check: datetime | None = None
    last_sync_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def effective_base_url(self) -> str:
        """Base URL remote calls go to: the load balancer URL if configured."""
        return (self.load_balancer_url or self.url).rstrip("/")

    @property
    def effective_health_url(self) -> str:
        if self.health_check_url:
            return self.health_check_url
        return f"{self.url.rstrip('/')}/api/json"

    @property
    def cluster_key(self) -> str:
        return self.cluster_id or DEFAULT_CLUSTER

    def seconds_since_sync(self, now: datetime | None = None) -> float | None:
        """Seconds since the last completed sync, or None if it never synced."""
        if self.last_sync_at is None:
            return None
        return ((now or utcnow()) - self.last_sync_at).total_seconds()

    def to_dict(self, include_secrets: bool = True) -> dict[str, Any]:
        """
        Convert instance to dictionary format.

        Args:
            include_secrets: Include the API token (needed for cache
                snapshots, never for display)
        """
        result = {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "username": self.username,
            "description": self.description,
            "load_balancer_url": self.load_balancer_url,
            "health_check_url": self.health_check_url,
            "is_active": self.is_active,
            "is_primary": self.is_primary,
            "cluster_id": self.cluster_id,
            "priority": self.priority,
            "current_load": self.current_load,
            "max_connections": self.max_connections,
            "health_status": self.health_status,
            "last_health_check": _format_dt(self.last_health_check),
            "last_sync_at": _format_dt(self.last_sync_at),
            "created_at": _format_dt(self.created_at),
            "updated_at": _format_dt(self.updated_at),
        }
        if include_secrets:
            result["api_token"] = self.api_token
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Instance":
        """Create instance from dictionary format (inverse of to_dict)."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values.setdefault("api_token", "")
        for key in ("last_health_check", "last_sync_at", "created_at", "updated_at"):
            if key in values:
                values[key] = _parse_dt(values[key])
        if values.get("created_at") is None:
            values.pop("created_at", None)
        if values.get("updated_at") is None:
            values.pop("updated_at", None)
        return cls(**values)


@dataclass
class Job:
    """
    A named CI pipeline on one instance.

    Identity key is (instance_id, name); `id` is assigned by the store on
    first insert and kept across upserts.
    """

    instance_id: str
    name: str
    display_name: str
    url: str
    type: JobType = "freestyle"
    color: str = "notbuilt"
    description: str = ""
    buildable: bool = True
    in_queue: bool = False
    last_build_number: int = 0
    last_build_status: BuildStatus = "not_built"
    last_build_time: datetime | None = None
    health_score: int = 100
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "name": self.name,
            "display_name": self.display_name,
            "url": self.url,
            "type": self.type,
            "color": self.color,
            "description": self.description,
            "buildable": self.buildable,
            "in_queue": self.in_queue,
            "last_build_number": self.last_build_number,
            "last_build_status": self.last_build_status,
            "last_build_time": _format_dt(self.last_build_time),
            "health_score": self.health_score,
        }


@dataclass
class Build:
    """One execution of a job; identity key is (job_id, build_number)."""

    job_id: str
    build_number: int
    status: BuildStatus
    url: str
    duration: int = 0  # Milliseconds
    timestamp: datetime | None = None
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "build_number": self.build_number,
            "status": self.status,
            "url": self.url,
            "duration": self.duration,
            "timestamp": _format_dt(self.timestamp),
        }


@dataclass
class Executor:
    """
    One executor slot on a node of an instance.

    Executors are a live view: the sync engine replaces an instance's set
    on every pass.
    """

    instance_id: str
    node_name: str
    number: int
    idle: bool = True
    offline: bool = False
    current_build_url: str | None = None
    id: str | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "node_name": self.node_name,
            "number": self.number,
            "idle": self.idle,
            "offline": self.offline,
            "current_build_url": self.current_build_url,
        }


@dataclass
class InstanceConfig:
    """
    Administrative registration request for a new instance.

    Validation happens in the fleet service before anything is persisted.
    """

    name: str
    url: str
    username: str
    api_token: str
    description: str = ""
    is_primary: bool = False
    cluster_id: str | None = None
    load_balancer_url: str | None = None
    health_check_url: str | None = None
    priority: int = 0
    max_connections: int = 100

    def to_instance(self, instance_id: str) -> Instance:
        return Instance(
            id=instance_id,
            name=self.name,
            url=self.url.rstrip("/"),
            username=self.username,
            api_token=self.api_token,
            description=self.description,
            load_balancer_url=self.load_balancer_url,
            health_check_url=self.health_check_url,
            is_primary=self.is_primary,
            cluster_id=self.cluster_id,
            priority=self.priority,
            max_connections=self.max_connections,
        )
