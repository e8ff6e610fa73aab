"""
Typed views of the remote CI JSON payloads.

Each dataclass corresponds to one remote endpoint shape. `from_dict`
applies the defaulting rules for optional fields and raises
RemoteDataError when a required field is missing or has the wrong type,
so nothing downstream has to probe raw dictionaries.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .errors import RemoteDataError


def _require_mapping(data: Any, what: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise RemoteDataError(f"Expected an object for {what}, got {type(data).__name__}")
    return data


def _require(data: dict[str, Any], key: str, kind: type, what: str) -> Any:
    value = data.get(key)
    # bool is an int subclass; a true/false number is malformed
    if not isinstance(value, kind) or isinstance(value, bool):
        raise RemoteDataError(f"Missing or invalid {key!r} in {what}")
    return value


def _require_list(data: dict[str, Any], key: str, what: str) -> list[Any]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise RemoteDataError(f"Expected a list for {key!r} in {what}")
    return value


def from_epoch_millis(value: Any) -> datetime | None:
    """Convert a remote epoch-milliseconds timestamp to an aware datetime."""
    if value is None or isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value <= 0:
        return None
    return datetime.fromtimestamp(value / 1000, tz=UTC)


@dataclass
class RemoteBuildRef:
    """The `lastBuild` reference embedded in a job listing entry."""

    number: int
    url: str = ""
    timestamp: datetime | None = None
    result: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> "RemoteBuildRef":
        data = _require_mapping(data, "lastBuild")
        return cls(
            number=_require(data, "number", int, "lastBuild"),
            url=data.get("url") or "",
            timestamp=from_epoch_millis(data.get("timestamp")),
            result=data.get("result"),
        )


@dataclass
class RemoteJobSummary:
    """One entry of the instance job listing."""

    name: str
    url: str = ""
    color: str | None = None
    last_build: RemoteBuildRef | None = None

    @classmethod
    def from_dict(cls, data: Any) -> "RemoteJobSummary":
        data = _require_mapping(data, "job listing entry")
        last_build = data.get("lastBuild")
        return cls(
            name=_require(data, "name", str, "job listing entry"),
            url=data.get("url") or "",
            color=data.get("color"),
            last_build=RemoteBuildRef.from_dict(last_build) if last_build else None,
        )


@dataclass
class RemoteJobDetail:
    """Job detail; only the fields the mirror keeps."""

    class_name: str = ""
    display_name: str | None = None
    description: str = ""
    buildable: bool = True
    in_queue: bool = False
    health_score: int = 100

    @classmethod
    def from_dict(cls, data: Any) -> "RemoteJobDetail":
        data = _require_mapping(data, "job detail")

        health_score = 100
        reports = _require_list(data, "healthReport", "job detail")
        if reports and isinstance(reports[0], dict):
            score = reports[0].get("score")
            if isinstance(score, int) and not isinstance(score, bool):
                health_score = max(0, min(100, score))

        buildable = data.get("buildable")
        in_queue = data.get("inQueue")
        return cls(
            class_name=data.get("_class") or "",
            display_name=data.get("displayName"),
            description=data.get("description") or "",
            buildable=True if buildable is None else bool(buildable),
            in_queue=False if in_queue is None else bool(in_queue),
            health_score=health_score,
        )


@dataclass
class RemoteBuild:
    """One build from a job's build listing or build detail."""

    number: int
    url: str = ""
    result: str | None = None  # None while the build is running
    timestamp: datetime | None = None
    duration: int = 0

    @classmethod
    def from_dict(cls, data: Any) -> "RemoteBuild":
        data = _require_mapping(data, "build")
        duration = data.get("duration")
        return cls(
            number=_require(data, "number", int, "build"),
            url=data.get("url") or "",
            result=data.get("result"),
            timestamp=from_epoch_millis(data.get("timestamp")),
            duration=duration if isinstance(duration, int) and duration > 0 else 0,
        )


@dataclass
class RemoteExecutor:
    number: int
    idle: bool = True
    current_build_url: str | None = None


@dataclass
class RemoteNode:
    """A node (`computer`) with its executor slots."""

    name: str
    idle: bool = True
    offline: bool = False
    executors: list[RemoteExecutor] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "RemoteNode":
        data = _require_mapping(data, "computer")
        executors = []
        for index, raw in enumerate(_require_list(data, "executors", "computer")):
            raw = _require_mapping(raw, "executor")
            number = raw.get("number")
            current = raw.get("currentExecutable")
            executors.append(
                RemoteExecutor(
                    number=number if isinstance(number, int) else index,
                    idle=bool(raw.get("idle", True)),
                    current_build_url=current.get("url")
                    if isinstance(current, dict)
                    else None,
                )
            )
        return cls(
            name=_require(data, "displayName", str, "computer"),
            idle=bool(data.get("idle", True)),
            offline=bool(data.get("offline", False)),
            executors=executors,
        )


@dataclass
class RemoteQueueItem:
    id: int
    task_name: str = ""
    task_url: str = ""
    why: str | None = None
    in_queue_since: datetime | None = None
    stuck: bool = False
    blocked: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> "RemoteQueueItem":
        data = _require_mapping(data, "queue item")
        task = data.get("task") if isinstance(data.get("task"), dict) else {}
        return cls(
            id=_require(data, "id", int, "queue item"),
            task_name=task.get("name") or "",
            task_url=task.get("url") or "",
            why=data.get("why"),
            in_queue_since=from_epoch_millis(data.get("inQueueSince")),
            stuck=bool(data.get("stuck", False)),
            blocked=bool(data.get("blocked", False)),
        )


@dataclass
class RemoteSystemInfo:
    mode: str | None = None
    node_name: str | None = None
    num_executors: int = 0
    description: str | None = None
    version: str | None = None  # From the X-Jenkins response header

    @classmethod
    def from_dict(cls, data: Any, version: str | None = None) -> "RemoteSystemInfo":
        data = _require_mapping(data, "system info")
        num_executors = data.get("numExecutors")
        return cls(
            mode=data.get("mode"),
            node_name=data.get("nodeName"),
            num_executors=num_executors if isinstance(num_executors, int) else 0,
            description=data.get("nodeDescription") or data.get("description"),
            version=version,
        )
