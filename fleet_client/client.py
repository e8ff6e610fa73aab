"""
HTTP client for one remote CI master.

Each call issues a single basic-authenticated request against the
instance's effective base URL and returns typed payloads. Failures raise
RemoteAPIError subclasses; the client performs no retries.
"""

import logging
from collections.abc import Callable
from typing import Any, TypeVar
from urllib.parse import quote

import requests

from fleet_common.models import Instance

from .errors import (
    RemoteAPIError,
    RemoteAuthError,
    RemoteConnectionError,
    RemoteDataError,
)
from .payloads import (
    RemoteBuild,
    RemoteJobDetail,
    RemoteJobSummary,
    RemoteNode,
    RemoteQueueItem,
    RemoteSystemInfo,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT = 30.0
HEALTH_TIMEOUT = 5.0
TRIGGER_TIMEOUT = 5.0

JOBS_TREE = "jobs[name,url,color,lastBuild[number,url,timestamp,result]]"
BUILDS_TREE = "builds[number,url,result,timestamp,duration]{{0,{limit}}}"
COMPUTER_TREE = (
    "computer[displayName,idle,offline,"
    "executors[number,idle,currentExecutable[url]]]"
)


def job_path(job_name: str) -> str:
    """
    Build the URL path of a job.

    Folder-qualified names ("team/service") become nested /job/ segments.
    """
    return "".join(f"/job/{quote(part, safe='')}" for part in job_name.split("/"))


class RemoteClient:
    """
    Client for a single CI master.

    Holds one requests.Session so connection pooling and the encoded
    credentials are reused across calls.
    """

    def __init__(self, instance: Instance, timeout: float = DEFAULT_TIMEOUT):
        """
        Initialize the client.

        Args:
            instance: Instance to talk to (URL and credentials are copied)
            timeout: Default per-request timeout in seconds
        """
        self.instance_id = instance.id
        self.base_url = instance.effective_base_url
        self.health_url = instance.effective_health_url
        self.timeout = timeout
        self.session = requests.Session()
        self.session.auth = (instance.username, instance.api_token)
        self.session.headers.update({"Accept": "application/json"})

    def _send(
        self,
        method: str,
        url: str,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> requests.Response:
        """Send a request and translate failures into RemoteAPIError types."""
        try:
            response = self.session.request(
                method, url, timeout=timeout or self.timeout, **kwargs
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Remote request failed for {url}: {e}")
            raise RemoteConnectionError(f"Cannot reach {url}: {e}", url=url) from e

        if response.status_code in (401, 403):
            raise RemoteAuthError(
                f"Authentication rejected by {url}: {response.status_code}",
                status_code=response.status_code,
                url=url,
            )
        if not response.ok:
            raise RemoteAPIError(
                f"Remote API error: {response.status_code} {response.reason}",
                status_code=response.status_code,
                url=url,
            )
        return response

    def _get_json(self, endpoint: str, params: dict[str, str] | None = None) -> Any:
        url = f"{self.base_url}{endpoint}"
        response = self._send("GET", url, params=params)
        try:
            return response.json()
        except ValueError as e:
            raise RemoteDataError(
                f"Invalid JSON from {url}", status_code=response.status_code, url=url
            ) from e

    @staticmethod
    def _as_object(data: Any, what: str) -> dict[str, Any]:
        if not isinstance(data, dict):
            raise RemoteDataError(f"Expected an object from {what}")
        return data

    @staticmethod
    def _as_list(data: dict[str, Any], key: str, what: str) -> list[Any]:
        value = data.get(key) or []
        if not isinstance(value, list):
            raise RemoteDataError(f"Expected a list for {key!r} from {what}")
        return value

    def _parse_entries(
        self, items: list[Any], parse: Callable[[Any], T], what: str
    ) -> list[T]:
        """Parse listing entries one by one; malformed entries are skipped."""
        parsed = []
        for index, item in enumerate(items):
            try:
                parsed.append(parse(item))
            except RemoteDataError as e:
                logger.warning(
                    f"Skipping malformed entry {index} in {what} "
                    f"from instance {self.instance_id}: {e}"
                )
        return parsed

    def get_jobs(self) -> list[RemoteJobSummary]:
        """List the instance's top-level jobs with their last build reference."""
        data = self._as_object(
            self._get_json("/api/json", {"tree": JOBS_TREE}), "job listing"
        )
        return self._parse_entries(
            self._as_list(data, "jobs", "job listing"),
            RemoteJobSummary.from_dict,
            "job listing",
        )

    def get_job(self, job_name: str) -> RemoteJobDetail:
        return RemoteJobDetail.from_dict(self._get_json(f"{job_path(job_name)}/api/json"))

    def get_builds(self, job_name: str, limit: int = 20) -> list[RemoteBuild]:
        """
        Get the most recent builds of a job.

        Args:
            job_name: Job name (folder-qualified names allowed)
            limit: Maximum number of builds, newest first
        """
        data = self._as_object(
            self._get_json(
                f"{job_path(job_name)}/api/json",
                {"tree": BUILDS_TREE.format(limit=limit)},
            ),
            "build listing",
        )
        return self._parse_entries(
            self._as_list(data, "builds", "build listing"),
            RemoteBuild.from_dict,
            f"build listing of {job_name}",
        )

    def get_build(self, job_name: str, build_number: int) -> RemoteBuild:
        return RemoteBuild.from_dict(
            self._get_json(f"{job_path(job_name)}/{build_number}/api/json")
        )

    def get_console_output(self, job_name: str, build_number: int) -> str:
        """Get the full plain-text console log of a finished or running build."""
        url = f"{self.base_url}{job_path(job_name)}/{build_number}/consoleText"
        return self._send("GET", url).text

    def trigger_build(
        self, job_name: str, parameters: dict[str, Any] | None = None
    ) -> str | None:
        """
        Queue a build of a job.

        Args:
            job_name: Job name
            parameters: Build parameters; uses buildWithParameters when given

        Returns:
            URL of the queue item when the remote reports one
        """
        endpoint = "buildWithParameters" if parameters else "build"
        url = f"{self.base_url}{job_path(job_name)}/{endpoint}"
        response = self._send(
            "POST", url, timeout=TRIGGER_TIMEOUT, data=parameters or None
        )
        logger.info(f"Triggered build of {job_name} on instance {self.instance_id}")
        return response.headers.get("Location")

    def get_executors(self) -> list[RemoteNode]:
        data = self._as_object(
            self._get_json("/computer/api/json", {"tree": COMPUTER_TREE}),
            "computer listing",
        )
        return [
            RemoteNode.from_dict(item)
            for item in self._as_list(data, "computer", "computer listing")
        ]

    def get_queue(self) -> list[RemoteQueueItem]:
        data = self._as_object(self._get_json("/queue/api/json"), "queue")
        return [
            RemoteQueueItem.from_dict(item)
            for item in self._as_list(data, "items", "queue")
        ]

    def health_check(self) -> bool:
        """Return True if the instance answers its API root; never raises."""
        try:
            self._get_json("/api/json")
            return True
        except Exception as e:
            logger.debug(f"Health check failed for instance {self.instance_id}: {e}")
            return False

    def probe_health(
        self, url: str | None = None, timeout: float = HEALTH_TIMEOUT
    ) -> bool:
        """
        Probe the instance's health URL.

        Args:
            url: URL to probe (defaults to the instance's health URL)
            timeout: Seconds before the probe is abandoned

        Returns:
            True on a 2xx answer, False on any other answer

        Raises:
            RemoteConnectionError: If the instance cannot be reached
        """
        target = url or self.health_url
        try:
            response = self.session.get(target, timeout=timeout)
        except requests.exceptions.RequestException as e:
            raise RemoteConnectionError(
                f"Cannot reach {target}: {e}", url=target
            ) from e
        return response.ok

    def get_system_info(self) -> RemoteSystemInfo:
        url = f"{self.base_url}/api/json"
        response = self._send("GET", url)
        try:
            data = response.json()
        except ValueError as e:
            raise RemoteDataError(f"Invalid JSON from {url}", url=url) from e
        return RemoteSystemInfo.from_dict(data, version=response.headers.get("X-Jenkins"))

    def close(self) -> None:
        self.session.close()
