"""
Unit tests for fleet_client.payloads.

Tests defaulting of optional fields and rejection of malformed payloads.
"""

from datetime import UTC, datetime

import pytest

from fleet_client.errors import RemoteDataError
from fleet_client.payloads import (
    RemoteBuild,
    RemoteJobDetail,
    RemoteJobSummary,
    RemoteNode,
    RemoteQueueItem,
    RemoteSystemInfo,
    from_epoch_millis,
)


def test_from_epoch_millis():
    assert from_epoch_millis(1705314600000) == datetime(2024, 1, 15, 10, 30, tzinfo=UTC)
    assert from_epoch_millis(None) is None
    assert from_epoch_millis(0) is None
    assert from_epoch_millis("1705314600000") is None


class TestRemoteJobSummary:
    def test_with_last_build(self):
        summary = RemoteJobSummary.from_dict(
            {
                "name": "api",
                "url": "https://ci/job/api/",
                "color": "blue",
                "lastBuild": {"number": 12, "url": "https://ci/job/api/12/"},
            }
        )

        assert summary.name == "api"
        assert summary.color == "blue"
        assert summary.last_build is not None
        assert summary.last_build.number == 12
        assert summary.last_build.timestamp is None

    def test_never_built(self):
        summary = RemoteJobSummary.from_dict({"name": "new-job", "lastBuild": None})
        assert summary.last_build is None
        assert summary.url == ""

    def test_missing_name_is_rejected(self):
        with pytest.raises(RemoteDataError):
            RemoteJobSummary.from_dict({"url": "https://ci/job/x/"})

    def test_non_object_is_rejected(self):
        with pytest.raises(RemoteDataError):
            RemoteJobSummary.from_dict(["api"])

    def test_non_integer_build_number_is_rejected(self):
        with pytest.raises(RemoteDataError):
            RemoteJobSummary.from_dict({"name": "api", "lastBuild": {"number": "12"}})


class TestRemoteJobDetail:
    def test_defaults(self):
        detail = RemoteJobDetail.from_dict({})

        assert detail.buildable is True
        assert detail.in_queue is False
        assert detail.health_score == 100
        assert detail.description == ""
        assert detail.display_name is None

    def test_health_score_from_first_report(self):
        detail = RemoteJobDetail.from_dict(
            {"healthReport": [{"score": 40}, {"score": 90}]}
        )
        assert detail.health_score == 40

    def test_zero_health_score_is_kept(self):
        detail = RemoteJobDetail.from_dict({"healthReport": [{"score": 0}]})
        assert detail.health_score == 0

    def test_health_score_is_clamped(self):
        assert RemoteJobDetail.from_dict({"healthReport": [{"score": 250}]}).health_score == 100
        assert RemoteJobDetail.from_dict({"healthReport": [{"score": -5}]}).health_score == 0

    def test_explicit_flags(self):
        detail = RemoteJobDetail.from_dict(
            {
                "_class": "org.jenkinsci.plugins.workflow.job.WorkflowJob",
                "displayName": "API",
                "buildable": False,
                "inQueue": True,
            }
        )
        assert detail.class_name.endswith("WorkflowJob")
        assert detail.display_name == "API"
        assert detail.buildable is False
        assert detail.in_queue is True


class TestRemoteBuild:
    def test_running_build(self):
        build = RemoteBuild.from_dict(
            {"number": 5, "result": None, "timestamp": 1705314600000, "duration": 0}
        )
        assert build.result is None
        assert build.duration == 0
        assert build.timestamp == datetime(2024, 1, 15, 10, 30, tzinfo=UTC)

    def test_missing_number_is_rejected(self):
        with pytest.raises(RemoteDataError):
            RemoteBuild.from_dict({"result": "SUCCESS"})

    def test_boolean_number_is_rejected(self):
        with pytest.raises(RemoteDataError):
            RemoteBuild.from_dict({"number": True})


class TestRemoteNode:
    def test_executors(self):
        node = RemoteNode.from_dict(
            {
                "displayName": "agent-1",
                "offline": True,
                "executors": [
                    {"number": 0, "idle": True},
                    {
                        "number": 1,
                        "idle": False,
                        "currentExecutable": {"url": "https://ci/job/api/7/"},
                    },
                ],
            }
        )

        assert node.name == "agent-1"
        assert node.offline is True
        assert [e.number for e in node.executors] == [0, 1]
        assert node.executors[1].current_build_url == "https://ci/job/api/7/"
        assert node.executors[0].current_build_url is None

    def test_executor_number_falls_back_to_position(self):
        node = RemoteNode.from_dict(
            {"displayName": "built-in", "executors": [{"idle": True}, {"idle": True}]}
        )
        assert [e.number for e in node.executors] == [0, 1]

    def test_malformed_executor_list(self):
        with pytest.raises(RemoteDataError):
            RemoteNode.from_dict({"displayName": "agent", "executors": "none"})


def test_queue_item():
    item = RemoteQueueItem.from_dict(
        {
            "id": 42,
            "task": {"name": "api", "url": "https://ci/job/api/"},
            "why": "Waiting for next available executor",
            "stuck": True,
        }
    )
    assert item.id == 42
    assert item.task_name == "api"
    assert item.stuck is True
    assert item.blocked is False


def test_system_info_version_comes_from_caller():
    info = RemoteSystemInfo.from_dict(
        {"mode": "NORMAL", "numExecutors": 2, "nodeDescription": "the master"},
        version="2.426.1",
    )
    assert info.mode == "NORMAL"
    assert info.num_executors == 2
    assert info.description == "the master"
    assert info.version == "2.426.1"
