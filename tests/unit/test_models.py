"""
Unit tests for fleet_common.models.

Tests the remote-vocabulary mapping tables and the Instance model's
URL resolution and serialization.
"""

from datetime import UTC, datetime, timedelta

import pytest

from fleet_common.models import (
    Instance,
    InstanceConfig,
    build_status_from_result,
    job_type_from_class,
    status_from_color,
)


class TestStatusFromColor:
    """Test suite for status_from_color."""

    @pytest.mark.parametrize(
        "color,expected",
        [
            ("blue", "success"),
            ("red", "failure"),
            ("yellow", "unstable"),
            ("aborted", "aborted"),
            ("notbuilt", "not_built"),
            ("disabled", "not_built"),
            ("blue_anime", "running"),
        ],
    )
    def test_known_colors(self, color, expected):
        assert status_from_color(color) == expected

    def test_animated_color_means_running(self):
        """Any color currently building maps to running, red included."""
        assert status_from_color("red_anime") == "running"
        assert status_from_color("aborted_anime") == "running"

    def test_missing_color(self):
        assert status_from_color(None) == "not_built"
        assert status_from_color("") == "not_built"


class TestJobTypeFromClass:
    """Test suite for job_type_from_class."""

    @pytest.mark.parametrize(
        "class_name,expected",
        [
            ("org.jenkinsci.plugins.workflow.job.WorkflowJob", "pipeline"),
            (
                "org.jenkinsci.plugins.workflow.multibranch.WorkflowMultiBranchProject",
                "multibranch",
            ),
            ("com.cloudbees.hudson.plugins.folder.Folder", "folder"),
            ("hudson.maven.MavenModuleSet", "maven"),
            ("hudson.model.FreeStyleProject", "freestyle"),
        ],
    )
    def test_known_classes(self, class_name, expected):
        assert job_type_from_class(class_name) == expected

    def test_missing_class_is_freestyle(self):
        assert job_type_from_class(None) == "freestyle"
        assert job_type_from_class("") == "freestyle"


class TestBuildStatusFromResult:
    """Test suite for build_status_from_result."""

    def test_finished_results(self):
        assert build_status_from_result("SUCCESS") == "success"
        assert build_status_from_result("FAILURE") == "failure"
        assert build_status_from_result("UNSTABLE") == "unstable"
        assert build_status_from_result("ABORTED") == "aborted"
        assert build_status_from_result("NOT_BUILT") == "not_built"

    def test_missing_result_means_running(self):
        assert build_status_from_result(None) == "running"
        assert build_status_from_result("") == "running"

    def test_unknown_result_means_running(self):
        assert build_status_from_result("SOMETHING_NEW") == "running"


class TestInstance:
    """Test suite for Instance class."""

    def make_instance(self, **overrides):
        values = {
            "id": "inst-1",
            "name": "ci-east",
            "url": "https://ci-east.example.com/",
            "username": "admin",
            "api_token": "secret-token",
        }
        values.update(overrides)
        return Instance(**values)

    def test_effective_base_url_defaults_to_url(self):
        instance = self.make_instance()
        assert instance.effective_base_url == "https://ci-east.example.com"

    def test_effective_base_url_prefers_load_balancer(self):
        instance = self.make_instance(load_balancer_url="https://lb.example.com")
        assert instance.effective_base_url == "https://lb.example.com"

    def test_effective_health_url(self):
        assert (
            self.make_instance().effective_health_url
            == "https://ci-east.example.com/api/json"
        )
        custom = self.make_instance(health_check_url="https://ci-east.example.com/login")
        assert custom.effective_health_url == "https://ci-east.example.com/login"

    def test_cluster_key(self):
        assert self.make_instance().cluster_key == "default"
        assert self.make_instance(cluster_id="eu").cluster_key == "eu"

    def test_seconds_since_sync(self):
        now = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
        assert self.make_instance().seconds_since_sync(now) is None

        instance = self.make_instance(last_sync_at=now - timedelta(seconds=90))
        assert instance.seconds_since_sync(now) == 90.0

    def test_to_dict_hides_token_for_display(self):
        result = self.make_instance().to_dict(include_secrets=False)
        assert "api_token" not in result
        assert result["name"] == "ci-east"
        assert result["health_status"] == "unknown"

    def test_dict_round_trip(self):
        checked = datetime(2024, 1, 15, 10, 30, tzinfo=UTC)
        instance = self.make_instance(
            cluster_id="eu",
            is_primary=True,
            priority=3,
            current_load=7,
            health_status="healthy",
            last_health_check=checked,
        )

        restored = Instance.from_dict(instance.to_dict())

        assert restored == instance

    def test_from_dict_ignores_unknown_keys(self):
        data = self.make_instance().to_dict()
        data["unexpected"] = "value"
        assert Instance.from_dict(data).name == "ci-east"


class TestInstanceConfig:
    def test_to_instance(self):
        config = InstanceConfig(
            name="ci-west",
            url="https://ci-west.example.com/",
            username="bot",
            api_token="tok",
            cluster_id="us",
            priority=2,
            is_primary=True,
        )

        instance = config.to_instance("new-id")

        assert instance.id == "new-id"
        assert instance.url == "https://ci-west.example.com"
        assert instance.is_primary
        assert instance.cluster_id == "us"
        assert instance.priority == 2
        assert instance.current_load == 0
        assert instance.health_status == "unknown"
        assert instance.is_active
