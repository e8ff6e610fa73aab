"""
End-to-end tests for the fleet admin CLI.

Runs the CLI as a subprocess against a temporary database. Nothing here
needs a reachable CI master: registration against a closed port is
expected to fail its connectivity probe.
"""

import asyncio
import json
import os
import subprocess
import sys
import tempfile
from datetime import UTC, datetime

import pytest

from fleet_common.models import Instance
from fleet_persistence.sqlite_repository import SQLiteFleetRepository


@pytest.fixture
def test_db_path():
    """Create a temporary database file for testing."""
    fd, path = tempfile.mkstemp(suffix=".db", prefix="fleet_admin_test_")
    os.close(fd)

    async def init_db():
        repo = SQLiteFleetRepository(path)
        await repo.initialize()
        await repo.close()

    asyncio.run(init_db())

    yield path

    # Clean up test database after test
    if os.path.exists(path):
        os.unlink(path)


def seed_instances(db_path, *instances):
    """Insert instances directly, bypassing the connectivity probe."""

    async def seed():
        repo = SQLiteFleetRepository(db_path)
        await repo.initialize()
        try:
            for instance in instances:
                await repo.create_instance(instance)
                await repo.update_health(
                    instance.id, instance.health_status, datetime.now(UTC)
                )
        finally:
            await repo.close()

    asyncio.run(seed())


def make_instance(instance_id, **overrides):
    values = {
        "id": instance_id,
        "name": f"ci-{instance_id}",
        "url": f"https://{instance_id}.example.com",
        "username": "admin",
        "api_token": "super-secret",
        "health_status": "healthy",
    }
    values.update(overrides)
    return Instance(**values)


def run_admin_command(*args, db_path):
    """Helper to run fleet-admin commands."""
    cmd_env = os.environ.copy()
    cmd_env["FLEET_DB_PATH"] = db_path
    cmd_env.pop("FLEET_REDIS_URL", None)

    return subprocess.run(
        [sys.executable, "-m", "fleet_admin.cli", *args],
        capture_output=True,
        text=True,
        env=cmd_env,
        timeout=60,
    )


class TestInstanceCommands:
    def test_list_empty(self, test_db_path):
        result = run_admin_command("instance", "list", db_path=test_db_path)

        assert result.returncode == 0
        assert "No instances found." in result.stdout

    def test_list_json_hides_tokens(self, test_db_path):
        seed_instances(test_db_path, make_instance("a", cluster_id="eu"))

        result = run_admin_command("instance", "list", "--json", db_path=test_db_path)

        assert result.returncode == 0
        data = json.loads(result.stdout)
        assert len(data) == 1
        assert data[0]["name"] == "ci-a"
        assert data[0]["cluster_id"] == "eu"
        assert "api_token" not in data[0]
        assert "super-secret" not in result.stdout

    def test_register_unreachable_master_fails(self, test_db_path):
        result = run_admin_command(
            "instance",
            "register",
            "--name",
            "ghost",
            "--url",
            "http://127.0.0.1:1",
            "--username",
            "admin",
            "--token",
            "token",
            db_path=test_db_path,
        )

        assert result.returncode == 1
        assert "Cannot connect to CI instance" in result.stderr

        listing = run_admin_command("instance", "list", db_path=test_db_path)
        assert "No instances found." in listing.stdout

    def test_register_invalid_url(self, test_db_path):
        result = run_admin_command(
            "instance",
            "register",
            "--name",
            "bad",
            "--url",
            "ci.example.com",
            "--username",
            "admin",
            "--token",
            "token",
            db_path=test_db_path,
        )

        assert result.returncode == 1
        assert "Invalid url" in result.stderr

    def test_get_unknown_instance(self, test_db_path):
        result = run_admin_command("instance", "get", "missing", db_path=test_db_path)

        assert result.returncode == 1
        assert "Instance not found" in result.stderr

    def test_update_and_promote(self, test_db_path):
        seed_instances(
            test_db_path,
            make_instance("a", cluster_id="eu", is_primary=True),
            make_instance("b", cluster_id="eu"),
        )

        result = run_admin_command(
            "instance", "update", "b", "--priority", "7", db_path=test_db_path
        )
        assert result.returncode == 0
        assert "Instance updated" in result.stdout

        result = run_admin_command("instance", "promote", "b", db_path=test_db_path)
        assert result.returncode == 0

        listing = run_admin_command("instance", "list", "--json", db_path=test_db_path)
        by_id = {i["id"]: i for i in json.loads(listing.stdout)}
        assert by_id["b"]["priority"] == 7
        assert by_id["b"]["is_primary"] is True
        assert by_id["a"]["is_primary"] is False

    def test_update_clears_cluster(self, test_db_path):
        seed_instances(test_db_path, make_instance("a", cluster_id="eu"))

        result = run_admin_command(
            "instance", "update", "a", "--no-cluster", db_path=test_db_path
        )
        assert result.returncode == 0

        listing = run_admin_command("instance", "list", "--json", db_path=test_db_path)
        data = json.loads(listing.stdout)
        assert data[0]["cluster_id"] is None

    def test_update_rejects_cluster_with_no_cluster(self, test_db_path):
        seed_instances(test_db_path, make_instance("a", cluster_id="eu"))

        result = run_admin_command(
            "instance",
            "update",
            "a",
            "--cluster",
            "us",
            "--no-cluster",
            db_path=test_db_path,
        )

        assert result.returncode == 1
        assert "mutually exclusive" in result.stderr

    def test_update_without_changes(self, test_db_path):
        result = run_admin_command("instance", "update", "a", db_path=test_db_path)

        assert result.returncode == 1
        assert "Nothing to update" in result.stderr

    def test_remove(self, test_db_path):
        seed_instances(test_db_path, make_instance("a"))

        result = run_admin_command("instance", "remove", "a", db_path=test_db_path)
        assert result.returncode == 0

        again = run_admin_command("instance", "remove", "a", db_path=test_db_path)
        assert again.returncode == 1
        assert "CI instance not found" in again.stderr

    def test_stats(self, test_db_path):
        seed_instances(test_db_path, make_instance("a", max_connections=10))

        result = run_admin_command(
            "instance", "stats", "a", "--json", db_path=test_db_path
        )

        assert result.returncode == 0
        stats = json.loads(result.stdout)
        assert stats["total_jobs"] == 0
        assert stats["utilization_percent"] == 0.0


class TestFleetCommands:
    def test_cluster_list(self, test_db_path):
        seed_instances(
            test_db_path,
            make_instance("a", cluster_id="eu"),
            make_instance("b", cluster_id="eu", health_status="unhealthy"),
            make_instance("c"),
        )

        result = run_admin_command("cluster", "list", "--json", db_path=test_db_path)

        assert result.returncode == 0
        clusters = {c["cluster_id"]: c for c in json.loads(result.stdout)}
        assert clusters["eu"]["total_instances"] == 2
        assert clusters["eu"]["healthy_instances"] == 1
        assert clusters["default"]["total_instances"] == 1

    def test_cluster_list_empty(self, test_db_path):
        result = run_admin_command("cluster", "list", db_path=test_db_path)

        assert result.returncode == 0
        assert "No active instances found." in result.stdout

    def test_select(self, test_db_path):
        seed_instances(
            test_db_path,
            make_instance("busy", current_load=5),
            make_instance("idle", current_load=0),
        )

        result = run_admin_command("select", db_path=test_db_path)

        assert result.returncode == 0
        assert result.stdout.startswith("idle ")

    def test_select_without_healthy_instances(self, test_db_path):
        result = run_admin_command(
            "select", "--strategy", "round_robin", db_path=test_db_path
        )

        assert result.returncode == 1
        assert "No healthy CI instances available" in result.stderr

    def test_health_check_marks_unreachable_instances(self, test_db_path):
        seed_instances(
            test_db_path, make_instance("a", url="http://127.0.0.1:1")
        )

        result = run_admin_command("health", "check", db_path=test_db_path)

        assert result.returncode == 0
        assert "unhealthy" in result.stdout

    def test_sync_run_with_no_instances(self, test_db_path):
        result = run_admin_command("sync", "run", db_path=test_db_path)

        assert result.returncode == 0
        assert "Sync pass completed" in result.stdout
