"""
Unit tests for FleetService.

Registration probes are intercepted by patching the RemoteClient class the
service builds its throwaway clients from.
"""

import os
import tempfile
from datetime import UTC, datetime
from unittest.mock import patch

import pytest
import pytest_asyncio

from fleet_client.errors import RemoteAuthError, RemoteConnectionError
from fleet_client.payloads import RemoteSystemInfo
from fleet_common.cache import instance_key
from fleet_common.errors import (
    IdentityConflictError,
    InstanceNotFoundError,
    RegistrationError,
)
from fleet_common.models import Executor, InstanceConfig, Job
from fleet_controller.service import create_fleet_service
from fleet_persistence import MemoryCache, SQLiteFleetRepository


@pytest_asyncio.fixture
async def repository():
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    repo = SQLiteFleetRepository(path)
    await repo.initialize()

    yield repo

    await repo.close()
    if os.path.exists(path):
        os.unlink(path)


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def service(repository, cache):
    service = create_fleet_service(repository, cache)
    yield service
    service.client_factory.clear_all()


@pytest.fixture
def probe():
    """Patch the probe client so registration sees a reachable master."""
    with patch("fleet_controller.service.RemoteClient") as client_class:
        client_class.return_value.get_system_info.return_value = RemoteSystemInfo(
            mode="NORMAL", num_executors=2, version="2.426.1"
        )
        yield client_class


def make_config(name="ci-east", **overrides):
    values = {
        "name": name,
        "url": f"https://{name}.example.com",
        "username": "admin",
        "api_token": "token",
    }
    values.update(overrides)
    return InstanceConfig(**values)


class TestRegistration:
    @pytest.mark.asyncio
    async def test_register_persists_after_probe(self, service, repository, probe):
        instance = await service.register_instance(make_config(cluster_id="eu"))

        stored = await repository.get_instance(instance.id)
        assert stored is not None
        assert stored.name == "ci-east"
        assert stored.cluster_id == "eu"
        assert stored.health_status == "unknown"
        probe.return_value.get_system_info.assert_called_once()
        probe.return_value.close.assert_called_once()
        # The probe client is never cached
        assert instance.id not in service.client_factory

    @pytest.mark.asyncio
    async def test_unreachable_master_is_not_persisted(
        self, service, repository, probe
    ):
        probe.return_value.get_system_info.side_effect = RemoteConnectionError(
            "Cannot reach https://ci-east.example.com/api/json"
        )

        with pytest.raises(RegistrationError, match="Cannot connect to CI instance"):
            await service.register_instance(make_config())

        assert await repository.list_instances() == []

    @pytest.mark.asyncio
    async def test_rejected_credentials_are_not_persisted(
        self, service, repository, probe
    ):
        probe.return_value.get_system_info.side_effect = RemoteAuthError(
            "Authentication rejected", status_code=401
        )

        with pytest.raises(RegistrationError):
            await service.register_instance(make_config())

        assert await repository.list_instances() == []

    @pytest.mark.asyncio
    async def test_invalid_url(self, service, probe):
        with pytest.raises(RegistrationError):
            await service.register_instance(make_config(url="ftp://ci.example.com"))
        probe.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_limits(self, service, probe):
        with pytest.raises(RegistrationError):
            await service.register_instance(make_config(max_connections=0))
        with pytest.raises(RegistrationError):
            await service.register_instance(make_config(priority=-1))

    @pytest.mark.asyncio
    async def test_duplicate_name(self, service, probe):
        await service.register_instance(make_config())

        with pytest.raises(IdentityConflictError):
            await service.register_instance(make_config())

    @pytest.mark.asyncio
    async def test_second_primary_in_cluster(self, service, probe):
        await service.register_instance(
            make_config("a", cluster_id="eu", is_primary=True)
        )

        with pytest.raises(IdentityConflictError):
            await service.register_instance(
                make_config("b", cluster_id="eu", is_primary=True)
            )

        # Another cluster may have its own primary
        other = await service.register_instance(
            make_config("c", cluster_id="us", is_primary=True)
        )
        assert other.is_primary

    @pytest.mark.asyncio
    async def test_test_connection(self, service, probe):
        result = await service.test_connection(
            "https://ci.example.com", "admin", "token"
        )

        assert result == {
            "success": True,
            "version": "2.426.1",
            "mode": "NORMAL",
            "num_executors": 2,
        }

    @pytest.mark.asyncio
    async def test_test_connection_failure(self, service, probe):
        probe.return_value.get_system_info.side_effect = RemoteConnectionError("down")

        with pytest.raises(RegistrationError, match="Connection failed"):
            await service.test_connection("https://ci.example.com", "admin", "token")


class TestAdministration:
    @pytest.mark.asyncio
    async def test_update_evicts_cached_client(self, service, probe):
        instance = await service.register_instance(make_config())
        service.client_factory.get_client(instance)
        assert instance.id in service.client_factory

        updated = await service.update_instance(instance.id, api_token="rotated")

        assert updated.api_token == "rotated"
        assert instance.id not in service.client_factory

    @pytest.mark.asyncio
    async def test_update_moves_instance_to_default_cluster(
        self, service, repository, probe
    ):
        instance = await service.register_instance(make_config(cluster_id="eu"))

        updated = await service.update_instance(instance.id, cluster_id=None)

        assert updated.cluster_id is None
        assert updated.cluster_key == "default"
        assert (await repository.get_instance(instance.id)).cluster_id is None

    @pytest.mark.asyncio
    async def test_update_unknown_instance(self, service):
        with pytest.raises(InstanceNotFoundError):
            await service.update_instance("missing", priority=1)

    @pytest.mark.asyncio
    async def test_update_rejects_bad_url(self, service, probe):
        instance = await service.register_instance(make_config())

        with pytest.raises(RegistrationError):
            await service.update_instance(instance.id, url="not a url")

    @pytest.mark.asyncio
    async def test_promote_demotes_previous_primary(
        self, service, repository, probe
    ):
        old = await service.register_instance(
            make_config("a", cluster_id="eu", is_primary=True)
        )
        new = await service.register_instance(make_config("b", cluster_id="eu"))

        promoted = await service.promote_instance(new.id)

        assert promoted.is_primary
        assert (await repository.get_instance(old.id)).is_primary is False

    @pytest.mark.asyncio
    async def test_remove_instance(self, service, repository, cache, probe):
        instance = await service.register_instance(make_config())
        service.client_factory.get_client(instance)
        await service.load_balancer.refresh_instance_cache(instance.id)

        await service.remove_instance(instance.id)

        assert await repository.get_instance(instance.id) is None
        assert instance.id not in service.client_factory
        assert await cache.get(instance_key(instance.id)) is None

    @pytest.mark.asyncio
    async def test_remove_unknown_instance(self, service):
        with pytest.raises(InstanceNotFoundError):
            await service.remove_instance("missing")


class TestSelectionAndReporting:
    async def register_healthy(self, service, repository, name, **overrides):
        instance = await service.register_instance(make_config(name, **overrides))
        await repository.update_health(instance.id, "healthy", datetime.now(UTC))
        return instance

    @pytest.mark.asyncio
    async def test_select_and_track_load(self, service, repository, probe):
        a = await self.register_healthy(service, repository, "a")
        b = await self.register_healthy(service, repository, "b")

        await service.increment_load(a.id)
        chosen = await service.select_instance("least_load")
        assert chosen.id == b.id

        await service.decrement_load(a.id)
        assert (await repository.get_instance(a.id)).current_load == 0

    @pytest.mark.asyncio
    async def test_select_with_no_instances(self, service):
        assert await service.select_instance() is None

    @pytest.mark.asyncio
    async def test_list_clusters(self, service, repository, probe):
        a = await self.register_healthy(
            service, repository, "a", cluster_id="eu", max_connections=10
        )
        await self.register_healthy(
            service, repository, "b", cluster_id="eu", max_connections=20
        )
        await service.register_instance(make_config("c"))
        await service.increment_load(a.id)

        clusters = {c["cluster_id"]: c for c in await service.list_clusters()}

        assert set(clusters) == {"eu", "default"}
        eu = clusters["eu"]
        assert eu["total_instances"] == 2
        assert eu["healthy_instances"] == 2
        assert eu["total_load"] == 1
        assert eu["total_capacity"] == 30
        assert {i["name"] for i in eu["instances"]} == {"a", "b"}
        assert clusters["default"]["healthy_instances"] == 0

    @pytest.mark.asyncio
    async def test_instance_stats(self, service, repository, probe):
        instance = await service.register_instance(make_config(max_connections=4))
        await service.increment_load(instance.id)
        await repository.upsert_job(
            Job(
                instance_id=instance.id,
                name="api",
                display_name="api",
                url="u",
                last_build_status="running",
            )
        )
        await repository.upsert_job(
            Job(instance_id=instance.id, name="web", display_name="web", url="u")
        )
        await repository.replace_executors(
            instance.id,
            [
                Executor(instance_id=instance.id, node_name="n", number=0, idle=False),
                Executor(instance_id=instance.id, node_name="n", number=1),
            ],
        )

        stats = await service.get_instance_stats(instance.id)

        assert stats["utilization_percent"] == 25.0
        assert stats["total_jobs"] == 2
        assert stats["active_jobs"] == 1
        assert stats["total_executors"] == 2
        assert stats["busy_executors"] == 1
        assert stats["idle_executors"] == 1
        assert stats["executor_utilization"] == 50.0
        assert stats["seconds_since_sync"] is None

    @pytest.mark.asyncio
    async def test_stats_for_unknown_instance(self, service):
        with pytest.raises(InstanceNotFoundError):
            await service.get_instance_stats("missing")

    @pytest.mark.asyncio
    async def test_sync_status(self, service):
        assert service.get_sync_status() == {
            "running": False,
            "is_syncing": False,
            "interval_ms": 30000,
        }
