"""
Admin CLI for managing the CI fleet.

Provides commands for registering and maintaining CI instances, inspecting
clusters, and running health checks or sync passes on demand.
"""

import asyncio
import json
import os
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click

from fleet_common.errors import FleetError
from fleet_common.models import InstanceConfig
from fleet_controller.load_balancer import STRATEGIES
from fleet_controller.service import FleetService, create_fleet_service
from fleet_persistence import create_cache
from fleet_persistence.sqlite_repository import SQLiteFleetRepository

T = TypeVar("T")


def get_db_path() -> str:
    """Get the database path from environment variable or default."""
    return os.environ.get("FLEET_DB_PATH", str(Path.home() / ".fleet" / "fleet.db"))


def get_redis_url() -> str | None:
    return os.environ.get("FLEET_REDIS_URL") or None


def run_with_service(action: Callable[[FleetService], Awaitable[T]]) -> T:
    """
    Open the mirror, run an action against a fleet service, and clean up.

    Fleet errors are reported on stderr with exit code 1.
    """

    async def run() -> T:
        db_path = get_db_path()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        repo = SQLiteFleetRepository(db_path)
        await repo.initialize()
        cache = create_cache(get_redis_url())
        service = create_fleet_service(repo, cache)

        try:
            return await action(service)
        finally:
            service.client_factory.clear_all()
            await cache.close()
            await repo.close()

    try:
        return asyncio.run(run())
    except FleetError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
def cli():
    """Fleet Admin - Manage CI instances and the fleet mirror."""
    pass


@cli.group()
def instance():
    """Manage CI instances."""
    pass


@cli.group()
def cluster():
    """Inspect clusters."""
    pass


@cli.group()
def health():
    """Run health checks."""
    pass


@cli.group()
def sync():
    """Run sync passes."""
    pass


# ============================================================================
# Instance Commands
# ============================================================================


@instance.command("register")
@click.option("--name", required=True, help="Display name (unique)")
@click.option("--url", required=True, help="Base URL of the CI master")
@click.option("--username", required=True, help="API user")
@click.option("--token", "api_token", required=True, help="API token")
@click.option("--description", default="", help="Free-text description")
@click.option("--cluster", "cluster_id", default=None, help="Cluster identifier")
@click.option("--primary", "is_primary", is_flag=True, help="Mark as the cluster's primary")
@click.option("--priority", type=click.IntRange(min=0), default=0)
@click.option("--max-connections", type=click.IntRange(min=1), default=100)
@click.option("--lb-url", "load_balancer_url", default=None, help="Load-balancer-fronted URL")
@click.option("--health-url", "health_check_url", default=None, help="Health probe URL")
def instance_register(**options: Any):
    """Register a CI instance (the instance must be reachable)."""
    config = InstanceConfig(**options)

    registered = run_with_service(lambda service: service.register_instance(config))

    click.echo("✓ Instance registered successfully")
    click.echo(f"  ID:      {registered.id}")
    click.echo(f"  Name:    {registered.name}")
    click.echo(f"  URL:     {registered.url}")
    click.echo(f"  Cluster: {registered.cluster_key}")


@instance.command("list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def instance_list(json_output: bool):
    """List all instances."""
    instances = run_with_service(lambda service: service.repository.list_instances())

    if json_output:
        echo_json([i.to_dict(include_secrets=False) for i in instances])
        return

    if not instances:
        click.echo("No instances found.")
        return

    click.echo(
        f"\n{'ID':<38} {'Name':<20} {'Cluster':<12} {'Health':<10} {'Load':<10} {'Active':<6}"
    )
    click.echo("-" * 100)
    for i in instances:
        name = f"{i.name}*" if i.is_primary else i.name
        load = f"{i.current_load}/{i.max_connections}"
        active = "yes" if i.is_active else "no"
        click.echo(
            f"{i.id:<38} {name:<20} {i.cluster_key:<12} {i.health_status:<10} {load:<10} {active:<6}"
        )
    click.echo("\n  * primary\n")


@instance.command("get")
@click.argument("instance_id")
def instance_get(instance_id: str):
    """Show instance details."""

    async def get(service: FleetService):
        return await service.repository.get_instance(instance_id)

    found = run_with_service(get)
    if not found:
        click.echo(f"Error: Instance not found: {instance_id}", err=True)
        sys.exit(1)

    click.echo("\nInstance Details:")
    for key, value in found.to_dict(include_secrets=False).items():
        click.echo(f"  {key + ':':<20} {value if value is not None else '-'}")
    click.echo()


@instance.command("update")
@click.argument("instance_id")
@click.option("--name", default=None)
@click.option("--url", default=None)
@click.option("--username", default=None)
@click.option("--token", "api_token", default=None, help="Rotate the API token")
@click.option("--description", default=None)
@click.option("--cluster", "cluster_id", default=None)
@click.option(
    "--no-cluster", "clear_cluster", is_flag=True, help="Move to the default cluster"
)
@click.option("--priority", type=click.IntRange(min=0), default=None)
@click.option("--max-connections", type=click.IntRange(min=1), default=None)
@click.option("--lb-url", "load_balancer_url", default=None)
@click.option("--health-url", "health_check_url", default=None)
@click.option("--active/--inactive", "is_active", default=None)
def instance_update(instance_id: str, **options: Any):
    """Update instance settings or rotate credentials."""
    clear_cluster = options.pop("clear_cluster")
    if clear_cluster and options["cluster_id"] is not None:
        click.echo("Error: --cluster and --no-cluster are mutually exclusive", err=True)
        sys.exit(1)

    changes = {key: value for key, value in options.items() if value is not None}
    if clear_cluster:
        changes["cluster_id"] = None
    if not changes:
        click.echo("Error: Nothing to update", err=True)
        sys.exit(1)

    updated = run_with_service(
        lambda service: service.update_instance(instance_id, **changes)
    )
    click.echo(f"✓ Instance updated: {updated.name}")


@instance.command("promote")
@click.argument("instance_id")
def instance_promote(instance_id: str):
    """Make an instance the primary of its cluster."""
    promoted = run_with_service(lambda service: service.promote_instance(instance_id))
    click.echo(f"✓ {promoted.name} is now primary of cluster {promoted.cluster_key}")


@instance.command("remove")
@click.argument("instance_id")
def instance_remove(instance_id: str):
    """Remove an instance and its mirrored jobs and builds."""
    run_with_service(lambda service: service.remove_instance(instance_id))
    click.echo(f"✓ Instance removed: {instance_id}")


@instance.command("stats")
@click.argument("instance_id")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def instance_stats(instance_id: str, json_output: bool):
    """Show utilization, job and executor counts."""
    stats = run_with_service(lambda service: service.get_instance_stats(instance_id))

    if json_output:
        echo_json(stats)
        return

    click.echo(f"\nStatistics for {stats['name']}:")
    click.echo(
        f"  Load:        {stats['current_load']}/{stats['max_connections']} "
        f"({stats['utilization_percent']:.1f}%)"
    )
    click.echo(f"  Health:      {stats['health_status']}")
    click.echo(f"  Jobs:        {stats['total_jobs']} ({stats['active_jobs']} running)")
    click.echo(
        f"  Executors:   {stats['total_executors']} "
        f"({stats['busy_executors']} busy, {stats['executor_utilization']:.1f}%)"
    )
    click.echo()


@instance.command("test")
@click.option("--url", required=True)
@click.option("--username", required=True)
@click.option("--token", "api_token", required=True)
def instance_test(url: str, username: str, api_token: str):
    """Test a connection without registering anything."""
    result = run_with_service(
        lambda service: service.test_connection(url, username, api_token)
    )
    click.echo(f"✓ Connection successful (version {result['version']})")


# ============================================================================
# Cluster, Health, Sync and Selection Commands
# ============================================================================


@cluster.command("list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def cluster_list(json_output: bool):
    """List clusters with aggregate load and health."""
    clusters = run_with_service(lambda service: service.list_clusters())

    if json_output:
        echo_json(clusters)
        return

    if not clusters:
        click.echo("No active instances found.")
        return

    click.echo(f"\n{'Cluster':<20} {'Instances':<10} {'Healthy':<10} {'Load':<15}")
    click.echo("-" * 60)
    for c in clusters:
        load = f"{c['total_load']}/{c['total_capacity']}"
        click.echo(
            f"{c['cluster_id']:<20} {c['total_instances']:<10} "
            f"{c['healthy_instances']:<10} {load:<15}"
        )
    click.echo()


@health.command("check")
def health_check():
    """Probe every active instance and record its health."""

    async def check(service: FleetService):
        statuses = await service.perform_health_checks()
        instances = await service.repository.list_instances(active_only=True)
        return [(i.name, statuses.get(i.id, i.health_status)) for i in instances]

    results = run_with_service(check)
    if not results:
        click.echo("No active instances found.")
        return
    for name, status in results:
        click.echo(f"  {name:<30} {status}")


@sync.command("run")
def sync_run():
    """Run one sync pass over every active instance."""
    run_with_service(lambda service: service.trigger_sync())
    click.echo("✓ Sync pass completed")


@cli.command("select")
@click.option(
    "--strategy",
    type=click.Choice(STRATEGIES),
    default="least_load",
    show_default=True,
)
@click.option("--cluster", "cluster_id", default=None)
def select(strategy: str, cluster_id: str | None):
    """Show which instance would receive new work."""
    chosen = run_with_service(
        lambda service: service.select_instance(strategy, cluster_id)  # type: ignore[arg-type]
    )
    if chosen is None:
        click.echo("Error: No healthy CI instances available", err=True)
        sys.exit(1)
    click.echo(f"{chosen.id} {chosen.name} {chosen.effective_base_url}")


if __name__ == "__main__":
    cli()
