"""Cluster operator CLI (clusterctl).

Usage:
    clusterctl run --manifests DIR           # Run the operator against manifests
    clusterctl validate DIR                  # Validate manifests without reconciling
    clusterctl reconcile DIR KIND/NS/NAME    # Reconcile one resource synchronously
    clusterctl reconcile DIR KEY --delete    # Tear one resource down synchronously
    clusterctl subnets 10.0.0.0/16           # Print the subnet plan for a VPC CIDR
"""

from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path

import click
import yaml

from .aws.cidr import plan_subnets
from .config import Config, ConfigurationError
from .errors import FatalConfigurationError
from .main import main as operator_main
from .main import setup_logging
from .models import ResourceKey
from .reconciler import Reconciler
from .spec_loader import SpecLoadError, load_into, load_manifests
from .store import MemoryStore

DEFAULT_MAX_PASSES = 50
DEFAULT_ZONES = 3


def _load_config(manifests_dir: Path | None) -> Config:
    try:
        return Config.from_env(manifests_dir=manifests_dir)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.version_option(package_name="cluster-lifecycle-operator", prog_name="clusterctl")
def cli() -> None:
    """Cluster lifecycle operator CLI."""
    pass


@cli.command()
@click.option(
    "--manifests",
    "manifests_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Manifest directory (default: $MANIFESTS_DIR)",
)
def run(manifests_dir: Path | None) -> None:
    """Run the operator until interrupted."""
    config = _load_config(manifests_dir)
    sys.exit(asyncio.run(operator_main(config)))


@cli.command()
@click.argument("manifests_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
def validate(manifests_dir: Path) -> None:
    """Validate every manifest in a directory."""
    try:
        resources = load_manifests(manifests_dir)
    except SpecLoadError as e:
        click.echo(f"Invalid manifests: {e}", err=True)
        sys.exit(1)

    for resource in resources:
        click.echo(str(resource.key))
    click.echo(f"{len(resources)} resources valid")


@cli.command()
@click.argument("manifests_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.argument("key")
@click.option("--max-passes", default=DEFAULT_MAX_PASSES, show_default=True, help="Give up after N passes")
@click.option("--no-wait", is_flag=True, help="Do not sleep between requeued passes")
@click.option("--delete", is_flag=True, help="Tear the resource down instead of provisioning it")
@click.option("--verbose", "-v", is_flag=True, help="Log each step")
def reconcile(
    manifests_dir: Path, key: str, max_passes: int, no_wait: bool, delete: bool, verbose: bool
) -> None:
    """Reconcile one resource until it settles, outside the dispatcher.

    KEY is Kind/namespace/name. With --delete the resource is torn down in
    the cloud and removed instead.
    """
    try:
        resource_key = ResourceKey.parse(key)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="KEY") from e

    config = _load_config(manifests_dir)
    if verbose:
        setup_logging("DEBUG", json_logs=False)

    store = MemoryStore()
    try:
        load_into(store, manifests_dir)
    except SpecLoadError as e:
        click.echo(f"Invalid manifests: {e}", err=True)
        sys.exit(1)

    if store.find(resource_key) is None:
        click.echo(f"Resource not found: {resource_key}", err=True)
        sys.exit(1)

    reconciler = Reconciler(config, store)
    if delete:
        reconciler.request_teardown(resource_key)

    exit_code = 1
    for attempt in range(1, max_passes + 1):
        result = reconciler.reconcile(resource_key)
        click.echo(
            f"pass {attempt}: requeue={result.requeue} "
            f"requeue_after={result.requeue_after} error={result.error}"
        )
        if result.error is not None:
            break
        if result.success:
            exit_code = 0
            break
        if result.requeue_after > 0 and not no_wait:
            time.sleep(result.requeue_after)
    else:
        click.echo(f"Still not settled after {max_passes} passes", err=True)

    resource = store.find(resource_key)
    if resource is None:
        click.echo(f"Resource deleted: {resource_key}")
    else:
        status = resource.status.model_dump(by_alias=True, mode="json")
        click.echo(yaml.safe_dump(status, sort_keys=False), nl=False)
    sys.exit(exit_code)


@cli.command()
@click.argument("cidr")
@click.option("--zones", default=DEFAULT_ZONES, show_default=True, help="Availability zones")
def subnets(cidr: str, zones: int) -> None:
    """Print the public and private subnets carved from a VPC CIDR."""
    try:
        plan = plan_subnets(cidr, zones)
    except FatalConfigurationError as e:
        raise click.ClickException(str(e)) from e

    for index, subnet in enumerate(plan.public):
        click.echo(f"public-{index}\t{subnet}")
    for index, subnet in enumerate(plan.private):
        click.echo(f"private-{index}\t{subnet}")


if __name__ == "__main__":
    cli()
