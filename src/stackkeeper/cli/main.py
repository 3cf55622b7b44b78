"""Main CLI entry point."""

import signal
import sys
from typing import Callable, Dict, List, Optional

import click

from stackkeeper.adapters.certbot import CertbotIssuer
from stackkeeper.adapters.nginx import NginxController
from stackkeeper.adapters.swarm import DockerSwarmController
from stackkeeper.cli.output import (
    console,
    errors_table,
    print_attempt,
    print_plan,
    print_status,
    records_table,
    resources_table,
)
from stackkeeper.config.models import EnvironmentSettings
from stackkeeper.config.parser import Config, ConfigValidationError
from stackkeeper.reconciler.reconciler import Reconciler
from stackkeeper.resources.models import Resource
from stackkeeper.scheduler.scheduler import Scheduler
from stackkeeper.state.store import FileStateStore, StateStore
from stackkeeper.utils.backoff import CircuitBreaker
from stackkeeper.utils.errors import ReconcileError, ResourceNotFoundError, StateError
from stackkeeper.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_NOT_FOUND = 2
EXIT_UNAVAILABLE = 3


class Runtime:
    """Configuration together with the store and reconciler built from it."""

    def __init__(self, config: Config, store: StateStore, reconciler: Reconciler):
        self.config = config
        self.store = store
        self.reconciler = reconciler


def build_runtime(config: Config, state_dir: Optional[str] = None) -> Runtime:
    """Create the production store and adapters."""
    settings = EnvironmentSettings.from_env()
    store = FileStateStore(state_dir or config.state_dir)

    issuer = CertbotIssuer(
        live_dir=settings.live_dir,
        server=settings.acme_server,
        eab_kid=settings.acme_eab_kid,
        eab_hmac_key=settings.acme_eab_hmac_key,
        staging=settings.certbot_staging,
    )
    proxy = NginxController(
        settings.proxy_config_path,
        validate_command=settings.proxy_validate_command,
        reload_command=settings.proxy_reload_command,
        health_url=settings.proxy_health_url,
    )
    orchestrator = DockerSwarmController(base_url=settings.docker_url)

    reconciler = Reconciler(
        store,
        issuer,
        proxy,
        orchestrator,
        timeouts=config.reconciler.timeouts.to_adapter_timeouts(),
        breaker=CircuitBreaker(config.reconciler.max_attempts_per_window),
    )
    return Runtime(config, store, reconciler)


@click.group()
@click.option('--config', 'config_path', default='stackkeeper.yaml', show_default=True,
              help='Path to configuration file')
@click.option('--state-dir', help='State directory (overrides state_dir in the configuration)')
@click.option('--log-level', default='info', type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.option('--log-dir', help='Also write JSON-lines logs to this directory')
@click.pass_context
def cli(ctx, config_path, state_dir, log_level, log_dir):
    """Keep certificates, proxy configuration and services converged."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['state_dir'] = state_dir
    ctx.obj.setdefault('runtime_factory', build_runtime)

    # Setup logging
    setup_logging(log_level, log_dir)


def load_config(config_path: str) -> Config:
    """Load configuration, exiting with status 3 if the file is unusable."""
    try:
        return Config(config_path).load()
    except FileNotFoundError:
        console.print(f"[red]Error:[/red] Configuration file not found: {config_path}")
        sys.exit(EXIT_UNAVAILABLE)
    except ConfigValidationError as e:
        console.print("[red]Configuration validation failed:[/red]\n")
        console.print(str(e), markup=False)
        sys.exit(EXIT_UNAVAILABLE)


def get_runtime(ctx) -> Runtime:
    config = load_config(ctx.obj['config_path'])
    factory: Callable[..., Runtime] = ctx.obj['runtime_factory']
    return factory(config, ctx.obj.get('state_dir'))


def find_resource(runtime: Runtime, ref: str) -> Resource:
    """Resolve a key or bare id against the configuration, then the store."""
    try:
        return runtime.config.get_resource(ref)
    except ResourceNotFoundError as not_configured:
        stored = [r for r in runtime.store.list_resources() if ref in (r.key, r.id)]
        if len(stored) == 1:
            return stored[0]
        raise not_configured


def resolve_or_exit(runtime: Runtime, ref: str) -> Resource:
    try:
        return find_resource(runtime, ref)
    except ResourceNotFoundError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        for suggestion in e.suggestions:
            console.print(f"[dim]{suggestion}[/dim]")
        sys.exit(EXIT_NOT_FOUND)


def state_unavailable(e: StateError):
    logger.critical(str(e))
    console.print(f"[red]State store unavailable:[/red] {e.message}")
    sys.exit(EXIT_UNAVAILABLE)


@cli.command()
@click.argument('resource_id')
@click.option('--force', is_flag=True, help='Run even if the resource is degraded')
@click.pass_context
def reconcile(ctx, resource_id, force):
    """Reconcile one resource now."""
    runtime = get_runtime(ctx)
    try:
        resource = resolve_or_exit(runtime, resource_id)
        result = runtime.reconciler.reconcile(resource, force=force)
    except StateError as e:
        state_unavailable(e)

    print_attempt(result)
    if result.suppressed or result.coalesced or result.cancelled or result.is_failed():
        sys.exit(EXIT_FAILED)


@cli.command()
@click.argument('resource_id')
@click.pass_context
def status(ctx, resource_id):
    """Show the last reconciliation record and health of a resource."""
    runtime = get_runtime(ctx)
    try:
        resource = resolve_or_exit(runtime, resource_id)
        record = runtime.store.last_record(resource.key)
        health = runtime.reconciler.health(resource.key)
    except StateError as e:
        state_unavailable(e)

    print_status(resource.key, record, health)


@cli.command(name='list')
@click.pass_context
def list_resources(ctx):
    """List configured and stored resources."""
    print_resources(get_runtime(ctx))


def print_resources(runtime: Runtime) -> None:
    try:
        stored: Dict[str, Resource] = {r.key: r for r in runtime.store.list_resources()}
        configured = {r.key: r for r in runtime.config.resources}

        rows: List[Dict] = []
        for key in sorted(set(stored) | set(configured)):
            resource = configured.get(key) or stored[key]
            rows.append({
                "key": key,
                "kind": resource.kind.value,
                "revision": stored[key].last_applied_revision if key in stored else 0,
                "record": runtime.store.last_record(key),
                "health": runtime.reconciler.health(key),
                "configured": key in configured,
            })
    except StateError as e:
        state_unavailable(e)

    if not rows:
        console.print("[dim]No resources configured[/dim]")
        return
    console.print(resources_table(rows))


@cli.command()
@click.argument('resource_id', required=False)
@click.pass_context
def plan(ctx, resource_id):
    """Show what reconciling would do, without changing anything."""
    runtime = get_runtime(ctx)
    if resource_id:
        resources = [resolve_or_exit(runtime, resource_id)]
    else:
        resources = runtime.config.resources

    failed = False
    for resource in resources:
        try:
            _, action_plan = runtime.reconciler.plan(resource)
        except StateError as e:
            state_unavailable(e)
        except ReconcileError as e:
            failed = True
            console.print(f"{resource.key}: [red]cannot observe[/red] {e.message}")
            continue
        print_plan(resource.key, action_plan)

    if failed:
        sys.exit(EXIT_FAILED)


@cli.command()
@click.argument('resource_id')
@click.option('--limit', default=20, show_default=True, type=click.IntRange(min=1),
              help='Number of records to show')
@click.pass_context
def history(ctx, resource_id, limit):
    """Show the reconciliation log of a resource."""
    runtime = get_runtime(ctx)
    try:
        resource = resolve_or_exit(runtime, resource_id)
        records = runtime.store.records(resource.key, limit=limit)
    except StateError as e:
        state_unavailable(e)

    if not records:
        console.print(f"[dim]No reconciliation records for {resource.key}[/dim]")
        return
    console.print(records_table(resource.key, records))


@cli.command()
@click.pass_context
def validate(ctx):
    """Validate the configuration file."""
    config_path = ctx.obj['config_path']
    config = Config(config_path)
    try:
        errors = config.validate()
    except FileNotFoundError:
        console.print(f"[red]Error:[/red] Configuration file not found: {config_path}")
        sys.exit(EXIT_UNAVAILABLE)

    if errors:
        console.print(f"[red]✗ {len(errors)} problem(s) in {config_path}[/red]")
        console.print(errors_table(errors))
        sys.exit(EXIT_FAILED)

    console.print(f"[green]✓ {config_path} is valid[/green] ({len(config.resources)} resources)")


@cli.command()
@click.option('--once', is_flag=True, help='Reconcile every resource once and exit')
@click.option('--poll-interval', default=5.0, show_default=True, type=float,
              help='Seconds between due-time checks')
@click.pass_context
def run(ctx, once, poll_interval):
    """Run the scheduler until interrupted."""
    runtime = get_runtime(ctx)
    schedule = runtime.config.schedule
    scheduler = Scheduler(
        runtime.reconciler,
        runtime.config.resources,
        max_workers=schedule.max_workers,
        interval=schedule.interval,
        jitter=schedule.jitter,
    )

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, finishing in-flight phases")
        scheduler.cancel_event.set()

    previous = {sig: signal.signal(sig, handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        scheduler.run_forever(poll_interval=poll_interval, once=once)
    except StateError as e:
        state_unavailable(e)
    finally:
        scheduler.shutdown(wait=True)
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    if once:
        print_resources(runtime)


def main():
    """Console script entry point."""
    cli(obj={})


if __name__ == '__main__':
    main()
