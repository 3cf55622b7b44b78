"""Example of driving the reconciler and scheduler programmatically."""

from stackkeeper.adapters import CertbotIssuer, DockerSwarmController, NginxController
from stackkeeper.config import Config, EnvironmentSettings
from stackkeeper.reconciler import Reconciler
from stackkeeper.scheduler import Scheduler
from stackkeeper.state import FileStateStore
from stackkeeper.utils.backoff import CircuitBreaker
from stackkeeper.utils.logging import setup_logging


def build_reconciler(config: Config) -> Reconciler:
    """Wire the production adapters the same way the CLI does."""
    settings = EnvironmentSettings.from_env()
    store = FileStateStore(config.state_dir)
    return Reconciler(
        store,
        CertbotIssuer(live_dir=settings.live_dir, staging=settings.certbot_staging),
        NginxController(
            settings.proxy_config_path,
            reload_command=settings.proxy_reload_command,
            health_url=settings.proxy_health_url,
        ),
        DockerSwarmController(base_url=settings.docker_url),
        timeouts=config.reconciler.timeouts.to_adapter_timeouts(),
        breaker=CircuitBreaker(config.reconciler.max_attempts_per_window),
    )


def example_plan(config: Config):
    """Example: Show what each resource needs without changing anything."""
    print("=" * 60)
    print("Example 1: Plan")
    print("=" * 60)

    reconciler = build_reconciler(config)
    for resource in config.resources:
        observed, plan = reconciler.plan(resource)
        print(f"\n  {resource.key}: {plan.action.value}")
        if plan.reason:
            print(f"  Reason: {plan.reason}")


def example_reconcile_certificate(config: Config):
    """Example: Renew a certificate and restart the proxy that serves it."""
    print("\n\n" + "=" * 60)
    print("Example 2: Reconcile one certificate")
    print("=" * 60)

    reconciler = build_reconciler(config)
    resource = config.get_resource("example.org")
    result = reconciler.reconcile(resource)

    print(f"\nOutcome: {result.outcome.value if result.outcome else 'none'}")
    print(f"Phases: {' -> '.join(phase.value for phase in result.phases)}")
    if result.error:
        print(f"\n{result.error.to_user_message()}")
    print(f"Health: {reconciler.health(resource.key).value}")


def example_scheduler(config: Config):
    """Example: Reconcile everything once through the scheduler."""
    print("\n\n" + "=" * 60)
    print("Example 3: One scheduler pass")
    print("=" * 60)

    reconciler = build_reconciler(config)
    scheduler = Scheduler(
        reconciler,
        config.resources,
        max_workers=config.schedule.max_workers,
        interval=config.schedule.interval,
        jitter=config.schedule.jitter,
    )
    try:
        scheduler.run_forever(once=True)
    finally:
        scheduler.shutdown()

    for resource in config.resources:
        print(f"  {resource.key}: {reconciler.health(resource.key).value}")


if __name__ == '__main__':
    print("\n" + "=" * 60)
    print("stackkeeper Examples")
    print("=" * 60)
    print("\nNote: These examples require:")
    print("  1. certbot and openssl on PATH")
    print("  2. A Docker Swarm manager with the stack deployed")
    print("  3. nginx (or a reload command that restarts it)")
    print("\nSet environment variables:")
    print("  export STACKKEEPER_CERTBOT_STAGING=1")
    print("  export STACKKEEPER_PROXY_RELOAD_COMMAND='docker service update --force app_nginx'")
    print("\n" + "=" * 60)

    setup_logging('info', log_dir=None)
    config = Config('examples/stackkeeper.yaml').load()

    # Run examples
    # Uncomment to run (requires valid setup)
    # example_plan(config)
    # example_reconcile_certificate(config)
    # example_scheduler(config)

    print("\n✓ Examples defined - uncomment to run with valid setup")
