"""Configuration management commands for conflux CLI."""
import click
import yaml

from conflux.config import ConfluxConfig, get_base_path

# Local CLI imports
from .common import VERBOSITY_NORMAL, echo_normal, echo_quiet, fail, parse_value


@click.group()
def config_group():
    """Configuration management commands."""
    pass


def _load(ctx) -> ConfluxConfig:
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    config = ConfluxConfig.load(get_base_path(ctx.obj.get('data_dir')))
    if not config.config_path.exists():
        fail("conflux not initialized. Run 'conflux init' first.", verbosity)
    return config


@config_group.command('set')
@click.argument('key')
@click.argument('value')
@click.pass_context
def config_set(ctx, key: str, value: str) -> None:
    """Set a configuration value.

    Examples:
        conflux config set policies.default server
        conflux config set policies.tables.orders client
        conflux config set expiry.max_age_seconds 60
        conflux config set notifications.webhook_url https://alerts.example.com/hook
    """
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    config = _load(ctx)
    config.set(key, parse_value(value))

    # Reject values the service could not start with
    try:
        config.validate()
    except ValueError as e:
        fail(f"Invalid value for {key}: {e}", verbosity)

    config.save()
    echo_normal(click.style(f"✓ Set {key} = {value}", fg="green"), verbosity)


@config_group.command('get')
@click.argument('key')
@click.pass_context
def config_get(ctx, key: str) -> None:
    """Get a configuration value.

    Examples:
        conflux config get policies.default
    """
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    config = _load(ctx)
    try:
        value = config.get(key)
    except KeyError:
        echo_quiet(click.style(f"Key '{key}' not found", fg="yellow"), verbosity)
        ctx.exit(1)

    if isinstance(value, dict):
        echo_quiet(yaml.safe_dump(value, default_flow_style=False).rstrip(), verbosity)
    else:
        echo_quiet(value, verbosity)


@config_group.command('show')
@click.pass_context
def config_show(ctx) -> None:
    """Display full configuration (defaults included)."""
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    config = _load(ctx)
    echo_normal(click.style("Current configuration:", fg="cyan", bold=True), verbosity)
    echo_quiet(yaml.safe_dump(config.data, default_flow_style=False).rstrip(), verbosity)
