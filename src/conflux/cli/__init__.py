"""conflux CLI - inspect and resolve optimistic-concurrency conflicts

Command groups are organized into separate modules:
- conflicts.py: report, list, show, resolve, resolve-all, expire, stats, history
- config.py: config set, get, show
- common.py: shared utilities
"""
from pathlib import Path
import click

from conflux import __version__
from conflux.config import ConfluxConfig, get_base_path

# Local imports
from .common import VERBOSITY_NORMAL, VERBOSITY_QUIET, VERBOSITY_VERBOSE, echo_normal
from .conflicts import conflicts_group
from .config import config_group


@click.group()
@click.version_option(version=__version__, prog_name="conflux")
@click.option('--data-dir', type=click.Path(), default=None, envvar='CONFLUX_BASE_PATH',
              help='Base directory for conflux data (default: ~/.conflux)')
@click.option('--verbose', '-v', is_flag=True, default=False,
              help='Enable verbose output')
@click.option('--quiet', '-q', is_flag=True, default=False,
              help='Suppress non-essential output')
@click.pass_context
def cli(ctx, data_dir, verbose, quiet):
    """conflux - optimistic-concurrency conflict resolution

    \b
    Key Commands:
        init              Create the data directory and config
        report            Record a conflict for a failed write
        list              List conflicts
        show              Compare local and server values
        resolve           Resolve one conflict (local, server, merge)
        resolve-all       Resolve every open conflict
        expire            Fall back to server values for stale conflicts
        stats             Conflict counters
        history           Resolution audit trail
        config            Configuration management

    \b
    Examples:
        conflux init
        conflux list
        conflux resolve 3f2a... --strategy merge --pick name=server
        conflux resolve-all --strategy server
    """
    ctx.ensure_object(dict)

    if verbose and quiet:
        raise click.UsageError("--verbose and --quiet are mutually exclusive")

    if quiet:
        ctx.obj['verbosity'] = VERBOSITY_QUIET
    elif verbose:
        ctx.obj['verbosity'] = VERBOSITY_VERBOSE
    else:
        ctx.obj['verbosity'] = VERBOSITY_NORMAL

    ctx.obj['data_dir'] = Path(data_dir) if data_dir else None


@cli.command()
@click.pass_context
def init(ctx) -> None:
    """Initialize the conflux data directory with a default config."""
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    base_path = get_base_path(ctx.obj.get('data_dir'))
    config = ConfluxConfig.load(base_path)

    if config.config_path.exists():
        echo_normal(click.style(f"Already initialized at {base_path}", fg="yellow"), verbosity)
        return

    config.save()
    echo_normal(click.style(f"✓ Initialized conflux at {base_path}", fg="green"), verbosity)
    echo_normal(f"  Config: {config.config_path}", verbosity)


# Register conflict commands at the top level
for _name in ('report', 'list', 'show', 'resolve', 'resolve-all', 'expire', 'stats', 'history'):
    cli.add_command(conflicts_group.commands[_name])

# Register config command group (config set, get, show)
cli.add_command(config_group, name='config')


def main():
    """Entry point for the CLI."""
    cli()


__all__ = [
    'cli',
    'main',
]
