"""Shared utilities for conflux CLI commands."""
import json
import logging
import sys
from datetime import date
from typing import Any

import click

from conflux.config import ConfluxConfig, get_base_path, parse_value
from conflux.models import UNDEFINED
from conflux.service import ConflictService

# Verbosity levels
VERBOSITY_QUIET = 0
VERBOSITY_NORMAL = 1
VERBOSITY_VERBOSE = 2


def should_print(verbosity: int, message_level: int) -> bool:
    """Determine if a message should be printed based on verbosity settings."""
    return verbosity >= message_level


def echo_verbose(message: str, verbosity: int) -> None:
    """Print a message only in verbose mode."""
    if should_print(verbosity, VERBOSITY_VERBOSE):
        click.echo(message)


def echo_normal(message: str, verbosity: int) -> None:
    """Print a message in normal and verbose modes."""
    if should_print(verbosity, VERBOSITY_NORMAL):
        click.echo(message)


def echo_quiet(message: Any, verbosity: int) -> None:
    """Print a critical message that should always be shown (even in quiet mode)."""
    click.echo(message)


def fail(message: str, verbosity: int) -> None:
    """Print an error and exit with status 1."""
    echo_quiet(click.style(f"Error: {message}", fg="red"), verbosity)
    sys.exit(1)


def load_config(ctx: click.Context) -> ConfluxConfig:
    """Load configuration for the selected data dir, requiring `conflux init`."""
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    base_path = get_base_path(ctx.obj.get('data_dir'))
    try:
        config = ConfluxConfig.load(base_path)
    except ValueError as e:
        fail(str(e), verbosity)
    if not config.config_path.exists():
        fail("conflux not initialized. Run 'conflux init' first.", verbosity)

    try:
        config.validate()
    except ValueError as e:
        fail(f"Invalid configuration in {config.config_path}: {e}", verbosity)

    if verbosity >= VERBOSITY_VERBOSE:
        level = logging.DEBUG
    elif verbosity == VERBOSITY_QUIET:
        level = logging.ERROR
    else:
        level = config.log_level
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        force=True,
    )
    return config


def open_service(ctx: click.Context) -> ConflictService:
    """Build a ConflictService from the CLI context's configuration."""
    return ConflictService.from_config(load_config(ctx))


def parse_record_id(value: str) -> Any:
    """Record ids that look like integers are treated as integers."""
    try:
        return int(value)
    except ValueError:
        return value


def parse_version(value: str) -> Any:
    """Integers, ISO dates and timestamps keep their type; anything else is an opaque string."""
    parsed = parse_value(value)
    if isinstance(parsed, bool) or not isinstance(parsed, (int, date)):
        return value
    return parsed


def parse_json_object(value: str, option: str, verbosity: int) -> dict:
    """Parse a JSON object passed on the command line."""
    try:
        data = json.loads(value)
    except json.JSONDecodeError as e:
        fail(f"{option} is not valid JSON: {e}", verbosity)
    if not isinstance(data, dict):
        fail(f"{option} must be a JSON object", verbosity)
    return data


def parse_assignment(value: str, option: str, verbosity: int) -> tuple:
    """Split a FIELD=VALUE option."""
    if '=' not in value:
        fail(f"{option} expects FIELD=VALUE, got '{value}'", verbosity)
    name, raw = value.split('=', 1)
    return name.strip(), raw


def format_value(value: Any) -> str:
    """Render a field value for display."""
    if value is UNDEFINED:
        return click.style("<absent>", dim=True)
    return json.dumps(value, default=str)


__all__ = [
    "VERBOSITY_QUIET",
    "VERBOSITY_NORMAL",
    "VERBOSITY_VERBOSE",
    "echo_verbose",
    "echo_normal",
    "echo_quiet",
    "fail",
    "load_config",
    "open_service",
    "parse_record_id",
    "parse_json_object",
    "parse_assignment",
    "parse_value",
    "parse_version",
    "format_value",
]
