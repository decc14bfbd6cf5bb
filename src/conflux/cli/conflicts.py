"""Conflict commands for conflux CLI: report, list, show, resolve, resolve-all, expire, stats, history."""
import json
from typing import Optional, Tuple

import click

from conflux.errors import ConfluxError
from conflux.models import (
    ConflictRecord,
    ConflictStatus,
    MergeSelection,
    ResolutionStrategy,
    VersionedSnapshot,
)

# Local CLI imports
from .common import (
    VERBOSITY_NORMAL,
    echo_normal,
    echo_quiet,
    echo_verbose,
    fail,
    format_value,
    open_service,
    parse_assignment,
    parse_json_object,
    parse_record_id,
    parse_value,
    parse_version,
)


@click.group()
def conflicts_group():
    """Conflict commands."""
    pass


def _status_label(conflict: ConflictRecord) -> str:
    if conflict.is_open:
        return click.style("UNRESOLVED", fg="yellow", bold=True)
    return click.style("RESOLVED", fg="green")


def _echo_summary(conflict: ConflictRecord, verbosity: int) -> None:
    detected = conflict.detected_at.strftime('%Y-%m-%d %H:%M:%S') if conflict.detected_at else 'N/A'
    echo_normal(
        f"{click.style(conflict.id, fg='cyan')}  {_status_label(conflict)}  "
        f"{conflict.entity_table}/{conflict.record_id}  [{detected}]  "
        f"fields: {', '.join(sorted(conflict.field_diffs)) or '-'}",
        verbosity
    )


@conflicts_group.command('report')
@click.argument('entity_table')
@click.argument('record_id')
@click.option('--local', 'local_json', required=True, help='Local field values as a JSON object')
@click.option('--server', 'server_json', required=True, help='Server field values as a JSON object')
@click.option('--local-version', required=True, help='Version the local values were read at')
@click.option('--server-version', required=True, help='Version currently persisted')
@click.pass_context
def report(ctx, entity_table: str, record_id: str, local_json: str, server_json: str,
           local_version: str, server_version: str) -> None:
    """Record a conflict for a write that failed its version check.

    Examples:
        conflux report products 42 --local '{"name": "Acme"}' --server '{"name": "Acme Corp"}' \\
            --local-version 3 --server-version 4
    """
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    rid = parse_record_id(record_id)
    local = VersionedSnapshot(entity_table, rid, parse_json_object(local_json, '--local', verbosity),
                              parse_version(local_version))
    server = VersionedSnapshot(entity_table, rid, parse_json_object(server_json, '--server', verbosity),
                               parse_version(server_version))

    with open_service(ctx) as service:
        try:
            conflict = service.report_conflict(local, server)
        except ConfluxError as e:
            fail(str(e), verbosity)

    echo_normal(click.style(f"✓ Conflict {conflict.id} recorded", fg="green"), verbosity)
    echo_normal(f"  Differing fields: {', '.join(sorted(conflict.field_diffs))}", verbosity)
    if not conflict.is_open:
        echo_normal(
            f"  Auto-resolved by policy with {conflict.resolution.strategy.value}", verbosity
        )
    if verbosity == 0:
        # Quiet mode prints just the id for scripts
        echo_quiet(conflict.id, verbosity)


@conflicts_group.command('list')
@click.option('--status', '-s', type=click.Choice(['unresolved', 'resolved', 'all']),
              default='unresolved', help='Filter by status (default: unresolved)')
@click.option('--table', '-t', 'entity_table', default=None, help='Filter by entity table')
@click.option('--json-output', is_flag=True, help='Output as JSON')
@click.pass_context
def list_conflicts(ctx, status: str, entity_table: Optional[str], json_output: bool) -> None:
    """List conflicts, oldest first.

    Examples:
        conflux list
        conflux list --status all --table products
        conflux list --json-output
    """
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)

    with open_service(ctx) as service:
        conflicts = service.list_by_status(None if status == 'all' else status)

    if entity_table:
        conflicts = [c for c in conflicts if c.entity_table == entity_table]

    if json_output:
        click.echo(json.dumps([c.to_dict() for c in conflicts], indent=2, default=str))
        return

    if not conflicts:
        echo_normal(click.style("No conflicts found.", fg="yellow"), verbosity)
        return

    echo_normal(click.style(f"Conflicts ({len(conflicts)} found)", fg="cyan", bold=True), verbosity)
    for conflict in conflicts:
        _echo_summary(conflict, verbosity)


@conflicts_group.command('show')
@click.argument('conflict_id')
@click.option('--json-output', is_flag=True, help='Output as JSON')
@click.pass_context
def show(ctx, conflict_id: str, json_output: bool) -> None:
    """Show a conflict side by side.

    Examples:
        conflux show 3f2a...
    """
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)

    with open_service(ctx) as service:
        try:
            conflict = service.get(conflict_id)
        except ConfluxError as e:
            fail(str(e), verbosity)

    if json_output:
        click.echo(json.dumps(conflict.to_dict(), indent=2, default=str))
        return

    _echo_summary(conflict, verbosity)
    echo_normal(f"Local version:  {conflict.local.version}", verbosity)
    echo_normal(f"Server version: {conflict.server.version}", verbosity)
    echo_normal("", verbosity)

    names = sorted(set(conflict.local.fields) | set(conflict.server.fields))
    for name in names:
        marker = click.style("≠", fg="red", bold=True) if name in conflict.field_diffs else " "
        echo_normal(
            f" {marker} {name}: local={format_value(conflict.local.get(name))} "
            f"server={format_value(conflict.server.get(name))}",
            verbosity
        )

    if conflict.resolution:
        resolution = conflict.resolution
        echo_normal("", verbosity)
        echo_normal(
            f"Resolved {resolution.resolved_at.strftime('%Y-%m-%d %H:%M:%S')} "
            f"with {resolution.strategy.value}" + (f" by {resolution.actor}" if resolution.actor else ""),
            verbosity
        )
        echo_verbose(json.dumps(resolution.merged_fields, indent=2, default=str), verbosity)


@conflicts_group.command('resolve')
@click.argument('conflict_id')
@click.option('--strategy', '-s', type=click.Choice(['local', 'server', 'merge']), required=True,
              help='Resolution strategy')
@click.option('--pick', multiple=True, help='Merge: FIELD=local or FIELD=server')
@click.option('--set', 'literals', multiple=True, help='Merge: FIELD=VALUE (VALUE parsed as YAML)')
@click.option('--actor', default=None, help='Who is resolving (recorded in the audit log)')
@click.option('--json-output', is_flag=True, help='Output the resolved entity as JSON')
@click.pass_context
def resolve(ctx, conflict_id: str, strategy: str, pick: Tuple[str, ...], literals: Tuple[str, ...],
            actor: Optional[str], json_output: bool) -> None:
    """Resolve one conflict.

    Merge requires a choice for every differing field.

    Examples:
        conflux resolve 3f2a... --strategy local
        conflux resolve 3f2a... --strategy merge --pick name=server --set price=12
    """
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    resolution_strategy = ResolutionStrategy.from_string(strategy)

    if resolution_strategy != ResolutionStrategy.MERGE and (pick or literals):
        fail("--pick/--set are only valid with --strategy merge", verbosity)

    with open_service(ctx) as service:
        try:
            conflict = service.get(conflict_id)
            selections = []
            for item in pick:
                name, side = parse_assignment(item, '--pick', verbosity)
                if side == 'local':
                    selections.append(MergeSelection.take_local(conflict, name))
                elif side == 'server':
                    selections.append(MergeSelection.take_server(conflict, name))
                else:
                    fail(f"--pick expects FIELD=local or FIELD=server, got '{item}'", verbosity)
            for item in literals:
                name, raw = parse_assignment(item, '--set', verbosity)
                selections.append(MergeSelection(name, parse_value(raw)))

            entity = service.resolve(conflict, resolution_strategy, selections or None, actor=actor)
        except ConfluxError as e:
            fail(str(e), verbosity)

    if json_output:
        click.echo(json.dumps(entity.to_dict(), indent=2, default=str))
        return

    echo_normal(click.style(f"✓ Conflict {entity.conflict_id} resolved with {entity.strategy.value}",
                            fg="green"), verbosity)
    echo_normal(f"  Write against version {entity.base_version}:", verbosity)
    echo_normal(json.dumps(entity.fields, indent=2, default=str), verbosity)


@conflicts_group.command('resolve-all')
@click.option('--strategy', '-s', type=click.Choice(['local', 'server', 'merge']), required=True,
              help='Resolution strategy (merge is rejected)')
@click.option('--table', '-t', 'entity_table', default=None, help='Only conflicts on this table')
@click.option('--actor', default=None, help='Who is resolving (recorded in the audit log)')
@click.option('--json-output', is_flag=True, help='Output outcomes as JSON')
@click.pass_context
def resolve_all(ctx, strategy: str, entity_table: Optional[str], actor: Optional[str],
                json_output: bool) -> None:
    """Resolve every open conflict with one strategy.

    Examples:
        conflux resolve-all --strategy server
        conflux resolve-all --strategy local --table products
    """
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)

    with open_service(ctx) as service:
        try:
            conflicts = service.list_by_status(ConflictStatus.UNRESOLVED)
            if entity_table:
                conflicts = [c for c in conflicts if c.entity_table == entity_table]
            outcomes = service.resolve_all(conflicts, strategy, actor=actor)
        except ConfluxError as e:
            fail(str(e), verbosity)

    if json_output:
        click.echo(json.dumps([o.to_dict() for o in outcomes], indent=2, default=str))
        return

    if not outcomes:
        echo_normal(click.style("No open conflicts.", fg="yellow"), verbosity)
        return

    for outcome in outcomes:
        if outcome.succeeded:
            echo_normal(click.style(f"✓ {outcome.conflict_id}", fg="green"), verbosity)
        else:
            echo_normal(click.style(f"✗ {outcome.conflict_id}: {outcome.error}", fg="red"), verbosity)

    succeeded = sum(1 for o in outcomes if o.succeeded)
    echo_normal(f"{succeeded}/{len(outcomes)} conflicts resolved", verbosity)


@conflicts_group.command('expire')
@click.option('--max-age', type=float, default=None,
              help='Maximum age in seconds (default: expiry.max_age_seconds)')
@click.pass_context
def expire(ctx, max_age: Optional[float]) -> None:
    """Resolve open conflicts older than the maximum age to the server values."""
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)

    with open_service(ctx) as service:
        outcomes = service.expire_stale(max_age_seconds=max_age)

    succeeded = sum(1 for o in outcomes if o.succeeded)
    echo_normal(f"Expired {succeeded} stale conflicts", verbosity)
    for outcome in outcomes:
        if not outcome.succeeded:
            echo_normal(click.style(f"✗ {outcome.conflict_id}: {outcome.error}", fg="red"), verbosity)


@conflicts_group.command('stats')
@click.option('--json-output', is_flag=True, help='Output as JSON')
@click.pass_context
def stats(ctx, json_output: bool) -> None:
    """Show conflict counters and average time to resolution."""
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)

    with open_service(ctx) as service:
        result = service.stats()

    if json_output:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    echo_normal(click.style("Conflict Statistics", fg="cyan", bold=True), verbosity)
    echo_normal(f"  Total:          {result.total}", verbosity)
    echo_normal(f"  Unresolved:     {result.unresolved}", verbosity)
    echo_normal(f"  Resolved:       {result.resolved}", verbosity)
    echo_normal(f"  Resolved today: {result.resolved_today}", verbosity)
    if result.average_resolution_seconds is not None:
        echo_normal(f"  Avg resolution: {result.average_resolution_seconds:.1f}s", verbosity)
    for strategy, count in sorted(result.by_strategy.items()):
        echo_normal(f"  {strategy}: {count}", verbosity)


@conflicts_group.command('history')
@click.argument('conflict_id', required=False)
@click.option('--limit', '-l', default=20, help='Maximum number of entries (default: 20)')
@click.option('--json-output', is_flag=True, help='Output as JSON')
@click.pass_context
def history(ctx, conflict_id: Optional[str], limit: int, json_output: bool) -> None:
    """Show the resolution audit trail."""
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)

    with open_service(ctx) as service:
        entries = service.history(conflict_id, limit=limit)

    if json_output:
        click.echo(json.dumps([e.to_dict() for e in entries], indent=2, default=str))
        return

    if not entries:
        echo_normal(click.style("No resolutions recorded.", fg="yellow"), verbosity)
        return

    for entry in entries:
        echo_normal(
            f"[{entry.resolved_at.strftime('%Y-%m-%d %H:%M:%S')}] "
            f"{click.style(entry.conflict_id, fg='cyan')} {entry.entity_table}/{entry.record_id} "
            f"{entry.strategy.value}" + (f" by {entry.actor}" if entry.actor else "") +
            f" changed: {', '.join(entry.changed_fields) or '-'}",
            verbosity
        )
