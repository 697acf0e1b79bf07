"""
CTFQ Command Line Interface
Query CTF2 trace directories: metadata, event types, callstack stats and flamegraphs.
"""

import json
import logging
import sys
from functools import wraps
from typing import Any, Callable, Optional

import click

from ctfq import __version__
from ctfq.core.config import PresetRegistry, QueryConfig
from ctfq.core.errors import TraceError
from ctfq.core.utils import format_duration_ns, safe_json_dump
from ctfq.tracelake.event_index import EventTypeCount, to_dataframe
from ctfq.tracelake.flamegraph import FrameNaming
from ctfq.tracelake.query_engine import QueryResult, TraceQueryEngine
from ctfq.tracelake.stats import StatsGrouping, StatsRow, StatsTable
from ctfq.tracelake.trace import TimeRange


# Configure logging
def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )


def _fail(reason: str, message: str) -> None:
    click.echo(click.style(f"Error [{reason}]: {message}", fg="red"))
    sys.exit(1)


def _check(outcome: QueryResult) -> QueryResult:
    if not outcome.ok:
        _fail(outcome.reason, outcome.message)
    return outcome


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def match_options(fn: Callable) -> Callable:
    """Options shared by the callstack commands, resolved into a QueryConfig."""
    options = [
        click.option("--preset", "-p", default="func", show_default=True,
                     help="Named query preset"),
        click.option("--config", "config_path", type=click.Path(), default=None,
                     help="YAML file with additional presets"),
        click.option("--entry", "entry_pattern", default=None, help="Entry event name or pattern"),
        click.option("--exit", "exit_pattern", default=None, help="Exit event name or pattern"),
        click.option("--entry-mode", "entry_match_mode", default=None,
                     type=click.Choice(["exact", "cmp", "regex"]), help="Entry match mode"),
        click.option("--exit-mode", "exit_match_mode", default=None,
                     type=click.Choice(["exact", "cmp", "regex"]), help="Exit match mode"),
        click.option("--entry-track", "entry_track_field", default=None,
                     help="Field holding the track on entry events"),
        click.option("--exit-track", "exit_track_field", default=None,
                     help="Field holding the track on exit events"),
        click.option("--entry-label", "entry_label_field", default=None,
                     help="Field holding the label on entry events"),
        click.option("--exit-label", "exit_label_field", default=None,
                     help="Field holding the label on exit events"),
        click.option("--begin", "-b", "begin_ns", type=int, default=None,
                     help="Ignore events before this timestamp (ns)"),
        click.option("--end", "-e", "end_ns", type=int, default=None,
                     help="Ignore events after this timestamp (ns)"),
    ]

    @wraps(fn)
    def wrapper(*args, preset: str, config_path: Optional[str], **kwargs):
        overrides = {
            name: kwargs.pop(name)
            for name in (
                "entry_pattern", "exit_pattern", "entry_match_mode", "exit_match_mode",
                "entry_track_field", "exit_track_field", "entry_label_field", "exit_label_field",
            )
        }
        try:
            registry = PresetRegistry(config_path)
        except TraceError as e:
            _fail(e.reason, str(e))
        base = registry.get(preset)
        if base is None:
            _fail("unknown-preset",
                  f"No preset named '{preset}' (available: {', '.join(registry.list_presets())})")
        return fn(*args, query=base.override(**overrides), **kwargs)

    for option in reversed(options):
        wrapper = option(wrapper)
    return wrapper


def _query_args(query: QueryConfig) -> dict:
    return {
        "entry_pattern": query.entry_pattern,
        "entry_match_mode": query.entry_match_mode,
        "exit_pattern": query.exit_pattern,
        "exit_match_mode": query.exit_match_mode,
        "entry_track_field": query.entry_track_field,
        "exit_track_field": query.exit_track_field,
        "entry_label_field": query.entry_label_field,
        "exit_label_field": query.exit_label_field,
    }


def _echo_summary(outcome: QueryResult) -> None:
    summary = outcome.summary
    if not summary:
        return
    click.echo(
        f"\nMatched {summary.get('records', 0)} calls "
        f"({summary.get('orphan_entries', 0)} orphan entries, "
        f"{summary.get('orphan_exits', 0)} orphan exits) "
        f"in {outcome.duration_ms:.2f} ms"
    )
    if outcome.diagnostics:
        click.echo(click.style(f"{len(outcome.diagnostics)} diagnostics, use -v for details",
                               fg="yellow"))


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(__version__, prog_name="ctfq")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """
    CTF Query (CTFQ)

    Query engine for CTF2 traces.
    Reconstructs callstacks from entry/exit events into duration
    statistics and flamegraphs.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["engine"] = TraceQueryEngine()
    setup_logging(verbose)


@cli.command()
@click.argument("trace_dir", type=click.Path())
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@click.pass_context
def info(ctx: click.Context, trace_dir: str, as_json: bool) -> None:
    """
    Display trace metadata and the event catalog.
    """
    outcome = _check(ctx.obj["engine"].get_trace_info(trace_dir))
    if as_json:
        _echo_json(outcome.result)
        return

    trace_info = outcome.result["trace-info"]
    click.echo(click.style("\n═══ Trace Information ═══", fg="cyan", bold=True))
    click.echo(f"Directory:      {trace_info['directory']}")
    click.echo(f"CTF version:    {trace_info['version']}")
    click.echo(f"UUID:           {trace_info.get('uuid') or '-'}")
    click.echo(f"Data streams:   {len(trace_info['data-streams'])}")
    click.echo(f"Packets:        {trace_info['packets']}")
    click.echo(f"Event records:  {trace_info['event-records']}")
    if trace_info["discarded-event-records"]:
        click.echo(click.style(f"Discarded:      {trace_info['discarded-event-records']}",
                               fg="yellow"))
    time_range = trace_info["time-range"]
    span = time_range["end"] - time_range["begin"]
    click.echo(f"Time range:     {time_range['begin']} .. {time_range['end']} "
               f"({format_duration_ns(span)})")

    click.echo(click.style("\n═══ Event Types ═══", fg="cyan", bold=True))
    for event in outcome.result["events"]:
        click.echo(click.style(event["name"], bold=True))
        for field_name in event["value-fields"]:
            click.echo(f"    {field_name}")


@cli.command("event-types")
@click.argument("trace_dir", type=click.Path())
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@click.pass_context
def event_types(ctx: click.Context, trace_dir: str, as_json: bool) -> None:
    """
    Count events per event name.
    """
    outcome = _check(ctx.obj["engine"].get_event_type_counts(trace_dir))
    if as_json:
        _echo_json(outcome.result)
        return

    counts = [EventTypeCount(name=c["event_name"], count=c["count"]) for c in outcome.result]
    click.echo(click.style("\n═══ Event Types ═══", fg="cyan", bold=True))
    click.echo(f"{'Event':<48} {'Count':>12}")
    click.echo("─" * 61)
    for row in to_dataframe(counts).to_dict("records"):
        click.echo(f"{row['name']:<48} {row['count']:>12}")


@cli.command()
@click.argument("trace_dir", type=click.Path())
@match_options
@click.option("--by-label", is_flag=True, help="Group by label value instead of call site")
@click.option("--limit", "-n", type=int, default=None, help="Show only the top N rows")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@click.option("--csv", "csv_path", type=click.Path(), default=None, help="Write rows to CSV")
@click.pass_context
def stats(
    ctx: click.Context,
    trace_dir: str,
    query: QueryConfig,
    begin_ns: Optional[int],
    end_ns: Optional[int],
    by_label: bool,
    limit: Optional[int],
    as_json: bool,
    csv_path: Optional[str],
) -> None:
    """
    Per-callsite duration statistics, most expensive first.
    """
    group_by = StatsGrouping.LABEL if by_label else StatsGrouping.CALLSITE
    outcome = _check(ctx.obj["engine"].get_callstack_stats(
        trace_dir, begin_ns=begin_ns, end_ns=end_ns, group_by=group_by, **_query_args(query)
    ))
    if as_json:
        _echo_json(outcome.result)
        return

    table = StatsTable(
        headers=outcome.result["hdrs"],
        rows=[StatsRow(*row) for row in outcome.result["rows"]],
    )
    if csv_path:
        table.to_dataframe().to_csv(csv_path, index=False)
        click.echo(click.style(f"✓ Stats saved: {csv_path}", fg="green"))

    if table.is_empty:
        click.echo(click.style("No matching calls.", fg="yellow"))
        _echo_summary(outcome)
        return

    click.echo(click.style("\n═══ Callstack Statistics ═══", fg="cyan", bold=True))
    click.echo(f"{'Name':<40} {'Count':>8} {'Total':>12} {'Mean':>12} {'Min':>12} {'Max':>12}")
    click.echo("─" * 101)
    for row in table.rows[:limit]:
        click.echo(
            f"{row.name:<40} {row.count:>8} {format_duration_ns(row.total):>12} "
            f"{format_duration_ns(row.mean):>12} {format_duration_ns(row.min):>12} "
            f"{format_duration_ns(row.max):>12}"
        )
    _echo_summary(outcome)


@cli.command()
@click.argument("trace_dir", type=click.Path())
@match_options
@click.option("--name-by", type=click.Choice([n.value for n in FrameNaming]),
              default=FrameNaming.CALLSITE.value, show_default=True, help="Frame naming")
@click.option("--by-track", is_flag=True, help="Insert one frame per track below the root")
@click.option("--output", "-o", default=None, help="Write the flamegraph JSON to a file")
@click.pass_context
def flamegraph(
    ctx: click.Context,
    trace_dir: str,
    query: QueryConfig,
    begin_ns: Optional[int],
    end_ns: Optional[int],
    name_by: str,
    by_track: bool,
    output: Optional[str],
) -> None:
    """
    Build a d3-flamegraph compatible call tree.
    """
    outcome = _check(ctx.obj["engine"].get_flamegraph(
        trace_dir, begin_ns=begin_ns, end_ns=end_ns, naming=FrameNaming(name_by),
        track_frames=by_track, **_query_args(query)
    ))
    if output is None:
        _echo_json(outcome.result)
        return

    try:
        safe_json_dump(outcome.result, output)
    except OSError as e:
        _fail("io-failure", f"Cannot write {output}: {e}")
    if not outcome.result["children"]:
        click.echo(click.style("No matching calls.", fg="yellow"))
    click.echo(click.style(f"✓ Flamegraph saved: {output}", fg="green"))
    _echo_summary(outcome)


@cli.command()
@click.argument("trace_dir", type=click.Path())
@click.option("--begin", "-b", "begin_ns", type=int, default=None, help="Start timestamp (ns)")
@click.option("--end", "-e", "end_ns", type=int, default=None, help="End timestamp (ns)")
@click.option("--limit", "-n", type=int, default=50, show_default=True,
              help="Number of events to print")
@click.pass_context
def events(ctx: click.Context, trace_dir: str, begin_ns: Optional[int],
           end_ns: Optional[int], limit: int) -> None:
    """
    Print events in global timestamp order.
    """
    engine: TraceQueryEngine = ctx.obj["engine"]
    try:
        trace = engine.cache.get(trace_dir).between(TimeRange(start_ns=begin_ns, end_ns=end_ns))
    except TraceError as e:
        _fail(e.reason, str(e))

    for event in trace.events[:limit]:
        fields = ", ".join(f"{k}={v}" for k, v in event.fields.items())
        click.echo(f"[{event.timestamp}] {event.track} {click.style(event.name, bold=True)}: {fields}")
    if len(trace) > limit:
        click.echo(f"... {len(trace) - limit} more events")


def main() -> None:
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
