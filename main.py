#!/usr/bin/env python3
"""dbwatch - SQL Server metrics poll-and-alert agent CLI."""
import json
import sys
import signal
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from __version__ import __version__

console = Console()

SEVERITY_COLORS = {"CRITICAL": "bold red", "HIGH": "red", "MEDIUM": "yellow", "LOW": "blue"}


def _init_components(config_path=None, verbose=False):
    """Lazy initialization of all components."""
    from utils.logger import setup_logging
    from utils.counters import Counters
    from config import load_config
    from models.database import HistoryStore
    from monitor.targets import TargetRegistry
    from monitor.sources import SourcesManager
    from monitor.collector import Collector
    from monitor.normalizer import MetricNormalizer
    from monitor.monitor import DatabaseMonitor
    from alerts.rules_manager import RulesManager
    from alerts.engine import ThresholdEvaluator
    from alerts.dispatcher import AlertDispatcher
    from alerts.sinks import build_sinks

    config = load_config(config_path)
    log_cfg = config.get("logging", {})
    setup_logging("DEBUG" if verbose else log_cfg.get("level", "INFO"), log_cfg.get("file"))

    counters = Counters()
    cancel = threading.Event()
    agent_cfg = config["agent"]
    db_cfg = config["database"]
    alerts_cfg = config["alerts"]

    store = HistoryStore(
        db_cfg["path"],
        counters=counters,
        max_write_attempts=db_cfg.get("max_write_attempts", 3),
        backoff_base=db_cfg.get("backoff_base_seconds", 0.1),
        backoff_max=db_cfg.get("backoff_max_seconds", 2.0),
        cancel=cancel,
    )
    store.connect()

    targets = TargetRegistry(config)
    sources = SourcesManager(config["sources_path"], defaults=config["collection"], known_targets=targets.names())
    rules = RulesManager(config["rules_path"], defaults=alerts_cfg)

    evaluator = ThresholdEvaluator(rules, store, persist_state=alerts_cfg.get("persist_state", True))
    dispatcher = AlertDispatcher(
        build_sinks(config),
        renotify_seconds=alerts_cfg.get("renotify_seconds", 3600),
        max_attempts=alerts_cfg.get("sink_max_attempts", 3),
        backoff_base=alerts_cfg.get("sink_backoff_base_seconds", 1.0),
        backoff_max=alerts_cfg.get("sink_backoff_max_seconds", 30.0),
        store=store,
        counters=counters,
        cancel=cancel,
    )
    collector = Collector(
        targets,
        max_workers=agent_cfg.get("query_workers", 8),
        poll_interval=agent_cfg.get("tick_resolution", 0.05),
    )
    monitor = DatabaseMonitor(
        collector, MetricNormalizer(counters), store, evaluator, dispatcher,
        sources=sources, config=config, counters=counters,
    )
    monitor.install_health_rules(rules)

    return {
        "config": config, "store": store, "targets": targets, "sources": sources,
        "rules": rules, "evaluator": evaluator, "dispatcher": dispatcher,
        "collector": collector, "monitor": monitor, "counters": counters, "cancel": cancel,
    }


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config YAML")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(__version__, prog_name="dbwatch")
@click.pass_context
def cli(ctx, config_path, verbose):
    """dbwatch - Poll SQL Server diagnostics, keep history, raise alerts."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


def _get_components(ctx):
    if "_components" not in ctx.obj:
        ctx.obj["_components"] = _init_components(ctx.obj.get("config_path"), ctx.obj.get("verbose"))
        ctx.call_on_close(lambda: _close_components(ctx.obj["_components"]))
    return ctx.obj["_components"]


def _close_components(c):
    c["collector"].shutdown()
    c["targets"].close()
    c["store"].close()


def _print_counters(counters):
    snapshot = counters.snapshot()
    if not snapshot:
        return
    table = Table(title="Counters", show_header=True)
    table.add_column("Counter", style="dim")
    table.add_column("Value", justify="right")
    for name in sorted(snapshot):
        table.add_row(escape(name), str(snapshot[name]))
    console.print(table)


def _print_samples(samples, as_json=False):
    from utils.formatters import format_tags, format_value
    if as_json:
        click.echo(json.dumps([s.to_dict() for s in samples], indent=2, default=str))
        return
    table = Table(show_header=True)
    table.add_column("Metric")
    table.add_column("Tags", style="dim")
    table.add_column("Value", justify="right")
    table.add_column("Collected")
    for s in samples:
        table.add_row(s.metric_name, format_tags(s.tags), format_value(s.value, s.unit),
                      s.collected_at.strftime("%Y-%m-%d %H:%M:%S"))
    console.print(table)


# ──────────────────────────────────────────────────────
# AGENT
# ──────────────────────────────────────────────────────
@cli.command()
@click.option("--once", is_flag=True, help="Run every enabled source once and exit")
@click.pass_context
def start(ctx, once):
    """Run the agent: poll every source on its interval until stopped."""
    c = _get_components(ctx)
    from monitor.scheduler import SourceScheduler

    if once:
        reports = c["monitor"].run_all(cancel=c["cancel"])
        failed = [r for r in reports if not r.ok]
        console.print(f"Ran {len(reports)} sources, {len(failed)} failed")
        for r in failed:
            console.print(f"  [red]{r.source_id}[/red]: {escape(str(r.error))}")
        _print_counters(c["counters"])
        return

    agent_cfg = c["config"]["agent"]
    scheduler = SourceScheduler(
        c["monitor"].run_source,
        max_workers=agent_cfg.get("max_workers", 8),
        tick_resolution=agent_cfg.get("tick_resolution", 0.05),
        counters=c["counters"],
        cancel=c["cancel"],
    )
    c["monitor"].scheduler = scheduler
    for source in c["sources"].get_enabled_sources():
        scheduler.schedule(source)
    prune_every = c["config"]["retention"].get("prune_interval_seconds", 3600)
    if prune_every:
        scheduler.every(prune_every, c["monitor"].prune, name="retention-prune")

    def _handle_term(signum, frame):
        c["cancel"].set()
    signal.signal(signal.SIGTERM, _handle_term)

    scheduler.start()
    console.print(f"[bold]dbwatch[/bold] watching {len(scheduler.sources())} sources. Press Ctrl+C to stop.")
    try:
        while not c["cancel"].is_set():
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        clean = scheduler.stop(agent_cfg.get("stop_grace_seconds", 10))
        if not clean:
            console.print("[yellow]Some runs were still in flight at shutdown[/yellow]")
        _print_counters(c["counters"])


@cli.command()
@click.pass_context
def check(ctx):
    """Validate configuration and test connectivity to every target."""
    c = _get_components(ctx)
    console.print("[green]✓[/green] Configuration valid")
    console.print(f"  Sources: {len(c['sources'].get_enabled_sources())} enabled "
                  f"of {len(c['sources'].get_all_sources())}")
    console.print(f"  Rules:   {len(c['rules'].get_enabled_rules())} enabled")
    console.print(f"  Sinks:   {', '.join(s.name for s in c['dispatcher'].sinks) or 'none'}")
    console.print(f"  History: {c['store'].count_samples()} samples in {c['store'].db_path}")

    all_ok = True
    for name, result in c["targets"].health_check().items():
        if result["reachable"]:
            console.print(f"[green]✓[/green] {name}: reachable ({result['latency_ms']}ms)")
        else:
            all_ok = False
            console.print(f"[red]✗[/red] {name}: {escape(str(result['error']))}")
    if not all_ok:
        ctx.exit(1)


@cli.command()
@click.pass_context
def sources(ctx):
    """List configured metric sources."""
    c = _get_components(ctx)
    table = Table(title="Metric Sources", show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Target")
    table.add_column("Interval", justify="right")
    table.add_column("Timeout", justify="right")
    table.add_column("Metrics")
    table.add_column("Enabled")
    for s in c["sources"].get_all_sources():
        names = ", ".join(m.name or f"{m.prefix}.*" for m in s.metrics)
        table.add_row(s.id, s.target, f"{s.interval:g}s", f"{s.timeout:g}s", names,
                      "[green]✓[/green]" if s.enabled else "[red]✗[/red]")
    console.print(table)


@cli.command()
@click.argument("source_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def collect(ctx, source_id, as_json):
    """Collect one source now, store the samples and evaluate rules."""
    c = _get_components(ctx)
    try:
        report = c["monitor"].collect_now(source_id)
    except KeyError:
        raise click.ClickException(f"Unknown source: {source_id}")
    if not report.ok:
        raise click.ClickException(str(report.error))
    _print_samples(report.samples, as_json=as_json)
    if not as_json:
        for e in report.events:
            label = escape(f"[{e.status.value}]")
            console.print(f"[{SEVERITY_COLORS.get(e.severity.value, 'dim')}]{label}[/] {escape(e.message)}")


@cli.command()
@click.argument("metric")
@click.option("--tag", "tag_args", multiple=True, help="Exact tag filter k=v (repeatable)")
@click.option("--hours", default=24, type=float, help="Hours to look back")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def history(ctx, metric, tag_args, hours, as_json):
    """Show stored samples for a metric."""
    from utils.formatters import parse_tag_args
    c = _get_components(ctx)
    try:
        tags = parse_tag_args(tag_args) if tag_args else None
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--tag")
    start_at = datetime.now(timezone.utc) - timedelta(hours=hours)
    samples = c["store"].query(metric, tags, start=start_at)
    if not samples and not as_json:
        console.print(f"[dim]No samples for {metric} in the last {hours:g}h[/dim]")
        return
    _print_samples(samples, as_json=as_json)


@cli.command()
@click.pass_context
def prune(ctx):
    """Apply the retention policy to the history store."""
    c = _get_components(ctx)
    result = c["monitor"].prune()
    console.print(f"[green]✓[/green] Removed {result.expired} expired samples, "
                  f"downsampled {result.downsampled}")


# ──────────────────────────────────────────────────────
# ALERTS
# ──────────────────────────────────────────────────────
@cli.group()
def alerts():
    """Alert management."""
    pass


@alerts.command("states")
@click.option("--firing", is_flag=True, help="Only show firing alerts")
@click.pass_context
def alerts_states(ctx, firing):
    """Show persisted alert states."""
    from utils.formatters import format_tags, time_ago
    c = _get_components(ctx)
    states = c["store"].load_alert_states("FIRING" if firing else None)
    if not states:
        console.print("[green]No alert states[/green]" if not firing else "[green]Nothing firing[/green]")
        return
    table = Table(title="Alert States", show_header=True)
    table.add_column("Rule", style="dim")
    table.add_column("Tags")
    table.add_column("Status")
    table.add_column("Since")
    table.add_column("Last value", justify="right")
    for s in states:
        status = "[red]FIRING[/red]" if s.is_firing else "[green]CLEAR[/green]"
        since = time_ago(s.first_fired_at) if s.first_fired_at else "-"
        value = f"{s.last_value:.2f}" if s.last_value is not None else "N/A"
        table.add_row(s.rule_id, format_tags(s.tags), status, since, value)
    console.print(table)


@alerts.command("rules")
@click.pass_context
def alerts_rules(ctx):
    """List all configured alert rules."""
    c = _get_components(ctx)
    table = Table(title="Alert Rules", show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Kind")
    table.add_column("Condition")
    table.add_column("Hysteresis")
    table.add_column("Severity")
    table.add_column("Enabled")
    for r in c["rules"].get_all_rules():
        sev = r.severity.value
        table.add_row(r.id, r.name, r.kind.value, r.condition,
                      f"{r.min_consecutive_breaches}/{r.min_consecutive_recoveries}",
                      f"[{SEVERITY_COLORS.get(sev, '')}]{sev}[/]",
                      "[green]✓[/green]" if r.enabled else "[red]✗[/red]")
    console.print(table)


@alerts.command("history")
@click.option("--limit", default=50, type=int, help="Number of events")
@click.pass_context
def alerts_history(ctx, limit):
    """Show dispatched alert events."""
    from utils.formatters import format_tags
    c = _get_components(ctx)
    recent = c["store"].get_recent_alerts(limit=limit)
    if not recent:
        console.print("[dim]No alerts in history[/dim]")
        return
    table = Table(title="Alert History", show_header=True)
    table.add_column("Time", style="dim")
    table.add_column("Status")
    table.add_column("Severity")
    table.add_column("Rule")
    table.add_column("Tags")
    table.add_column("Message")
    for a in recent:
        table.add_row(a["triggered_at"][:19], a["status"], a["severity"], a["rule_name"],
                      format_tags(a["tags"]), escape((a["message"] or "")[:60]))
    console.print(table)


@alerts.command("test")
@click.argument("source_id")
@click.pass_context
def alerts_test(ctx, source_id):
    """Collect a source and show what every rule would see, without storing."""
    from utils.errors import CollectionError
    from utils.formatters import format_tags
    c = _get_components(ctx)
    source = c["sources"].get_source(source_id)
    if source is None:
        raise click.ClickException(f"Unknown source: {source_id}")
    try:
        result = c["collector"].collect(source)
    except CollectionError as e:
        raise click.ClickException(str(e))
    samples = c["monitor"].normalizer.normalize(source, result.rows, result.collected_at)
    results = c["evaluator"].test_rules(samples)
    if not results:
        console.print(f"[dim]No rules match samples from {source_id}[/dim]")
        return

    table = Table(title="Alert Rules Test", show_header=True)
    table.add_column("Rule")
    table.add_column("Tags", style="dim")
    table.add_column("Condition")
    table.add_column("Observed", justify="right")
    table.add_column("Would Breach")
    table.add_column("Enabled")
    for r in results:
        breach = "[red]YES[/red]" if r["would_breach"] else "[dim]no[/dim]"
        observed = f"{r['observed']:.2f}" if r["observed"] is not None else "N/A"
        table.add_row(r["name"], format_tags(r["tags"]), r["condition"], observed, breach,
                      "✓" if r["enabled"] else "✗")
    console.print(table)


# ──────────────────────────────────────────────────────
# MAINTENANCE
# ──────────────────────────────────────────────────────
@cli.group()
def maintenance():
    """Index and statistics maintenance work-lists."""
    pass


def _build_worklist(c):
    """Plan maintenance per target: a list of (target, items) batches."""
    from maintenance.planner import plan_index_maintenance, plan_statistics_updates
    from utils.errors import CollectionError

    cfg = c["config"].get("maintenance", {})
    frag_source = c["sources"].get_source(cfg.get("fragmentation_source", "index_fragmentation"))
    stats_source = c["sources"].get_source(cfg.get("statistics_source", "stale_statistics"))
    if frag_source is None and stats_source is None:
        raise click.ClickException("No fragmentation or statistics source configured")

    batches = {}
    try:
        if frag_source is not None:
            rows = c["collector"].collect(frag_source).rows
            batches.setdefault(frag_source.target, []).extend(plan_index_maintenance(
                rows,
                reorganize_at=float(cfg.get("reorganize_at_pct", 10)),
                rebuild_at=float(cfg.get("rebuild_at_pct", 30)),
                min_pages=int(cfg.get("min_page_count", 1000)),
                online=bool(cfg.get("online_rebuild", False)),
            ))
        if stats_source is not None:
            rows = c["collector"].collect(stats_source).rows
            batches.setdefault(stats_source.target, []).extend(
                plan_statistics_updates(rows, min_modifications=int(cfg.get("min_modifications", 1000))))
    except CollectionError as e:
        raise click.ClickException(str(e))
    return [(c["targets"].get(name), items) for name, items in batches.items() if items]


def _print_worklist(results):
    table = Table(title="Maintenance Work-list", show_header=True)
    table.add_column("Target", style="dim")
    table.add_column("Action")
    table.add_column("Statement", style="dim")
    table.add_column("Result")
    for target_name, r in results:
        if r.error:
            outcome = f"[red]{escape(r.error[:60])}[/red]"
        elif r.applied:
            outcome = "[green]applied[/green]"
        else:
            outcome = "[dim]planned[/dim]"
        table.add_row(target_name, r.item.describe(), escape(r.statement), outcome)
    console.print(table)


def _run_batches(batches, apply_changes):
    from maintenance.runner import run_worklist
    results = []
    for target, items in batches:
        apply = target.execute_statement if apply_changes else None
        results.extend((target.name, r) for r in run_worklist(items, apply=apply))
    return results


@maintenance.command("plan")
@click.pass_context
def maintenance_plan(ctx):
    """Show the statements a maintenance run would execute (dry run)."""
    c = _get_components(ctx)
    batches = _build_worklist(c)
    if not batches:
        console.print("[green]Nothing needs maintenance[/green]")
        return
    _print_worklist(_run_batches(batches, apply_changes=False))


@maintenance.command("run")
@click.option("--apply", "apply_changes", is_flag=True, help="Execute the statements (default is a dry run)")
@click.pass_context
def maintenance_run(ctx, apply_changes):
    """Execute each work-list against the target it was planned from."""
    c = _get_components(ctx)
    batches = _build_worklist(c)
    if not batches:
        console.print("[green]Nothing needs maintenance[/green]")
        return
    results = _run_batches(batches, apply_changes)
    _print_worklist(results)
    failed = [r for _, r in results if r.error]
    if not apply_changes:
        console.print("[dim]Dry run. Re-run with --apply to execute.[/dim]")
    elif failed:
        console.print(f"[yellow]{len(failed)} of {len(results)} statements failed[/yellow]")
        ctx.exit(1)


if __name__ == "__main__":
    cli()
