"""
Reporting
=========
Human-readable rendering of a run with rich: a live progress table while the
scheduler runs, a final summary of every series and threshold, and the JSON
export of the RunResult.
"""

import asyncio
import json
from pathlib import Path
from typing import Optional

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from . import metrics as m
from .metrics import CounterSnapshot, MetricsRegistry, RateSnapshot, TrendSnapshot
from .result import RunResult
from .scheduler import Scheduler

console = Console()

REFRESH_PER_SECOND = 4


def _ms(value: Optional[float]) -> str:
    return "-" if value is None else f"{value:.2f}ms"


def _pct(rate: Optional[float]) -> str:
    return "no data" if rate is None else f"{rate * 100:.2f}%"


def _counter(metrics: MetricsRegistry, name: str) -> float:
    series = metrics.get(name)
    return series.value if series is not None and hasattr(series, "value") else 0


# =============================================================================
# LIVE PROGRESS
# =============================================================================

def create_progress_table(scheduler: Scheduler) -> Table:
    """Current run metrics in two metric/value column pairs."""
    metrics = scheduler.metrics
    requests = _counter(metrics, m.REQUESTS)
    elapsed = scheduler.elapsed()
    fail_rate = metrics.get(m.FAIL_RATE)
    duration = metrics.get(m.REQUEST_DURATION)
    rate_snap = fail_rate.snapshot() if fail_rate is not None else None
    trend_snap = duration.snapshot() if duration is not None else None

    table = Table(title=f"📊 {scheduler.state.value.title()} {elapsed:.0f}s / {scheduler.duration:.0f}s", expand=True)
    table.add_column("Metric", style="cyan", width=22)
    table.add_column("Value", style="green", width=15)
    table.add_column("Metric", style="cyan", width=22)
    table.add_column("Value", style="green", width=15)

    table.add_row(
        "Active", f"{scheduler.active:,}",
        "Target", f"{scheduler.target:,}",
    )
    table.add_row(
        "Requests", f"{requests:,.0f}",
        "Current RPS", f"{requests / elapsed:,.1f}" if elapsed > 0 else "-",
    )
    table.add_row(
        "Fail Rate", _pct(rate_snap.rate if rate_snap else None),
        "Iterations", f"{_counter(metrics, m.ITERATIONS):,.0f}",
    )
    table.add_row(
        "P95 Latency", _ms(trend_snap.p95 if trend_snap else None),
        "P99 Latency", _ms(trend_snap.p99 if trend_snap else None),
    )
    table.add_row(
        "Transport Errors", f"[red]{_counter(metrics, m.TRANSPORT_ERRORS):,.0f}[/red]",
        "Saturation", f"[yellow]{_counter(metrics, m.SATURATION_REJECTIONS):,.0f}[/yellow]",
    )
    return table


async def run_with_live(scheduler: Scheduler, show_live: bool = True) -> RunResult:
    """Run the scheduler, refreshing a live table while it works."""
    if not show_live:
        return await scheduler.run()

    with Live(create_progress_table(scheduler), refresh_per_second=REFRESH_PER_SECOND, console=console) as live:
        async def update_display():
            while True:
                live.update(create_progress_table(scheduler))
                await asyncio.sleep(1 / REFRESH_PER_SECOND)

        display_task = asyncio.ensure_future(update_display())
        try:
            result = await scheduler.run()
        finally:
            display_task.cancel()
            try:
                await display_task
            except asyncio.CancelledError:
                pass
        live.update(create_progress_table(scheduler))
    return result


# =============================================================================
# FINAL SUMMARY
# =============================================================================

def create_series_table(result: RunResult) -> Table:
    table = Table(title="Series", expand=True)
    table.add_column("Name", style="cyan")
    table.add_column("Count", justify="right")
    table.add_column("Value / Avg", justify="right")
    table.add_column("P50", justify="right")
    table.add_column("P95", justify="right")
    table.add_column("P99", justify="right")
    table.add_column("Max", justify="right")

    for name, snap in sorted(result.series.items()):
        if isinstance(snap, TrendSnapshot):
            table.add_row(
                name, f"{snap.count:,}", _ms(snap.avg),
                _ms(snap.p50), _ms(snap.p95), _ms(snap.p99), _ms(snap.max),
            )
        elif isinstance(snap, RateSnapshot):
            table.add_row(name, f"{snap.total:,}", _pct(snap.rate), "", "", "", "")
        elif isinstance(snap, CounterSnapshot):
            table.add_row(name, f"{snap.samples:,}", f"{snap.value:,.0f}", "", "", "", "")
    return table


def create_threshold_table(result: RunResult) -> Table:
    table = Table(title="Thresholds", expand=True)
    table.add_column("Series", style="cyan")
    table.add_column("Expected")
    table.add_column("Actual", justify="right")
    table.add_column("Result")

    for verdict in result.verdicts:
        observed = "-" if verdict.observed is None else f"{verdict.observed:,.4g}"
        if verdict.passed:
            outcome = "[green]✓ PASSED[/green]"
        elif verdict.reason.value == "no-data":
            outcome = "[yellow]✗ NO DATA[/yellow]"
        else:
            outcome = f"[red]✗ {verdict.reason.value.upper()}[/red]"
        table.add_row(verdict.constraint.series, verdict.constraint.expression, observed, outcome)
    return table


def print_summary(result: RunResult, out: Optional[Console] = None):
    out = out or console
    requests = result.get(m.REQUESTS)
    total = requests.value if isinstance(requests, CounterSnapshot) else 0
    rps = total / result.duration if result.duration > 0 else 0.0

    header = (
        f"[cyan]Scenarios:[/cyan]  {', '.join(result.scenarios)}\n"
        f"[cyan]Duration:[/cyan]   {result.duration:.2f}s\n"
        f"[cyan]Requests:[/cyan]   {total:,.0f} ({rps:,.1f} req/s)\n"
        f"[cyan]Peak active:[/cyan] {result.peak_active:,}\n\n"
        f"[bold]Test Result:[/bold] {'[green]✓ PASSED[/green]' if result.passed else '[red]✗ FAILED[/red]'}"
    )
    parts = [header, create_series_table(result)]
    if result.verdicts:
        parts.append(create_threshold_table(result))
    out.print(Panel(
        Group(*parts),
        title="📊 Final Results",
        border_style="green" if result.passed else "red",
    ))


def write_json_report(result: RunResult, output_path: Optional[str] = None) -> str:
    json_str = json.dumps(result.to_dict(), indent=2)
    if output_path:
        Path(output_path).write_text(json_str)
        console.print(f"[green]JSON report saved to: {output_path}[/green]")
    return json_str
