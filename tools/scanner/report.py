"""Rich terminal output for probe sweeps: progress lines, tables, JSON export."""

import json

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from prober import ProbeResult

console = Console()


def sort_results(results: list[ProbeResult]) -> list[ProbeResult]:
    """Successful results by latency, then failures in original order."""
    working = sorted([r for r in results if r.success], key=lambda r: r.elapsed)
    failed = [r for r in results if not r.success]
    return working + failed


def build_results_table(
    results: list[ProbeResult], title: str = "Probe Results",
) -> Table:
    table = Table(title=title, show_lines=False)
    table.add_column("#", style="dim", width=4)
    table.add_column("Endpoint", min_width=22)
    table.add_column("Transport", min_width=8)
    table.add_column("Status", min_width=10)
    table.add_column("Latency", min_width=8, justify="right")

    for i, r in enumerate(results, 1):
        status = "[green]OK[/green]" if r.success else f"[red]{r.reason or 'FAIL'}[/red]"
        latency = f"{r.latency_ms}ms" if r.success else "-"
        table.add_row(str(i), escape(r.endpoint), r.transport, status, latency)

    return table


def show_final_report(results: list[ProbeResult], top_n: int = 20) -> None:
    """Display the fastest endpoints and a summary panel."""
    ordered = sort_results(results)
    working = [r for r in ordered if r.success]

    shown = min(top_n, len(ordered))
    if shown > 0:
        console.print()
        console.print(build_results_table(ordered[:shown], title=f"Top {shown} Endpoints"))

    if working:
        best = f"{escape(working[0].endpoint)} ({working[0].latency_ms}ms)"
    else:
        best = "none"

    summary = (
        f"Probed: {len(results)} endpoints | "
        f"[green]Reachable: {len(working)}[/green] | "
        f"[red]Rejected: {len(results) - len(working)}[/red]\n"
        f"Best: {best}"
    )
    console.print()
    console.print(Panel(summary, title="Summary", border_style="bright_cyan"))


def show_progress_result(result: ProbeResult, completed: int, total: int) -> None:
    """Print a single probe result as it completes."""
    pct = int(completed / total * 100) if total > 0 else 0
    bar_len = 30
    filled = int(bar_len * completed / total) if total > 0 else 0
    bar = "█" * filled + "░" * (bar_len - filled)

    if result.success:
        status = f"[green]✓[/green] {result.latency_ms}ms"
    else:
        status = f"[red]✗[/red] {result.reason or 'FAIL'}"

    console.print(
        f"  {bar} {completed}/{total} ({pct}%) {escape(result.endpoint)}: {status}",
    )


def export_json(results: list[ProbeResult], path: str = "probe_results.json") -> None:
    """Export all results to JSON."""
    data = [
        {
            "endpoint": r.endpoint,
            "success": r.success,
            "transport": r.transport,
            "elapsed_ms": round(r.elapsed * 1000, 1),
            "reason": r.reason,
            "error": r.error,
        }
        for r in sort_results(results)
    ]
    with open(path, "w") as f:
        json.dump(data, f, indent=2)
    console.print(f"  Full results saved to: [cyan]{escape(path)}[/cyan]")


def export_endpoints(
    results: list[ProbeResult], path: str = "endpoints.txt", top_n: int = 50,
) -> None:
    """Export the top N reachable endpoints, one per line."""
    working = [r for r in sort_results(results) if r.success][:top_n]
    with open(path, "w") as f:
        for r in working:
            f.write(f"{r.endpoint}  # {r.latency_ms}ms\n")
