"""
idvping: game server latency checker

Usage:
    idvping scan [-r asianormal] [--attempts 3] [--method tcp]
    idvping serve --port 8080
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import statistics
import sys
from pathlib import Path

import httpx
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import config as const
from .cache import GeoCache
from .models import Endpoint, GeoRecord, ProbeOutcome, ProbeStatus, RegionResult
from .prober import EndpointProber
from .providers import build_providers
from .resolver import GeoQueue, GeoResolver
from .scanner import RegionScanner
from .servers import ServerListSource

console = Console()
logger = logging.getLogger("idvping")

STATUS_STYLE = {
    ProbeStatus.WAITING: "[dim]waiting[/dim]",
    ProbeStatus.MEASURING: "[yellow]measuring[/yellow]",
    ProbeStatus.DONE: "[green]online[/green]",
    ProbeStatus.TIMEOUT: "[red]timeout[/red]",
    ProbeStatus.SKIPPED: "[dim]skipped[/dim]",
}


def setup_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def country_flag(code: str) -> str:
    """Regional indicator pair for a two letter country code"""
    if not code or len(code) != 2 or not code.isalpha():
        return ""
    offset = 0x1F1E6 - ord("A")
    return "".join(chr(ord(c) + offset) for c in code.upper())


def group_label(region_id: str, group: str | None) -> str:
    labels = const.GROUP_LABELS.get(region_id, const.GROUP_LABELS["default"])
    return labels.get(group or "A", group or "-")


def format_ping(ping: int | None) -> str:
    if ping is None:
        return "-"
    if ping < 80:
        return f"[green]{ping}ms[/green]"
    if ping < 150:
        return f"[yellow]{ping}ms[/yellow]"
    return f"[red]{ping}ms[/red]"


def summarize(outcomes: list[ProbeOutcome]) -> str:
    pings = [o.ping for o in outcomes if o.ping is not None]
    timeouts = sum(1 for o in outcomes if o.status is ProbeStatus.TIMEOUT)
    if not pings:
        return f"online 0, timeout {timeouts}"
    return (
        f"online {len(pings)}, timeout {timeouts} | "
        f"avg {round(statistics.mean(pings))}ms best {min(pings)}ms worst {max(pings)}ms"
    )


ROW_ORDER = {ProbeStatus.MEASURING: 1, ProbeStatus.WAITING: 2}


def display_rows(region: const.Region, endpoints: list[Endpoint], result: RegionResult) -> list[tuple[Endpoint, ProbeOutcome]]:
    """
    Rows worth showing for a region, best first.

    Grouped regions hide the dead group: with one active group only its
    servers are listed, and with both groups down nothing is. Responders come
    first by ping, then servers being measured, queued ones, and finally
    timeouts and skips.
    """
    rows = [(ep, result.outcomes.get(ep.index, ProbeOutcome())) for ep in endpoints]
    if region.has_groups:
        if result.active_group is None:
            rows = []
        elif result.active_group != "A+B":
            rows = [(ep, o) for ep, o in rows if ("B" if ep.group == "B" else "A") == result.active_group]

    def order(row):
        outcome = row[1]
        if outcome.ping is not None:
            return (0, outcome.ping)
        return (ROW_ORDER.get(outcome.status, 3), 0)

    return sorted(rows, key=order)


def show_region(
    region: const.Region,
    endpoints: list[Endpoint],
    result: RegionResult,
    geo: dict[str, GeoRecord],
) -> None:
    if result.error:
        console.print(f"\n[bold]{region.label}[/bold]: [red]failed to fetch server list[/red] [dim]({result.error})[/dim]")
        return
    if not endpoints:
        console.print(f"\n[bold]{region.label}[/bold]: [yellow]no server data available[/yellow]")
        return

    if region.has_groups and result.active_group:
        active = " + ".join(group_label(region.id, g) for g in result.active_group.split("+"))
        title = f"{region.label} - match region: {active}"
    elif result.active_group is None:
        title = f"{region.label} - [red]all servers unreachable[/red]"
    else:
        title = region.label

    rows = display_rows(region, endpoints, result)
    if not rows:
        console.print(f"\n[bold]{title}[/bold]")
        return

    table = Table(title=title)
    table.add_column("ID", style="cyan")
    table.add_column("IP Address")
    if region.has_groups:
        table.add_column("Group")
    table.add_column("Latency", justify="right")
    table.add_column("Status")
    table.add_column("Country")
    table.add_column("Org", style="dim")

    for ep, outcome in rows:
        record = geo.get(ep.ip)
        country = ""
        org = ""
        if record is not None:
            country = f"{country_flag(record.country_code)} {record.country}".strip()
            org = record.org
        row = [ep.server_id, f"{ep.ip}:{ep.port}"]
        if region.has_groups:
            row.append(ep.group or "A")
        row += [format_ping(outcome.ping), STATUS_STYLE[outcome.status], country, org]
        table.add_row(*row)

    console.print()
    console.print(table)
    console.print(f"  [dim]{summarize([outcome for _, outcome in rows])}[/dim]")


async def run_scan(settings: const.Settings, regions: list[const.Region], with_geo: bool = True):
    """Scan the regions; returns (endpoints, results, geo records)"""
    async with httpx.AsyncClient(
        timeout=const.SERVER_LIST_TIMEOUT,
        follow_redirects=True,
        headers={"User-Agent": const.USER_AGENT},
    ) as client:
        source = ServerListSource(settings.regions, client=client)
        prober = EndpointProber.from_settings(settings.probe)

        queue = None
        extra = []
        if with_geo:
            routed, extra = build_providers(client, settings.geo)
            queue = GeoQueue(GeoResolver(routed, GeoCache(), extra))
            queue.start()

        def on_update(region_id: str, ep: Endpoint, outcome: ProbeOutcome):
            if outcome.status in (ProbeStatus.DONE, ProbeStatus.TIMEOUT):
                console.print(f"  [dim]{region_id}[/dim] {ep.ip}:{ep.port} {format_ping(outcome.ping)} {STATUS_STYLE[outcome.status]}")

        scanner = RegionScanner(prober, on_update=on_update, on_reachable=queue.enqueue if queue else None)
        try:
            endpoints, results = await scanner.scan_all(regions, source)
        finally:
            if queue is not None:
                await queue.close()
            for provider in extra:
                provider.close()

        geo = queue.results if queue is not None else {}
        return endpoints, results, geo


def cmd_scan(args, settings: const.Settings) -> int:
    if args.attempts is not None:
        settings.probe.attempts = args.attempts
    if args.timeout_ms is not None:
        settings.probe.timeout_ms = args.timeout_ms
    if args.method is not None:
        settings.probe.method = args.method

    if args.region:
        unknown = [r for r in args.region if r not in settings.regions]
        if unknown:
            console.print(f"[red]Unknown region(s): {', '.join(unknown)}[/red] (valid: {', '.join(settings.regions)})")
            return 1
        regions = [settings.regions[r] for r in args.region]
    else:
        regions = settings.active_regions()

    console.print(f"[bold]Scanning {len(regions)} region(s)[/bold] [dim]({settings.probe.method}, {settings.probe.attempts} attempts)[/dim]")
    endpoints, results, geo = asyncio.run(run_scan(settings, regions, with_geo=not args.no_geo))

    for region in regions:
        show_region(region, endpoints.get(region.id, []), results[region.id], geo)
    return 0


def cmd_serve(args, settings: const.Settings) -> int:
    import uvicorn

    from .api import create_app

    uvicorn.run(create_app(settings), host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="idvping",
        description="Game server latency checker with active-group detection",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Scan the default (non-test) regions
  idvping scan

  # Only Asia, HTTPS timing, no geolocation
  idvping scan -r asianormal --method http --no-geo

  # Serve the JSON API
  idvping serve --port 8080
        """,
    )
    parser.add_argument("-c", "--config", type=Path, help="YAML settings file")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-vv for debug)")
    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Probe region servers and print results")
    scan.add_argument("-r", "--region", action="append", help="Region id (repeatable); default: all enabled regions")
    scan.add_argument("--attempts", type=int, help="Timing trials per server")
    scan.add_argument("--timeout-ms", type=int, help="Per-trial timeout in milliseconds")
    scan.add_argument("--method", choices=const.PROBE_METHODS, help="Trial method")
    scan.add_argument("--no-geo", action="store_true", help="Skip IP geolocation")
    scan.set_defaults(func=cmd_scan)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8080)
    serve.set_defaults(func=cmd_serve)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        settings = const.load_settings(args.config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Config error: {e}[/red]")
        return 1

    try:
        return args.func(args, settings)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped by user[/yellow]")
        return 130


if __name__ == "__main__":
    sys.exit(main())
