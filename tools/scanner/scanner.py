#!/usr/bin/env python3
"""masque-plus - MASQUE endpoint scanner and usque supervisor.

Finds a working Cloudflare MASQUE endpoint, launches usque against it and
serves a local SOCKS proxy.

Usage:
    python scanner.py                              # Interactive wizard
    python scanner.py connect --scan               # Scan ranges, then serve
    python scanner.py connect --endpoint IP:PORT   # Serve a known endpoint
    python scanner.py probe --tcp                  # Handshake-probe ranges only
"""

import argparse
import asyncio
import random
import re
import sys

from rich.console import Console

import logutil
from config_store import DEFAULT_BIND, DEFAULT_CONFIG_FILE
from errors import MasqueError
from masque import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_SCAN_TIMEOUT,
    DEFAULT_USQUE_PATH,
    RunOptions,
    run,
)
from prober import DEFAULT_PROBE_TIMEOUT
from rangeip import (
    DEFAULT_PORTS,
    DEFAULT_V4_RANGES,
    DEFAULT_V6_RANGES,
    IPVersion,
    load_ranges,
)
from supervisor import DEFAULT_TUNNEL_FAIL_LIMIT

console = Console()

_DURATION = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


def parse_duration(value: str) -> float:
    """Seconds from ``30``, ``1.5``, ``15s``, ``500ms``, ``1m30s``, ``15m``, ``1h``."""
    value = value.strip()
    try:
        return float(value)
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for m in _DURATION.finditer(value):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _UNITS[m.group(2)]
        pos = m.end()
    if pos != len(value) or pos == 0:
        raise argparse.ArgumentTypeError(f"invalid duration: {value!r}")
    return total


def parse_ports(value: str) -> list[str]:
    ports = [p.strip() for p in value.split(",") if p.strip()]
    for p in ports:
        if not p.isdigit() or not 1 <= int(p) <= 65535:
            raise argparse.ArgumentTypeError(f"invalid port {p!r}")
    return ports


def _add_range_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--v4-range", action="append", dest="v4_ranges", metavar="CIDR",
        help=f"IPv4 CIDR to scan (repeatable, default: {','.join(DEFAULT_V4_RANGES)})",
    )
    p.add_argument(
        "--v6-range", action="append", dest="v6_ranges", metavar="CIDR",
        help=f"IPv6 CIDR to scan (repeatable, default: {','.join(DEFAULT_V6_RANGES)})",
    )
    p.add_argument(
        "--ranges-file",
        help="File with CIDR ranges (one per line), split into v4/v6 automatically",
    )
    p.add_argument(
        "--ports", type=parse_ports, default=list(DEFAULT_PORTS),
        help="Comma-separated ports, one picked at random per host (default: 443)",
    )
    family = p.add_mutually_exclusive_group()
    family.add_argument("-4", dest="v4_only", action="store_true", help="IPv4 only")
    family.add_argument("-6", dest="v6_only", action="store_true", help="IPv6 only")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="masque-plus - MASQUE endpoint scanner for usque",
    )
    parser.add_argument(
        "--log-level", default="INFO",
        choices=["DEBUG", "INFO", "WARN", "ERROR"],
        help="Minimum log level (default: INFO)",
    )
    sub = parser.add_subparsers(dest="command")

    # ── connect ────────────────────────────────────────────────────────
    conn_p = sub.add_parser("connect", help="Pick an endpoint and serve a SOCKS proxy")
    conn_p.add_argument(
        "--endpoint", "-e", default="",
        help="Endpoint (IP, IP:Port or [IPv6]:Port)",
    )
    conn_p.add_argument(
        "--bind", "-b", default=DEFAULT_BIND,
        help=f"IP:Port to bind SOCKS proxy (default: {DEFAULT_BIND})",
    )
    conn_p.add_argument(
        "--renew", action="store_true",
        help="Force renewal of config even if config.json exists",
    )
    conn_p.add_argument(
        "--scan", action="store_true",
        help="Scan ranges and auto-select the first working endpoint",
    )
    conn_p.add_argument(
        "--connect-timeout", type=parse_duration, default=DEFAULT_CONNECT_TIMEOUT,
        help="Timeout for the final connect (e.g. 15s, 1m, 15m; default 15m)",
    )
    conn_p.add_argument(
        "--scan-timeout", type=parse_duration, default=DEFAULT_SCAN_TIMEOUT,
        help="Per-candidate connect timeout while scanning (default: 10s)",
    )
    conn_p.add_argument(
        "--scan-max", type=int, default=0,
        help="Max candidates to try (0=all, default: 0)",
    )
    conn_p.add_argument(
        "--ping", action="store_true",
        help="Precheck each candidate before launching usque",
    )
    conn_p.add_argument(
        "--precheck", choices=["quic", "tls", "icmp"], default="quic",
        help="Precheck kind used with --ping (default: quic)",
    )
    conn_p.add_argument(
        "--probe-timeout", type=parse_duration, default=DEFAULT_PROBE_TIMEOUT,
        help="Precheck timeout (default: 3s)",
    )
    conn_p.add_argument(
        "--no-shuffle", dest="shuffle", action="store_false",
        help="Try candidates in range order instead of shuffled",
    )
    conn_p.add_argument(
        "--seed", type=int,
        help="Random seed for shuffling and port picks",
    )
    conn_p.add_argument(
        "--tunnel-fail-limit", type=int, default=DEFAULT_TUNNEL_FAIL_LIMIT,
        help="Tunnel connect failures tolerated per candidate (0=unlimited, default: 3)",
    )
    conn_p.add_argument(
        "--warp-check", action="store_true",
        help="Confirm warp=on through the proxy once connected",
    )
    conn_p.add_argument(
        "--warp-strict", action="store_true",
        help="Reject candidates that fail the warp check",
    )
    conn_p.add_argument(
        "--usque", default=DEFAULT_USQUE_PATH,
        help=f"Path to usque binary (default: {DEFAULT_USQUE_PATH})",
    )
    conn_p.add_argument(
        "--config", default=DEFAULT_CONFIG_FILE,
        help=f"usque config file (default: {DEFAULT_CONFIG_FILE})",
    )
    _add_range_args(conn_p)

    # ── probe ──────────────────────────────────────────────────────────
    probe_p = sub.add_parser("probe", help="Handshake-probe ranges without usque")
    probe_p.add_argument(
        "--tcp", action="store_true",
        help="TLS-over-TCP probe instead of QUIC",
    )
    probe_p.add_argument(
        "--timeout", "-t", type=parse_duration, default=DEFAULT_PROBE_TIMEOUT,
        help="Per-probe timeout (default: 3s)",
    )
    probe_p.add_argument(
        "--concurrency", "-c", type=int, default=20,
        help="Parallel probes (default: 20)",
    )
    probe_p.add_argument(
        "--sample", type=int, default=0,
        help="Random IPs per range to probe (0=expand ranges, default: 0)",
    )
    probe_p.add_argument(
        "--output", "-o", default="probe_results.json",
        help="Output JSON file (default: probe_results.json)",
    )
    probe_p.add_argument(
        "--best", default="endpoints.txt",
        help="Output file for reachable endpoints (default: endpoints.txt)",
    )
    probe_p.add_argument("--seed", type=int, help="Random seed")
    _add_range_args(probe_p)

    args = parser.parse_args(argv)
    if args.command == "connect" and not args.endpoint and not args.scan:
        parser.error("--endpoint is required unless --scan is given")
    return args


def _version(args: argparse.Namespace) -> IPVersion:
    if args.v4_only:
        return IPVersion.V4
    if args.v6_only:
        return IPVersion.V6
    return IPVersion.ANY


def _ranges(args: argparse.Namespace) -> tuple[list[str], list[str]]:
    v4 = list(args.v4_ranges or [])
    v6 = list(args.v6_ranges or [])
    if args.ranges_file:
        for cidr in load_ranges(args.ranges_file):
            (v6 if ":" in cidr else v4).append(cidr)
    if not v4 and not v6:
        v4, v6 = list(DEFAULT_V4_RANGES), list(DEFAULT_V6_RANGES)
    return v4, v6


def options_from_args(args: argparse.Namespace) -> RunOptions:
    v4, v6 = _ranges(args)
    return RunOptions(
        endpoint=args.endpoint,
        bind=args.bind,
        usque_path=args.usque,
        config_path=args.config,
        renew=args.renew,
        scan=args.scan,
        version=_version(args),
        connect_timeout=args.connect_timeout,
        scan_timeout=args.scan_timeout,
        scan_max=args.scan_max,
        ping=args.ping,
        precheck=args.precheck,
        probe_timeout=args.probe_timeout,
        shuffle=args.shuffle,
        v4_ranges=v4,
        v6_ranges=v6,
        ports=args.ports,
        tunnel_fail_limit=args.tunnel_fail_limit,
        warp_check=args.warp_check or args.warp_strict,
        warp_check_strict=args.warp_strict,
    )


async def cmd_connect(opts: RunOptions, seed: int | None = None) -> int:
    """Run the connect flow; returns the process exit status."""
    from usque_downloader import ensure_usque

    try:
        opts.usque_path = ensure_usque(opts.usque_path)
    except (OSError, RuntimeError) as e:
        logutil.error("usque binary unavailable", err=str(e))
        return 1

    rng = random.Random(seed) if seed is not None else None
    try:
        await run(opts, rng)
    except MasqueError as e:
        logutil.error(str(e))
        return 1
    return 0


async def cmd_probe(args: argparse.Namespace) -> int:
    """Probe ranges with QUIC or TLS handshakes and report the results."""
    from prober import scan_endpoints
    from rangeip import build_candidates, format_endpoint, sample_cidr
    from report import export_endpoints, export_json, show_final_report, show_progress_result

    rng = random.Random(args.seed) if args.seed is not None else random.Random()
    v4, v6 = _ranges(args)
    version = _version(args)

    if args.sample > 0:
        cidrs = []
        if version in (IPVersion.ANY, IPVersion.V4):
            cidrs += v4
        if version in (IPVersion.ANY, IPVersion.V6):
            cidrs += v6
        endpoints = [
            format_endpoint(ip, rng.choice(args.ports))
            for cidr in cidrs
            for ip in sample_cidr(cidr, args.sample, rng)
        ]
    else:
        endpoints = build_candidates(version, v4, v6, args.ports, rng)

    if not endpoints:
        logutil.error("no endpoints to probe")
        return 1

    console.print(f"\n  [cyan]Probing {len(endpoints)} endpoints...[/cyan]\n")
    results = await scan_endpoints(
        endpoints,
        timeout=args.timeout,
        use_quic=not args.tcp,
        concurrency=args.concurrency,
        on_result=show_progress_result,
    )

    show_final_report(results)
    export_json(results, args.output)
    export_endpoints(results, args.best)
    return 0 if any(r.success for r in results) else 1


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    logutil.set_level(args.log_level)

    if args.command == "connect":
        sys.exit(asyncio.run(cmd_connect(options_from_args(args), args.seed)))
    elif args.command == "probe":
        try:
            sys.exit(asyncio.run(cmd_probe(args)))
        except ValueError as e:
            logutil.error(str(e))
            sys.exit(1)
    else:
        # No subcommand - launch interactive wizard
        from wizard import run_wizard

        options = run_wizard()
        if options is None:
            sys.exit(0)
        sys.exit(asyncio.run(cmd_connect(options)))


if __name__ == "__main__":
    main()
