"""Drive usque end to end: register, pick an endpoint, serve the proxy.

usque is invoked in two modes:
  - ``usque register -n masque-plus``, answering its two prompts with "y"
  - ``usque socks --config <file> -b <ip> -p <port>``

Scanning launches the socks mode once per candidate with a short connect
timeout; the chosen endpoint is then run for real under the overall connect
timeout.
"""

import asyncio
import os
import random
from dataclasses import dataclass, field

import logutil
from candidates import try_candidates
from config_store import (
    DEFAULT_BIND,
    DEFAULT_CONFIG_FILE,
    DEFAULT_STATE_FILE,
    State,
    save_state,
    set_endpoint,
    split_bind,
)
from errors import (
    NoViableEndpoint,
    PrivateKeyError,
    RegistrationError,
    SupervisorError,
)
from prober import DEFAULT_PROBE_TIMEOUT, icmp_ping, quic_probe, tls_probe
from rangeip import (
    DEFAULT_PORTS,
    DEFAULT_V4_RANGES,
    DEFAULT_V6_RANGES,
    IPVersion,
    build_candidates,
    shuffle_candidates,
    split_host_port,
)
from supervisor import DEFAULT_TUNNEL_FAIL_LIMIT, Supervisor
from warpcheck import WARP_TRACE_URL, WarpStatus, check_warp_over_socks, warp_check_timeout

DEFAULT_USQUE_PATH = "./usque"
DEFAULT_CONNECT_TIMEOUT = 15 * 60.0
DEFAULT_SCAN_TIMEOUT = 10.0
DEVICE_NAME = "masque-plus"
SCAN_TRIGGER_ENDPOINT = "engage.cloudflareclient.com:2408"


@dataclass
class RunOptions:
    endpoint: str = ""
    bind: str = DEFAULT_BIND
    usque_path: str = DEFAULT_USQUE_PATH
    config_path: str = DEFAULT_CONFIG_FILE
    state_path: str = DEFAULT_STATE_FILE
    renew: bool = False
    scan: bool = False
    version: IPVersion = IPVersion.ANY
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    scan_timeout: float = DEFAULT_SCAN_TIMEOUT
    scan_max: int = 0
    ping: bool = False
    precheck: str = "quic"
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    shuffle: bool = True
    v4_ranges: list[str] = field(default_factory=lambda: list(DEFAULT_V4_RANGES))
    v6_ranges: list[str] = field(default_factory=lambda: list(DEFAULT_V6_RANGES))
    ports: list[str] = field(default_factory=lambda: list(DEFAULT_PORTS))
    tunnel_fail_limit: int = DEFAULT_TUNNEL_FAIL_LIMIT
    warp_check: bool = False
    warp_check_strict: bool = False
    warp_check_url: str = WARP_TRACE_URL

    @property
    def wants_scan(self) -> bool:
        return self.scan or self.endpoint.lower() == SCAN_TRIGGER_ENDPOINT


def usque_register_argv(usque_path: str) -> list[str]:
    return [usque_path, "register", "-n", DEVICE_NAME]


def usque_socks_argv(usque_path: str, config_path: str, bind: str) -> list[str]:
    bind_ip, bind_port = split_bind(bind)
    return [usque_path, "socks", "--config", config_path, "-b", bind_ip, "-p", bind_port]


async def register(usque_path: str) -> None:
    """Run ``usque register`` and accept both of its prompts."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *usque_register_argv(usque_path),
            stdin=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise RegistrationError(f"cannot start usque: {e}") from e

    await proc.communicate(b"y\ny\n")
    if proc.returncode != 0:
        raise RegistrationError(f"usque register exited with code {proc.returncode}")


async def ensure_identity(opts: RunOptions) -> None:
    if opts.renew or not os.path.exists(opts.config_path):
        logutil.info("registering usque (renew or config missing)...")
        await register(opts.usque_path)
    else:
        logutil.info("successfully loaded masque identity")


def _precheck_fn(name: str):
    if name == "tls":
        return tls_probe
    if name == "icmp":
        async def _ping(ep: str, timeout: float) -> bool:
            host, _ = split_host_port(ep)
            return await icmp_ping(host, timeout)
        return _ping
    return quic_probe


def make_scan_start(opts: RunOptions):
    """Start function for try_candidates: launch usque against one endpoint."""

    async def start(ep: str):
        set_endpoint(opts.config_path, ep)
        sup = Supervisor(
            usque_socks_argv(opts.usque_path, opts.config_path, opts.bind),
            bind=opts.bind,
            tunnel_fail_limit=opts.tunnel_fail_limit,
        )
        try:
            await sup.start()
        except OSError as e:
            return sup.stop, False, e

        try:
            await sup.wait_connected(opts.scan_timeout)
        except PrivateKeyError:
            # Identity problem, not an endpoint problem: surface it
            await sup.stop()
            raise
        except SupervisorError as e:
            return sup.stop, False, e

        if opts.warp_check:
            status, _ = await check_warp_over_socks(
                opts.bind, opts.warp_check_url, warp_check_timeout(opts.scan_timeout),
            )
            if opts.warp_check_strict and status is not WarpStatus.OK:
                return sup.stop, False, None
        return sup.stop, True, None

    return start


def scan_candidates(opts: RunOptions, rng: random.Random | None = None) -> list[str]:
    candidates = build_candidates(
        opts.version, opts.v4_ranges, opts.v6_ranges, opts.ports, rng,
    )
    if opts.shuffle:
        candidates = shuffle_candidates(candidates, rng)
    return candidates


async def scan_for_endpoint(opts: RunOptions, rng: random.Random | None = None) -> str:
    """Try candidates in order and return the first that connects."""
    candidates = scan_candidates(opts, rng)
    logutil.info("scanner mode enabled", candidates=len(candidates))

    outcome = await try_candidates(
        candidates,
        max_to_try=opts.scan_max,
        ping=opts.ping,
        ping_timeout=opts.probe_timeout,
        per_endpoint_timeout=opts.scan_timeout,
        start_fn=make_scan_start(opts),
        precheck=_precheck_fn(opts.precheck),
        precheck_kind=opts.precheck,
    )
    if not outcome.ok:
        raise outcome.error or NoViableEndpoint(outcome.tried)
    return outcome.endpoint


async def run_socks(opts: RunOptions, endpoint: str) -> None:
    """Serve the proxy through ``endpoint`` until usque exits."""
    family = set_endpoint(opts.config_path, endpoint)
    logutil.info(f"using {family} endpoint", endpoint=endpoint)

    async with Supervisor(
        usque_socks_argv(opts.usque_path, opts.config_path, opts.bind),
        bind=opts.bind,
        tunnel_fail_limit=opts.tunnel_fail_limit,
    ) as sup:
        await sup.start()
        await sup.wait_connected(opts.connect_timeout)
        await sup.wait()


async def run(opts: RunOptions, rng: random.Random | None = None) -> str:
    """Full flow. Returns the endpoint that was served."""
    logutil.info("running in masque mode")
    split_bind(opts.bind)

    await ensure_identity(opts)

    endpoint = opts.endpoint
    if opts.wants_scan:
        try:
            endpoint = await scan_for_endpoint(opts, rng)
        except PrivateKeyError:
            logutil.error("private key error detected, re-registering...")
            await register(opts.usque_path)
            endpoint = await scan_for_endpoint(opts, rng)
        save_state(State(endpoint=endpoint, socks=opts.bind), opts.state_path)

    try:
        await run_socks(opts, endpoint)
    except PrivateKeyError:
        logutil.error("private key error detected, re-registering...")
        await register(opts.usque_path)
        await run_socks(opts, endpoint)
    return endpoint
