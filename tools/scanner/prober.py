"""Cheap reachability probes for candidate endpoints.

Three strategies:
  - QUIC handshake only (aioquic), no streams opened
  - TLS-over-TCP handshake, the fallback when QUIC is disabled
  - ICMP ping through the system ``ping`` binary

Certificates are never verified: these are reachability probes, not trust
checks. A failed probe is classified as handshake, timeout or connection
error purely for logging; callers reject the candidate either way.
"""

import asyncio
import platform
import socket
import ssl
import time
from dataclasses import dataclass
from typing import Callable

from aioquic.asyncio.protocol import QuicConnectionProtocol
from aioquic.quic.configuration import QuicConfiguration
from aioquic.quic.connection import QuicConnection

import logutil
from rangeip import is_ip_literal, split_host_port

DEFAULT_PROBE_TIMEOUT = 3.0

H3_ALPN = ["h3", "h3-29", "h3-32", "h3-34"]
TCP_ALPN = ["h2", "http/1.1"]

_HANDSHAKE_HINTS = (
    "handshake",
    "crypto_error",
    "remote error",
    "quic:",
    "alert",
    "bad certificate",
)


@dataclass(frozen=True)
class ProbeResult:
    endpoint: str
    success: bool
    transport: str
    elapsed: float = 0.0
    error: str | None = None
    reason: str | None = None

    @property
    def latency_ms(self) -> int:
        return int(self.elapsed * 1000) if self.success else -1


def classify_error(exc: BaseException) -> str:
    """Map a probe exception to ``handshake``, ``timeout`` or ``connection``."""
    if isinstance(exc, asyncio.TimeoutError):
        return "timeout"
    if isinstance(exc, ssl.SSLError):
        return "handshake"
    text = str(exc).lower()
    if any(hint in text for hint in _HANDSHAKE_HINTS):
        return "handshake"
    return "connection"


def _server_name(host: str) -> str | None:
    """SNI is only sent for hostnames, never for IP literals."""
    return None if is_ip_literal(host) else host


def _insecure_context() -> ssl.SSLContext:
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    ctx.set_alpn_protocols(TCP_ALPN)
    return ctx


async def _quic_handshake(host: str, port: int, timeout: float) -> None:
    configuration = QuicConfiguration(
        is_client=True,
        alpn_protocols=H3_ALPN,
        verify_mode=ssl.CERT_NONE,
        idle_timeout=timeout,
    )
    configuration.server_name = _server_name(host)

    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_DGRAM)
    family, _, _, _, addr = infos[0]
    local = ("::", 0) if family == socket.AF_INET6 else ("0.0.0.0", 0)

    # Abandoned handshakes drop the socket at once, no graceful close drain.
    transport, protocol = await loop.create_datagram_endpoint(
        lambda: QuicConnectionProtocol(QuicConnection(configuration=configuration)),
        local_addr=local,
        family=family,
    )
    try:
        protocol.connect(addr)
        await protocol.wait_connected()
        protocol.close()
    finally:
        transport.close()


async def _tls_handshake(host: str, port: int) -> None:
    sni = _server_name(host)
    reader, writer = await asyncio.open_connection(
        host, port, ssl=_insecure_context(), server_hostname=sni or "",
    )
    writer.close()
    try:
        await writer.wait_closed()
    except (ssl.SSLError, OSError):
        pass


def _failed(
    endpoint: str, transport: str, start: float, exc: BaseException,
) -> ProbeResult:
    return ProbeResult(
        endpoint=endpoint,
        success=False,
        transport=transport,
        elapsed=time.monotonic() - start,
        error=str(exc) or type(exc).__name__,
        reason=classify_error(exc),
    )


async def quic_probe(
    endpoint: str, timeout: float = DEFAULT_PROBE_TIMEOUT,
) -> ProbeResult:
    """Attempt a QUIC handshake against ``endpoint`` and close immediately."""
    if timeout <= 0:
        timeout = 1.0
    start = time.monotonic()
    try:
        host, port = split_host_port(endpoint)
        await asyncio.wait_for(_quic_handshake(host, port, timeout), timeout)
    except (asyncio.TimeoutError, ConnectionError, OSError, ValueError) as e:
        return _failed(endpoint, "quic", start, e)
    return ProbeResult(
        endpoint=endpoint,
        success=True,
        transport="quic",
        elapsed=time.monotonic() - start,
    )


async def tls_probe(
    endpoint: str, timeout: float = DEFAULT_PROBE_TIMEOUT,
) -> ProbeResult:
    """TCP dial plus TLS handshake against ``endpoint``."""
    if timeout <= 0:
        timeout = 1.0
    start = time.monotonic()
    try:
        host, port = split_host_port(endpoint)
        await asyncio.wait_for(_tls_handshake(host, port), timeout)
    except (asyncio.TimeoutError, ssl.SSLError, OSError, ValueError) as e:
        return _failed(endpoint, "tcp-tls", start, e)
    return ProbeResult(
        endpoint=endpoint,
        success=True,
        transport="tcp-tls",
        elapsed=time.monotonic() - start,
    )


def ping_argv(host: str, timeout: float) -> list[str]:
    if platform.system().lower() == "windows":
        return ["ping", "-n", "1", "-w", str(int(timeout * 1000)), host]
    return ["ping", "-c", "1", "-W", str(max(int(timeout), 1)), host]


async def icmp_ping(host: str, timeout: float = DEFAULT_PROBE_TIMEOUT) -> bool:
    """Send one ICMP echo via the system ping binary."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *ping_argv(host.strip("[]"), timeout),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        logutil.warn("ping unavailable", host=host, err=str(e))
        return False

    try:
        return await asyncio.wait_for(proc.wait(), timeout + 1) == 0
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return False


def log_probe_result(result: ProbeResult, timeout: float) -> None:
    elapsed = f"{result.elapsed:.3f}s"
    if result.success:
        logutil.info(
            "endpoint ok",
            endpoint=result.endpoint, elapsed=elapsed, mode=result.transport,
        )
    elif result.reason == "handshake":
        logutil.info(
            "handshake failed; skipping endpoint",
            endpoint=result.endpoint, elapsed=elapsed, err=result.error,
        )
    elif result.reason == "timeout":
        logutil.info(
            "scan timeout; skipping endpoint",
            endpoint=result.endpoint, timeout=f"{timeout:g}s",
        )
    else:
        logutil.info(
            "connection failed; skipping endpoint",
            endpoint=result.endpoint, err=result.error,
        )


async def scan_endpoints(
    endpoints: list[str],
    timeout: float = DEFAULT_PROBE_TIMEOUT,
    use_quic: bool = True,
    concurrency: int = 1,
    on_result: Callable[[ProbeResult, int, int], None] | None = None,
) -> list[ProbeResult]:
    """Probe every endpoint; results come back in input order.

    Args:
        endpoints: Candidate ``host:port`` strings
        timeout: Per-probe timeout in seconds
        use_quic: QUIC handshake probe, or TLS-over-TCP when False
        concurrency: Max probes in flight
        on_result: Callback(result, completed_count, total_count)
    """
    if timeout <= 0:
        timeout = DEFAULT_PROBE_TIMEOUT
    probe = quic_probe if use_quic else tls_probe
    sem = asyncio.Semaphore(max(concurrency, 1))
    completed = 0
    total = len(endpoints)

    async def _probe(ep: str) -> ProbeResult:
        nonlocal completed
        async with sem:
            result = await probe(ep, timeout)
        log_probe_result(result, timeout)
        completed += 1
        if on_result:
            on_result(result, completed, total)
        return result

    return list(await asyncio.gather(*(_probe(ep) for ep in endpoints)))
