"""Supervise a running usque process through its log output.

Each supervised run:
1. Starts usque with stdout and stderr piped
2. Reads both streams in two tasks, classifying every line against MARKERS
3. Races the connected flag, process exit and the connect deadline
4. Kills usque on any terminal failure, timeout, or when the caller stops it

Killing is the only way a run is cancelled and it is safe to repeat.
"""

import asyncio
import threading
from enum import Enum

import logutil
from errors import (
    ConnectTimeout,
    EndpointInvalidError,
    HandshakeFailedError,
    PrivateKeyError,
    ProcessExited,
    SupervisorError,
    TunnelFailuresExceeded,
)

DEFAULT_TUNNEL_FAIL_LIMIT = 3
POLL_INTERVAL = 0.05
# Grace period for readers to drain buffered lines after usque exits
DRAIN_TIMEOUT = 1.0
_READ_LIMIT = 1 << 20


class SupervisorState(Enum):
    STARTING = "starting"
    CONNECTED = "connected"
    HANDSHAKE_FAILED = "handshake_failed"
    ENDPOINT_INVALID = "endpoint_invalid"
    PRIVATE_KEY_ERROR = "private_key_error"
    TUNNEL_FAIL_EXCEEDED = "tunnel_fail_exceeded"
    PROCESS_EXITED = "process_exited"


class Marker(Enum):
    PRIVATE_KEY = "private_key"
    ENDPOINT_INVALID = "endpoint_invalid"
    HANDSHAKE_FAILURE = "handshake_failure"
    TUNNEL_FAILED = "tunnel_failed"
    CONNECTED = "connected"
    NO_ACTIVITY = "no_activity"
    ERROR = "error"


# (marker, substrings, case_sensitive). Checked top to bottom, first match
# wins, so a line carrying several markers resolves to the highest priority.
MARKERS = (
    (Marker.PRIVATE_KEY, ("Failed to get private key",), True),
    (Marker.ENDPOINT_INVALID, ("invalid endpoint",), True),
    (Marker.HANDSHAKE_FAILURE, ("handshake failure",), True),
    (Marker.TUNNEL_FAILED, ("failed to connect tunnel", "tunnel connect failed"), False),
    (Marker.CONNECTED, ("Connected to MASQUE server",), True),
    (Marker.NO_ACTIVITY, ("no recent network activity",), True),
    (Marker.ERROR, ("error",), False),
)

# Exit classification order when several terminal flags are set
FAILURE_PRIORITY = (
    SupervisorState.PRIVATE_KEY_ERROR,
    SupervisorState.ENDPOINT_INVALID,
    SupervisorState.HANDSHAKE_FAILED,
    SupervisorState.TUNNEL_FAIL_EXCEEDED,
)


def classify_line(line: str) -> Marker | None:
    lower = line.lower()
    for marker, needles, case_sensitive in MARKERS:
        haystack = line if case_sensitive else lower
        if any(needle in haystack for needle in needles):
            return marker
    return None


class ProcessState:
    """Flags shared by the two reader tasks and the supervising task."""

    def __init__(self, tunnel_fail_limit: int = DEFAULT_TUNNEL_FAIL_LIMIT):
        self._lock = threading.Lock()
        self._tunnel_fail_limit = tunnel_fail_limit
        self._connected = False
        self._handshake_failed = False
        self._endpoint_invalid = False
        self._private_key_error = False
        self._tunnel_failures = 0
        self._first_log_announced = False

    def mark_connected(self) -> bool:
        """Set connected; True only for the first caller, who announces it."""
        with self._lock:
            self._connected = True
            if self._first_log_announced:
                return False
            self._first_log_announced = True
            return True

    def mark_handshake_failed(self) -> None:
        with self._lock:
            self._handshake_failed = True

    def mark_endpoint_invalid(self) -> None:
        with self._lock:
            self._endpoint_invalid = True

    def mark_private_key_error(self) -> None:
        with self._lock:
            self._private_key_error = True

    def add_tunnel_failure(self) -> bool:
        """Count one tunnel failure; True once the limit is reached."""
        with self._lock:
            self._tunnel_failures += 1
            return self._limit_reached()

    def _limit_reached(self) -> bool:
        limit = self._tunnel_fail_limit
        return limit > 0 and self._tunnel_failures >= limit

    @property
    def connected(self) -> bool:
        with self._lock:
            return self._connected

    @property
    def tunnel_failures(self) -> int:
        with self._lock:
            return self._tunnel_failures

    def failure(self) -> SupervisorState | None:
        """Highest-priority terminal failure recorded so far."""
        with self._lock:
            flags = {
                SupervisorState.PRIVATE_KEY_ERROR: self._private_key_error,
                SupervisorState.ENDPOINT_INVALID: self._endpoint_invalid,
                SupervisorState.HANDSHAKE_FAILED: self._handshake_failed,
                SupervisorState.TUNNEL_FAIL_EXCEEDED: self._limit_reached(),
            }
        for state in FAILURE_PRIORITY:
            if flags[state]:
                return state
        return None

    def state(self, exited: bool = False) -> SupervisorState:
        failed = self.failure()
        if failed is not None:
            return failed
        if exited:
            return SupervisorState.PROCESS_EXITED
        if self.connected:
            return SupervisorState.CONNECTED
        return SupervisorState.STARTING

    def error_for_exit(self, returncode: int | None) -> SupervisorError | None:
        failed = self.failure()
        if failed is SupervisorState.PRIVATE_KEY_ERROR:
            return PrivateKeyError()
        if failed is SupervisorState.ENDPOINT_INVALID:
            return EndpointInvalidError()
        if failed is SupervisorState.HANDSHAKE_FAILED:
            return HandshakeFailedError()
        if failed is SupervisorState.TUNNEL_FAIL_EXCEEDED:
            return TunnelFailuresExceeded(self.tunnel_failures, self._tunnel_fail_limit)
        if returncode == 0:
            return None
        return ProcessExited(returncode)


class Supervisor:
    """Own one usque process, its two log readers and its shared state.

    Usage:
        async with Supervisor(argv, bind) as sup:
            await sup.start()
            await sup.wait_connected(timeout)
            await sup.wait()
    """

    def __init__(
        self,
        argv: list[str],
        bind: str,
        tunnel_fail_limit: int = DEFAULT_TUNNEL_FAIL_LIMIT,
        poll_interval: float = POLL_INTERVAL,
    ):
        self.argv = list(argv)
        self.bind = bind
        self.poll_interval = poll_interval
        self.state = ProcessState(tunnel_fail_limit)
        self._proc: asyncio.subprocess.Process | None = None
        self._readers: list[asyncio.Task] = []

    async def __aenter__(self) -> "Supervisor":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc else None

    async def start(self) -> None:
        """Spawn usque. OSError propagates when the binary cannot start."""
        self._proc = await asyncio.create_subprocess_exec(
            *self.argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=_READ_LIMIT,
        )
        self._readers = [
            asyncio.create_task(self._read_stream(self._proc.stdout)),
            asyncio.create_task(self._read_stream(self._proc.stderr)),
        ]

    def kill(self) -> None:
        if self._proc is None or self._proc.returncode is not None:
            return
        try:
            self._proc.kill()
        except ProcessLookupError:
            pass

    async def stop(self) -> None:
        """Kill usque (if still alive), reap it and finish the readers."""
        if self._proc is None:
            return
        self.kill()
        await self._proc.wait()
        await self._drain_readers()

    async def wait_connected(self, timeout: float) -> None:
        """Block until usque reports a tunnel, fails, exits or times out.

        On every failure path the process is dead before this raises.
        """
        if self._proc is None:
            raise RuntimeError("supervisor not started")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            if self.state.connected:
                return
            if self._proc.returncode is not None:
                await self._drain_readers()
                if self.state.connected and self.state.failure() is None:
                    return
                raise self.state.error_for_exit(self._proc.returncode) or ProcessExited(0)
            if loop.time() >= deadline:
                await self.stop()
                logutil.info("connect timeout", bind=self.bind, timeout=f"{timeout:g}s")
                raise ConnectTimeout(timeout)
            await asyncio.sleep(self.poll_interval)

    async def wait(self) -> None:
        """Wait for usque to exit after connecting and classify the exit."""
        if self._proc is None:
            raise RuntimeError("supervisor not started")
        returncode = await self._proc.wait()
        await self._drain_readers()
        err = self.state.error_for_exit(returncode)
        if err is not None:
            raise err

    async def _drain_readers(self) -> None:
        pending = [t for t in self._readers if not t.done()]
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=DRAIN_TIMEOUT)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)

    async def _read_stream(self, stream: asyncio.StreamReader) -> None:
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than the reader limit; skip it
                continue
            if not raw:
                return
            self.handle_line(raw.decode("utf-8", errors="replace").rstrip())

    def handle_line(self, line: str) -> Marker | None:
        """Apply one log line to the shared state, killing usque if fatal."""
        marker = classify_line(line)
        if marker is Marker.CONNECTED:
            if self.state.mark_connected():
                logutil.info("serving proxy", address=self.bind)
        elif marker is Marker.NO_ACTIVITY:
            logutil.info("connection test failed")
        elif marker is Marker.HANDSHAKE_FAILURE:
            logutil.error("handshake failure")
            self.state.mark_handshake_failed()
            self.kill()
        elif marker is Marker.ENDPOINT_INVALID:
            logutil.error("failed to set endpoint")
            self.state.mark_endpoint_invalid()
            self.kill()
        elif marker is Marker.PRIVATE_KEY:
            logutil.error("failed to get private key")
            self.state.mark_private_key_error()
            self.kill()
        elif marker is Marker.TUNNEL_FAILED:
            exceeded = self.state.add_tunnel_failure()
            logutil.warn("tunnel connect failed", count=self.state.tunnel_failures)
            if exceeded:
                logutil.error("tunnel failure limit reached", bind=self.bind)
                self.kill()
        elif marker is Marker.ERROR:
            logutil.info(line.lower())
        return marker
