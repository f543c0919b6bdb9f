"""Sequential candidate trial loop.

Each candidate is optionally prechecked with a cheap probe, then handed to a
caller-supplied start function that launches the real client. The loop is
strictly sequential: every attempt binds the same local proxy address, so
only one client may be alive at a time.
"""

import asyncio
import inspect
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import logutil
from errors import NoViableEndpoint
from prober import ProbeResult, quic_probe

StopAction = Optional[Callable[[], object]]
StartFn = Callable[[str], Awaitable[tuple[StopAction, bool, Optional[Exception]]]]
Precheck = Callable[[str, float], Awaitable[object]]


@dataclass
class TrialOutcome:
    endpoint: str | None = None
    error: Exception | None = None
    tried: int = 0

    @property
    def ok(self) -> bool:
        return self.endpoint is not None


async def _call_stop(stop: StopAction) -> None:
    if stop is None:
        return
    result = stop()
    if inspect.isawaitable(result):
        await result


def _precheck_passed(result: object) -> bool:
    if isinstance(result, ProbeResult):
        return result.success
    return bool(result)


async def try_candidates(
    candidates: list[str],
    max_to_try: int,
    ping: bool,
    ping_timeout: float,
    per_endpoint_timeout: float,
    start_fn: StartFn,
    precheck: Precheck = quic_probe,
    precheck_kind: str = "quic",
) -> TrialOutcome:
    """Return the first candidate whose start function reports success.

    Args:
        candidates: Ordered ``host:port`` endpoints
        max_to_try: Cap on attempts; <= 0 or larger than the list means all
        ping: Run ``precheck`` before launching a candidate
        ping_timeout: Timeout handed to ``precheck``
        per_endpoint_timeout: Informational; enforced by ``start_fn``
        start_fn: ``await start_fn(ep) -> (stop, ok, err)``. ``stop`` is
            called exactly once per attempt, whatever the outcome. OSError
            and timeouts raised by ``start_fn`` reject the candidate; any
            other exception aborts the run.
        precheck: ``await precheck(ep, timeout)``; falsy or an unsuccessful
            ProbeResult skips the candidate
        precheck_kind: Name of the precheck, for logging
    """
    if max_to_try <= 0 or max_to_try > len(candidates):
        max_to_try = len(candidates)

    for i, ep in enumerate(candidates[:max_to_try]):
        logutil.info("candidate", endpoint=ep, idx=i + 1, of=max_to_try)

        if ping and not _precheck_passed(await precheck(ep, ping_timeout)):
            logutil.info(
                "precheck failed",
                endpoint=ep, kind=precheck_kind, timeout=f"{ping_timeout:g}s",
            )
            continue

        try:
            stop, ok, err = await start_fn(ep)
        except (OSError, asyncio.TimeoutError) as e:
            stop, ok, err = None, False, e

        await _call_stop(stop)

        if err is not None:
            logutil.info("start failed", endpoint=ep, err=str(err))
            continue
        if ok:
            logutil.info("selected endpoint", endpoint=ep)
            return TrialOutcome(endpoint=ep, tried=i + 1)

        logutil.info(
            "not ready within per-endpoint timeout",
            endpoint=ep, timeout=f"{per_endpoint_timeout:g}s",
        )

    return TrialOutcome(error=NoViableEndpoint(max_to_try), tried=max_to_try)
