"""Confirm a freshly bound SOCKS proxy actually carries WARP traffic.

One GET through the proxy to Cloudflare's trace endpoint; the body is
searched for ``warp=on``.
"""

import asyncio
import time
from enum import Enum

import aiohttp
from aiohttp_socks import ProxyConnector, ProxyError

import logutil

WARP_TRACE_URL = "https://connectivity.cloudflareclient.com/cdn-cgi/trace"
WARP_MARKER = "warp=on"
WARP_CHECK_CEILING = 5.0
_MAX_BODY = 1 << 20


class WarpStatus(str, Enum):
    OK = "OK"                # marker found in body
    NO_WARP = "NO_WARP"      # request succeeded, marker absent
    HTTP_FAIL = "HTTP_FAIL"  # non-200, read error, timeout
    CONN_FAIL = "CONN_FAIL"  # proxy or connection error


def warp_check_timeout(scan_timeout: float) -> float:
    """Scan timeout capped at ``WARP_CHECK_CEILING``."""
    if scan_timeout <= 0:
        return WARP_CHECK_CEILING
    return min(scan_timeout, WARP_CHECK_CEILING)


def _elapsed(start: float) -> str:
    return f"{time.monotonic() - start:.3f}s"


async def _read_body(resp: aiohttp.ClientResponse) -> bytes:
    """Read the response until EOF or ``_MAX_BODY`` bytes."""
    body = bytearray()
    async for chunk in resp.content.iter_chunked(65536):
        body += chunk
        if len(body) >= _MAX_BODY:
            break
    return bytes(body[:_MAX_BODY])


async def check_warp_over_socks(
    bind: str,
    url: str = WARP_TRACE_URL,
    timeout: float = WARP_CHECK_CEILING,
) -> tuple[WarpStatus, Exception | None]:
    """GET ``url`` through the SOCKS5 proxy at ``bind`` and look for warp=on.

    Returns (status, error). Every outcome is logged.
    """
    start = time.monotonic()
    logutil.info("warp check start", bind=bind, url=url, timeout=f"{timeout:g}s")

    try:
        connector = ProxyConnector.from_url(f"socks5://{bind}")
    except ValueError as e:
        logutil.error("socks5 dialer error", bind=bind, elapsed=_elapsed(start), error=str(e))
        return WarpStatus.CONN_FAIL, e

    try:
        async with aiohttp.ClientSession(connector=connector) as session:
            async with session.get(
                url, timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                if resp.status != 200:
                    logutil.warn(
                        "unexpected http status",
                        url=url, status_code=resp.status,
                        status=resp.reason, elapsed=_elapsed(start),
                    )
                    return WarpStatus.HTTP_FAIL, RuntimeError(
                        f"unexpected status code: {resp.status}",
                    )
                body = await _read_body(resp)
    except (ProxyError, aiohttp.ClientConnectionError, OSError) as e:
        # ServerDisconnectedError is a connection error raised mid-response
        if isinstance(e, aiohttp.ServerDisconnectedError):
            status = WarpStatus.HTTP_FAIL
        else:
            status = WarpStatus.CONN_FAIL
        logutil.error(
            "http request error", url=url, elapsed=_elapsed(start),
            error=str(e) or type(e).__name__, result=status.value,
        )
        return status, e
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logutil.error(
            "http request error", url=url, elapsed=_elapsed(start),
            error=str(e) or type(e).__name__, result=WarpStatus.HTTP_FAIL.value,
        )
        return WarpStatus.HTTP_FAIL, e

    found = WARP_MARKER in body.decode("utf-8", errors="replace").lower()
    fields = {
        "url": url,
        "bind": bind,
        "status_code": 200,
        "bytes": len(body),
        "elapsed": _elapsed(start),
    }
    if found:
        logutil.info("warp check success", result=WarpStatus.OK.value, **fields)
        return WarpStatus.OK, None

    logutil.info("warp check finished - no warp", result=WarpStatus.NO_WARP.value, **fields)
    return WarpStatus.NO_WARP, None
