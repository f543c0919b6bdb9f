import asyncio
import contextlib
import socket
import struct

from aiohttp import web
from aiohttp import test_utils

from warpcheck import WARP_CHECK_CEILING, WarpStatus, check_warp_over_socks, warp_check_timeout


async def _pipe(reader, writer):
    try:
        while data := await reader.read(65536):
            writer.write(data)
            await writer.drain()
    except (ConnectionError, asyncio.CancelledError):
        pass
    finally:
        writer.close()


async def _socks5_handler(reader, writer):
    """Minimal no-auth SOCKS5 CONNECT relay."""
    ver, nmethods = await reader.readexactly(2)
    await reader.readexactly(nmethods)
    writer.write(b"\x05\x00")
    _, cmd, _, atyp = await reader.readexactly(4)
    if atyp == 1:
        host = socket.inet_ntoa(await reader.readexactly(4))
    elif atyp == 3:
        (length,) = await reader.readexactly(1)
        host = (await reader.readexactly(length)).decode()
    else:
        host = socket.inet_ntop(socket.AF_INET6, await reader.readexactly(16))
    (port,) = struct.unpack("!H", await reader.readexactly(2))

    up_reader, up_writer = await asyncio.open_connection(host, port)
    writer.write(b"\x05\x00\x00\x01" + socket.inet_aton("0.0.0.0") + struct.pack("!H", 0))
    await writer.drain()
    await asyncio.gather(_pipe(reader, up_writer), _pipe(up_reader, writer))


@contextlib.asynccontextmanager
async def socks_proxy():
    server = await asyncio.start_server(_socks5_handler, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        yield f"127.0.0.1:{port}"
    finally:
        server.close()


@contextlib.asynccontextmanager
async def trace_server(body: str, status: int = 200):
    async def handler(request):
        return web.Response(text=body, status=status)

    app = web.Application()
    app.router.add_get("/cdn-cgi/trace", handler)
    server = test_utils.TestServer(app, host="127.0.0.1")
    await server.start_server()
    try:
        yield f"http://127.0.0.1:{server.port}/cdn-cgi/trace"
    finally:
        await server.close()


def _check(body: str, status: int = 200):
    async def scenario():
        async with trace_server(body, status) as url, socks_proxy() as bind:
            return await check_warp_over_socks(bind, url, timeout=5)

    return asyncio.run(scenario())


def test_timeout_is_capped():
    assert warp_check_timeout(30) == WARP_CHECK_CEILING
    assert warp_check_timeout(2) == 2
    assert warp_check_timeout(0) == WARP_CHECK_CEILING


def test_marker_found_case_insensitive():
    status, err = _check("fl=123\nip=192.0.2.1\nWARP=On\n")
    assert status is WarpStatus.OK
    assert err is None


def test_marker_absent():
    status, err = _check("fl=123\nwarp=off\n")
    assert status is WarpStatus.NO_WARP
    assert err is None


def test_non_200_is_http_failure():
    status, err = _check("warp=on", status=503)
    assert status is WarpStatus.HTTP_FAIL
    assert "503" in str(err)


def test_dead_proxy_is_connection_failure(capsys):
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        port = s.getsockname()[1]

    status, err = asyncio.run(
        check_warp_over_socks(f"127.0.0.1:{port}", "http://192.0.2.1/", timeout=2),
    )
    assert status is WarpStatus.CONN_FAIL
    assert err is not None
    assert 'msg="warp check start"' in capsys.readouterr().out


def test_marker_in_later_chunk():
    async def handler(request):
        resp = web.StreamResponse()
        await resp.prepare(request)
        await resp.write(b"fl=123\nip=192.0.2.1\n")
        await asyncio.sleep(0.2)
        await resp.write(b"warp=on\n")
        await resp.write_eof()
        return resp

    async def scenario():
        app = web.Application()
        app.router.add_get("/cdn-cgi/trace", handler)
        server = test_utils.TestServer(app, host="127.0.0.1")
        await server.start_server()
        try:
            async with socks_proxy() as bind:
                url = f"http://127.0.0.1:{server.port}/cdn-cgi/trace"
                return await check_warp_over_socks(bind, url, timeout=5)
        finally:
            await server.close()

    status, err = asyncio.run(scenario())
    assert status is WarpStatus.OK
    assert err is None
