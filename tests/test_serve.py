import asyncio

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestClient, TestServer

from wasmstage.serve import (
    ProxyConfig,
    ServeConfig,
    ServeSystem,
    make_app,
    public_route,
)


@pytest.mark.parametrize(
    ("public_url", "expected"),
    [("/", "/"), ("/app/", "/app"), ("/app", "/app"), ("/app//", "/app/")],
)
def test_public_route(public_url, expected):
    assert public_route(public_url) == expected


@pytest.fixture
def dist(tmp_path):
    root = tmp_path / "dist"
    (root / "assets").mkdir(parents=True)
    (root / "index.html").write_text("INDEX")
    (root / "style.css").write_text("body{}")
    (root / "assets" / "index.html").write_text("NESTED")
    (tmp_path / "secret.txt").write_text("SECRET")
    return root


@pytest.mark.asyncio
async def test_static_files_and_index_fallback(dist):
    app = make_app(ServeConfig(), dist, asyncio.Condition())
    async with TestClient(TestServer(app)) as client:
        css = await (await client.get("/style.css")).text()
        fallback = await (await client.get("/some/client/route")).text()
        nested = await (await client.get("/assets/")).text()
        root = await (await client.get("/")).text()
    assert css == "body{}"
    assert fallback == "INDEX"
    assert nested == "NESTED"
    assert root == "INDEX"


@pytest.mark.asyncio
async def test_static_rejects_parent_segments(dist):
    app = make_app(ServeConfig(), dist, asyncio.Condition())
    async with TestClient(TestServer(app)) as client:
        resp = await client.get("/%2E%2E/secret.txt")
        text = await resp.text()
    assert text == "INDEX"


@pytest.mark.asyncio
async def test_static_served_under_public_url_only(dist):
    app = make_app(ServeConfig(public_url="/app/"), dist, asyncio.Condition())
    async with TestClient(TestServer(app)) as client:
        css = await (await client.get("/app/style.css")).text()
        outside = await client.get("/other")
    assert css == "body{}"
    assert outside.status == 404


@pytest.mark.asyncio
async def test_reload_socket_announces_builds(dist):
    build_done = asyncio.Condition()
    app = make_app(ServeConfig(), dist, build_done)
    async with TestClient(TestServer(app)) as client:
        ws = await client.ws_connect("/_trunk/ws")
        await asyncio.sleep(0.2)
        async with build_done:
            build_done.notify_all()
        message = await asyncio.wait_for(ws.receive_str(), 5)
        await ws.close()
    assert message == '{"reload": true}'


async def _echo_path(request):
    return web.Response(text=request.rel_url.raw_path)


@pytest.mark.asyncio
async def test_single_proxy_backend_takes_priority_over_static(dist):
    backend_app = web.Application()
    backend_app.router.add_route("*", "/{tail:.*}", _echo_path)
    async with TestServer(backend_app) as backend:
        cfg = ServeConfig(proxy_backend=str(backend.make_url("/api/")))
        app = make_app(cfg, dist, asyncio.Condition())
        async with TestClient(TestServer(app)) as client:
            proxied = await (await client.get("/api/users")).text()
            static = await (await client.get("/style.css")).text()
    assert proxied == "/api/users"
    assert static == "body{}"


async def _ws_echo(request):
    ws = web.WebSocketResponse()
    await ws.prepare(request)
    async for msg in ws:
        if msg.type is WSMsgType.TEXT:
            await ws.send_str(msg.data.upper())
    return ws


@pytest.mark.asyncio
async def test_proxy_list_with_websocket_and_rewrite(dist):
    backend_app = web.Application()
    backend_app.router.add_get("/{tail:.*}", _ws_echo)
    async with TestServer(backend_app) as backend:
        url = str(backend.make_url("/ws")).replace("http", "ws", 1)
        cfg = ServeConfig(proxies=(ProxyConfig(url, rewrite="/live", ws=True),))
        app = make_app(cfg, dist, asyncio.Condition())
        async with TestClient(TestServer(app)) as client:
            ws = await client.ws_connect("/live")
            await ws.send_str("hello")
            reply = await ws.receive_str()
            await ws.close()
    assert reply == "HELLO"


def test_http_addr_combines_address_port_and_public_url(tmp_path):
    cfg = ServeConfig(address="127.0.0.1", port=8080, public_url="/app/")

    async def build():
        return None

    system = ServeSystem(cfg, tmp_path, build, [tmp_path])
    assert system.http_addr == "http://127.0.0.1:8080/app/"


def test_missing_watch_path_is_rejected(tmp_path):
    async def build():
        return None

    with pytest.raises(FileNotFoundError):
        ServeSystem(ServeConfig(), tmp_path, build, [tmp_path / "missing"])


@pytest.mark.asyncio
async def test_run_builds_once_and_stops_on_shutdown(tmp_path, dist):
    shutdown = asyncio.Event()
    builds = []

    async def build():
        builds.append(1)
        shutdown.set()

    system = ServeSystem(
        ServeConfig(port=0), dist, build, [tmp_path], shutdown=shutdown
    )
    await asyncio.wait_for(system.run(), 10)
    assert builds == [1]
    assert shutdown.is_set()