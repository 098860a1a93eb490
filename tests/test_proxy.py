import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestClient, TestServer

from wasmstage.proxy import HttpProxy, WebSocketProxy, make_outbound_uri


@pytest.mark.parametrize(
    ("backend", "incoming", "expected"),
    [
        ("http://localhost:9000/api/", "/users", "http://localhost:9000/api/users"),
        ("http://localhost:9000/api", "/users?q=1", "http://localhost:9000/api/users?q=1"),
        ("http://localhost:9000", "/", "http://localhost:9000/"),
        ("ws://127.0.0.1:8000/ws", "/", "ws://127.0.0.1:8000/ws/"),
    ],
)
def test_make_outbound_uri(backend, incoming, expected):
    assert make_outbound_uri(backend, incoming) == expected


def test_make_outbound_uri_keeps_double_slashes_in_path():
    assert make_outbound_uri("http://localhost:9000/api/", "//x") == "http://localhost:9000/api//x"


def test_make_outbound_uri_requires_scheme_and_authority():
    with pytest.raises(ValueError):
        make_outbound_uri("/api/", "/x")


def test_path_defaults_to_backend_path():
    assert HttpProxy("http://localhost:9000/api").path == "/api"
    assert HttpProxy("http://localhost:9000").path == "/"
    assert WebSocketProxy("ws://localhost:9000/ws").path == "/ws"


def test_path_prefers_rewrite():
    assert HttpProxy("http://localhost:9000/api", rewrite="/front").path == "/front"
    assert WebSocketProxy("ws://localhost:9000/ws", rewrite="/sock").path == "/sock"


async def _echo(request):
    body = await request.read()
    if request.rel_url.raw_path.endswith("/teapot"):
        return web.Response(status=418, text="short and stout", headers={"X-Backend": "yes"})
    return web.json_response(
        {
            "path": request.rel_url.raw_path,
            "query": request.rel_url.raw_query_string,
            "host": request.headers.get("Host"),
            "method": request.method,
            "body": body.decode(),
        }
    )


def _http_backend():
    app = web.Application()
    app.router.add_route("*", "/{tail:.*}", _echo)
    return app


async def _ws_echo(request):
    ws = web.WebSocketResponse()
    await ws.prepare(request)
    async for msg in ws:
        if msg.type is WSMsgType.TEXT:
            if msg.data == "bye":
                await ws.close(code=4001, message=b"done")
                break
            await ws.send_str("echo:" + msg.data)
        elif msg.type is WSMsgType.BINARY:
            await ws.send_bytes(msg.data[::-1])
    return ws


def _ws_backend():
    app = web.Application()
    app.router.add_get("/{tail:.*}", _ws_echo)
    return app


@pytest.mark.asyncio
async def test_http_proxy_forwards_path_query_and_host():
    async with TestServer(_http_backend()) as backend:
        app = web.Application()
        HttpProxy(str(backend.make_url("/api/"))).register(app)
        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/api/users?x=1")
            assert resp.status == 200
            data = await resp.json()
    assert data["path"] == "/api/users"
    assert data["query"] == "x=1"
    assert data["host"] == backend.host
    assert data["method"] == "GET"


@pytest.mark.asyncio
async def test_http_proxy_rewrite_strips_listening_prefix():
    async with TestServer(_http_backend()) as backend:
        app = web.Application()
        HttpProxy(str(backend.make_url("/api/")), rewrite="/front").register(app)
        async with TestClient(TestServer(app)) as client:
            data = await (await client.get("/front/users")).json()
            missing = await client.get("/api/users")
    assert data["path"] == "/api/users"
    assert missing.status == 404


@pytest.mark.asyncio
async def test_http_proxy_forwards_body_status_and_headers():
    async with TestServer(_http_backend()) as backend:
        app = web.Application()
        HttpProxy(str(backend.make_url("/api/"))).register(app)
        async with TestClient(TestServer(app)) as client:
            posted = await (await client.post("/api/items", data=b"payload")).json()
            teapot = await client.get("/api/teapot")
            teapot_text = await teapot.text()
    assert posted["method"] == "POST"
    assert posted["body"] == "payload"
    assert teapot.status == 418
    assert teapot.headers["X-Backend"] == "yes"
    assert teapot_text == "short and stout"


@pytest.mark.asyncio
async def test_http_proxy_only_listens_below_its_path():
    async with TestServer(_http_backend()) as backend:
        app = web.Application()
        HttpProxy(str(backend.make_url("/api"))).register(app)
        async with TestClient(TestServer(app)) as client:
            outside = await client.get("/apix")
            inside = await client.get("/api")
    assert outside.status == 404
    assert inside.status == 200


@pytest.mark.asyncio
async def test_http_proxy_unreachable_backend_is_server_error():
    app = web.Application()
    HttpProxy("http://127.0.0.1:1/api/").register(app)
    async with TestClient(TestServer(app)) as client:
        resp = await client.get("/api/anything")
    assert resp.status == 500


@pytest.mark.asyncio
async def test_websocket_proxy_relays_text_and_binary():
    async with TestServer(_ws_backend()) as backend:
        url = str(backend.make_url("/ws")).replace("http", "ws", 1)
        app = web.Application()
        WebSocketProxy(url).register(app)
        async with TestClient(TestServer(app)) as client:
            ws = await client.ws_connect("/ws")
            await ws.send_str("hi")
            text = await ws.receive_str()
            await ws.send_bytes(b"abc")
            data = await ws.receive_bytes()
            await ws.close()
    assert text == "echo:hi"
    assert data == b"cba"


@pytest.mark.asyncio
async def test_websocket_proxy_forwards_close_code():
    async with TestServer(_ws_backend()) as backend:
        url = str(backend.make_url("/ws")).replace("http", "ws", 1)
        app = web.Application()
        WebSocketProxy(url).register(app)
        async with TestClient(TestServer(app)) as client:
            ws = await client.ws_connect("/ws")
            await ws.send_str("bye")
            msg = await ws.receive()
            await ws.close()
    assert msg.type is WSMsgType.CLOSE
    assert msg.data == 4001


@pytest.mark.asyncio
async def test_websocket_proxy_closes_when_backend_unreachable():
    app = web.Application()
    WebSocketProxy("ws://127.0.0.1:1/ws").register(app)
    async with TestClient(TestServer(app)) as client:
        ws = await client.ws_connect("/ws")
        msg = await ws.receive()
        await ws.close()
    assert msg.type is WSMsgType.CLOSE