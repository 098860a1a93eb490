"""Proxy HTTP requests and WebSocket connections to a backend."""

from __future__ import annotations

import asyncio
import logging
from urllib.parse import urlsplit

import aiohttp
from aiohttp import WSMsgType, web

log = logging.getLogger(__name__)

_SKIP_REQUEST_HEADERS = frozenset({"host", "content-length", "transfer-encoding"})
_SKIP_RESPONSE_HEADERS = frozenset({"transfer-encoding", "connection"})
_UNSENDABLE_CLOSE_CODES = frozenset({0, 1005, 1006, 1015})


def make_outbound_uri(backend: str, request: str) -> str:
    """Join the backend URL with the path and query left after the listening prefix."""
    target = urlsplit(backend)
    if not target.scheme or not target.netloc:
        raise ValueError(f"error building proxy request to backend {backend!r}")
    raw = request.partition("#")[0]
    request_path, has_query, query = raw.partition("?")
    request_path = request_path or "/"
    backend_path = target.path or "/"

    # The listening prefix was stripped by the router, so the backend path goes in front.
    segments = ["/", backend_path.lstrip("/")]
    if backend_path.endswith("/"):
        segments.append(request_path.lstrip("/"))
    else:
        segments.append(request_path)
    if has_query:
        segments += ["?", query]
    return f"{target.scheme}://{target.netloc}{''.join(segments)}"


def _prefix_patterns(path: str) -> list[str]:
    """Route patterns matching ``path`` itself and everything below it."""
    prefix = path.rstrip("/")
    if not prefix:
        return ["/{tail:.*}"]
    return [prefix, prefix + "/{tail:.*}"]


def _remainder(request: web.Request, path: str) -> str:
    """The raw request path with the listening prefix removed."""
    prefix = path.rstrip("/")
    rest = request.rel_url.raw_path[len(prefix):]
    return rest if rest.startswith("/") else "/" + rest


def _with_query(request: web.Request, path: str) -> str:
    query = request.rel_url.raw_query_string
    return f"{path}?{query}" if query else path


class _Proxy:
    """A backend reachable below a listening path."""

    def __init__(self, backend: str, rewrite: str | None = None) -> None:
        self.backend = backend
        self.rewrite = rewrite
        self._session: aiohttp.ClientSession | None = None

    @property
    def path(self) -> str:
        """The path this proxy listens at."""
        if self.rewrite is not None:
            return self.rewrite
        return urlsplit(self.backend).path or "/"

    def _make_session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession()

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = self._make_session()
        return self._session

    async def _close(self, _app: web.Application) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _outbound(self, request: web.Request) -> str:
        return make_outbound_uri(
            self.backend, _with_query(request, _remainder(request, self.path))
        )

    def _add_routes(self, app: web.Application, method: str) -> None:
        for pattern in _prefix_patterns(self.path):
            app.router.add_route(method, pattern, self._handle)
        app.on_cleanup.append(self._close)

    async def _handle(self, request: web.Request) -> web.StreamResponse:
        raise NotImplementedError


class HttpProxy(_Proxy):
    """Forwards HTTP requests below its path to the backend."""

    def __init__(self, backend: str, rewrite: str | None = None, insecure: bool = False) -> None:
        super().__init__(backend, rewrite)
        self.insecure = insecure

    def _make_session(self) -> aiohttp.ClientSession:
        connector = aiohttp.TCPConnector(ssl=False) if self.insecure else None
        return aiohttp.ClientSession(connector=connector, auto_decompress=False)

    def register(self, app: web.Application) -> None:
        """Add the routes of this proxy to ``app``."""
        self._add_routes(app, "*")

    async def _handle(self, request: web.Request) -> web.StreamResponse:
        headers = [
            (key, value)
            for key, value in request.headers.items()
            if key.lower() not in _SKIP_REQUEST_HEADERS
        ]
        host = urlsplit(self.backend).hostname
        if host:
            headers.append(("Host", host))
        try:
            outbound = self._outbound(request)
            body = await request.read()
            upstream = await self._client().request(
                request.method, outbound, headers=headers, data=body or None
            )
        except (aiohttp.ClientError, OSError, ValueError, asyncio.TimeoutError):
            log.exception("error proxying request to proxy backend")
            return web.Response(status=500)

        async with upstream:
            response = web.StreamResponse(status=upstream.status)
            for key, value in upstream.headers.items():
                if key.lower() not in _SKIP_RESPONSE_HEADERS:
                    response.headers.add(key, value)
            await response.prepare(request)
            async for chunk in upstream.content.iter_any():
                await response.write(chunk)
            await response.write_eof()
        return response


async def _pump(source: web.WebSocketResponse | aiohttp.ClientWebSocketResponse,
                sink: web.WebSocketResponse | aiohttp.ClientWebSocketResponse) -> None:
    """Forward messages from ``source`` to ``sink`` until either side closes."""
    while True:
        msg = await source.receive()
        try:
            if msg.type is WSMsgType.TEXT:
                await sink.send_str(msg.data)
            elif msg.type is WSMsgType.BINARY:
                await sink.send_bytes(msg.data)
            elif msg.type is WSMsgType.PING:
                await sink.ping(msg.data)
            elif msg.type is WSMsgType.PONG:
                await sink.pong(msg.data)
            elif msg.type is WSMsgType.CLOSE:
                code = msg.data
                if isinstance(code, int) and code not in _UNSENDABLE_CLOSE_CODES:
                    await sink.close(code=code, message=(msg.extra or "").encode())
                else:
                    await sink.close()
                return
            else:
                return
        except (ConnectionError, RuntimeError):
            log.exception("error forwarding WebSocket message")
            return


class WebSocketProxy(_Proxy):
    """Bridges WebSocket connections below its path to the backend."""

    def register(self, app: web.Application) -> None:
        """Add the routes of this proxy to ``app``."""
        self._add_routes(app, "GET")

    async def _handle(self, request: web.Request) -> web.StreamResponse:
        frontend = web.WebSocketResponse(autoping=False)
        await frontend.prepare(request)
        log.debug("new websocket connection")

        try:
            outbound = self._outbound(request)
        except ValueError:
            log.exception("failed to build proxy uri from %s", request.rel_url)
            await frontend.close()
            return frontend

        try:
            backend = await self._client().ws_connect(outbound, autoping=False)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError):
            log.exception("error establishing WebSocket connection to backend %s", outbound)
            await frontend.close()
            return frontend

        async with backend:
            tasks = [
                asyncio.create_task(_pump(frontend, backend)),
                asyncio.create_task(_pump(backend, frontend)),
            ]
            _, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        if not frontend.closed:
            await frontend.close()
        log.debug("websocket connection closed")
        return frontend