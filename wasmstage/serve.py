"""Serve the built application, with autoreload and optional backend proxies."""

from __future__ import annotations

import asyncio
import logging
import os
import webbrowser
from collections.abc import Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import unquote

from aiohttp import web

from .proxy import HttpProxy, WebSocketProxy, _prefix_patterns, _remainder
from .watch import WatchSystem

log = logging.getLogger(__name__)

INDEX_HTML = "index.html"
RELOAD_ROUTE = "/_trunk/ws"
RELOAD_MESSAGE = '{"reload": true}'

BuildFn = Callable[[], Awaitable[object]]


@dataclass(frozen=True)
class ProxyConfig:
    """One backend to proxy requests to."""

    backend: str
    rewrite: str | None = None
    ws: bool = False
    insecure: bool = False


@dataclass(frozen=True)
class ServeConfig:
    """Runtime configuration of the development server."""

    address: str = "127.0.0.1"
    port: int = 8080
    public_url: str = "/"
    open: bool = False
    no_autoreload: bool = False
    proxy_backend: str | None = None
    proxy_rewrite: str | None = None
    proxy_ws: bool = False
    proxy_insecure: bool = False
    proxies: tuple[ProxyConfig, ...] = ()


def public_route(public_url: str) -> str:
    """The route static assets are served under: the public URL without one trailing slash."""
    if public_url == "/":
        return public_url
    return public_url.removesuffix("/")


def _proxies(cfg: ServeConfig) -> Iterator[HttpProxy | WebSocketProxy]:
    if cfg.proxy_backend is not None:
        entries: Iterable[ProxyConfig] = [
            ProxyConfig(cfg.proxy_backend, cfg.proxy_rewrite, cfg.proxy_ws, cfg.proxy_insecure)
        ]
    else:
        entries = cfg.proxies
    for entry in entries:
        if entry.ws:
            yield WebSocketProxy(entry.backend, entry.rewrite)
        else:
            yield HttpProxy(entry.backend, entry.rewrite, insecure=entry.insecure)


def _resolve_static(root: Path, rel_path: str) -> Path | None:
    """The file under ``root`` a request path names, or ``None`` if there is none."""
    segments = [segment for segment in unquote(rel_path).split("/") if segment]
    if any(segment == ".." or "\\" in segment or ":" in segment for segment in segments):
        return None
    candidate = root.joinpath(*segments)
    if candidate.is_dir():
        candidate = candidate / INDEX_HTML
    return candidate if candidate.is_file() else None


def _static_handler(root: Path, route: str) -> Callable[[web.Request], Awaitable[web.StreamResponse]]:
    index = root / INDEX_HTML

    async def handle(request: web.Request) -> web.StreamResponse:
        try:
            found = _resolve_static(root, _remainder(request, route))
            if found is None:
                if not index.is_file():
                    raise web.HTTPNotFound()
                found = index
        except OSError:
            log.exception("failed serving static file")
            return web.Response(status=500)
        return web.FileResponse(found)

    return handle


def _reload_handler(build_done: asyncio.Condition) -> Callable[[web.Request], Awaitable[web.StreamResponse]]:
    async def wait_for_build() -> None:
        async with build_done:
            await build_done.wait()

    async def handle(request: web.Request) -> web.StreamResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        log.debug("autoreload websocket opened")
        incoming = asyncio.create_task(ws.receive())
        try:
            while True:
                notified = asyncio.create_task(wait_for_build())
                done, _ = await asyncio.wait(
                    {incoming, notified}, return_when=asyncio.FIRST_COMPLETED
                )
                if incoming in done:
                    notified.cancel()
                    log.debug("autoreload websocket closed")
                    break
                try:
                    await ws.send_str(RELOAD_MESSAGE)
                except (ConnectionError, RuntimeError):
                    break
        finally:
            incoming.cancel()
        return ws

    return handle


def make_app(
    cfg: ServeConfig, dist_dir: str | os.PathLike[str], build_done: asyncio.Condition
) -> web.Application:
    """Build the application: autoreload socket, proxies and the static file server."""
    app = web.Application()
    app.router.add_get(RELOAD_ROUTE, _reload_handler(build_done))

    for proxy in _proxies(cfg):
        proxy.register(app)
        kind = "websocket " if isinstance(proxy, WebSocketProxy) else ""
        log.info("proxying %s%s -> %s", kind, proxy.path, proxy.backend)

    route = public_route(cfg.public_url)
    handler = _static_handler(Path(dist_dir), route)
    for pattern in _prefix_patterns(route):
        app.router.add_get(pattern, handler)
    log.info("serving static assets at -> %s", cfg.public_url)
    return app


class ServeSystem:
    """Builds, watches and serves the application until shut down."""

    def __init__(
        self,
        cfg: ServeConfig,
        dist_dir: str | os.PathLike[str],
        build: BuildFn,
        watch_paths: Iterable[str | os.PathLike[str]],
        ignored_paths: Iterable[str | os.PathLike[str]] = (),
        shutdown: asyncio.Event | None = None,
    ) -> None:
        self.cfg = cfg
        self.dist_dir = Path(dist_dir)
        self.shutdown = shutdown if shutdown is not None else asyncio.Event()
        self.http_addr = f"http://{cfg.address}:{cfg.port}{cfg.public_url}"
        self._build = build
        self._build_done = asyncio.Condition()
        self._pending: set[asyncio.Task[None]] = set()
        self._watch = WatchSystem(
            build, watch_paths, ignored_paths, on_build_done=self._announce_build
        )

    async def _notify(self) -> None:
        async with self._build_done:
            self._build_done.notify_all()

    def _announce_build(self) -> None:
        task = asyncio.get_running_loop().create_task(self._notify())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def run(self) -> None:
        """Build once, then serve and rebuild on changes until ``shutdown`` is set."""
        try:
            await self._build()
        except Exception:
            log.exception("initial build failed")

        runner = web.AppRunner(make_app(self.cfg, self.dist_dir, self._build_done))
        await runner.setup()
        try:
            site = web.TCPSite(runner, self.cfg.address, self.cfg.port)
            await site.start()
            log.info("server listening at http://%s:%s", self.cfg.address, self.cfg.port)
            watch_task = asyncio.create_task(self._watch.run(self.shutdown))

            if self.cfg.open:
                try:
                    webbrowser.open(self.http_addr)
                except webbrowser.Error:
                    log.exception("error opening browser")

            await self.shutdown.wait()
            log.debug("server is shutting down")
            try:
                await watch_task
            except Exception:
                log.exception("error joining watch system")
        finally:
            await runner.cleanup()