"""Watch the file system and rebuild when sources change."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable, Iterable
from pathlib import Path

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

log = logging.getLogger(__name__)

BLACKLIST = frozenset({".git"})

BuildFn = Callable[[], Awaitable[object]]


def _canonical(path: str | os.PathLike[str]) -> Path | None:
    try:
        return Path(path).resolve(strict=True)
    except (OSError, RuntimeError):
        return None


class _Forwarder(FileSystemEventHandler):
    """Hands relevant watchdog events over to the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue[Path]) -> None:
        super().__init__()
        self._loop = loop
        self._queue = queue

    def on_any_event(self, event: FileSystemEvent) -> None:
        kind = event.event_type
        if kind == EVENT_TYPE_MOVED:
            raw = event.dest_path
        elif kind in (EVENT_TYPE_CREATED, EVENT_TYPE_DELETED):
            raw = event.src_path
        elif kind == EVENT_TYPE_MODIFIED and not event.is_directory:
            raw = event.src_path
        else:
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, Path(os.fsdecode(raw)))
        except RuntimeError:
            pass


class WatchSystem:
    """Runs a build whenever a watched, non-ignored path changes."""

    def __init__(
        self,
        build: BuildFn,
        paths: Iterable[str | os.PathLike[str]],
        ignored_paths: Iterable[str | os.PathLike[str]] = (),
        on_build_done: Callable[[], object] | None = None,
        debounce: float = 1.0,
    ) -> None:
        self._build = build
        self._paths = [Path(p) for p in paths]
        for path in self._paths:
            if not path.exists():
                raise FileNotFoundError(f"failed to watch {path} for file system changes")
        self.ignored_paths: list[Path] = []
        for path in ignored_paths:
            self.add_ignored(path)
        self._on_build_done = on_build_done
        self._debounce = debounce

    def add_ignored(self, path: str | os.PathLike[str]) -> None:
        """Ignore changes at or below ``path`` from now on."""
        resolved = _canonical(path) or Path(path)
        if resolved not in self.ignored_paths:
            self.ignored_paths.append(resolved)

    def is_relevant(self, path: str | os.PathLike[str]) -> bool:
        """Whether a change at ``path`` should trigger a build."""
        resolved = _canonical(path)
        if resolved is None:
            # Removed paths, e.g. staging output, are not of interest.
            return False
        if any(p in self.ignored_paths for p in (resolved, *resolved.parents)):
            return False
        return not any(part in BLACKLIST for part in resolved.parts)

    async def handle_change(self, path: str | os.PathLike[str]) -> bool:
        """Build if ``path`` is relevant; return whether a build ran."""
        if not self.is_relevant(path):
            return False
        log.debug("change detected in %s", path)
        try:
            await self._build()
        except Exception:
            log.exception("build failed")
        if self._on_build_done is not None:
            self._on_build_done()
        return True

    async def _settle(self, queue: asyncio.Queue[Path]) -> list[Path]:
        """Collect further events until none arrive for the debounce period."""
        pending: list[Path] = []
        while True:
            try:
                pending.append(await asyncio.wait_for(queue.get(), self._debounce))
            except TimeoutError:
                return pending

    async def run(self, stop: asyncio.Event) -> None:
        """Watch and rebuild until ``stop`` is set."""
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[Path] = asyncio.Queue()
        observer = Observer()
        handler = _Forwarder(loop, queue)
        for path in self._paths:
            observer.schedule(handler, str(path), recursive=True)
        observer.start()
        stop_task = asyncio.create_task(stop.wait())
        try:
            while True:
                get_task = asyncio.create_task(queue.get())
                done, _ = await asyncio.wait(
                    {get_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
                )
                if stop_task in done:
                    get_task.cancel()
                    break
                batch = [get_task.result(), *await self._settle(queue)]
                for path in dict.fromkeys(batch):
                    if stop.is_set():
                        break
                    await self.handle_change(path)
        finally:
            stop_task.cancel()
            observer.stop()
            await asyncio.to_thread(observer.join)
        log.debug("watcher system has shut down")