"""Locate external build tools and download them when they are missing."""

from __future__ import annotations

import asyncio
import logging
import os
import platform
import shutil
import sys
from collections.abc import Awaitable, Callable
from enum import Enum
from pathlib import Path

import aiohttp
import platformdirs

from .archive import Archive, ArchiveError

log = logging.getLogger(__name__)

VERSION_FLAG = "--version"
_CHUNK_SIZE = 64 * 1024


class ToolError(Exception):
    """Raised when a tool cannot be located, downloaded or installed."""


def _host_os() -> str:
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "macos"
    if sys.platform.startswith("linux"):
        return "linux"
    return sys.platform


def _host_arch() -> str:
    machine = platform.machine().lower()
    return {
        "x86_64": "x86_64",
        "amd64": "x86_64",
        "aarch64": "aarch64",
        "arm64": "aarch64",
    }.get(machine, machine)


class Application(Enum):
    """An external tool used by the build pipelines."""

    SASS = "sass"
    WASM_BINDGEN = "wasm-bindgen"
    WASM_OPT = "wasm-opt"

    @property
    def binary_name(self) -> str:
        """Base name of the executable without extension."""
        return self.value

    def executable_path(self, os_name: str | None = None) -> str:
        """Path of the executable within the downloaded archive."""
        windows = (os_name or _host_os()) == "windows"
        if self is Application.SASS:
            return "sass.bat" if windows else "sass"
        if self is Application.WASM_BINDGEN:
            return "wasm-bindgen.exe" if windows else "wasm-bindgen"
        return "bin/wasm-opt.exe" if windows else "bin/wasm-opt"

    def extra_paths(self, os_name: str | None = None) -> tuple[str, ...]:
        """Further archive files the executable needs in order to run."""
        os_name = os_name or _host_os()
        if self is Application.SASS:
            if os_name == "windows":
                return ("src/dart.exe", "src/sass.snapshot")
            if os_name == "macos":
                return ("src/dart", "src/sass.snapshot")
            return ()
        if self is Application.WASM_OPT and os_name == "macos":
            return ("lib/libbinaryen.dylib",)
        return ()

    def default_version(self) -> str:
        """Version used when none is configured."""
        return {
            Application.SASS: "1.54.9",
            Application.WASM_BINDGEN: "0.2.83",
            Application.WASM_OPT: "version_110",
        }[self]

    def url(
        self, version: str, os_name: str | None = None, arch: str | None = None
    ) -> str:
        """Direct download URL of a release of this tool."""
        os_name = os_name or _host_os()
        arch = arch or _host_arch()
        if os_name not in ("windows", "macos", "linux"):
            raise ToolError("unsupported OS")
        if arch not in ("x86_64", "aarch64"):
            raise ToolError("unsupported target architecture")

        if self is Application.SASS:
            base = f"https://github.com/sass/dart-sass/releases/download/{version}/dart-sass-{version}"
            match (os_name, arch):
                case ("windows", "x86_64"):
                    return f"{base}-windows-x64.zip"
                case ("macos" | "linux", "x86_64"):
                    return f"{base}-{os_name}-x64.tar.gz"
                case ("macos" | "linux", "aarch64"):
                    return f"{base}-{os_name}-arm64.tar.gz"
                case _:
                    raise ToolError(f"Unable to download Sass for {os_name} {arch}")

        if self is Application.WASM_BINDGEN:
            triple = {
                "windows": "pc-windows-msvc",
                "macos": "apple-darwin",
                "linux": "unknown-linux-musl",
            }[os_name]
            return (
                "https://github.com/rustwasm/wasm-bindgen/releases/download/"
                f"{version}/wasm-bindgen-{version}-x86_64-{triple}.tar.gz"
            )

        base = f"https://github.com/WebAssembly/binaryen/releases/download/{version}/binaryen-{version}"
        if (os_name, arch) == ("macos", "aarch64"):
            return f"{base}-arm64-macos.tar.gz"
        return f"{base}-{arch}-{os_name}.tar.gz"

    def format_version_output(self, text: str) -> str:
        """Extract the version from the output of ``<tool> --version``."""
        text = text.strip()
        malformed = ToolError(f"missing or malformed version output: {text}")
        if self is Application.SASS:
            lines = text.splitlines()
            if not lines:
                raise malformed
            return lines[0]
        words = text.split(" ")
        if self is Application.WASM_BINDGEN:
            if len(words) < 2:
                raise malformed
            return words[1]
        if len(words) < 3:
            raise malformed
        return f"version_{words[2]}"


Fetcher = Callable[[Application, str], Awaitable[Path]]


class AppCache:
    """Tracks tools installed during this run so each is fetched only once."""

    def __init__(self, fetch: Fetcher | None = None) -> None:
        self._fetch = fetch if fetch is not None else download
        self._installed: set[tuple[Application, str]] = set()
        self._locks: dict[tuple[Application, str], asyncio.Lock] = {}

    async def install_once(
        self, app: Application, version: str, app_dir: str | os.PathLike[str]
    ) -> None:
        """Download and install ``app`` into ``app_dir`` unless already done."""
        key = (app, version)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            if key in self._installed:
                return
            try:
                archive_path = Path(await self._fetch(app, version))
            except (OSError, aiohttp.ClientError) as exc:
                raise ToolError("failed downloading release archive") from exc
            await install(app, archive_path, app_dir)
            try:
                archive_path.unlink()
            except OSError as exc:
                raise ToolError("failed deleting temporary archive") from exc
            self._installed.add(key)


_GLOBAL_APP_CACHE = AppCache()


def _is_executable(path: Path) -> bool:
    if not path.is_file():
        return False
    return os.name == "nt" or os.access(path, os.X_OK)


async def get(app: Application, version: str | None = None) -> Path:
    """Return the path of ``app``, downloading it if needed."""
    found = await find_system(app, version)
    if found is not None:
        path, system_version = found
        log.info("using system installed binary %s %s", app.binary_name, system_version)
        return path

    version = version or app.default_version()
    app_dir = cache_dir() / f"{app.binary_name}-{version}"
    bin_path = app_dir / app.executable_path()
    if not _is_executable(bin_path):
        await _GLOBAL_APP_CACHE.install_once(app, version, app_dir)
    return bin_path


async def find_system(
    app: Application, version: str | None = None
) -> tuple[Path, str] | None:
    """Find ``app`` on PATH, if present and of the wanted version."""
    try:
        path = shutil.which(app.binary_name)
        if path is None:
            raise ToolError(f"{app.binary_name} not found on PATH")
        proc = await asyncio.create_subprocess_exec(
            path,
            VERSION_FLAG,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, _ = await proc.communicate()
        if proc.returncode != 0:
            raise ToolError(f"running command `{path} {VERSION_FLAG}` failed")
        system_version = app.format_version_output(
            stdout.decode("utf-8", errors="replace")
        )
    except (OSError, ToolError) as exc:
        log.debug("system version not found for %s: %s", app.binary_name, exc)
        return None

    if version is None or version == system_version:
        return Path(path), system_version
    return None


async def download(app: Application, version: str) -> Path:
    """Download the release archive of ``app`` into the cache directory."""
    log.info("downloading %s %s", app.binary_name, version)
    url = app.url(version)
    temp_out = cache_dir() / f"{app.binary_name}-{version}.tmp"
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(url) as resp:
                if not 200 <= resp.status < 300:
                    raise ToolError(
                        f"error downloading archive file: {resp.status}\n{url}"
                    )
                with temp_out.open("wb") as sink:
                    async for chunk in resp.content.iter_chunked(_CHUNK_SIZE):
                        sink.write(chunk)
    except aiohttp.ClientError as exc:
        raise ToolError("error sending HTTP request") from exc
    except OSError as exc:
        raise ToolError("failed creating temporary output file") from exc
    return temp_out


def _install_sync(app: Application, archive_path: Path, target: Path) -> None:
    os_name = _host_os()
    opener = (
        Archive.open_zip
        if app is Application.SASS and os_name == "windows"
        else Archive.open_tar_gz
    )
    try:
        with opener(archive_path) as archive:
            for name in (app.executable_path(os_name), *app.extra_paths(os_name)):
                archive.extract_file(name, target)
    except ArchiveError as exc:
        raise ToolError(f"failed installing {app.binary_name}: {exc}") from exc


async def install(
    app: Application,
    archive_path: str | os.PathLike[str],
    target: str | os.PathLike[str],
) -> None:
    """Extract the files of ``app`` from a downloaded archive into ``target``."""
    log.info("installing %s", app.binary_name)
    await asyncio.to_thread(_install_sync, app, Path(archive_path), Path(target))


def cache_dir() -> Path:
    """Return the tool cache directory, creating it if needed."""
    path = platformdirs.user_cache_path("trunk", "trunkrs")
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ToolError("failed creating cache directory") from exc
    return path