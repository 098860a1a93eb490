"""Shared pieces of the asset pipelines: configuration, asset files and DOM helpers."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from bs4 import BeautifulSoup, Tag

ATTR_INLINE = "data-inline"
ATTR_HREF = "href"
ATTR_SRC = "src"
ATTR_TYPE = "type"
ATTR_REL = "rel"
SNIPPETS_DIR = "snippets"
TRUNK_ID = "data-trunk-id"

Attrs = dict[str, str]


class PipelineError(Exception):
    """Raised when an asset pipeline cannot be set up or fails to run."""


@dataclass(frozen=True)
class ToolsConfig:
    """Pinned versions of the external tools, if any."""

    sass: str | None = None
    wasm_bindgen: str | None = None
    wasm_opt: str | None = None


@dataclass(frozen=True)
class BuildConfig:
    """Runtime configuration shared by all build pipelines."""

    target: Path
    staging_dist: Path
    public_url: str = "/"
    release: bool = False
    filehash: bool = True
    inject_autoloader: bool = True
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    cargo_features: Any = None
    pattern_script: str | None = None
    pattern_preload: str | None = None
    pattern_params: dict[str, str] | None = None


class PipelineStage(Enum):
    """A stage of the build, used to decide when a hook runs."""

    PRE_BUILD = "pre_build"
    BUILD = "build"
    POST_BUILD = "post_build"


_MASK = (1 << 64) - 1
_PRIME = 0x6EED0E9DA4D94A4F
_SEEDS = (
    0x16F11FE89B0D677C,
    0xB480A793D8E6C86C,
    0x6FE2E5AAF078EBC9,
    0x14F994A4C5259381,
)


def _diffuse(x: int) -> int:
    x = (x * _PRIME) & _MASK
    x ^= (x >> 32) >> (x >> 60)
    return (x * _PRIME) & _MASK


def seahash(data: bytes) -> int:
    """The 64-bit SeaHash of ``data``, used to fingerprint output files."""
    lanes = list(_SEEDS)
    for index, start in enumerate(range(0, len(data), 8)):
        word = int.from_bytes(data[start : start + 8], "little")
        lane = index % 4
        lanes[lane] = _diffuse(lanes[lane] ^ word)
    a, b, c, d = lanes
    return _diffuse(a ^ b ^ c ^ d ^ len(data))


def split_href(href: str) -> Path:
    """Turn a ``/``-separated href into a path, dropping empty segments."""
    parts = [part for part in href.split("/") if part]
    return Path(*parts)


def trunk_id_selector(id_: int) -> str:
    """CSS selector for the link element carrying the given pipeline ID."""
    return f'link[{TRUNK_ID}="{id_}"]'


def trunk_script_id_selector(id_: int) -> str:
    """CSS selector for the script element carrying the given pipeline ID."""
    return f'script[{TRUNK_ID}="{id_}"]'


def _fragment(html: str) -> list[Any]:
    return list(BeautifulSoup(html, "html.parser").contents)


def replace_with_html(dom: BeautifulSoup | Tag, selector: str, html: str) -> None:
    """Replace every element matching ``selector`` with the parsed ``html``."""
    for node in dom.select(selector):
        nodes = _fragment(html)
        if nodes:
            node.replace_with(*nodes)
        else:
            node.decompose()


def remove_nodes(dom: BeautifulSoup | Tag, selector: str) -> None:
    """Remove every element matching ``selector``."""
    for node in dom.select(selector):
        node.decompose()


def append_html(dom: BeautifulSoup | Tag, selector: str, html: str) -> None:
    """Append the parsed ``html`` to every element matching ``selector``."""
    for node in dom.select(selector):
        for child in _fragment(html):
            node.append(child)


@dataclass(frozen=True)
class AssetFile:
    """A file on disk referenced by an asset element."""

    path: Path
    file_name: str
    file_stem: str
    ext: str | None

    @classmethod
    def create(cls, rel_dir: str | os.PathLike[str], path: str | os.PathLike[str]) -> AssetFile:
        """Resolve ``path`` (relative to ``rel_dir``) to an existing file."""
        path = Path(path)
        if not path.is_absolute():
            path = Path(rel_dir) / path
        try:
            path = path.resolve(strict=True)
        except (OSError, RuntimeError) as exc:
            raise PipelineError(f"error getting canonical path for {path}") from exc
        if not path.exists():
            raise PipelineError(f"target file does not appear to exist on disk {path}")
        if not path.name:
            raise PipelineError(f"asset has no file name {path}")
        if not path.stem:
            raise PipelineError(f"asset has no file name stem {path}")
        ext = path.suffix[1:] if path.suffix else None
        return cls(path=path, file_name=path.name, file_stem=path.stem, ext=ext)

    def copy(self, to_dir: str | os.PathLike[str], with_hash: bool) -> str:
        """Copy into ``to_dir``, optionally naming the copy by a content hash.

        Returns the base name of the written file.
        """
        try:
            data = self.path.read_bytes()
        except OSError as exc:
            raise PipelineError(f"error reading file for copying {self.path}") from exc
        if with_hash:
            file_name = f"{self.file_stem}-{seahash(data):x}.{self.ext or ''}"
        else:
            file_name = self.file_name
        file_path = Path(to_dir) / file_name
        try:
            file_path.write_bytes(data)
        except OSError as exc:
            raise PipelineError(f"error copying file {self.path} to {file_path}") from exc
        return file_name

    def read_text(self) -> str:
        """Read the file's content as text."""
        try:
            return self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise PipelineError(f"error reading file {self.path} to string") from exc