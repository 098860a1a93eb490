"""Copy-dir asset pipeline."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar

from bs4 import BeautifulSoup

from .assets import (
    ATTR_HREF,
    Attrs,
    BuildConfig,
    PipelineError,
    remove_nodes,
    split_href,
    trunk_id_selector,
)

log = logging.getLogger(__name__)

ATTR_TARGET_PATH = "data-target-path"


@dataclass
class CopyDirOutput:
    """The result of a copy-dir pipeline."""

    id: int

    def finalize(self, dom: BeautifulSoup) -> None:
        remove_nodes(dom, trunk_id_selector(self.id))


@dataclass
class CopyDir:
    """Copies a directory tree into the dist dir."""

    TYPE_COPY_DIR: ClassVar[str] = "copy-dir"

    id: int
    cfg: BuildConfig
    path: Path
    target_path: Path | None = None

    @classmethod
    def from_attrs(
        cls, cfg: BuildConfig, html_dir: str | os.PathLike[str], attrs: Attrs, id_: int
    ) -> CopyDir:
        href = attrs.get(ATTR_HREF)
        if href is None:
            raise PipelineError(
                'required attr `href` missing for <link data-trunk rel="copydir" .../> element'
            )
        path = split_href(href)
        if not path.is_absolute():
            path = Path(html_dir) / path
        target = attrs.get(ATTR_TARGET_PATH)
        target_path = Path(target) if target is not None else None
        return cls(id=id_, cfg=cfg, path=path, target_path=target_path)

    def _destination(self, dir_name: str) -> Path:
        if self.target_path is None:
            return Path(self.cfg.staging_dist) / dir_name
        target = self.target_path
        if target.is_absolute() or ".." in target.parts:
            raise PipelineError(
                f"Invalid data-target-path '{target}'. Must be a relative path without '..'."
            )
        dir_out = Path(self.cfg.staging_dist) / target
        dir_out.mkdir(parents=True, exist_ok=True)
        return dir_out

    def _copy(self) -> None:
        try:
            canonical = self.path.resolve(strict=True)
        except (OSError, RuntimeError) as exc:
            raise PipelineError(
                f"error taking canonical path of directory {self.path}"
            ) from exc
        if not canonical.name:
            raise PipelineError(f"could not get directory name of dir {canonical}")
        try:
            dir_out = self._destination(canonical.name)
            shutil.copytree(canonical, dir_out, dirs_exist_ok=True)
        except OSError as exc:
            raise PipelineError(f"error copying directory {canonical}") from exc

    async def run(self) -> CopyDirOutput:
        log.info("copying directory %s", self.path)
        await asyncio.to_thread(self._copy)
        log.info("finished copying directory %s", self.path)
        return CopyDirOutput(id=self.id)