"""Copy-file asset pipeline."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import ClassVar

from bs4 import BeautifulSoup

from .assets import (
    ATTR_HREF,
    AssetFile,
    Attrs,
    BuildConfig,
    PipelineError,
    remove_nodes,
    split_href,
    trunk_id_selector,
)

log = logging.getLogger(__name__)


@dataclass
class CopyFileOutput:
    """The result of a copy-file pipeline."""

    id: int

    def finalize(self, dom: BeautifulSoup) -> None:
        remove_nodes(dom, trunk_id_selector(self.id))


@dataclass
class CopyFile:
    """Copies a file into the dist dir under its own name."""

    TYPE_COPY_FILE: ClassVar[str] = "copy-file"

    id: int
    cfg: BuildConfig
    asset: AssetFile

    @classmethod
    def from_attrs(
        cls, cfg: BuildConfig, html_dir: str | os.PathLike[str], attrs: Attrs, id_: int
    ) -> CopyFile:
        href = attrs.get(ATTR_HREF)
        if href is None:
            raise PipelineError(
                'required attr `href` missing for <link data-trunk rel="copyfile" .../> element'
            )
        asset = AssetFile.create(html_dir, split_href(href))
        return cls(id=id_, cfg=cfg, asset=asset)

    async def run(self) -> CopyFileOutput:
        log.info("copying file %s", self.asset.path)
        await asyncio.to_thread(self.asset.copy, self.cfg.staging_dist, False)
        log.info("finished copying file %s", self.asset.path)
        return CopyFileOutput(id=self.id)