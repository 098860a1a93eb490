"""CSS asset pipeline."""

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
    replace_with_html,
    split_href,
    trunk_id_selector,
)

log = logging.getLogger(__name__)


@dataclass
class CssOutput:
    """The result of a CSS pipeline."""

    cfg: BuildConfig
    id: int
    file: str

    def finalize(self, dom: BeautifulSoup) -> None:
        replace_with_html(
            dom,
            trunk_id_selector(self.id),
            f'<link rel="stylesheet" href="{self.cfg.public_url}{self.file}"/>',
        )


@dataclass
class Css:
    """Copies (and optionally hashes) a stylesheet into the dist dir."""

    TYPE_CSS: ClassVar[str] = "css"

    id: int
    cfg: BuildConfig
    asset: AssetFile

    @classmethod
    def from_attrs(
        cls, cfg: BuildConfig, html_dir: str | os.PathLike[str], attrs: Attrs, id_: int
    ) -> Css:
        href = attrs.get(ATTR_HREF)
        if href is None:
            raise PipelineError(
                'required attr `href` missing for <link data-trunk rel="css" .../> element'
            )
        asset = AssetFile.create(html_dir, split_href(href))
        return cls(id=id_, cfg=cfg, asset=asset)

    async def run(self) -> CssOutput:
        log.info("copying & hashing css %s", self.asset.path)
        file = await asyncio.to_thread(
            self.asset.copy, self.cfg.staging_dist, self.cfg.filehash
        )
        log.info("finished copying & hashing css %s", self.asset.path)
        return CssOutput(cfg=self.cfg, id=self.id, file=file)