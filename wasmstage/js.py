"""JS asset pipeline."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass

from bs4 import BeautifulSoup

from .assets import (
    ATTR_SRC,
    AssetFile,
    Attrs,
    BuildConfig,
    PipelineError,
    replace_with_html,
    split_href,
    trunk_script_id_selector,
)

log = logging.getLogger(__name__)


def attrs_to_string(attrs: Attrs) -> str:
    """Render attributes as ``key="value"`` pairs separated by spaces."""
    return " ".join(f'{key}="{value}"' for key, value in attrs.items())


@dataclass
class JsOutput:
    """The result of a JS pipeline."""

    cfg: BuildConfig
    id: int
    file: str
    attrs: str

    def finalize(self, dom: BeautifulSoup) -> None:
        replace_with_html(
            dom,
            trunk_script_id_selector(self.id),
            f'<script {self.attrs} src="{self.cfg.public_url}{self.file}"/>',
        )


@dataclass
class Js:
    """Copies (and optionally hashes) a script into the dist dir."""

    id: int
    cfg: BuildConfig
    asset: AssetFile
    attrs: Attrs

    @classmethod
    def from_attrs(
        cls, cfg: BuildConfig, html_dir: str | os.PathLike[str], attrs: Attrs, id_: int
    ) -> Js:
        src = attrs.get(ATTR_SRC)
        if src is None:
            raise PipelineError(
                "required attr `src` missing for <script data-trunk .../> element"
            )
        asset = AssetFile.create(html_dir, split_href(src))
        kept = {
            key: value
            for key, value in attrs.items()
            if key != ATTR_SRC and not key.startswith("data-trunk")
        }
        return cls(id=id_, cfg=cfg, asset=asset, attrs=kept)

    async def run(self) -> JsOutput:
        log.info("copying & hashing js %s", self.asset.path)
        file = await asyncio.to_thread(
            self.asset.copy, self.cfg.staging_dist, self.cfg.filehash
        )
        log.info("finished copying & hashing js %s", self.asset.path)
        return JsOutput(
            cfg=self.cfg, id=self.id, file=file, attrs=attrs_to_string(self.attrs)
        )