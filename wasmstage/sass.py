"""Sass/Scss asset pipeline."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar

from bs4 import BeautifulSoup

from .assets import (
    ATTR_HREF,
    ATTR_INLINE,
    AssetFile,
    Attrs,
    BuildConfig,
    PipelineError,
    replace_with_html,
    seahash,
    split_href,
    trunk_id_selector,
)
from .tools import Application, get

log = logging.getLogger(__name__)


async def _run_command(name: str, path: str | os.PathLike[str], args: list[str]) -> None:
    try:
        proc = await asyncio.create_subprocess_exec(str(path), *args)
    except FileNotFoundError as exc:
        raise PipelineError(f"{name} not found") from exc
    except OSError as exc:
        raise PipelineError(f"error spawning {name} call") from exc
    status = await proc.wait()
    if status != 0:
        raise PipelineError(f"{name} call returned a bad status ({status})")


@dataclass(frozen=True)
class CssRef:
    """Compiled CSS: either inline content or the name of a written file."""

    value: str
    inline: bool = False


@dataclass
class SassOutput:
    """The result of a sass/scss pipeline."""

    cfg: BuildConfig
    id: int
    css_ref: CssRef

    def finalize(self, dom: BeautifulSoup) -> None:
        if self.css_ref.inline:
            html = f'<style type="text/css">{self.css_ref.value}</style>'
        else:
            html = f'<link rel="stylesheet" href="{self.cfg.public_url}{self.css_ref.value}"/>'
        replace_with_html(dom, trunk_id_selector(self.id), html)


@dataclass
class Sass:
    """Compiles a sass/scss file to CSS."""

    TYPE_SASS: ClassVar[str] = "sass"
    TYPE_SCSS: ClassVar[str] = "scss"

    id: int
    cfg: BuildConfig
    asset: AssetFile
    use_inline: bool = False

    @classmethod
    def from_attrs(
        cls, cfg: BuildConfig, html_dir: str | os.PathLike[str], attrs: Attrs, id_: int
    ) -> Sass:
        href = attrs.get(ATTR_HREF)
        if href is None:
            raise PipelineError(
                'required attr `href` missing for <link data-trunk rel="sass|scss" .../> element'
            )
        asset = AssetFile.create(html_dir, split_href(href))
        return cls(id=id_, cfg=cfg, asset=asset, use_inline=ATTR_INLINE in attrs)

    async def run(self) -> SassOutput:
        sass = await get(Application.SASS, self.cfg.tools.sass)

        style = "compressed" if self.cfg.release else "expanded"
        file_name = f"{self.asset.file_stem}.css"
        file_path = Path(self.cfg.staging_dist) / file_name
        args = ["--no-source-map", "-s", style, str(self.asset.path), str(file_path)]

        log.info("compiling sass/scss %s", self.asset.path)
        await _run_command(Application.SASS.binary_name, sass, args)

        try:
            css = await asyncio.to_thread(file_path.read_text, encoding="utf-8")
            await asyncio.to_thread(file_path.unlink)
        except (OSError, UnicodeDecodeError) as exc:
            raise PipelineError(f"error reading compiled CSS {file_path}") from exc

        if self.use_inline:
            css_ref = CssRef(css, inline=True)
        else:
            if self.cfg.filehash:
                digest = seahash(css.encode("utf-8"))
                file_name = f"{self.asset.file_stem}-{digest:x}.css"
            out_path = Path(self.cfg.staging_dist) / file_name
            try:
                await asyncio.to_thread(out_path.write_text, css, encoding="utf-8")
            except OSError as exc:
                raise PipelineError("error writing SASS pipeline output") from exc
            css_ref = CssRef(file_name)

        log.info("finished compiling sass/scss %s", self.asset.path)
        return SassOutput(cfg=self.cfg, id=self.id, css_ref=css_ref)