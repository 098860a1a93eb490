"""The source HTML pipeline, which spawns and finalizes all asset pipelines."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from bs4 import BeautifulSoup, Tag

from .assets import ATTR_REL, TRUNK_ID, Attrs, BuildConfig, PipelineError, PipelineStage
from .copy_dir import CopyDir
from .copy_file import CopyFile
from .css import Css
from .icon import Icon
from .inline import Inline
from .js import Js
from .rust import IgnoreFn, RustApp
from .sass import Sass

log = logging.getLogger(__name__)

PUBLIC_URL_MARKER_ATTR = "data-trunk-public-url"
RELOAD_SCRIPT = """(function () {
    var protocol = window.location.protocol === "https:" ? "wss" : "ws";
    var socket = new WebSocket(protocol + "://" + window.location.host + "/_trunk/ws");
    socket.onmessage = function (ev) {
        var msg = JSON.parse(ev.data);
        if (msg.reload) {
            window.location.reload();
        }
    };
})();"""

Asset = Css | Sass | Js | Icon | Inline | CopyFile | CopyDir | RustApp
HookRunner = Callable[[PipelineStage], Awaitable[object]]


def asset_from_html(
    cfg: BuildConfig,
    html_dir: str | os.PathLike[str],
    ignore: IgnoreFn | None,
    tag: str,
    attrs: Attrs,
    id_: int,
) -> Asset | None:
    """Build the pipeline for a ``data-trunk`` element; ``None`` for other tags."""
    if tag == "script":
        return Js.from_attrs(cfg, html_dir, attrs, id_)
    if tag != "link":
        return None
    rel = attrs.get(ATTR_REL)
    if rel is None:
        raise PipelineError(
            "all <link data-trunk .../> elements must have a `rel` attribute indicating "
            "the asset type"
        )
    if rel in (Sass.TYPE_SASS, Sass.TYPE_SCSS):
        return Sass.from_attrs(cfg, html_dir, attrs, id_)
    if rel == Icon.TYPE_ICON:
        return Icon.from_attrs(cfg, html_dir, attrs, id_)
    if rel == Inline.TYPE_INLINE:
        return Inline.from_attrs(html_dir, attrs, id_)
    if rel == Css.TYPE_CSS:
        return Css.from_attrs(cfg, html_dir, attrs, id_)
    if rel == CopyFile.TYPE_COPY_FILE:
        return CopyFile.from_attrs(cfg, html_dir, attrs, id_)
    if rel == CopyDir.TYPE_COPY_DIR:
        return CopyDir.from_attrs(cfg, html_dir, attrs, id_)
    if rel == RustApp.TYPE_RUST_APP:
        return RustApp.from_attrs(cfg, html_dir, attrs, id_, ignore)
    raise PipelineError(
        f'unknown <link data-trunk .../> attr value `rel="{rel}"`; please ensure the value '
        "is lowercase and is a supported asset type"
    )


def _attrs_of(node: Tag) -> Attrs:
    return {
        key: " ".join(value) if isinstance(value, list) else str(value)
        for key, value in node.attrs.items()
    }


def _is_main_rust_app(tag: str, attrs: Attrs) -> bool:
    return (
        tag == "link"
        and attrs.get(ATTR_REL) == RustApp.TYPE_RUST_APP
        and attrs.get("data-type", "main") == "main"
    )


@dataclass
class HtmlPipeline:
    """Processes the source HTML and every asset it references into the staging dir."""

    cfg: BuildConfig
    ignore: IgnoreFn | None = None
    run_hooks: HookRunner | None = None
    target_html_path: Path = field(init=False)
    target_html_dir: Path = field(init=False)

    def __post_init__(self) -> None:
        try:
            self.target_html_path = Path(self.cfg.target).resolve(strict=True)
        except (OSError, RuntimeError) as exc:
            raise PipelineError("failed to get canonical path of target HTML file") from exc
        self.target_html_dir = self.target_html_path.parent

    async def _hook(self, stage: PipelineStage) -> None:
        if self.run_hooks is not None:
            await self.run_hooks(stage)

    def _collect_assets(self, dom: BeautifulSoup) -> list[Asset]:
        entries: list[tuple[int, str, Attrs]] = []
        for id_, node in enumerate(dom.select("link[data-trunk], script[data-trunk]")):
            node[TRUNK_ID] = str(id_)
            entries.append((id_, node.name, _attrs_of(node)))

        main_apps = sum(1 for _, tag, attrs in entries if _is_main_rust_app(tag, attrs))
        if main_apps > 1:
            raise PipelineError(
                'only one <link data-trunk rel="rust" data-type="main" .../> may be specified'
            )

        assets = [
            asset
            for id_, tag, attrs in entries
            if (asset := asset_from_html(
                self.cfg, self.target_html_dir, self.ignore, tag, attrs, id_
            )) is not None
        ]
        if main_apps == 0:
            assets.append(RustApp.default(self.cfg, self.target_html_dir, self.ignore))
        return assets

    async def run(self) -> None:
        """Build all assets and write the finalized ``index.html`` to the staging dir."""
        log.info("spawning asset pipelines")
        await self._hook(PipelineStage.PRE_BUILD)

        try:
            raw_html = await asyncio.to_thread(self.target_html_path.read_text, encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise PipelineError(f"error reading {self.target_html_path}") from exc
        dom = BeautifulSoup(raw_html, "html.parser")

        assets = await asyncio.to_thread(self._collect_assets, dom)
        tasks: list[asyncio.Task[Any]] = [asyncio.create_task(asset.run()) for asset in assets]
        build_hooks = asyncio.create_task(self._hook(PipelineStage.BUILD))
        pending = [*tasks, build_hooks]
        try:
            for finished in asyncio.as_completed(tasks):
                output = await finished
                output.finalize(dom)
            await build_hooks
        except BaseException:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            raise

        self.finalize_html(dom)
        out_path = Path(self.cfg.staging_dist) / "index.html"
        try:
            await asyncio.to_thread(out_path.write_text, str(dom), encoding="utf-8")
        except OSError as exc:
            raise PipelineError("error writing finalized HTML output") from exc

        await self._hook(PipelineStage.POST_BUILD)

    def finalize_html(self, dom: BeautifulSoup) -> None:
        """Write the public URL into marked base elements and inject the autoloader."""
        for base in dom.select(f"html head base[{PUBLIC_URL_MARKER_ATTR}]"):
            del base[PUBLIC_URL_MARKER_ATTR]
            base["href"] = self.cfg.public_url
        if self.cfg.inject_autoloader:
            for body in dom.select("body"):
                script = dom.new_tag("script")
                script.string = RELOAD_SCRIPT
                body.append(script)