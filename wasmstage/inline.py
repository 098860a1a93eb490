"""Inline asset pipeline: pastes a file's content into the output HTML."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar

from bs4 import BeautifulSoup

from .assets import (
    ATTR_HREF,
    ATTR_TYPE,
    AssetFile,
    Attrs,
    PipelineError,
    replace_with_html,
    split_href,
    trunk_id_selector,
)

log = logging.getLogger(__name__)


class ContentType(Enum):
    """How inlined content is inserted into the document."""

    HTML = "html"
    CSS = "css"
    JS = "js"

    @classmethod
    def parse(cls, value: str) -> ContentType:
        try:
            return cls(value)
        except ValueError:
            raise PipelineError(
                f'unknown `type="{value}"` value for <link data-trunk rel="inline" .../> attr; '
                "please ensure the value is lowercase and is a supported content type"
            ) from None

    @classmethod
    def from_attr_or_ext(cls, attr: str | None, ext: str | None) -> ContentType:
        """Use the ``type`` attribute if given, else the file extension."""
        if attr is not None:
            return cls.parse(attr)
        if ext is not None:
            return cls.parse(ext)
        raise PipelineError(
            'unknown type value for <link data-trunk rel="inline" .../> attr; '
            "please ensure the value is lowercase and is a supported content type"
        )


@dataclass
class InlineOutput:
    """The content read by an inline pipeline."""

    id: int
    content: str
    content_type: ContentType

    def finalize(self, dom: BeautifulSoup) -> None:
        if self.content_type is ContentType.CSS:
            html = f'<style type="text/css">{self.content}</style>'
        elif self.content_type is ContentType.JS:
            html = f"<script>{self.content}</script>"
        else:
            html = self.content
        replace_with_html(dom, trunk_id_selector(self.id), html)


@dataclass
class Inline:
    """Reads a file whose content is to be inlined."""

    TYPE_INLINE: ClassVar[str] = "inline"

    id: int
    asset: AssetFile
    content_type: ContentType

    @classmethod
    def from_attrs(
        cls, html_dir: str | os.PathLike[str], attrs: Attrs, id_: int
    ) -> Inline:
        href = attrs.get(ATTR_HREF)
        if href is None:
            raise PipelineError(
                'required attr `href` missing for <link data-trunk rel="inline" .../> element'
            )
        asset = AssetFile.create(html_dir, split_href(href))
        content_type = ContentType.from_attr_or_ext(attrs.get(ATTR_TYPE), asset.ext)
        return cls(id=id_, asset=asset, content_type=content_type)

    async def run(self) -> InlineOutput:
        log.info("reading file content %s", self.asset.path)
        content = await asyncio.to_thread(self.asset.read_text)
        log.info("finished reading file content %s", self.asset.path)
        return InlineOutput(id=self.id, content=content, content_type=self.content_type)