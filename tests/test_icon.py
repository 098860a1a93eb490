import dataclasses

import pytest
from bs4 import BeautifulSoup

from wasmstage.assets import BuildConfig, PipelineError, seahash
from wasmstage.icon import Icon, IconOutput


@pytest.fixture
def cfg(tmp_path):
    dist = tmp_path / "dist"
    dist.mkdir()
    return BuildConfig(target=tmp_path / "index.html", staging_dist=dist)


@pytest.fixture
def icon_file(tmp_path):
    path = tmp_path / "favicon.ico"
    path.write_bytes(b"\x00\x01icon-data")
    return path


def test_missing_href_raises(cfg, tmp_path):
    with pytest.raises(PipelineError, match="href"):
        Icon.from_attrs(cfg, tmp_path, {"rel": "icon"}, 0)


def test_missing_file_raises(cfg, tmp_path):
    with pytest.raises(PipelineError):
        Icon.from_attrs(cfg, tmp_path, {"href": "nope.ico"}, 0)


@pytest.mark.asyncio
async def test_run_hashes_name(cfg, tmp_path, icon_file):
    icon = Icon.from_attrs(cfg, tmp_path, {"href": "favicon.ico"}, 3)
    out = await icon.run()
    data = icon_file.read_bytes()
    assert out.id == 3
    assert out.file == f"favicon-{seahash(data):x}.ico"
    assert (cfg.staging_dist / out.file).read_bytes() == data


@pytest.mark.asyncio
async def test_run_without_hash_keeps_name(cfg, tmp_path, icon_file):
    cfg = dataclasses.replace(cfg, filehash=False)
    out = await Icon.from_attrs(cfg, tmp_path, {"href": "favicon.ico"}, 1).run()
    assert out.file == icon_file.name
    assert (cfg.staging_dist / icon_file.name).read_bytes() == icon_file.read_bytes()


def test_finalize_replaces_link(cfg):
    dom = BeautifulSoup(
        '<html><head><link data-trunk rel="icon" href="favicon.ico" data-trunk-id="0"/>'
        '<link data-trunk-id="1" rel="css"/></head></html>',
        "html.parser",
    )
    IconOutput(cfg=cfg, id=0, file="favicon-1.ico").finalize(dom)
    icons = dom.select('link[rel~="icon"]')
    assert len(icons) == 1
    assert icons[0]["href"] == cfg.public_url + "favicon-1.ico"
    assert not icons[0].has_attr("data-trunk-id")
    assert len(dom.select('link[data-trunk-id="1"]')) == 1