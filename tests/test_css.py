import pytest
from bs4 import BeautifulSoup

from wasmstage.assets import BuildConfig, PipelineError, seahash
from wasmstage.css import Css, CssOutput


@pytest.fixture
def cfg(tmp_path):
    dist = tmp_path / "dist"
    dist.mkdir()
    return BuildConfig(target=tmp_path / "index.html", staging_dist=dist, filehash=False)


def test_missing_href(cfg, tmp_path):
    with pytest.raises(PipelineError):
        Css.from_attrs(cfg, tmp_path, {"rel": "css"}, 0)


def test_missing_file(cfg, tmp_path):
    with pytest.raises(PipelineError):
        Css.from_attrs(cfg, tmp_path, {"rel": "css", "href": "gone.css"}, 0)


@pytest.mark.asyncio
async def test_run_copies_file(cfg, tmp_path):
    (tmp_path / "styles").mkdir()
    (tmp_path / "styles" / "app.css").write_text("a{}")
    css = Css.from_attrs(cfg, tmp_path, {"rel": "css", "href": "styles/app.css"}, 4)
    out = await css.run()
    assert out.file == "app.css"
    assert out.id == 4
    assert (cfg.staging_dist / "app.css").read_text() == "a{}"


@pytest.mark.asyncio
async def test_run_with_hash(tmp_path):
    dist = tmp_path / "dist"
    dist.mkdir()
    cfg = BuildConfig(target=tmp_path / "index.html", staging_dist=dist, filehash=True)
    (tmp_path / "app.css").write_bytes(b"b{}")
    out = await Css.from_attrs(cfg, tmp_path, {"href": "app.css"}, 0).run()
    assert out.file == f"app-{seahash(b'b{}'):x}.css"
    assert (dist / out.file).exists()


def test_finalize_replaces_link(cfg):
    dom = BeautifulSoup(
        '<html><head><link data-trunk rel="css" href="app.css" data-trunk-id="2"/></head></html>',
        "html.parser",
    )
    CssOutput(cfg=cfg, id=2, file="app-1.css").finalize(dom)
    links = dom.select("link")
    assert len(links) == 1
    assert links[0]["rel"] == ["stylesheet"]
    assert links[0]["href"] == "/app-1.css"
    assert not links[0].has_attr("data-trunk-id")