import pytest
from bs4 import BeautifulSoup

from wasmstage.assets import BuildConfig, PipelineError
from wasmstage.js import Js, JsOutput, attrs_to_string


@pytest.fixture
def cfg(tmp_path):
    dist = tmp_path / "dist"
    dist.mkdir()
    return BuildConfig(target=tmp_path / "index.html", staging_dist=dist, filehash=False)


def test_attrs_to_string():
    assert attrs_to_string({"type": "module", "defer": ""}) == 'type="module" defer=""'
    assert attrs_to_string({}) == ""


def test_missing_src(cfg, tmp_path):
    with pytest.raises(PipelineError):
        Js.from_attrs(cfg, tmp_path, {"data-trunk": ""}, 0)


def test_filters_trunk_and_src_attrs(cfg, tmp_path):
    (tmp_path / "app.js").write_text("1")
    js = Js.from_attrs(
        cfg,
        tmp_path,
        {"src": "app.js", "data-trunk": "", "data-trunk-id": "0", "type": "module"},
        0,
    )
    assert js.attrs == {"type": "module"}


@pytest.mark.asyncio
async def test_run_and_finalize(cfg, tmp_path):
    (tmp_path / "app.js").write_text("let a = 1;")
    js = Js.from_attrs(
        cfg, tmp_path, {"src": "app.js", "data-trunk": "", "type": "module"}, 3
    )
    out = await js.run()
    assert out.file == "app.js"
    assert out.attrs == 'type="module"'
    assert (cfg.staging_dist / "app.js").read_text() == "let a = 1;"

    dom = BeautifulSoup(
        '<html><body><script data-trunk src="app.js" type="module" data-trunk-id="3"></script></body></html>',
        "html.parser",
    )
    out.finalize(dom)
    scripts = dom.select("script")
    assert len(scripts) == 1
    assert scripts[0]["src"] == "/app.js"
    assert scripts[0]["type"] == "module"
    assert not scripts[0].has_attr("data-trunk-id")


def test_finalize_only_touches_matching_id(cfg):
    dom = BeautifulSoup(
        '<script data-trunk-id="1"></script><script data-trunk-id="2"></script>',
        "html.parser",
    )
    JsOutput(cfg=cfg, id=2, file="x.js", attrs="defer").finalize(dom)
    assert dom.select_one('script[data-trunk-id="1"]') is not None
    assert dom.select_one('script[src="/x.js"]').has_attr("defer")