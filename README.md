# wasmstage

wasmstage is a library for building a web application around a WebAssembly
module. It reads a source `index.html` and processes every element marked with
`data-trunk`. Each marked element goes through its own asset pipeline. The
pipelines write their files to a staging directory, and a finalized
`index.html` is written there as well.

For development, the library can watch the project and rebuild when files
change. It can also serve the output with live reload and proxy requests to
backend services.

## Building a page

```python
import asyncio
from pathlib import Path

from wasmstage.assets import BuildConfig
from wasmstage.html import HtmlPipeline

stage = Path("dist/.stage")
stage.mkdir(parents=True, exist_ok=True)
cfg = BuildConfig(target=Path("index.html"), staging_dist=stage, public_url="/")
asyncio.run(HtmlPipeline(cfg).run())
```

The staging directory must exist before the build starts.

`BuildConfig` has these further fields:

- `release`
- `filehash`: put a content hash in the names of output files
- `inject_autoloader`: append the live-reload script to `<body>`
- `tools`: a `ToolsConfig` of pinned tool versions
- `cargo_features`: a `CargoFeatures`, used for the default Rust app
- `pattern_script`, `pattern_preload` and `pattern_params`: see below

`HtmlPipeline` takes an optional `ignore` callable. The Rust pipeline passes
cargo's target directory to it. It also takes an optional `run_hooks`
coroutine function. That function is awaited with each `PipelineStage`:
`PRE_BUILD`, then `BUILD` (alongside the asset pipelines), then `POST_BUILD`.

`finalize_html` replaces `href` with the public URL on every
`<base data-trunk-public-url>` element in `<head>`, and removes the marker
attribute.

## Asset pipelines

For `<link data-trunk>` elements, the `rel` attribute selects the pipeline:

| `rel`          | What happens                                                                   |
|----------------|--------------------------------------------------------------------------------|
| `rust`         | `cargo build` for wasm32, then wasm-bindgen, then in release mode wasm-opt (`RustApp`) |
| `css`          | Copies the stylesheet, optionally with a hashed name (`Css`)                   |
| `sass`, `scss` | Compiles with dart-sass. `data-inline` embeds the result in a `<style>` tag (`Sass`) |
| `icon`         | Copies the icon, optionally with a hashed name (`Icon`)                        |
| `inline`       | Inserts the content of an `html`, `css` or `js` file into the page. The kind comes from `type` or, failing that, the file extension (`Inline`) |
| `copy-file`    | Copies a file unchanged (`CopyFile`)                                           |
| `copy-dir`     | Copies a directory recursively. `data-target-path` sets a relative destination without `..` (`CopyDir`) |

`<script data-trunk src="...">` elements are handled by `Js`. The script is
copied, and every attribute except `src` and the `data-trunk*` attributes is
kept on the output tag.

Any other `rel` value is an error, and so is a link without `rel`; both raise
`PipelineError`. If the page has no main `rel="rust"` link, a Rust app is
built from the `Cargo.toml` next to the HTML file. Only one main Rust app is
allowed per page.

### Attributes of `rel="rust"`

- `href`: the crate directory or its `Cargo.toml`
- `data-bin`: build only this binary
- `data-type`: `main` (the default) or `worker`
- `data-cargo-features`, `data-cargo-no-default-features`, `data-cargo-all-features`
  - `data-cargo-all-features` cannot be combined with either of the other two.
- `data-keep-debug`, `data-no-demangle`, `data-typescript`, `data-reference-types`, `data-weak-refs`
- `data-wasm-opt`: `0` (off), `1` to `4`, `s`, `z`, or empty for the default level
  - The default is the default level in release builds and off otherwise.
- `data-loader-shim`: workers only

Cargo project metadata is read with `cargo metadata` (`load_cargo_project`).

## Output templates

Templates can replace the script tag and the preload links for the main app:

- `BuildConfig.pattern_script` replaces the script tag.
- `BuildConfig.pattern_preload` replaces the preload links.

`pattern_evaluate` replaces each `{name}` with its value. `base`, `js` and
`wasm` are supplied automatically, and `pattern_params` can add more. A value
that starts with `@` names a file whose content is inserted.

```python
from wasmstage.rust_support import pattern_evaluate

html = pattern_evaluate(
    "<script src='{base}{js}'></script>",
    {"base": "/", "js": "app.js"},
)
assert html == "<script src='/app.js'></script>"
```

## External tools

`wasmstage.tools` finds `Application.SASS`, `Application.WASM_BINDGEN` and
`Application.WASM_OPT`. `await get(app, version)` returns the path of an
executable, found in one of two ways:

- **On `PATH`:** a binary there is used when its `--version` output matches the
  requested version, or when no version was requested.
- **Downloaded:** otherwise the release archive for the current OS and
  architecture is downloaded into `cache_dir()` and the files are extracted.
  Each tool and version is downloaded at most once per process.

The wasm-bindgen version is chosen in this order:

1. `ToolsConfig.wasm_bindgen`
2. `Cargo.lock`
3. the dependency metadata

## Watching and serving

`WatchSystem(build, paths, ignored_paths, on_build_done)` watches `paths`
recursively and awaits `build` after a change. Changes are debounced by one
second. Paths below an ignored path, or inside `.git`, do not trigger a build.
`run(stop)` keeps watching until the `asyncio.Event` is set.

`ServeSystem(cfg, dist_dir, build, watch_paths)` works in three steps:

1. It runs `build` once.
2. It serves `dist_dir` with aiohttp and watches for changes.
3. It stops when its `shutdown` event is set.

The server works as follows:

- Static files are served under `public_route(cfg.public_url)`.
- Paths that match no file fall back to `index.html`.
- Clients connected to `/_trunk/ws` receive `{"reload": true}` after each rebuild.
- If `ServeConfig.open` is set, the page is opened in a browser.

`make_app` builds the aiohttp application on its own.

Proxies come from `ServeConfig`. A single backend can be set with
`proxy_backend`, `proxy_rewrite`, `proxy_ws` and `proxy_insecure`. Otherwise
proxies come from a list of `ProxyConfig` entries. Each proxy listens at its
rewrite path, or at the backend URL's path, and forwards the rest of the path
and the query to the backend (`make_outbound_uri`). There are two kinds:

- `HttpProxy` streams responses back.
- `WebSocketProxy` relays messages in both directions.

## What is not included

- There is no command-line program. The package is used from Python code.
- No configuration file is read. All settings are passed in as `BuildConfig`
  and `ServeConfig` objects.
- Build hooks are not run by the package. The caller supplies `run_hooks`.
- The staging directory is not moved into a final dist directory. The caller
  chooses which directory `ServeSystem` serves.
- `ServeConfig.no_autoreload` is accepted but does not change what is served.

## Running the tests

Install the package with its `test` extra, then run `pytest` from the project
root.