"""Building blocks of the Rust application pipeline: settings, Cargo metadata and output."""

from __future__ import annotations

import json
import logging
import os
import subprocess
import tomllib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from bs4 import BeautifulSoup

from .assets import (
    BuildConfig,
    PipelineError,
    append_html,
    remove_nodes,
    replace_with_html,
    trunk_id_selector,
)

log = logging.getLogger(__name__)

WASM_BINDGEN = "wasm-bindgen"


class RustAppType(Enum):
    """How the Rust application is used."""

    MAIN = "main"
    WORKER = "worker"

    @classmethod
    def parse(cls, value: str) -> RustAppType:
        try:
            return cls(value)
        except ValueError:
            raise PipelineError(
                f'unknown `data-type="{value}"` value for <link data-trunk rel="rust" .../> attr; '
                "please ensure the value is lowercase and is a supported type"
            ) from None


class WasmOptLevel(Enum):
    """Optimisation levels understood by wasm-opt."""

    DEFAULT = ""
    OFF = "0"
    ONE = "1"
    TWO = "2"
    THREE = "3"
    FOUR = "4"
    S = "s"
    Z = "z"

    @classmethod
    def parse(cls, value: str) -> WasmOptLevel:
        normalized = value.lower() if value in ("S", "Z") else value
        try:
            return cls(normalized)
        except ValueError:
            raise PipelineError(f"unknown wasm-opt level `{value}`") from None


@dataclass(frozen=True)
class CargoFeatures:
    """Feature selection passed to cargo."""

    all_features: bool = False
    features: str | None = None
    no_default_features: bool = False


@dataclass(frozen=True)
class CargoProject:
    """The metadata of a Cargo project needed by the build."""

    manifest_path: str
    package_name: str
    package_id: str
    target_directory: Path
    packages: tuple[tuple[str, str], ...] = ()


def _root_package(data: Mapping, manifest_path: Path) -> Mapping:
    packages = data.get("packages") or []
    resolve = data.get("resolve") or {}
    root_id = resolve.get("root")
    if root_id is not None:
        for package in packages:
            if package.get("id") == root_id:
                return package
    for package in packages:
        candidate = package.get("manifest_path")
        if candidate is None:
            continue
        try:
            same = Path(candidate).resolve() == manifest_path
        except (OSError, RuntimeError):
            same = False
        if same:
            return package
    raise PipelineError("could not find the root package of the target crate")


def load_cargo_project(manifest_path: str | os.PathLike[str]) -> CargoProject:
    """Read the metadata of the Cargo project at ``manifest_path`` via ``cargo metadata``."""
    manifest = Path(manifest_path)
    try:
        manifest = manifest.resolve()
    except (OSError, RuntimeError):
        pass
    args = [
        "cargo",
        "metadata",
        "--format-version",
        "1",
        "--manifest-path",
        str(manifest),
    ]
    try:
        result = subprocess.run(args, capture_output=True, text=True, check=False)
    except FileNotFoundError as exc:
        raise PipelineError("cargo not found") from exc
    except OSError as exc:
        raise PipelineError("error spawning cargo metadata call") from exc
    if result.returncode != 0:
        raise PipelineError(
            f"error getting cargo metadata for {manifest}: {result.stderr.strip()}"
        )
    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError as exc:
        raise PipelineError("error parsing cargo metadata output") from exc

    package = _root_package(data, manifest)
    target_directory = data.get("target_directory")
    if target_directory is None:
        raise PipelineError("cargo metadata is missing the target directory")
    packages = tuple(
        (p["name"], p["version"])
        for p in data.get("packages") or []
        if "name" in p and "version" in p
    )
    return CargoProject(
        manifest_path=str(package.get("manifest_path", manifest)),
        package_name=package["name"],
        package_id=package["id"],
        target_directory=Path(target_directory),
        packages=packages,
    )


def pattern_evaluate(template: str, params: Mapping[str, str]) -> str:
    """Substitute ``{key}`` placeholders; values starting with ``@`` name a file to insert."""
    result = template
    for key, value in params.items():
        pattern = f"{{{key}}}"
        if value.startswith("@"):
            try:
                contents = Path(value[1:]).read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            result = result.replace(pattern, contents)
        else:
            result = result.replace(pattern, value)
    return result


def _version_from_lock(manifest_path: str | os.PathLike[str]) -> str | None:
    lock_path = Path(manifest_path).parent / "Cargo.lock"
    try:
        with lock_path.open("rb") as fh:
            lock = tomllib.load(fh)
    except (OSError, tomllib.TOMLDecodeError):
        return None
    for package in lock.get("package") or []:
        if package.get("name") == WASM_BINDGEN and "version" in package:
            return str(package["version"])
    return None


def find_wasm_bindgen_version(
    tool_version: str | None,
    manifest_path: str | os.PathLike[str],
    packages: Iterable[tuple[str, str]],
) -> str | None:
    """Pick the wasm-bindgen version: configured, then Cargo.lock, then the dependency list."""
    if tool_version is not None:
        return tool_version
    locked = _version_from_lock(manifest_path)
    if locked is not None:
        return locked
    for name, version in packages:
        if name == WASM_BINDGEN:
            return version
    return None


@dataclass
class RustAppOutput:
    """Files produced for a Rust application and how to reference them."""

    cfg: BuildConfig
    id: int | None
    js_output: str
    wasm_output: str
    ts_output: str | None = None
    loader_shim_output: str | None = None
    type_: RustAppType = RustAppType.MAIN

    def finalize(self, dom: BeautifulSoup) -> None:
        if self.type_ is RustAppType.WORKER:
            # Workers are loaded by the app at runtime; only drop the link element.
            if self.id is not None:
                remove_nodes(dom, trunk_id_selector(self.id))
            return

        base, js, wasm = self.cfg.public_url, self.js_output, self.wasm_output
        params = dict(self.cfg.pattern_params or {})
        params.update(base=base, js=js, wasm=wasm)

        if self.cfg.pattern_preload is not None:
            preload = pattern_evaluate(self.cfg.pattern_preload, params)
        else:
            preload = (
                f'\n<link rel="preload" href="{base}{wasm}" as="fetch" '
                f'type="application/wasm" crossorigin>'
                f'\n<link rel="modulepreload" href="{base}{js}">'
            )
        append_html(dom, "html head", preload)

        if self.cfg.pattern_script is not None:
            script = pattern_evaluate(self.cfg.pattern_script, params)
        else:
            script = (
                f"<script type=\"module\">import init from '{base}{js}';"
                f"init('{base}{wasm}');</script>"
            )
        if self.id is not None:
            replace_with_html(dom, trunk_id_selector(self.id), script)
        else:
            append_html(dom, "html body", script)