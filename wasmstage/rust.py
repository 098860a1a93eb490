"""Rust application pipeline: cargo build, wasm-bindgen and wasm-opt."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar

from .assets import (
    ATTR_HREF,
    SNIPPETS_DIR,
    Attrs,
    BuildConfig,
    PipelineError,
    seahash,
    split_href,
)
from .rust_support import (
    CargoFeatures,
    CargoProject,
    RustAppOutput,
    RustAppType,
    WasmOptLevel,
    find_wasm_bindgen_version,
    load_cargo_project,
)
from .tools import Application, get

log = logging.getLogger(__name__)

CARGO_TOML = "Cargo.toml"
WASM_TARGET = "--target=wasm32-unknown-unknown"

IgnoreFn = Callable[[Path], object]


async def _run_command(name: str, program: str | os.PathLike[str], args: list[str]) -> None:
    """Run a program to completion, raising if it is missing or fails."""
    try:
        proc = await asyncio.create_subprocess_exec(str(program), *args)
    except FileNotFoundError as exc:
        raise PipelineError(f"{name} not found") from exc
    except OSError as exc:
        raise PipelineError(f"error spawning {name} call") from exc
    status = await proc.wait()
    if status != 0:
        raise PipelineError(f"{name} call returned a bad status ({status})")


def _copy_file(source: Path, dest: Path, what: str) -> None:
    try:
        shutil.copyfile(source, dest)
    except OSError as exc:
        raise PipelineError(f"error copying {what} to stage dir") from exc


@dataclass
class RustApp:
    """Builds a Rust crate to WASM and stages the generated loader and binary."""

    TYPE_RUST_APP: ClassVar[str] = "rust"

    cfg: BuildConfig
    manifest: CargoProject
    name: str
    id: int | None = None
    cargo_features: CargoFeatures = field(default_factory=CargoFeatures)
    app_type: RustAppType = RustAppType.MAIN
    ignore: IgnoreFn | None = None
    bin: str | None = None
    keep_debug: bool = False
    typescript: bool = False
    no_demangle: bool = False
    reference_types: bool = False
    weak_refs: bool = False
    wasm_opt: WasmOptLevel = WasmOptLevel.OFF
    loader_shim: bool = False

    @classmethod
    def from_attrs(
        cls,
        cfg: BuildConfig,
        html_dir: str | os.PathLike[str],
        attrs: Attrs,
        id_: int,
        ignore: IgnoreFn | None = None,
    ) -> RustApp:
        """Configure from the attributes of a ``<link data-trunk rel="rust">`` element."""
        html_dir = Path(html_dir)
        href = attrs.get(ATTR_HREF)
        if href is None:
            manifest_path = html_dir / CARGO_TOML
        else:
            manifest_path = split_href(href)
            if not manifest_path.is_absolute():
                manifest_path = html_dir / manifest_path
            if manifest_path.name != CARGO_TOML:
                manifest_path = manifest_path / CARGO_TOML

        bin_name = attrs.get("data-bin")
        app_type = RustAppType.parse(attrs.get("data-type", "main"))
        level = attrs.get("data-wasm-opt")
        if level is not None:
            wasm_opt = WasmOptLevel.parse(level)
        else:
            wasm_opt = WasmOptLevel.DEFAULT if cfg.release else WasmOptLevel.OFF

        features = attrs.get("data-cargo-features")
        all_features = "data-cargo-all-features" in attrs
        no_default_features = "data-cargo-no-default-features" in attrs

        loader_shim = "data-loader-shim" in attrs
        if loader_shim and app_type is not RustAppType.WORKER:
            raise PipelineError('Loader shim has no effect when data-type is "main"!')
        if all_features and (no_default_features or features is not None):
            raise PipelineError(
                "Cannot combine --all-features with --no-default-features and/or --features"
            )
        cargo_features = (
            CargoFeatures(all_features=True)
            if all_features
            else CargoFeatures(features=features, no_default_features=no_default_features)
        )

        manifest = load_cargo_project(manifest_path)
        return cls(
            cfg=cfg,
            manifest=manifest,
            name=bin_name if bin_name is not None else manifest.package_name,
            id=id_,
            cargo_features=cargo_features,
            app_type=app_type,
            ignore=ignore,
            bin=bin_name,
            keep_debug="data-keep-debug" in attrs,
            typescript="data-typescript" in attrs,
            no_demangle="data-no-demangle" in attrs,
            reference_types="data-reference-types" in attrs,
            weak_refs="data-weak-refs" in attrs,
            wasm_opt=wasm_opt,
            loader_shim=loader_shim,
        )

    @classmethod
    def default(
        cls,
        cfg: BuildConfig,
        html_dir: str | os.PathLike[str],
        ignore: IgnoreFn | None = None,
    ) -> RustApp:
        """The main app built from the ``Cargo.toml`` next to the source HTML."""
        manifest = load_cargo_project(Path(html_dir) / CARGO_TOML)
        features = cfg.cargo_features if isinstance(cfg.cargo_features, CargoFeatures) else CargoFeatures()
        return cls(
            cfg=cfg,
            manifest=manifest,
            name=manifest.package_name,
            cargo_features=features,
            ignore=ignore,
        )

    def cargo_args(self) -> list[str]:
        """Arguments of the ``cargo build`` invocation."""
        args = ["build", WASM_TARGET, "--manifest-path", self.manifest.manifest_path]
        if self.cfg.release:
            args.append("--release")
        if self.bin is not None:
            args += ["--bin", self.bin]
        features = self.cargo_features
        if features.all_features:
            args.append("--all-features")
        else:
            if features.no_default_features:
                args.append("--no-default-features")
            if features.features is not None:
                args += ["--features", features.features]
        return args

    def bindgen_args(
        self,
        wasm: str | os.PathLike[str],
        out_dir: str | os.PathLike[str],
        out_name: str,
    ) -> list[str]:
        """Arguments of the ``wasm-bindgen`` invocation."""
        target = "--target=web" if self.app_type is RustAppType.MAIN else "--target=no-modules"
        args = [target, f"--out-dir={out_dir}", f"--out-name={out_name}", str(wasm)]
        flags = (
            (self.keep_debug, "--keep-debug"),
            (self.no_demangle, "--no-demangle"),
            (self.reference_types, "--reference-types"),
            (self.weak_refs, "--weak-refs"),
            (not self.typescript, "--no-typescript"),
        )
        args += [flag for enabled, flag in flags if enabled]
        return args

    @property
    def _mode(self) -> str:
        return "release" if self.cfg.release else "debug"

    async def run(self) -> RustAppOutput:
        """Build the crate and stage the generated files."""
        wasm, hashed_name = await self._cargo_build()
        output = await self._wasm_bindgen_build(wasm, hashed_name)
        await self._wasm_opt_build(output.wasm_output)
        return output

    async def _cargo_build(self) -> tuple[Path, str]:
        log.info("building %s", self.manifest.package_name)
        args = self.cargo_args()
        try:
            await _run_command("cargo", "cargo", args)
        except PipelineError as exc:
            raise PipelineError(f"error during cargo build execution: {exc}") from exc
        finally:
            # The target dir must be ignored by the watcher even when the build fails.
            if self.ignore is not None:
                self.ignore(self.manifest.target_directory)

        log.info("fetching cargo artifacts")
        try:
            proc = await asyncio.create_subprocess_exec(
                "cargo",
                *args,
                "--message-format=json",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await proc.communicate()
        except OSError as exc:
            raise PipelineError("error spawning cargo build artifacts task") from exc
        if proc.returncode != 0:
            print(stderr.decode("utf-8", errors="replace"), file=sys.stderr)
            raise PipelineError("bad status returned from cargo artifacts request")

        artifact = self._find_artifact(stdout.decode("utf-8", errors="replace"))
        wasm = next(
            (Path(name) for name in artifact.get("filenames") or [] if Path(name).suffix == ".wasm"),
            None,
        )
        if wasm is None:
            raise PipelineError("could not find WASM output after cargo build")

        log.info("processing WASM for %s", self.name)
        try:
            wasm_bytes = await asyncio.to_thread(wasm.read_bytes)
        except OSError as exc:
            raise PipelineError("error reading wasm file for hash generation") from exc
        hashed_name = f"{self.name}-{seahash(wasm_bytes):x}" if self.cfg.filehash else self.name
        return wasm, hashed_name

    def _find_artifact(self, output: str) -> dict:
        artifact: dict | None = None
        failed = False
        for line in output.splitlines():
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(message, dict):
                continue
            reason = message.get("reason")
            if reason == "compiler-artifact" and message.get("package_id") == self.manifest.package_id:
                artifact, failed = message, False
            elif reason == "build-finished" and not message.get("success", True):
                failed = True
        if failed:
            raise PipelineError("error while fetching cargo artifact info")
        if artifact is None:
            raise PipelineError("cargo artifacts not found for target crate")
        return artifact

    async def _wasm_bindgen_build(self, wasm: Path, hashed_name: str) -> RustAppOutput:
        # Workers keep the plain name, as they are loaded by name at runtime.
        if self.app_type is RustAppType.WORKER:
            hashed_name = self.name

        version = find_wasm_bindgen_version(
            self.cfg.tools.wasm_bindgen, self.manifest.manifest_path, self.manifest.packages
        )
        wasm_bindgen = await get(Application.WASM_BINDGEN, version)
        tool_name = Application.WASM_BINDGEN.binary_name

        bindgen_out = self.manifest.target_directory / tool_name / self._mode
        try:
            bindgen_out.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PipelineError("error creating wasm-bindgen output dir") from exc

        log.info("calling wasm-bindgen for %s", self.name)
        await _run_command(tool_name, wasm_bindgen, self.bindgen_args(wasm, bindgen_out, hashed_name))

        log.info("copying generated wasm-bindgen artifacts")
        js_name = f"{hashed_name}.js"
        wasm_name = f"{hashed_name}_bg.wasm"
        ts_name = f"{hashed_name}.d.ts"
        loader_name = f"{hashed_name}_loader.js" if self.loader_shim else None
        await asyncio.to_thread(
            self._stage_bindgen_outputs, bindgen_out, js_name, wasm_name, ts_name, loader_name
        )
        return RustAppOutput(
            cfg=self.cfg,
            id=self.id,
            js_output=js_name,
            wasm_output=wasm_name,
            ts_output=ts_name if self.typescript else None,
            loader_shim_output=loader_name,
            type_=self.app_type,
        )

    def _stage_bindgen_outputs(
        self,
        bindgen_out: Path,
        js_name: str,
        wasm_name: str,
        ts_name: str,
        loader_name: str | None,
    ) -> None:
        stage = Path(self.cfg.staging_dist)
        _copy_file(bindgen_out / js_name, stage / js_name, "JS loader file")
        _copy_file(bindgen_out / wasm_name, stage / wasm_name, "wasm file")
        if self.typescript:
            _copy_file(bindgen_out / ts_name, stage / ts_name, "TS files")
        if loader_name is not None:
            shim = f'importScripts("./{js_name}");wasm_bindgen("./{wasm_name}");'
            try:
                (stage / loader_name).write_text(shim, encoding="utf-8")
            except OSError as exc:
                raise PipelineError("error writing loader shim script") from exc
        snippets = bindgen_out / SNIPPETS_DIR
        if snippets.exists():
            try:
                shutil.copytree(snippets, stage / SNIPPETS_DIR, dirs_exist_ok=True)
            except OSError as exc:
                raise PipelineError("error copying snippets dir to stage dir") from exc

    async def _wasm_opt_build(self, wasm_name: str) -> None:
        if not self.cfg.release or self.wasm_opt is WasmOptLevel.OFF:
            return

        wasm_opt = await get(Application.WASM_OPT, self.cfg.tools.wasm_opt)
        tool_name = Application.WASM_OPT.binary_name
        out_dir = self.manifest.target_directory / tool_name / self._mode
        try:
            out_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PipelineError("error creating wasm-opt output dir") from exc

        output = out_dir / wasm_name
        staged = Path(self.cfg.staging_dist) / wasm_name
        args = [f"--output={output}", f"-O{self.wasm_opt.value}", str(staged)]
        if self.reference_types:
            args.append("--enable-reference-types")

        log.info("calling wasm-opt")
        await _run_command(tool_name, wasm_opt, args)

        log.info("copying generated wasm-opt artifacts")
        await asyncio.to_thread(_copy_file, output, staged, "wasm file")