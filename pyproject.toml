[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "wasmstage"
version = "0.1.0"
description = "Asset pipeline, file watcher and development server for WebAssembly web applications"
requires-python = ">=3.11"
keywords = [
    "wasm",
    "webassembly",
    "wasm-bindgen",
    "wasm-opt",
    "sass",
    "bundler",
    "asset-pipeline",
    "dev-server",
    "autoreload",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Web Environment",
    "Framework :: AsyncIO",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
]
dependencies = [
    "beautifulsoup4>=4.12",
    "aiohttp>=3.9",
    "watchdog>=3.0",
    "platformdirs>=3.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
]

[tool.hatch.build.targets.wheel]
packages = ["wasmstage"]

[tool.hatch.build.targets.sdist]
include = ["wasmstage", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
warn_redundant_casts = true
