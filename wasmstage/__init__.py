"""Asset pipelines, file watcher and development server for WebAssembly web applications."""

__version__ = "0.1.0"