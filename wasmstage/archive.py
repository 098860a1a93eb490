"""Read single files out of downloaded release archives."""

from __future__ import annotations

import os
import shutil
import tarfile
import zipfile
import zlib
from pathlib import Path, PurePosixPath
from typing import IO


class ArchiveError(Exception):
    """Raised when an archive cannot be read or lacks a requested file."""


def _without_first(name: str) -> tuple[str, ...]:
    """Path parts of an entry name with its leading folder dropped."""
    return PurePosixPath(name).parts[1:]


def _write_out(source: IO[bytes], name: str, target: Path) -> Path:
    out = Path(target) / name
    try:
        out.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ArchiveError(f"failed creating output directory {out.parent}") from exc
    try:
        with out.open("wb") as sink:
            shutil.copyfileobj(source, sink)
    except OSError as exc:
        raise ArchiveError(f"failed copying {name} out of archive") from exc
    return out


def _set_mode(path: Path, mode: int) -> None:
    """Apply unix permission bits; has no effect elsewhere."""
    if os.name != "posix":
        return
    try:
        os.chmod(path, mode & 0o7777)
    except OSError as exc:
        raise ArchiveError(f"failed setting file permissions on {path}") from exc


class Archive:
    """A tar.gz or zip archive from which files are extracted by name.

    Entry names are matched with their first path segment removed, since
    release archives usually wrap everything in one top-level folder.
    """

    def __init__(
        self,
        *,
        tar: tarfile.TarFile | None = None,
        zip_: zipfile.ZipFile | None = None,
    ) -> None:
        self._tar = tar
        self._zip = zip_

    @classmethod
    def open_tar_gz(cls, path: str | os.PathLike[str]) -> Archive:
        try:
            tar = tarfile.open(path, "r:gz")
        except (tarfile.TarError, OSError, EOFError, zlib.error) as exc:
            raise ArchiveError(f"failed opening tar.gz archive {path}") from exc
        return cls(tar=tar)

    @classmethod
    def open_zip(cls, path: str | os.PathLike[str]) -> Archive:
        try:
            zf = zipfile.ZipFile(path)
        except (zipfile.BadZipFile, OSError) as exc:
            raise ArchiveError(f"failed opening zip archive {path}") from exc
        return cls(zip_=zf)

    def extract_file(self, name: str, target: str | os.PathLike[str]) -> Path:
        """Extract the entry ``name`` below ``target`` and return the written path."""
        wanted = PurePosixPath(name).parts
        target = Path(target)
        try:
            if self._tar is not None:
                return self._extract_tar(name, wanted, target)
            if self._zip is not None:
                return self._extract_zip(name, wanted, target)
        except (tarfile.TarError, zipfile.BadZipFile, EOFError, zlib.error) as exc:
            raise ArchiveError(f"error while reading archive entry for {name}") from exc
        raise ArchiveError("archive is closed")

    def _extract_tar(self, name: str, wanted: tuple[str, ...], target: Path) -> Path:
        assert self._tar is not None
        for member in self._tar.getmembers():
            if _without_first(member.name) != wanted:
                continue
            source = self._tar.extractfile(member)
            if source is None:
                raise ArchiveError(f"archive entry {member.name} is not a regular file")
            with source:
                out = _write_out(source, name, target)
            _set_mode(out, member.mode)
            return out
        raise ArchiveError(f"file not found in archive: {name}")

    def _extract_zip(self, name: str, wanted: tuple[str, ...], target: Path) -> Path:
        assert self._zip is not None
        for info in self._zip.infolist():
            entry = PurePosixPath(info.filename)
            if entry.is_absolute() or ".." in entry.parts:
                raise ArchiveError(f"invalid entry path {info.filename}")
            if entry.parts[1:] != wanted:
                continue
            with self._zip.open(info) as source:
                out = _write_out(source, name, target)
            mode = info.external_attr >> 16
            if mode:
                _set_mode(out, mode)
            return out
        raise ArchiveError(f"file not found in archive: {name}")

    def close(self) -> None:
        if self._tar is not None:
            self._tar.close()
            self._tar = None
        if self._zip is not None:
            self._zip.close()
            self._zip = None

    def __enter__(self) -> Archive:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()