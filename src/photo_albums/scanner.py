"""Discovery of importable image files in directories and zip archives."""

from __future__ import annotations

import zipfile
from collections.abc import Collection, Iterator
from dataclasses import asdict, dataclass
from pathlib import Path, PurePosixPath
from typing import Any

from photo_albums.config import ARCHIVE_EXTENSIONS, Settings
from utils.logging import get_logger

LOGGER = get_logger(__name__)


@dataclass(frozen=True)
class FileDescriptor:
    """A candidate file from a directory scan or an archive index.

    Directory entries carry ``path``; archive entries carry ``archive_index``
    into the archive they were listed from.
    """

    name: str
    size_bytes: int
    path: Path | None = None
    archive_index: int | None = None

    @property
    def extension(self) -> str:
        return _extension(self.name)

    @property
    def is_archive(self) -> bool:
        return self.extension in ARCHIVE_EXTENSIONS

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["path"] = str(self.path) if self.path is not None else None
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "FileDescriptor":
        raw_path = payload.get("path")
        raw_index = payload.get("archive_index")
        return cls(
            name=str(payload["name"]),
            size_bytes=int(payload.get("size_bytes") or 0),
            path=Path(raw_path) if raw_path else None,
            archive_index=int(raw_index) if raw_index is not None else None,
        )


def _extension(name: str) -> str:
    suffix = PurePosixPath(name).suffix
    return suffix[1:] if suffix else ""


def allowed_extensions(settings: Settings, *, include_archives: bool | None = None) -> frozenset[str]:
    """Return the case-sensitive extension allow-list for a directory import.

    Archives are accepted only when the site allows archive uploads, unless
    ``include_archives`` forces the decision.
    """

    extensions = {ext.lstrip(".") for ext in settings.upload.image_extensions}
    archives = settings.upload.allow_archive if include_archives is None else include_archives
    if archives:
        extensions.update(ARCHIVE_EXTENSIONS)
    return frozenset(extensions)


def image_extensions(settings: Settings) -> frozenset[str]:
    """Extensions accepted inside an archive; archives never nest."""

    return frozenset(ext.lstrip(".") for ext in settings.upload.image_extensions) - frozenset(ARCHIVE_EXTENSIONS)


def scan_directory(root: Path, extensions: Collection[str]) -> Iterator[FileDescriptor]:
    """Recursively yield matching files under ``root`` in relative-path order.

    Ordering never depends on modification times, so repeated scans of an
    unchanged directory produce the same sequence.
    """

    if not root.is_dir():
        LOGGER.warning("scan_root_missing", extra={"root": str(root)})
        return

    candidates = sorted(
        (path for path in root.rglob("*") if path.is_file()),
        key=lambda path: path.relative_to(root).as_posix(),
    )
    for path in candidates:
        if _extension(path.name) not in extensions:
            continue
        yield FileDescriptor(name=path.name, size_bytes=path.stat().st_size, path=path)


def scan_archive(archive: zipfile.ZipFile, extensions: Collection[str]) -> Iterator[FileDescriptor]:
    """Yield matching entries of an opened archive by index."""

    for index, info in enumerate(archive.infolist()):
        if info.is_dir():
            continue
        if _extension(info.filename) not in extensions:
            continue
        yield FileDescriptor(name=info.filename, size_bytes=info.file_size, archive_index=index)


__all__ = [
    "FileDescriptor",
    "allowed_extensions",
    "image_extensions",
    "scan_archive",
    "scan_directory",
]
