"""Stream-wrapper style storage roots for gallery files.

Stored files are addressed by URIs such as ``public://photos/cat.jpg``. The
``default`` scheme maps to ``storage.default_scheme``; ``private`` falls back
to the public root when no private root is configured.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import BinaryIO

from photo_albums.config import STORAGE_SCHEMES, StorageConfig
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "storage"})

_URI_SEPARATOR = "://"


@dataclass(frozen=True)
class Destination:
    """Resolved collision-free target for a new stored file."""

    path: Path
    uri: str


class FileStorage:
    """Map storage schemes to filesystem roots and manage stored files."""

    def __init__(self, config: StorageConfig, *, base_dir: Path | None = None) -> None:
        self._config = config
        self._base_dir = base_dir or Path.cwd()
        self._warned_private = False

    @property
    def directory(self) -> str:
        return self._config.directory

    def scheme_for(self, scheme: str) -> str:
        """Normalize ``default`` and validate the requested scheme."""

        resolved = self._config.default_scheme if scheme == "default" else scheme
        if resolved not in STORAGE_SCHEMES:
            raise ValueError(f"unknown storage scheme: {scheme!r}")
        if resolved == "private" and not self._config.private_root:
            if not self._warned_private:
                LOGGER.warning("storage_private_root_missing", extra={"fallback": "public"})
                self._warned_private = True
            return "public"
        return resolved

    def root_for(self, scheme: str) -> Path:
        resolved = self.scheme_for(scheme)
        raw = self._config.private_root if resolved == "private" else self._config.public_root
        root = Path(str(raw)).expanduser()
        if not root.is_absolute():
            root = self._base_dir / root
        return root

    def uri_for(self, scheme: str, relative: str) -> str:
        return f"{self.scheme_for(scheme)}{_URI_SEPARATOR}{PurePosixPath(relative).as_posix()}"

    def realpath(self, uri: str) -> Path:
        """Return the filesystem path behind a storage URI."""

        scheme, separator, relative = uri.partition(_URI_SEPARATOR)
        if not separator:
            raise ValueError(f"not a storage uri: {uri!r}")
        return self.root_for(scheme) / relative

    def resolve_source(self, source: str | Path) -> Path:
        """Resolve a plain path or a ``public://``/``private://`` prefixed path."""

        raw = str(source)
        if _URI_SEPARATOR in raw:
            return self.realpath(raw)
        return Path(raw).expanduser()

    def prepare_directory(self, scheme: str, *parts: str) -> Path:
        """Create and return ``<scheme root>/<directory>[/parts]``."""

        target = self.root_for(scheme).joinpath(self._config.directory, *parts)
        target.mkdir(parents=True, exist_ok=True)
        return target

    def destination(self, file_name: str, scheme: str) -> Destination:
        """Pick a path for ``file_name`` that does not clobber an existing file.

        Collisions are renamed ``name_0.ext``, ``name_1.ext`` and so on.
        """

        candidate = _unique_path(self.prepare_directory(scheme), file_name)
        relative = f"{self._config.directory}/{candidate.name}"
        return Destination(path=candidate, uri=self.uri_for(scheme, relative))

    def staging_path(self, file_name: str, scheme: str) -> Path:
        """Collision-free path under the scheme's ``tmp`` staging directory."""

        return _unique_path(self.prepare_directory(scheme, "tmp"), file_name)

    def write_from_path(self, source: Path, destination: Path) -> None:
        shutil.copyfile(source, destination)

    def write_from_stream(self, stream: BinaryIO, destination: Path) -> None:
        with destination.open("wb") as handle:
            shutil.copyfileobj(stream, handle)

    def delete(self, target: str | Path) -> bool:
        """Delete a stored file by URI or path; missing files are not an error."""

        path = self.realpath(target) if isinstance(target, str) and _URI_SEPARATOR in target else Path(target)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            LOGGER.error("storage_delete_error", extra={"path": str(path), "error": str(exc)})
            return False
        return True


def _unique_path(directory: Path, file_name: str) -> Path:
    base = PurePosixPath(file_name).name
    candidate = directory / base
    if not candidate.exists():
        return candidate
    stem = PurePosixPath(base).stem
    suffix = PurePosixPath(base).suffix
    counter = 0
    while True:
        candidate = directory / f"{stem}_{counter}{suffix}"
        if not candidate.exists():
            return candidate
        counter += 1


__all__ = ["Destination", "FileStorage"]
