from __future__ import annotations

import os
import tempfile
import zipfile
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from PIL import Image

os.environ.setdefault("PHOTO_ALBUMS_LOG_DIR", tempfile.mkdtemp(prefix="photo_albums_log_"))

from photo_albums.albums import AlbumService  # noqa: E402
from photo_albums.config import Settings  # noqa: E402
from photo_albums.context import GalleryContext, open_gallery  # noqa: E402
from photo_albums.db import Album  # noqa: E402

OWNER_ID = 7


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    settings = Settings()
    settings.database.url = f"sqlite:///{tmp_path / 'data' / 'gallery.db'}"
    settings.storage.public_root = str(tmp_path / "files" / "public")
    settings.storage.private_root = str(tmp_path / "files" / "private")
    settings.batch.progress_root = str(tmp_path / "jobs")
    return settings


@pytest.fixture
def gallery(settings: Settings) -> Iterator[GalleryContext]:
    with open_gallery(settings) as context:
        yield context


@pytest.fixture
def albums(gallery: GalleryContext) -> AlbumService:
    return AlbumService(gallery)


@pytest.fixture
def album(albums: AlbumService) -> Album:
    return albums.create_album(owner_id=OWNER_ID, title="Holiday")


@pytest.fixture
def photos_dir(settings: Settings) -> Path:
    return Path(settings.storage.public_root) / settings.storage.directory


@pytest.fixture
def make_image() -> Callable[..., Path]:
    def _make(path: Path, size: tuple[int, int] = (40, 30), color=(180, 40, 40), fmt: str = "JPEG") -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        Image.new("RGB", size, color).save(path, format=fmt)
        return path

    return _make


@pytest.fixture
def make_zip(make_image: Callable[..., Path], tmp_path: Path) -> Callable[..., Path]:
    """Build an archive with ``images`` valid JPEG entries plus ``extras`` text/binary entries."""

    def _make(path: Path, images: int, extras: dict[str, bytes] | None = None) -> Path:
        staging = tmp_path / f"zip_src_{path.stem}"
        path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(path, "w") as archive:
            archive.writestr("nested/", b"")
            for index in range(images):
                image_path = make_image(staging / f"entry-{index:02d}.jpg", color=(index * 20, 80, 120))
                archive.write(image_path, arcname=f"nested/entry-{index:02d}.jpg")
            for name, payload in (extras or {}).items():
                archive.writestr(name, payload)
        return path

    return _make
