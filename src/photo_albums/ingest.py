"""Turn a single discovered file into a persisted album image."""

from __future__ import annotations

import re
import time
import zipfile
from pathlib import PurePosixPath

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from photo_albums.attachments import AttachmentKind, StoredFile, resolve_attachment_kind
from photo_albums.cache_tags import ImageCreated
from photo_albums.config import parse_size_max
from photo_albums.context import GalleryContext
from photo_albums.db import Album, FileUsage, Image, Media
from photo_albums.errors import IngestError, IngestErrorKind
from photo_albums.imaging import ImageProbeError, probe_image, scale_to_resolution
from photo_albums.scanner import FileDescriptor
from photo_albums.storage import Destination
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "ingest"})

FILE_USAGE_MODULE = "photo_albums"
_TITLE_SEPARATORS = re.compile(r"[-_]")


def clean_title(file_name: str) -> str:
    """``"my-summer_trip.jpg"`` becomes ``"my summer trip"``."""

    stem = PurePosixPath(file_name).stem
    return _TITLE_SEPARATORS.sub(" ", stem).strip()


def album_image_count(session, album_id: int) -> int:
    return int(session.execute(select(func.count(Image.id)).where(Image.album_id == album_id)).scalar_one())


def next_image_weight(session, album_id: int) -> int:
    """One past the heaviest image of the album, ``0`` for an empty album."""

    heaviest = session.execute(select(func.max(Image.weight)).where(Image.album_id == album_id)).scalar_one_or_none()
    return 0 if heaviest is None else int(heaviest) + 1


class ImageIngestor:
    """Validate, relocate, and record one image file.

    The album limit is checked first. The file is then copied or streamed to a
    collision-free destination, validated with Pillow, and recorded. In move
    mode the source is removed only after the record has been committed, and
    every failure after relocation deletes the relocated copy again.
    """

    def __init__(self, context: GalleryContext, attachment: AttachmentKind | None = None) -> None:
        self._context = context
        self._attachment = attachment or resolve_attachment_kind(context.settings.upload.attachment)
        self._size_max = parse_size_max(context.settings.upload.size_max)

    @property
    def attachment(self) -> AttachmentKind:
        return self._attachment

    def ingest(
        self,
        descriptor: FileDescriptor,
        album_id: int,
        owner_id: int,
        *,
        title: str | None = None,
        description: str | None = None,
        weight: int | None = None,
        scheme: str = "default",
        copy: bool = True,
        archive: zipfile.ZipFile | None = None,
        maintain: bool = True,
    ) -> int:
        """Ingest ``descriptor`` into ``album_id`` and return the new image id.

        ``archive`` must be the opened zip file when the descriptor is an
        archive entry. With ``maintain=False`` counters and cache tags are left
        to the caller, which batch imports reconcile once at the end.

        Raises :class:`IngestError` for per-file failures and ``LookupError``
        for an unknown album.
        """

        session = self._context.session
        settings = self._context.settings
        storage = self._context.storage
        file_name = PurePosixPath(descriptor.name).name

        album = session.get(Album, album_id)
        if album is None:
            raise LookupError(f"album {album_id} does not exist")

        limit = settings.upload.album_photo_limit
        if limit > 0 and album_image_count(session, album_id) >= limit:
            raise IngestError(
                IngestErrorKind.LIMIT_REACHED,
                f"album {album_id} already holds the maximum of {limit} images",
                file_name=file_name,
                album_id=album_id,
            )

        destination = storage.destination(file_name, scheme)
        self._relocate(descriptor, destination, archive, album_id, file_name)

        try:
            width, height = probe_image(destination.path)
        except ImageProbeError as exc:
            storage.delete(destination.path)
            kind = IngestErrorKind.WRONG_TYPE if exc.wrong_type else IngestErrorKind.DECODE_FAILED
            raise IngestError(kind, str(exc), file_name=file_name, album_id=album_id) from exc

        if title is None:
            title = clean_title(file_name) if settings.upload.clean_title else file_name

        now = time.time()
        try:
            if weight is None:
                weight = next_image_weight(session, album_id)
            image = Image(
                album_id=album_id,
                owner_id=owner_id,
                title=title,
                description=description or "",
                weight=weight,
                created_at=now,
                changed_at=now,
            )
            stored = StoredFile(
                uri=destination.uri,
                file_name=destination.path.name,
                file_size=destination.path.stat().st_size,
                width=width,
                height=height,
            )
            session.add(image)
            self._attachment.attach(session, image, stored)
            session.add(
                FileUsage(
                    file_uri=destination.uri,
                    module=FILE_USAGE_MODULE,
                    target_type="album",
                    target_id=album_id,
                    count=1,
                )
            )
            session.commit()
        except (SQLAlchemyError, OSError) as exc:
            session.rollback()
            storage.delete(destination.path)
            LOGGER.error(
                "ingest_persist_failed",
                extra={"file_name": file_name, "album_id": album_id, "error": str(exc)},
            )
            raise IngestError(
                IngestErrorKind.PERSIST_FAILED,
                f"could not record {file_name}: {exc}",
                file_name=file_name,
                album_id=album_id,
            ) from exc

        if not copy and descriptor.path is not None:
            try:
                descriptor.path.unlink()
            except OSError as exc:
                LOGGER.warning(
                    "ingest_source_unlink_failed",
                    extra={"file_name": file_name, "source": str(descriptor.path), "error": str(exc)},
                )

        if self._size_max is not None:
            self._apply_size_max(image, destination, self._size_max)

        if maintain:
            self._context.counters.image_added(album_id, owner_id)
            self._context.invalidate(ImageCreated(image_id=image.id, album_id=album_id))

        LOGGER.info(
            "ingest_complete",
            extra={"file_name": file_name, "album_id": album_id, "image_id": image.id, "uri": destination.uri},
        )
        return image.id

    def _relocate(
        self,
        descriptor: FileDescriptor,
        destination: Destination,
        archive: zipfile.ZipFile | None,
        album_id: int,
        file_name: str,
    ) -> None:
        storage = self._context.storage
        try:
            if descriptor.archive_index is not None:
                if archive is None:
                    raise ValueError(f"archive entry {descriptor.name} given without its archive")
                info = archive.infolist()[descriptor.archive_index]
                with archive.open(info) as stream:
                    storage.write_from_stream(stream, destination.path)
            else:
                if descriptor.path is None:
                    raise ValueError(f"file descriptor {descriptor.name} has no source path")
                storage.write_from_path(descriptor.path, destination.path)
        except (OSError, zipfile.BadZipFile, IndexError) as exc:
            storage.delete(destination.path)
            raise IngestError(
                IngestErrorKind.MOVE_FAILED,
                f"could not store {file_name}: {exc}",
                file_name=file_name,
                album_id=album_id,
            ) from exc

    def _apply_size_max(self, image: Image, destination: Destination, size_max: tuple[int, int]) -> None:
        max_width, max_height = size_max
        image_id, album_id = image.id, image.album_id
        try:
            scaled = scale_to_resolution(destination.path, max_width, max_height)
        except OSError as exc:
            LOGGER.warning(
                "ingest_resize_failed",
                extra={"file_name": destination.path.name, "album_id": album_id, "error": str(exc)},
            )
            return
        if scaled is None:
            return

        session = self._context.session
        try:
            image.width, image.height = scaled
            image.file_size = destination.path.stat().st_size
            if image.media_id is not None:
                media = session.get(Media, image.media_id)
                if media is not None:
                    media.width, media.height = scaled
            session.commit()
        except (SQLAlchemyError, OSError) as exc:
            # The image row is already committed with its pre-resize metadata.
            session.rollback()
            LOGGER.warning(
                "ingest_resize_record_failed",
                extra={"image_id": image_id, "album_id": album_id, "error": str(exc)},
            )
            return
        LOGGER.info(
            "ingest_resized",
            extra={"image_id": image_id, "width": scaled[0], "height": scaled[1]},
        )


__all__ = ["FILE_USAGE_MODULE", "ImageIngestor", "album_image_count", "clean_title", "next_image_weight"]
