"""Album and image management outside of ingestion.

Each write commits first, then runs the counter hooks and cache invalidation
for what changed.
"""

from __future__ import annotations

import time
from collections.abc import Sequence

from sqlalchemy import delete, select, update

from photo_albums.cache_tags import (
    AlbumCoverChanged,
    AlbumCreated,
    AlbumDeleted,
    AlbumsRearranged,
    ImageCreated,
    ImageDeleted,
    ImageMoved,
    ImagesRearranged,
    ImageUpdated,
)
from photo_albums.context import GalleryContext
from photo_albums.db import Album, FileUsage, Image, Media
from photo_albums.ingest import FILE_USAGE_MODULE, next_image_weight
from photo_albums.ordering import ORDER_LABELS
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "albums"})


class AlbumService:
    """Create, reorder, and delete albums and their images."""

    def __init__(self, context: GalleryContext) -> None:
        self._context = context

    @property
    def _session(self):
        return self._context.session

    def _album(self, album_id: int) -> Album:
        album = self._session.get(Album, album_id)
        if album is None:
            raise LookupError(f"album {album_id} does not exist")
        return album

    def _image(self, image_id: int) -> Image:
        image = self._session.get(Image, image_id)
        if image is None:
            raise LookupError(f"image {image_id} does not exist")
        return image

    def create_album(
        self,
        owner_id: int,
        title: str,
        *,
        weight: int = 0,
        image_order: str | None = None,
        page_size: int | None = None,
    ) -> Album:
        if image_order is not None and image_order not in ORDER_LABELS:
            raise ValueError(f"unsupported image order: {image_order!r}")
        if page_size is not None and page_size <= 0:
            raise ValueError("page_size must be positive")

        now = time.time()
        album = Album(
            owner_id=owner_id,
            title=title,
            weight=weight,
            image_count=0,
            image_order=image_order,
            page_size=page_size,
            created_at=now,
            changed_at=now,
        )
        self._session.add(album)
        self._session.commit()

        self._context.counters.album_added(owner_id)
        self._context.invalidate(AlbumCreated(album_id=album.id, owner_id=owner_id))
        LOGGER.info("album_created", extra={"album_id": album.id, "owner_id": owner_id})
        return album

    def delete_album(self, album_id: int) -> int:
        """Delete an album with all of its images and stored files.

        Returns the number of images removed.
        """

        album = self._album(album_id)
        owner_id = album.owner_id
        images = list(self._session.execute(select(Image).where(Image.album_id == album_id)).scalars())
        doomed_files = [image.file_uri for image in images if image.file_uri and image.media_id is None]
        image_ids = [image.id for image in images]

        self._session.execute(
            delete(FileUsage).where(FileUsage.target_type == "album", FileUsage.target_id == album_id)
        )
        self._session.execute(delete(Image).where(Image.album_id == album_id))
        self._session.delete(album)
        self._session.commit()

        for uri in doomed_files:
            self._context.storage.delete(uri)

        self._context.counters.album_removed(owner_id)
        for image_id in image_ids:
            self._context.invalidate(ImageDeleted(image_id=image_id, album_id=album_id))
        self._context.invalidate(AlbumDeleted(album_id=album_id, owner_id=owner_id))
        LOGGER.info("album_deleted", extra={"album_id": album_id, "owner_id": owner_id, "images": len(image_ids)})
        return len(image_ids)

    def set_cover(self, album_id: int, image_id: int | None) -> None:
        """Make ``image_id`` the album cover; ``None`` clears it."""

        album = self._album(album_id)
        if image_id is not None and self._image(image_id).album_id != album_id:
            raise ValueError(f"image {image_id} does not belong to album {album_id}")
        album.cover_image_id = image_id
        self._session.commit()
        self._context.invalidate(AlbumCoverChanged(album_id=album_id))

    def get_cover_id(self, album_id: int) -> int | None:
        """The configured cover, else the album's first image by weight."""

        album = self._album(album_id)
        if album.cover_image_id is not None:
            cover = self._session.get(Image, album.cover_image_id)
            if cover is not None and cover.album_id == album_id:
                return cover.id
        stmt = (
            select(Image.id)
            .where(Image.album_id == album_id)
            .order_by(Image.weight.asc(), Image.id.asc())
            .limit(1)
        )
        return self._session.execute(stmt).scalar_one_or_none()

    def update_image(
        self,
        image_id: int,
        *,
        title: str | None = None,
        description: str | None = None,
        weight: int | None = None,
        owner_id: int | None = None,
    ) -> Image:
        image = self._image(image_id)
        previous_owner = image.owner_id
        if title is not None:
            image.title = title
        if description is not None:
            image.description = description
        if weight is not None:
            image.weight = weight
        if owner_id is not None:
            image.owner_id = owner_id
        image.changed_at = time.time()
        self._session.commit()

        self._context.counters.image_reassigned(previous_owner, image.owner_id)
        self._context.invalidate(ImageUpdated(image_id=image.id, album_id=image.album_id))
        return image

    def move_image(self, image_id: int, to_album_id: int) -> Image:
        """Move an image to the end of another album."""

        image = self._image(image_id)
        target = self._album(to_album_id)
        from_album_id = image.album_id
        if from_album_id == to_album_id:
            return image

        weight = next_image_weight(self._session, target.id)
        source = self._album(from_album_id)
        if source.cover_image_id == image.id:
            source.cover_image_id = None
        image.album_id = target.id
        image.weight = weight
        image.changed_at = time.time()
        if image.file_uri:
            self._session.execute(
                update(FileUsage)
                .where(
                    FileUsage.file_uri == image.file_uri,
                    FileUsage.module == FILE_USAGE_MODULE,
                    FileUsage.target_type == "album",
                    FileUsage.target_id == from_album_id,
                )
                .values(target_id=target.id)
            )
        self._session.commit()

        self._context.counters.image_moved(from_album_id, target.id)
        self._context.invalidate(ImageMoved(image_id=image.id, from_album_id=from_album_id, to_album_id=target.id))
        LOGGER.info("image_moved", extra={"image_id": image.id, "from_album_id": from_album_id, "to_album_id": target.id})
        return image

    def delete_image(self, image_id: int) -> None:
        image = self._image(image_id)
        album_id = image.album_id
        owner_id = image.owner_id
        file_uri = image.file_uri if image.media_id is None else None

        album = self._session.get(Album, album_id)
        if album is not None and album.cover_image_id == image.id:
            album.cover_image_id = None
        if file_uri:
            self._session.execute(delete(FileUsage).where(FileUsage.file_uri == file_uri))
        self._session.delete(image)
        self._session.commit()

        if file_uri:
            self._context.storage.delete(file_uri)
        self._context.counters.image_removed(album_id, owner_id)
        self._context.invalidate(ImageDeleted(image_id=image_id, album_id=album_id))

    def rearrange_images(self, album_id: int, ordered_ids: Sequence[int]) -> None:
        """Assign weights ``0..n-1`` following ``ordered_ids``."""

        self._album(album_id)
        images = {
            image.id: image
            for image in self._session.execute(select(Image).where(Image.id.in_(list(ordered_ids)))).scalars()
        }
        for weight, image_id in enumerate(ordered_ids):
            image = images.get(image_id)
            if image is None or image.album_id != album_id:
                self._session.rollback()
                raise ValueError(f"image {image_id} does not belong to album {album_id}")
            image.weight = weight
        self._session.commit()
        self._context.invalidate(ImagesRearranged(album_id=album_id))

    def rearrange_albums(self, owner_id: int, ordered_ids: Sequence[int]) -> None:
        albums = {
            album.id: album
            for album in self._session.execute(select(Album).where(Album.id.in_(list(ordered_ids)))).scalars()
        }
        for weight, album_id in enumerate(ordered_ids):
            album = albums.get(album_id)
            if album is None or album.owner_id != owner_id:
                self._session.rollback()
                raise ValueError(f"album {album_id} does not belong to user {owner_id}")
            album.weight = weight
        self._session.commit()
        self._context.invalidate(AlbumsRearranged(owner_id=owner_id))

    def add_existing_media(self, media_id: int, album_id: int) -> Image:
        """Add an image to ``album_id`` that reuses an existing media item."""

        media = self._session.get(Media, media_id)
        if media is None:
            raise LookupError(f"media {media_id} does not exist")
        self._album(album_id)

        try:
            file_size = self._context.storage.realpath(media.file_uri).stat().st_size
        except (OSError, ValueError):
            file_size = 0

        now = time.time()
        image = Image(
            album_id=album_id,
            owner_id=media.owner_id,
            title=media.name,
            description="",
            weight=next_image_weight(self._session, album_id),
            created_at=now,
            changed_at=now,
            file_uri=media.file_uri,
            file_name=media.name,
            file_size=file_size,
            width=media.width,
            height=media.height,
            media_id=media.id,
        )
        self._session.add(image)
        self._session.commit()

        self._context.counters.image_added(album_id, media.owner_id)
        self._context.invalidate(ImageCreated(image_id=image.id, album_id=album_id))
        return image


__all__ = ["AlbumService"]
