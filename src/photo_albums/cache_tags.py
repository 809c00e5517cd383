"""Cache tag planning for gallery mutations.

Every write path describes itself as an event; :func:`plan` maps the event to
the complete set of tags that must be invalidated once the write commits.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Protocol, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from photo_albums.db import CacheTag, dialect_insert
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "cache_tags"})

IMAGE_LIST_TAG = "photos_image_list"
ALBUM_LIST_TAG = "album_list"
RECENT_IMAGES_TAG = "photos:image:recent"


@dataclass(frozen=True)
class ImageCreated:
    image_id: int
    album_id: int


@dataclass(frozen=True)
class ImageUpdated:
    image_id: int
    album_id: int


@dataclass(frozen=True)
class ImageDeleted:
    image_id: int
    album_id: int


@dataclass(frozen=True)
class ImageMoved:
    image_id: int
    from_album_id: int
    to_album_id: int


@dataclass(frozen=True)
class ImagesRearranged:
    album_id: int


@dataclass(frozen=True)
class AlbumsRearranged:
    owner_id: int


@dataclass(frozen=True)
class AlbumCreated:
    album_id: int
    owner_id: int


@dataclass(frozen=True)
class AlbumDeleted:
    album_id: int
    owner_id: int


@dataclass(frozen=True)
class AlbumCoverChanged:
    album_id: int


@dataclass(frozen=True)
class BatchImportFinished:
    album_id: int


@dataclass(frozen=True)
class CounterRecomputed:
    subject_type: str
    subject_id: int


@dataclass(frozen=True)
class SettingsChanged:
    pass


CacheEvent = Union[
    ImageCreated,
    ImageUpdated,
    ImageDeleted,
    ImageMoved,
    ImagesRearranged,
    AlbumsRearranged,
    AlbumCreated,
    AlbumDeleted,
    AlbumCoverChanged,
    BatchImportFinished,
    CounterRecomputed,
    SettingsChanged,
]


def album_tags(album_id: int) -> set[str]:
    return {f"album:{album_id}", f"photos:album:{album_id}"}


def _image_tags(image_id: int, album_id: int) -> set[str]:
    return {f"photos:image:{image_id}", IMAGE_LIST_TAG} | album_tags(album_id)


def counter_tags(subject_type: str, subject_id: int) -> set[str]:
    """Tags depending on a denormalized counter value."""

    if subject_type == "album":
        return {f"photos:album:{subject_id}"}
    if subject_type == "user_image":
        return {f"photos:image:user:{subject_id}"}
    if subject_type == "user_album":
        return {f"photos:album:user:{subject_id}"}
    if subject_type == "site_image":
        return {RECENT_IMAGES_TAG}
    if subject_type == "site_album":
        return {ALBUM_LIST_TAG}
    raise ValueError(f"unknown counter subject type: {subject_type!r}")


def plan(event: CacheEvent) -> frozenset[str]:
    """Return every cache tag invalidated by ``event``."""

    if isinstance(event, (ImageCreated, ImageUpdated, ImageDeleted)):
        tags = _image_tags(event.image_id, event.album_id)
    elif isinstance(event, ImageMoved):
        tags = _image_tags(event.image_id, event.from_album_id) | album_tags(event.to_album_id)
    elif isinstance(event, ImagesRearranged):
        tags = {IMAGE_LIST_TAG} | album_tags(event.album_id)
    elif isinstance(event, AlbumsRearranged):
        tags = {IMAGE_LIST_TAG, ALBUM_LIST_TAG, f"user:{event.owner_id}"}
    elif isinstance(event, AlbumCreated):
        tags = {ALBUM_LIST_TAG, f"photos:album:user:{event.owner_id}"}
    elif isinstance(event, AlbumDeleted):
        tags = album_tags(event.album_id) | {ALBUM_LIST_TAG, IMAGE_LIST_TAG, f"photos:album:user:{event.owner_id}"}
    elif isinstance(event, AlbumCoverChanged):
        tags = {IMAGE_LIST_TAG} | album_tags(event.album_id)
    elif isinstance(event, BatchImportFinished):
        tags = album_tags(event.album_id)
    elif isinstance(event, CounterRecomputed):
        tags = counter_tags(event.subject_type, event.subject_id)
    elif isinstance(event, SettingsChanged):
        tags = {ALBUM_LIST_TAG, IMAGE_LIST_TAG}
    else:
        raise TypeError(f"unsupported cache event: {event!r}")
    return frozenset(tags)


class TagInvalidator(Protocol):
    def invalidate_tags(self, tags: Iterable[str]) -> None: ...


class DatabaseTagInvalidator:
    """Bump per-tag invalidation counters in the ``cache_tags`` table.

    Readers store the :meth:`checksum` of the tags they depend on next to a
    cached item and treat it as stale once the checksum changes. Writes go
    through their own session so a failure can never roll back the caller's
    transaction.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def invalidate_tags(self, tags: Iterable[str]) -> None:
        unique = sorted(set(tags))
        if not unique:
            return

        with self._session_factory() as session:
            insert_stmt = dialect_insert(session, CacheTag).values(
                [{"tag": tag, "invalidations": 1} for tag in unique]
            )
            session.execute(
                insert_stmt.on_conflict_do_update(
                    index_elements=[CacheTag.tag],
                    set_={"invalidations": CacheTag.invalidations + 1},
                )
            )
            session.commit()
        LOGGER.debug("cache_tags_invalidated", extra={"tags": unique})

    def checksum(self, tags: Iterable[str]) -> int:
        unique = sorted(set(tags))
        if not unique:
            return 0
        with self._session_factory() as session:
            values = session.execute(select(CacheTag.invalidations).where(CacheTag.tag.in_(unique))).scalars()
            return int(sum(values))


class QueuedTagInvalidator:
    """Hand tag invalidation to the maintenance queue without waiting."""

    def invalidate_tags(self, tags: Iterable[str]) -> None:
        from photo_albums.task_queue import invalidate_cache_tags

        unique = sorted(set(tags))
        if unique:
            invalidate_cache_tags.delay(unique)


def fire(invalidator: TagInvalidator, event: CacheEvent) -> frozenset[str]:
    """Plan and invalidate the tags for ``event``.

    Invalidation runs after the write has committed; a failure here is logged
    and never undoes the write.
    """

    tags = plan(event)
    try:
        invalidator.invalidate_tags(tags)
    except Exception:
        LOGGER.exception("cache_invalidation_failed", extra={"event": type(event).__name__, "tags": sorted(tags)})
    return tags


__all__ = [
    "ALBUM_LIST_TAG",
    "AlbumCoverChanged",
    "AlbumCreated",
    "AlbumDeleted",
    "AlbumsRearranged",
    "BatchImportFinished",
    "CacheEvent",
    "CounterRecomputed",
    "DatabaseTagInvalidator",
    "IMAGE_LIST_TAG",
    "ImageCreated",
    "ImageDeleted",
    "ImageMoved",
    "ImageUpdated",
    "ImagesRearranged",
    "QueuedTagInvalidator",
    "RECENT_IMAGES_TAG",
    "SettingsChanged",
    "TagInvalidator",
    "album_tags",
    "counter_tags",
    "fire",
    "plan",
]
