"""Explicit collaborators shared by every gallery operation."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.orm import Session

from photo_albums.cache_tags import CacheEvent, DatabaseTagInvalidator, TagInvalidator, fire
from photo_albums.config import Settings
from photo_albums.counters import CounterMaintainer
from photo_albums.db import open_session, session_factory
from photo_albums.storage import FileStorage


@dataclass
class GalleryContext:
    """Settings, the unit-of-work session, storage, counters, and cache invalidation."""

    settings: Settings
    session: Session
    session_factory: Callable[[], Session]
    storage: FileStorage
    counters: CounterMaintainer
    invalidator: TagInvalidator

    def invalidate(self, event: CacheEvent) -> frozenset[str]:
        return fire(self.invalidator, event)


@contextmanager
def open_gallery(
    settings: Settings,
    *,
    invalidator: TagInvalidator | None = None,
    base_dir: Path | None = None,
) -> Iterator[GalleryContext]:
    """Open a :class:`GalleryContext` on the configured database.

    Cache invalidation defaults to the ``cache_tags`` table.
    """

    factory = session_factory(settings.database.url)
    tag_invalidator = invalidator or DatabaseTagInvalidator(factory)
    session = open_session(settings.database.url)
    try:
        yield GalleryContext(
            settings=settings,
            session=session,
            session_factory=factory,
            storage=FileStorage(settings.storage, base_dir=base_dir),
            counters=CounterMaintainer(settings, factory, tag_invalidator),
            invalidator=tag_invalidator,
        )
    finally:
        session.close()


__all__ = ["GalleryContext", "open_gallery"]
