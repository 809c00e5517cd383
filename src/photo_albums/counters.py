"""Denormalized usage counters for albums, users, and the whole site."""

from __future__ import annotations

import time
from collections.abc import Callable
from enum import Enum

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from photo_albums.cache_tags import CounterRecomputed, TagInvalidator, fire
from photo_albums.config import Settings
from photo_albums.db import Album, Counter, Image, MaintenanceState, dialect_insert
from photo_albums.errors import CounterError, CounterErrorKind
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "counters"})

SITE_SUBJECT_ID = 0
LAST_SWEEP_KEY = "counters.last_sweep"


class SubjectType(str, Enum):
    ALBUM = "album"
    USER_IMAGE = "user_image"
    USER_ALBUM = "user_album"
    SITE_IMAGE = "site_image"
    SITE_ALBUM = "site_album"


def _count_statement(subject_type: SubjectType, subject_id: int):
    if subject_type is SubjectType.ALBUM:
        return select(func.count(Image.id)).where(Image.album_id == subject_id)
    if subject_type is SubjectType.USER_IMAGE:
        return select(func.count(Image.id)).where(Image.owner_id == subject_id)
    if subject_type is SubjectType.USER_ALBUM:
        return select(func.count(Album.id)).where(Album.owner_id == subject_id)
    if subject_type is SubjectType.SITE_IMAGE:
        return select(func.count(Image.id))
    return select(func.count(Album.id))


class CounterMaintainer:
    """Keep denormalized counts in step with album and image rows.

    In ``immediate`` mode the mutation hooks apply atomic increments where the
    delta is known and recompute otherwise. In ``deferred`` mode the hooks do
    nothing and :meth:`sweep` reconciles every subject on a schedule.

    Every write uses its own session, so hooks must be called after the
    caller's transaction has committed. Failures are logged as
    :class:`CounterError` and reported as ``False``; they never propagate.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: Callable[[], Session],
        invalidator: TagInvalidator | None = None,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._invalidator = invalidator
        self.last_error: CounterError | None = None

    @property
    def deferred(self) -> bool:
        return self._settings.counters.mode == "deferred"

    def get_count(self, subject_type: SubjectType | str, subject_id: int) -> int:
        subject = SubjectType(subject_type)
        with self._session_factory() as session:
            if subject is SubjectType.ALBUM:
                value = session.execute(select(Album.image_count).where(Album.id == subject_id)).scalar_one_or_none()
            else:
                value = session.execute(
                    select(Counter.value).where(Counter.subject_id == subject_id, Counter.subject_type == subject.value)
                ).scalar_one_or_none()
        return int(value or 0)

    def recompute(self, subject_type: SubjectType | str, subject_id: int) -> bool:
        """Set a subject's stored count to the live row count."""

        subject = SubjectType(subject_type)
        try:
            with self._session_factory() as session:
                count = int(session.execute(_count_statement(subject, subject_id)).scalar_one())
                if subject is SubjectType.ALBUM:
                    result = session.execute(update(Album).where(Album.id == subject_id).values(image_count=count))
                    if result.rowcount == 0:
                        LOGGER.warning("counter_album_missing", extra={"album_id": subject_id})
                        return False
                else:
                    self._upsert(session, subject, subject_id, count)
                session.commit()
        except SQLAlchemyError as exc:
            self._report(subject, subject_id, exc)
            return False

        LOGGER.debug(
            "counter_recomputed",
            extra={"subject_type": subject.value, "subject_id": subject_id, "value": count},
        )
        self._notify(subject, subject_id)
        return True

    def increment(self, subject_type: SubjectType | str, subject_id: int, delta: int) -> bool:
        """Atomically add ``delta``; a missing row is recomputed instead."""

        subject = SubjectType(subject_type)
        try:
            with self._session_factory() as session:
                if subject is SubjectType.ALBUM:
                    stmt = (
                        update(Album)
                        .where(Album.id == subject_id)
                        .values(image_count=Album.image_count + delta)
                    )
                else:
                    stmt = (
                        update(Counter)
                        .where(Counter.subject_id == subject_id, Counter.subject_type == subject.value)
                        .values(value=Counter.value + delta, changed_at=time.time())
                    )
                result = session.execute(stmt)
                if result.rowcount == 0:
                    session.rollback()
                    return self.recompute(subject, subject_id)
                session.commit()
        except SQLAlchemyError as exc:
            self._report(subject, subject_id, exc)
            return False

        self._notify(subject, subject_id)
        return True

    def image_added(self, album_id: int, owner_id: int) -> None:
        if self.deferred:
            return
        self.increment(SubjectType.ALBUM, album_id, 1)
        self.increment(SubjectType.USER_IMAGE, owner_id, 1)
        self.increment(SubjectType.SITE_IMAGE, SITE_SUBJECT_ID, 1)

    def image_removed(self, album_id: int, owner_id: int) -> None:
        if self.deferred:
            return
        self.increment(SubjectType.ALBUM, album_id, -1)
        self.increment(SubjectType.USER_IMAGE, owner_id, -1)
        self.increment(SubjectType.SITE_IMAGE, SITE_SUBJECT_ID, -1)

    def image_moved(self, from_album_id: int, to_album_id: int) -> None:
        if self.deferred:
            return
        self.recompute(SubjectType.ALBUM, from_album_id)
        self.recompute(SubjectType.ALBUM, to_album_id)

    def image_reassigned(self, from_owner_id: int, to_owner_id: int) -> None:
        if self.deferred or from_owner_id == to_owner_id:
            return
        self.recompute(SubjectType.USER_IMAGE, from_owner_id)
        self.recompute(SubjectType.USER_IMAGE, to_owner_id)

    def album_added(self, owner_id: int) -> None:
        if self.deferred:
            return
        self.increment(SubjectType.USER_ALBUM, owner_id, 1)
        self.increment(SubjectType.SITE_ALBUM, SITE_SUBJECT_ID, 1)

    def album_removed(self, owner_id: int) -> None:
        # Image rows go with the album, so image totals are recounted too.
        if self.deferred:
            return
        self.recompute(SubjectType.USER_ALBUM, owner_id)
        self.recompute(SubjectType.USER_IMAGE, owner_id)
        self.recompute(SubjectType.SITE_ALBUM, SITE_SUBJECT_ID)
        self.recompute(SubjectType.SITE_IMAGE, SITE_SUBJECT_ID)

    def import_finished(self, album_id: int, owner_id: int) -> None:
        if self.deferred:
            return
        self.recompute(SubjectType.ALBUM, album_id)
        self.recompute(SubjectType.USER_IMAGE, owner_id)
        self.recompute(SubjectType.SITE_IMAGE, SITE_SUBJECT_ID)

    def sweep(self, *, force: bool = False, now: float | None = None) -> bool:
        """Recompute every subject, at most once per sweep interval.

        Returns ``True`` when a sweep ran.
        """

        current = time.time() if now is None else now
        interval = self._settings.counters.sweep_interval_seconds

        with self._session_factory() as session:
            raw_last = session.execute(
                select(MaintenanceState.value).where(MaintenanceState.key == LAST_SWEEP_KEY)
            ).scalar_one_or_none()
            try:
                last_sweep = float(raw_last) if raw_last is not None else None
            except ValueError:
                last_sweep = None

            if not force and last_sweep is not None and current - last_sweep < interval:
                LOGGER.debug("counter_sweep_skipped", extra={"last_sweep": last_sweep, "interval": interval})
                return False

            album_ids = list(session.execute(select(Album.id).order_by(Album.id)).scalars())
            owner_ids = set(session.execute(select(Album.owner_id).distinct()).scalars())
            owner_ids.update(session.execute(select(Image.owner_id).distinct()).scalars())
            owner_ids.update(
                session.execute(
                    select(Counter.subject_id).where(
                        Counter.subject_type.in_([SubjectType.USER_IMAGE.value, SubjectType.USER_ALBUM.value])
                    )
                ).scalars()
            )

        LOGGER.info("counter_sweep_start", extra={"albums": len(album_ids), "owners": len(owner_ids)})
        failures = 0
        for album_id in album_ids:
            failures += not self.recompute(SubjectType.ALBUM, album_id)
        for owner_id in sorted(owner_ids):
            failures += not self.recompute(SubjectType.USER_IMAGE, owner_id)
            failures += not self.recompute(SubjectType.USER_ALBUM, owner_id)
        failures += not self.recompute(SubjectType.SITE_IMAGE, SITE_SUBJECT_ID)
        failures += not self.recompute(SubjectType.SITE_ALBUM, SITE_SUBJECT_ID)

        with self._session_factory() as session:
            insert_stmt = dialect_insert(session, MaintenanceState).values(key=LAST_SWEEP_KEY, value=repr(current))
            session.execute(
                insert_stmt.on_conflict_do_update(
                    index_elements=[MaintenanceState.key],
                    set_={"value": insert_stmt.excluded.value},
                )
            )
            session.commit()

        LOGGER.info("counter_sweep_complete", extra={"failures": int(failures)})
        return True

    def record_view(self, image_id: int) -> int:
        """Count one view of an image and return its view count."""

        with self._session_factory() as session:
            if self._settings.display.count_image_views:
                session.execute(update(Image).where(Image.id == image_id).values(view_count=Image.view_count + 1))
                session.commit()
            views = session.execute(select(Image.view_count).where(Image.id == image_id)).scalar_one_or_none()
        if views is None:
            raise LookupError(f"image {image_id} does not exist")
        return int(views)

    def _upsert(self, session: Session, subject: SubjectType, subject_id: int, count: int) -> None:
        now = time.time()
        insert_stmt = dialect_insert(session, Counter).values(
            subject_id=subject_id,
            subject_type=subject.value,
            value=count,
            changed_at=now,
        )
        session.execute(
            insert_stmt.on_conflict_do_update(
                index_elements=[Counter.subject_id, Counter.subject_type],
                set_={"value": insert_stmt.excluded.value, "changed_at": insert_stmt.excluded.changed_at},
            )
        )

    def _notify(self, subject: SubjectType, subject_id: int) -> None:
        if self._invalidator is not None:
            fire(self._invalidator, CounterRecomputed(subject.value, subject_id))

    def _report(self, subject: SubjectType, subject_id: int, exc: Exception) -> None:
        self.last_error = CounterError(
            CounterErrorKind.WRITE_FAILED,
            f"counter write failed: {exc}",
            subject_type=subject.value,
            subject_id=subject_id,
        )
        LOGGER.error(
            "counter_write_failed",
            extra={
                "kind": self.last_error.kind.value,
                "subject_type": subject.value,
                "subject_id": subject_id,
                "error": str(exc),
            },
        )


__all__ = ["CounterMaintainer", "LAST_SWEEP_KEY", "SITE_SUBJECT_ID", "SubjectType"]
