"""Ordered image queries for album pages, user pages, and the image pager."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session

from photo_albums.config import Settings
from photo_albums.db import Album, Image
from photo_albums.ordering import (
    DEFAULT_ORDER,
    Neighbors,
    OrderSpec,
    PageWindow,
    compute_neighbors,
    compute_page,
    parse_order_setting,
    resolve_limit,
    resolve_order,
)

_COLUMNS = {
    "id": Image.id,
    "weight": Image.weight,
    "title": Image.title,
    "created": Image.created_at,
    "changed": Image.changed_at,
    "comments": Image.comment_count,
    "visits": Image.view_count,
    "filesize": Image.file_size,
}


@dataclass(frozen=True)
class ImagePage:
    images: list[Image]
    window: PageWindow
    order: OrderSpec


def order_clauses(spec: OrderSpec) -> list:
    clauses = []
    for column_name, direction in spec.clauses:
        column = _COLUMNS[column_name]
        clauses.append(column.asc() if direction == "asc" else column.desc())
    return clauses


def album_default_order(session: Session, settings: Settings, album_id: int) -> OrderSpec:
    """The album's own order setting, else the site-wide display default."""

    stored = session.execute(select(Album.image_order).where(Album.id == album_id)).scalar_one_or_none()
    return parse_order_setting(stored or settings.display.image_order)


def _scoped(stmt: Select, album_id: int | None, owner_id: int | None) -> Select:
    if album_id is not None:
        stmt = stmt.where(Image.album_id == album_id)
    if owner_id is not None:
        stmt = stmt.where(Image.owner_id == owner_id)
    return stmt


def ordered_image_ids(
    session: Session,
    spec: OrderSpec,
    *,
    album_id: int | None = None,
    owner_id: int | None = None,
) -> list[int]:
    stmt = _scoped(select(Image.id), album_id, owner_id).order_by(*order_clauses(spec))
    return list(session.execute(stmt).scalars())


def _page(
    session: Session,
    spec: OrderSpec,
    limit: int,
    page: int,
    *,
    album_id: int | None = None,
    owner_id: int | None = None,
) -> ImagePage:
    total = int(session.execute(_scoped(select(func.count(Image.id)), album_id, owner_id)).scalar_one())
    window = compute_page(total, limit, page)
    stmt = (
        _scoped(select(Image), album_id, owner_id)
        .order_by(*order_clauses(spec))
        .offset(window.offset)
        .limit(window.limit)
    )
    return ImagePage(images=list(session.execute(stmt).scalars()), window=window, order=spec)


def album_images(
    session: Session,
    settings: Settings,
    album_id: int,
    *,
    field: str | None = None,
    direction: str | None = None,
    limit: object = None,
    destination: str | None = None,
    page: int = 1,
) -> ImagePage:
    """One page of an album under the requested (or album default) order."""

    album = session.get(Album, album_id)
    if album is None:
        raise LookupError(f"album {album_id} does not exist")
    spec = resolve_order(field, direction, album_default_order(session, settings, album_id))
    page_size = resolve_limit(limit, album.page_size or settings.display.page_size, destination)
    return _page(session, spec, page_size, page, album_id=album_id)


def user_images(
    session: Session,
    settings: Settings,
    owner_id: int,
    *,
    field: str | None = None,
    direction: str | None = None,
    limit: object = None,
    destination: str | None = None,
    page: int = 1,
) -> ImagePage:
    """One page of every image a user owns, newest first by default."""

    spec = resolve_order(field, direction, DEFAULT_ORDER)
    page_size = resolve_limit(limit, settings.display.page_size, destination)
    return _page(session, spec, page_size, page, owner_id=owner_id)


def image_pager(session: Session, settings: Settings, image_id: int, *, scope: str = "album") -> Neighbors:
    """Previous and next image ids around ``image_id``.

    ``scope="album"`` walks the image's album under the album order;
    ``scope="owner"`` walks every image of the same owner by id descending.
    The ids come from the same ordering as the listings, tie-break included.
    """

    image = session.get(Image, image_id)
    if image is None:
        raise LookupError(f"image {image_id} does not exist")
    if scope == "album":
        spec = album_default_order(session, settings, image.album_id)
        ids = ordered_image_ids(session, spec, album_id=image.album_id)
    elif scope == "owner":
        ids = ordered_image_ids(session, DEFAULT_ORDER, owner_id=image.owner_id)
    else:
        raise ValueError(f"unknown pager scope: {scope!r}")
    return compute_neighbors(ids, image_id)


__all__ = [
    "ImagePage",
    "album_default_order",
    "album_images",
    "image_pager",
    "order_clauses",
    "ordered_image_ids",
    "user_images",
]
