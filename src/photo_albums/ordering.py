"""Safe sort orders, page limits, and previous/next neighbours for image lists.

User supplied ``field``/``sort``/``limit`` parameters never reach SQL directly:
fields are mapped through an allow-list and unknown values degrade to the
default order instead of raising.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

# Request field -> logical column. ``timestamp`` is a legacy alias kept for
# albums configured by older releases.
ORDER_FIELDS: dict[str, str] = {
    "weight": "weight",
    "title": "title",
    "timestamp": "id",
    "changed": "changed",
    "created": "created",
    "comments": "comments",
    "visits": "visits",
    "filesize": "filesize",
}
ORDER_DIRECTIONS = frozenset({"asc", "desc"})

ORDER_LABELS: dict[str, str] = {
    "weight|asc": "Weight - smallest first",
    "weight|desc": "Weight - largest first",
    "title|asc": "Title - A-Z",
    "title|desc": "Title - Z-A",
    "created|desc": "Upload Date - newest first",
    "created|asc": "Upload Date - oldest first",
    "comments|desc": "Comments - most first",
    "comments|asc": "Comments - least first",
    "filesize|desc": "Filesize - largest first",
    "filesize|asc": "Filesize - smallest first",
    "visits|desc": "Visits - most first",
    "visits|asc": "Visits - least first",
}

_DESTINATION_LIMIT = re.compile(r"(?:^|[?&])limit=(\d+)", re.IGNORECASE | re.ASCII)


@dataclass(frozen=True)
class OrderSpec:
    """A validated primary order plus the ``id desc`` tie-break."""

    column: str
    direction: str

    @property
    def clauses(self) -> tuple[tuple[str, str], ...]:
        if self.column == "id":
            return ((self.column, self.direction),)
        return ((self.column, self.direction), ("id", "desc"))


DEFAULT_ORDER = OrderSpec(column="id", direction="desc")


def resolve_order(
    field: str | None,
    direction: str | None,
    default: OrderSpec | None = None,
) -> OrderSpec:
    """Map a requested field and direction onto an allowed order.

    Anything outside the allow-list yields ``default``, or ``id desc`` when no
    default is given.
    """

    fallback = default or DEFAULT_ORDER
    if not field and not direction:
        return fallback
    column = ORDER_FIELDS.get((field or "").strip().lower())
    normalized = (direction or "").strip().lower()
    if column is None or normalized not in ORDER_DIRECTIONS:
        return fallback
    return OrderSpec(column=column, direction=normalized)


def parse_order_setting(value: str | None, default: OrderSpec | None = None) -> OrderSpec:
    """Resolve a stored ``"field|direction"`` setting such as ``"weight|asc"``."""

    if not value:
        return default or DEFAULT_ORDER
    field, _, direction = value.partition("|")
    return resolve_order(field, direction, default)


def _positive_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str):
        text = value.strip()
        # ASCII digits only.
        if not (text.isascii() and text.isdecimal()):
            return None
        parsed = int(text)
        return parsed if parsed > 0 else None
    return None


def resolve_limit(requested: object, default: int, destination: str | None = None) -> int:
    """Return the page size for a listing.

    The requested value wins when it is a positive integer. Otherwise a
    ``limit=N`` inside a redirect ``destination`` query string is honoured,
    then ``default``.
    """

    direct = _positive_int(requested)
    if direct is not None:
        return direct
    if destination:
        match = _DESTINATION_LIMIT.search(destination)
        if match:
            recovered = _positive_int(match.group(1))
            if recovered is not None:
                return recovered
    return default


@dataclass(frozen=True)
class PageWindow:
    page: int
    limit: int
    offset: int
    total_pages: int
    total_count: int

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous(self) -> bool:
        return self.page > 1


def compute_page(total_count: int, limit: int, page: int = 1) -> PageWindow:
    """Clamp ``page`` (1-based) into range and derive its offset."""

    safe_limit = max(1, limit)
    total_pages = max(1, (total_count + safe_limit - 1) // safe_limit)
    current = min(max(1, page), total_pages)
    return PageWindow(
        page=current,
        limit=safe_limit,
        offset=(current - 1) * safe_limit,
        total_pages=total_pages,
        total_count=total_count,
    )


@dataclass(frozen=True)
class Neighbors:
    previous_id: int | None
    next_id: int | None


def compute_neighbors(ordered_ids: Iterable[int], current_id: int) -> Neighbors:
    """Find the ids around ``current_id`` in a single pass over ``ordered_ids``.

    Both neighbours are ``None`` when ``current_id`` is not in the sequence.
    """

    previous: int | None = None
    found = False
    for image_id in ordered_ids:
        if found:
            return Neighbors(previous_id=previous, next_id=image_id)
        if image_id == current_id:
            found = True
            continue
        previous = image_id
    if found:
        return Neighbors(previous_id=previous, next_id=None)
    return Neighbors(previous_id=None, next_id=None)


__all__ = [
    "DEFAULT_ORDER",
    "Neighbors",
    "ORDER_FIELDS",
    "ORDER_LABELS",
    "OrderSpec",
    "PageWindow",
    "compute_neighbors",
    "compute_page",
    "parse_order_setting",
    "resolve_limit",
    "resolve_order",
]
