"""How an ingested file is attached to its image record.

The attachment kind is resolved once from ``upload.attachment``: ``"image"``
stores the file directly on the image row, ``"media:<bundle>"`` wraps it in a
reusable media item first.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from sqlalchemy.orm import Session

from photo_albums.db import Image, Media


@dataclass(frozen=True)
class StoredFile:
    uri: str
    file_name: str
    file_size: int
    width: int
    height: int


@dataclass(frozen=True)
class ImageFileAttachment:
    """Store file fields directly on the image row."""

    def attach(self, session: Session, image: Image, stored: StoredFile) -> None:
        image.file_uri = stored.uri
        image.file_name = stored.file_name
        image.file_size = stored.file_size
        image.width = stored.width
        image.height = stored.height


@dataclass(frozen=True)
class MediaAttachment:
    """Create a media item of ``bundle`` and point the image at it."""

    bundle: str

    def attach(self, session: Session, image: Image, stored: StoredFile) -> None:
        media = Media(
            bundle=self.bundle,
            owner_id=image.owner_id,
            name=stored.file_name,
            file_uri=stored.uri,
            width=stored.width,
            height=stored.height,
        )
        session.add(media)
        session.flush()
        image.media_id = media.id
        # The image row keeps a copy so listings never need the join.
        ImageFileAttachment().attach(session, image, stored)


AttachmentKind = Union[ImageFileAttachment, MediaAttachment]


def resolve_attachment_kind(raw: str) -> AttachmentKind:
    value = (raw or "image").strip()
    if value == "image":
        return ImageFileAttachment()
    prefix, _, bundle = value.partition(":")
    if prefix == "media" and bundle:
        return MediaAttachment(bundle=bundle)
    raise ValueError(f"unknown attachment kind: {raw!r}")


__all__ = [
    "AttachmentKind",
    "ImageFileAttachment",
    "MediaAttachment",
    "StoredFile",
    "resolve_attachment_kind",
]
