"""Pillow helpers for validating and downscaling stored images."""

from __future__ import annotations

from pathlib import Path

from PIL import Image, UnidentifiedImageError
from PIL.Image import Resampling

from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "imaging"})


class ImageProbeError(Exception):
    """Raised when a stored file is not a usable image.

    ``wrong_type`` is false when Pillow recognised the format but could not
    read the pixel data.
    """

    def __init__(self, message: str, *, wrong_type: bool) -> None:
        super().__init__(message)
        self.wrong_type = wrong_type


def probe_image(path: Path) -> tuple[int, int]:
    """Return ``(width, height)`` after fully decoding the image at ``path``."""

    try:
        with Image.open(path) as image:
            width, height = image.size
            image.load()
    except UnidentifiedImageError as exc:
        raise ImageProbeError(f"not a recognised image: {path.name}", wrong_type=True) from exc
    except (OSError, SyntaxError, ValueError) as exc:
        raise ImageProbeError(f"image data could not be decoded: {path.name}: {exc}", wrong_type=False) from exc

    if width <= 0 or height <= 0:
        raise ImageProbeError(f"image has no pixels: {path.name}", wrong_type=True)
    return int(width), int(height)


def scale_to_resolution(path: Path, max_width: int, max_height: int) -> tuple[int, int] | None:
    """Downscale the image at ``path`` in place to fit ``max_width`` x ``max_height``.

    Returns the new dimensions, or ``None`` when the image already fits.
    """

    with Image.open(path) as image:
        if image.width <= max_width and image.height <= max_height:
            return None
        image_format = image.format
        resized = image.copy()

    resized.thumbnail((max(1, max_width), max(1, max_height)), resample=Resampling.LANCZOS)
    try:
        resized.save(path, format=image_format)
    except OSError as exc:
        LOGGER.error(
            "image_scale_save_error",
            extra={"path": str(path), "max_width": max_width, "max_height": max_height, "error": str(exc)},
        )
        raise
    return resized.width, resized.height


__all__ = ["ImageProbeError", "probe_image", "scale_to_resolution"]
