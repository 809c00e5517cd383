"""Configuration loader and typed settings for the photo albums application."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

BASE_IMAGE_EXTENSIONS: tuple[str, ...] = ("jpg", "jpeg", "png", "gif", "JPG", "JPEG", "PNG", "GIF")
ARCHIVE_EXTENSIONS: tuple[str, ...] = ("zip", "ZIP")
COUNTER_MODES: frozenset[str] = frozenset({"immediate", "deferred"})
STORAGE_SCHEMES: frozenset[str] = frozenset({"public", "private"})


@dataclass
class DatabaseConfig:
    """Connection target for the gallery database."""

    url: str = "sqlite:///data/photo_albums.db"


@dataclass
class StorageConfig:
    """Filesystem roots backing the ``public://`` and ``private://`` schemes."""

    default_scheme: str = "public"
    public_root: str = "files/public"
    private_root: str | None = None
    directory: str = "photos"


@dataclass
class UploadConfig:
    """Ingestion policy shared by uploads, directory imports, and archives."""

    clean_title: bool = True
    album_photo_limit: int = 0
    size_max: str | None = None
    allow_archive: bool = False
    attachment: str = "image"
    image_extensions: list[str] = field(default_factory=lambda: list(BASE_IMAGE_EXTENSIONS))


@dataclass
class BatchConfig:
    """Batch import stepping configuration."""

    chunk_size: int = 20
    progress_root: str = "cache/jobs"


@dataclass
class CounterConfig:
    """Denormalized counter maintenance strategy."""

    mode: str = "immediate"
    sweep_interval_seconds: int = 7200


@dataclass
class DisplayConfig:
    """Defaults for album listings and image pagers."""

    image_order: str = "weight|asc"
    page_size: int = 10
    count_image_views: bool = True


@dataclass
class QueueConfig:
    """Celery worker and queue configuration."""

    broker_url: str = "redis://localhost:6379/0"
    result_backend: str = "redis://localhost:6379/1"
    import_queue: str = "photo_import"
    maintenance_queue: str = "photo_maintenance"
    default_concurrency: int = 2


@dataclass
class Settings:
    """Top-level application settings."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    upload: UploadConfig = field(default_factory=UploadConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    counters: CounterConfig = field(default_factory=CounterConfig)
    display: DisplayConfig = field(default_factory=DisplayConfig)
    queues: QueueConfig = field(default_factory=QueueConfig)


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_settings_path(settings_path: Path | str | None) -> Path:
    """Determine which settings file to load, honoring overrides."""

    if settings_path:
        return Path(settings_path).expanduser().resolve()

    env_override = os.getenv("PHOTO_ALBUMS_SETTINGS")
    if env_override:
        return Path(env_override).expanduser().resolve()

    cwd_candidate = (Path.cwd() / "config" / "settings.yaml").resolve()
    if cwd_candidate.exists():
        return cwd_candidate
    return (_project_root() / "config" / "settings.yaml").resolve()


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def parse_size_max(value: str | None) -> tuple[int, int] | None:
    """Parse a ``"WIDTHxHEIGHT"`` maximum resolution, ``None`` when unset.

    >>> parse_size_max("1024x768")
    (1024, 768)
    """

    if not value:
        return None
    parts = str(value).lower().split("x")
    if len(parts) != 2:
        raise ValueError(f"size_max must look like '1024x768', got {value!r}")
    try:
        width, height = int(parts[0]), int(parts[1])
    except ValueError as exc:
        raise ValueError(f"size_max must look like '1024x768', got {value!r}") from exc
    if width <= 0 or height <= 0:
        raise ValueError(f"size_max dimensions must be positive, got {value!r}")
    return width, height


def load_settings(settings_path: Path | str | None = None) -> Settings:
    """Load settings from YAML, falling back to defaults for missing or malformed keys."""

    path = _resolve_settings_path(settings_path)
    settings = Settings()

    if not path.exists() or not path.is_file():
        return settings

    with path.open("r", encoding="utf-8") as fp:
        raw = yaml.safe_load(fp) or {}

    if not isinstance(raw, dict):
        return settings

    database_raw = _as_dict(raw.get("database"))
    if isinstance(database_raw.get("url"), str):
        settings.database.url = database_raw["url"]

    storage_raw = _as_dict(raw.get("storage"))
    storage_cfg = settings.storage
    if storage_raw.get("default_scheme") in STORAGE_SCHEMES:
        storage_cfg.default_scheme = storage_raw["default_scheme"]
    if isinstance(storage_raw.get("public_root"), str):
        storage_cfg.public_root = storage_raw["public_root"]
    if isinstance(storage_raw.get("private_root"), str):
        storage_cfg.private_root = storage_raw["private_root"]
    if isinstance(storage_raw.get("directory"), str) and storage_raw["directory"].strip("/"):
        storage_cfg.directory = storage_raw["directory"].strip("/")

    upload_raw = _as_dict(raw.get("upload"))
    upload_cfg = settings.upload
    if isinstance(upload_raw.get("clean_title"), bool):
        upload_cfg.clean_title = upload_raw["clean_title"]
    if _is_int(upload_raw.get("album_photo_limit")) and upload_raw["album_photo_limit"] >= 0:
        upload_cfg.album_photo_limit = upload_raw["album_photo_limit"]
    if isinstance(upload_raw.get("size_max"), str):
        parse_size_max(upload_raw["size_max"])
        upload_cfg.size_max = upload_raw["size_max"]
    if isinstance(upload_raw.get("allow_archive"), bool):
        upload_cfg.allow_archive = upload_raw["allow_archive"]
    if isinstance(upload_raw.get("attachment"), str):
        upload_cfg.attachment = upload_raw["attachment"]
    if isinstance(upload_raw.get("image_extensions"), list):
        extensions = [str(ext).lstrip(".") for ext in upload_raw["image_extensions"] if str(ext).strip()]
        if extensions:
            upload_cfg.image_extensions = extensions

    batch_raw = _as_dict(raw.get("batch"))
    if _is_int(batch_raw.get("chunk_size")) and batch_raw["chunk_size"] > 0:
        settings.batch.chunk_size = batch_raw["chunk_size"]
    if isinstance(batch_raw.get("progress_root"), str):
        settings.batch.progress_root = batch_raw["progress_root"]

    counters_raw = _as_dict(raw.get("counters"))
    if counters_raw.get("mode") in COUNTER_MODES:
        settings.counters.mode = counters_raw["mode"]
    if _is_int(counters_raw.get("sweep_interval_seconds")) and counters_raw["sweep_interval_seconds"] >= 0:
        settings.counters.sweep_interval_seconds = counters_raw["sweep_interval_seconds"]

    display_raw = _as_dict(raw.get("display"))
    display_cfg = settings.display
    if isinstance(display_raw.get("image_order"), str) and "|" in display_raw["image_order"]:
        display_cfg.image_order = display_raw["image_order"]
    if _is_int(display_raw.get("page_size")) and display_raw["page_size"] > 0:
        display_cfg.page_size = display_raw["page_size"]
    if isinstance(display_raw.get("count_image_views"), bool):
        display_cfg.count_image_views = display_raw["count_image_views"]

    queue_raw = _as_dict(raw.get("queues"))
    queue_cfg = settings.queues
    for key in ("broker_url", "result_backend", "import_queue", "maintenance_queue"):
        if isinstance(queue_raw.get(key), str):
            setattr(queue_cfg, key, queue_raw[key])
    if _is_int(queue_raw.get("default_concurrency")) and queue_raw["default_concurrency"] > 0:
        queue_cfg.default_concurrency = queue_raw["default_concurrency"]

    return settings


__all__ = [
    "ARCHIVE_EXTENSIONS",
    "BASE_IMAGE_EXTENSIONS",
    "BatchConfig",
    "CounterConfig",
    "DatabaseConfig",
    "DisplayConfig",
    "QueueConfig",
    "Settings",
    "StorageConfig",
    "UploadConfig",
    "load_settings",
    "parse_size_max",
]
