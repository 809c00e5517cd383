"""Resumable, chunked imports of directories and zip archives into an album.

A job is started once with the discovered file list and then advanced by
repeated :meth:`BatchStepper.step` calls, each handling a bounded number of
units (one plain file, or one archive entry). Progress is written to a JSON
file after every unit, so a crashed or interrupted job picks up exactly where
it stopped. The stepper owns no threads or timers; a CLI loop or a Celery task
drives it.
"""

from __future__ import annotations

import json
import os
import shutil
import time
import zipfile
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import inflect

from photo_albums.cache_tags import BatchImportFinished
from photo_albums.context import GalleryContext
from photo_albums.errors import BatchError, BatchErrorKind, IngestError, IngestErrorKind
from photo_albums.hasher import fingerprint
from photo_albums.ingest import ImageIngestor
from photo_albums.scanner import FileDescriptor, allowed_extensions, image_extensions, scan_archive, scan_directory
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "batch"})

_INFLECT_ENGINE: Any | None = None


def _get_inflect_engine() -> Any:
    global _INFLECT_ENGINE
    if _INFLECT_ENGINE is None:
        _INFLECT_ENGINE = inflect.engine()
    return _INFLECT_ENGINE


class JobState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ImportTarget:
    """Where imported images go and how source files are treated."""

    album_id: int
    owner_id: int
    scheme: str = "default"
    copy: bool = True
    description: str = ""


@dataclass(frozen=True)
class JobHandle:
    job_id: str


@dataclass(frozen=True)
class StepResult:
    fraction_complete: float
    done: bool
    processed: int
    total: int


@dataclass(frozen=True)
class ImportSummary:
    images_processed: int
    album_id: int
    owner_id: int
    copy: bool
    success: bool
    failures: list[dict[str, Any]]
    message: str


@dataclass
class BatchProgress:
    """Persisted state of one import job.

    ``cursor`` indexes ``files`` and always equals ``processed``. While an
    archive is being extracted, ``archive_path`` points at its staged copy and
    ``archive_entry_cursor`` counts the entries already handled.
    """

    job_id: str
    target: ImportTarget
    files: list[FileDescriptor]
    total: int
    processed: int = 0
    cursor: int = 0
    images_processed: int = 0
    state: JobState = JobState.IDLE
    failures: list[dict[str, Any]] = field(default_factory=list)
    archive_path: str | None = None
    archive_entry_cursor: int = 0
    updated_at: float = 0.0

    @property
    def fraction_complete(self) -> float:
        if self.total <= 0:
            return 1.0
        return min(1.0, self.processed / self.total)

    @property
    def done(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.FAILED)

    def advance(self) -> None:
        self.cursor += 1
        self.processed += 1

    def record_failure(self, record: dict[str, Any]) -> None:
        self.failures.append(record)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "target": {
                "album_id": self.target.album_id,
                "owner_id": self.target.owner_id,
                "scheme": self.target.scheme,
                "copy": self.target.copy,
                "description": self.target.description,
            },
            "files": [descriptor.to_dict() for descriptor in self.files],
            "total": self.total,
            "processed": self.processed,
            "cursor": self.cursor,
            "images_processed": self.images_processed,
            "state": self.state.value,
            "failures": self.failures,
            "archive_path": self.archive_path,
            "archive_entry_cursor": self.archive_entry_cursor,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "BatchProgress":
        target_raw = payload.get("target") or {}
        target = ImportTarget(
            album_id=int(target_raw["album_id"]),
            owner_id=int(target_raw["owner_id"]),
            scheme=str(target_raw.get("scheme") or "default"),
            copy=bool(target_raw.get("copy", True)),
            description=str(target_raw.get("description") or ""),
        )
        files = [FileDescriptor.from_dict(item) for item in payload.get("files") or []]
        return cls(
            job_id=str(payload["job_id"]),
            target=target,
            files=files,
            total=int(payload.get("total", len(files))),
            processed=int(payload.get("processed", 0)),
            cursor=int(payload.get("cursor", 0)),
            images_processed=int(payload.get("images_processed", 0)),
            state=JobState(payload.get("state") or JobState.IDLE.value),
            failures=list(payload.get("failures") or []),
            archive_path=payload.get("archive_path"),
            archive_entry_cursor=int(payload.get("archive_entry_cursor", 0)),
            updated_at=float(payload.get("updated_at") or 0.0),
        )


class ProgressStore:
    """JSON files under ``batch.progress_root``, one per job id."""

    def __init__(self, root: Path) -> None:
        self._root = root

    def path_for(self, job_id: str) -> Path:
        return self._root / f"{job_id}.json"

    def load(self, job_id: str) -> BatchProgress | None:
        """Return the saved progress, or ``None`` when the job is unknown.

        An unreadable file raises :class:`BatchError` and is left in place, so
        a restarted job never silently re-imports from the beginning.
        """

        path = self.path_for(job_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")
            return BatchProgress.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            LOGGER.error("batch_progress_load_error", extra={"path": str(path), "error": str(exc)})
            raise BatchError(
                BatchErrorKind.PROGRESS_UNREADABLE,
                f"progress for job {job_id} cannot be read: {exc}",
                source=str(path),
            ) from exc

    def save(self, progress: BatchProgress) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        progress.updated_at = time.time()
        path = self.path_for(progress.job_id)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(progress.to_dict()), encoding="utf-8")
        os.replace(tmp_path, path)

    def discard(self, job_id: str) -> None:
        try:
            self.path_for(job_id).unlink()
        except FileNotFoundError:
            return


def _progress_root(context: GalleryContext) -> Path:
    root = Path(context.settings.batch.progress_root).expanduser()
    if not root.is_absolute():
        root = Path.cwd() / root
    return root


def job_fingerprint(files: Iterable[FileDescriptor], target: ImportTarget) -> str:
    parts: list[object] = [target.album_id, target.owner_id, target.scheme, target.copy]
    parts.extend(str(descriptor.path or descriptor.name) for descriptor in files)
    return fingerprint(parts)


def completion_message(images_processed: int, copy: bool, success: bool) -> str:
    """Render ``"One image copied to selected album."`` style messages."""

    if not success:
        return "Finished with an error."
    engine = _get_inflect_engine()
    verb = "copied" if copy else "moved"
    amount = engine.number_to_words(images_processed).capitalize() if images_processed == 1 else str(images_processed)
    return f"{amount} {engine.plural_noun('image', images_processed)} {verb} to selected album."


class BatchStepper:
    """Drive import jobs one bounded chunk at a time."""

    def __init__(
        self,
        context: GalleryContext,
        ingestor: ImageIngestor | None = None,
        store: ProgressStore | None = None,
    ) -> None:
        self._context = context
        self._ingestor = ingestor or ImageIngestor(context)
        self._store = store or ProgressStore(_progress_root(context))
        self._chunk_size = max(1, context.settings.batch.chunk_size)

    @property
    def store(self) -> ProgressStore:
        return self._store

    def start(self, files: Iterable[FileDescriptor], target: ImportTarget, job_id: str | None = None) -> JobHandle:
        """Register a job, or resume it when progress already exists."""

        discovered = list(files)
        resolved_id = job_id or job_fingerprint(discovered, target)

        existing = self._store.load(resolved_id)
        if existing is not None:
            LOGGER.info(
                "batch_resume",
                extra={"job_id": resolved_id, "cursor": existing.cursor, "total": existing.total},
            )
            return JobHandle(resolved_id)

        progress = BatchProgress(
            job_id=resolved_id,
            target=target,
            files=discovered,
            total=len(discovered),
            state=JobState.RUNNING,
        )
        self._store.save(progress)
        LOGGER.info(
            "batch_start",
            extra={"job_id": resolved_id, "total": progress.total, "album_id": target.album_id, "copy": target.copy},
        )
        return JobHandle(resolved_id)

    def progress(self, handle: JobHandle) -> BatchProgress:
        progress = self._store.load(handle.job_id)
        if progress is None:
            raise LookupError(f"no progress recorded for job {handle.job_id}")
        return progress

    def step(self, handle: JobHandle) -> StepResult:
        """Process at most ``batch.chunk_size`` units starting at the cursor.

        Raises :class:`BatchError` when an archive cannot be opened or the
        target album no longer exists; the job is then marked failed.
        """

        progress = self.progress(handle)
        if progress.done:
            return _result(progress)

        budget = self._chunk_size
        while budget > 0 and progress.cursor < progress.total:
            descriptor = progress.files[progress.cursor]
            if descriptor.is_archive:
                budget -= self._step_archive(progress, descriptor, budget)
            else:
                self._ingest_unit(progress, descriptor)
                progress.advance()
                self._store.save(progress)
                budget -= 1

        if progress.cursor >= progress.total:
            progress.state = JobState.COMPLETED
            self._store.save(progress)

        result = _result(progress)
        LOGGER.info(
            "batch_step",
            extra={
                "job_id": progress.job_id,
                "processed": progress.processed,
                "total": progress.total,
                "fraction_complete": round(result.fraction_complete, 4),
            },
        )
        return result

    def run(self, handle: JobHandle) -> StepResult:
        """Step until the job is done."""

        result = self.step(handle)
        while not result.done:
            result = self.step(handle)
        return result

    def finish(self, handle: JobHandle, success: bool = True) -> ImportSummary:
        """Reconcile counters once, invalidate the album, and drop the progress file."""

        progress = self.progress(handle)
        target = progress.target
        succeeded = success and progress.state is not JobState.FAILED

        self._context.counters.import_finished(target.album_id, target.owner_id)
        self._context.invalidate(BatchImportFinished(album_id=target.album_id))

        if progress.archive_path:
            self._context.storage.delete(Path(progress.archive_path))
        self._store.discard(progress.job_id)

        summary = ImportSummary(
            images_processed=progress.images_processed,
            album_id=target.album_id,
            owner_id=target.owner_id,
            copy=target.copy,
            success=succeeded,
            failures=list(progress.failures),
            message=completion_message(progress.images_processed, target.copy, succeeded),
        )
        LOGGER.info(
            "batch_finish",
            extra={
                "job_id": progress.job_id,
                "album_id": target.album_id,
                "images_processed": summary.images_processed,
                "failure_count": len(summary.failures),
                "success": succeeded,
            },
        )
        return summary

    def _ingest_unit(
        self,
        progress: BatchProgress,
        descriptor: FileDescriptor,
        archive: zipfile.ZipFile | None = None,
    ) -> bool:
        target = progress.target
        try:
            self._ingestor.ingest(
                descriptor,
                target.album_id,
                target.owner_id,
                description=target.description or None,
                scheme=target.scheme,
                copy=target.copy,
                archive=archive,
                maintain=False,
            )
        except IngestError as exc:
            progress.record_failure(exc.as_record())
            LOGGER.warning(
                "batch_file_failed",
                extra={"kind": exc.kind.value, "file_name": exc.file_name, "album_id": exc.album_id, "error": str(exc)},
            )
            return False
        except LookupError as exc:
            self._abort_missing_album(progress, descriptor, exc)
        progress.images_processed += 1
        return True

    def _abort_missing_album(self, progress: BatchProgress, descriptor: FileDescriptor, exc: LookupError) -> None:
        album_id = progress.target.album_id
        progress.state = JobState.FAILED
        progress.record_failure(
            {
                "kind": BatchErrorKind.ALBUM_NOT_FOUND.value,
                "file_name": descriptor.name,
                "album_id": album_id,
                "message": str(exc),
            }
        )
        self._store.save(progress)
        LOGGER.error(
            "batch_album_missing",
            extra={"job_id": progress.job_id, "album_id": album_id, "file_name": descriptor.name},
        )
        raise BatchError(BatchErrorKind.ALBUM_NOT_FOUND, str(exc), source=descriptor.name) from exc

    def _step_archive(self, progress: BatchProgress, descriptor: FileDescriptor, budget: int) -> int:
        """Extract up to ``budget`` entries of the archive at the cursor.

        Returns the number of units consumed; at least one.
        """

        settings = self._context.settings
        storage = self._context.storage
        target = progress.target

        if not settings.upload.allow_archive:
            progress.record_failure(
                {
                    "kind": "archive_disabled",
                    "file_name": descriptor.name,
                    "album_id": target.album_id,
                    "message": "archive uploads are disabled",
                }
            )
            LOGGER.warning("batch_archive_disabled", extra={"file_name": descriptor.name, "album_id": target.album_id})
            progress.advance()
            self._store.save(progress)
            return 1

        if progress.archive_path is None:
            if not self._stage_archive(progress, descriptor):
                progress.advance()
                self._store.save(progress)
                return 1

        staged = Path(str(progress.archive_path))
        try:
            archive = zipfile.ZipFile(staged)
        except (OSError, zipfile.BadZipFile) as exc:
            storage.delete(staged)
            progress.archive_path = None
            progress.archive_entry_cursor = 0
            progress.state = JobState.FAILED
            progress.record_failure(
                {
                    "kind": BatchErrorKind.ARCHIVE_OPEN_FAILED.value,
                    "file_name": descriptor.name,
                    "album_id": target.album_id,
                    "message": str(exc),
                }
            )
            self._store.save(progress)
            LOGGER.error(
                "batch_archive_open_failed",
                extra={"file_name": descriptor.name, "album_id": target.album_id, "error": str(exc)},
            )
            raise BatchError(
                BatchErrorKind.ARCHIVE_OPEN_FAILED,
                f"could not open archive {descriptor.name}: {exc}",
                source=descriptor.name,
            ) from exc

        used = 0
        with archive:
            entries = list(scan_archive(archive, image_extensions(settings)))
            while used < budget and progress.archive_entry_cursor < len(entries):
                entry = entries[progress.archive_entry_cursor]
                self._ingest_unit(progress, entry, archive)
                progress.archive_entry_cursor += 1
                used += 1
                self._store.save(progress)

        if progress.archive_entry_cursor >= len(entries):
            storage.delete(staged)
            LOGGER.info(
                "batch_archive_extracted",
                extra={"file_name": descriptor.name, "album_id": target.album_id, "entries": len(entries)},
            )
            progress.archive_path = None
            progress.archive_entry_cursor = 0
            progress.advance()
            self._store.save(progress)
        return max(used, 1)

    def _stage_archive(self, progress: BatchProgress, descriptor: FileDescriptor) -> bool:
        storage = self._context.storage
        target = progress.target
        source = descriptor.path
        staged = storage.staging_path(descriptor.name, target.scheme)
        try:
            if source is None:
                raise FileNotFoundError(descriptor.name)
            if target.copy:
                shutil.copyfile(source, staged)
            else:
                shutil.move(str(source), str(staged))
        except OSError as exc:
            progress.record_failure(
                {
                    "kind": IngestErrorKind.MOVE_FAILED.value,
                    "file_name": descriptor.name,
                    "album_id": target.album_id,
                    "message": str(exc),
                }
            )
            LOGGER.warning(
                "batch_archive_stage_failed",
                extra={"file_name": descriptor.name, "album_id": target.album_id, "error": str(exc)},
            )
            return False
        progress.archive_path = str(staged)
        progress.archive_entry_cursor = 0
        self._store.save(progress)
        return True


def _result(progress: BatchProgress) -> StepResult:
    return StepResult(
        fraction_complete=progress.fraction_complete,
        done=progress.done,
        processed=progress.processed,
        total=progress.total,
    )


def prepare_directory_import(context: GalleryContext, source: str | Path) -> list[FileDescriptor]:
    """Discover the files of a directory import, failing before any job exists."""

    root = context.storage.resolve_source(source)
    if not root.is_dir():
        raise BatchError(BatchErrorKind.SOURCE_NOT_FOUND, f"import source does not exist: {source}", source=str(source))
    files = list(scan_directory(root, allowed_extensions(context.settings)))
    LOGGER.info("batch_discovered", extra={"source": str(root), "file_count": len(files)})
    return files


def extract_archive(
    context: GalleryContext,
    archive_path: Path,
    target: ImportTarget,
    ingestor: ImageIngestor | None = None,
) -> int:
    """Import every image entry of an uploaded archive in one pass.

    The archive is deleted afterwards whether or not extraction succeeded.
    Returns the number of images created.
    """

    ingestor = ingestor or ImageIngestor(context)
    imported = 0
    try:
        try:
            archive = zipfile.ZipFile(archive_path)
        except (OSError, zipfile.BadZipFile) as exc:
            LOGGER.error("archive_open_failed", extra={"source": str(archive_path), "error": str(exc)})
            raise BatchError(
                BatchErrorKind.ARCHIVE_OPEN_FAILED,
                f"could not open archive {archive_path.name}: {exc}",
                source=str(archive_path),
            ) from exc

        with archive:
            for entry in scan_archive(archive, image_extensions(context.settings)):
                try:
                    ingestor.ingest(
                        entry,
                        target.album_id,
                        target.owner_id,
                        description=target.description or None,
                        scheme=target.scheme,
                        archive=archive,
                        maintain=False,
                    )
                except IngestError as exc:
                    LOGGER.warning(
                        "archive_entry_failed",
                        extra={"kind": exc.kind.value, "file_name": exc.file_name, "album_id": exc.album_id},
                    )
                    if exc.kind is IngestErrorKind.LIMIT_REACHED:
                        break
                    continue
                imported += 1
    finally:
        context.storage.delete(archive_path)

    context.counters.import_finished(target.album_id, target.owner_id)
    context.invalidate(BatchImportFinished(album_id=target.album_id))
    LOGGER.info(
        "archive_extracted",
        extra={"source": str(archive_path), "album_id": target.album_id, "imported": imported},
    )
    return imported


__all__ = [
    "BatchProgress",
    "BatchStepper",
    "ImportSummary",
    "ImportTarget",
    "JobHandle",
    "JobState",
    "ProgressStore",
    "StepResult",
    "completion_message",
    "extract_archive",
    "job_fingerprint",
    "prepare_directory_import",
]
