"""Import a directory or zip archive into an album, in resumable chunks."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from photo_albums.batch import BatchStepper, ImportTarget, prepare_directory_import
from photo_albums.config import ARCHIVE_EXTENSIONS, load_settings
from photo_albums.context import open_gallery
from photo_albums.errors import BatchError, BatchErrorKind
from photo_albums.scanner import FileDescriptor
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "import_photos"})


def _discover(context, source: str) -> list[FileDescriptor]:
    path = context.storage.resolve_source(source)
    if path.is_file() and path.suffix.lstrip(".") in ARCHIVE_EXTENSIONS:
        return [FileDescriptor(name=path.name, size_bytes=path.stat().st_size, path=path)]
    return prepare_directory_import(context, source)


def main(
    source: str = typer.Argument(..., help="Directory or zip archive to import; public:// and private:// prefixes are accepted."),
    album_id: int = typer.Option(..., "--album-id", help="Album receiving the images."),
    owner_id: int = typer.Option(..., "--owner-id", help="User owning the imported images."),
    scheme: str = typer.Option("default", "--scheme", help="Storage scheme: default, public, or private."),
    move: bool = typer.Option(False, "--move", help="Move source files instead of copying them."),
    settings_path: Optional[Path] = typer.Option(None, "--settings", help="Path to settings.yaml."),
    enqueue: bool = typer.Option(False, "--enqueue", help="Hand the job to the Celery import queue instead of running it here."),
) -> None:
    """Discover images under SOURCE and import them into an album."""

    settings = load_settings(settings_path)
    target = ImportTarget(album_id=album_id, owner_id=owner_id, scheme=scheme, copy=not move)

    with open_gallery(settings) as context:
        try:
            files = _discover(context, source)
        except BatchError as exc:
            LOGGER.error("import_source_missing", extra={"source": exc.source})
            raise typer.Exit(code=1) from exc

        if not files:
            LOGGER.warning("import_no_files", extra={"source": source})
            typer.echo("No images found.")
            return

        stepper = BatchStepper(context)
        try:
            handle = stepper.start(files, target)
        except BatchError as exc:
            LOGGER.error("import_progress_unreadable", extra={"kind": exc.kind.value, "source": exc.source})
            typer.echo(f"Cannot resume import: {exc}")
            raise typer.Exit(code=1) from exc

        if enqueue:
            from photo_albums.task_queue import import_step

            import_step.delay(handle.job_id)
            LOGGER.info("import_enqueued", extra={"job_id": handle.job_id, "total": len(files)})
            typer.echo(f"Queued import job {handle.job_id}.")
            return

        success = True
        try:
            result = stepper.step(handle)
            while not result.done:
                typer.echo(f"{result.processed}/{result.total} ({result.fraction_complete:.0%})")
                result = stepper.step(handle)
        except BatchError as exc:
            LOGGER.error("import_aborted", extra={"kind": exc.kind.value, "source": exc.source})
            if exc.kind is BatchErrorKind.PROGRESS_UNREADABLE:
                typer.echo(f"Cannot resume import: {exc}")
                raise typer.Exit(code=1) from exc
            success = False

        summary = stepper.finish(handle, success=success)

    for failure in summary.failures:
        typer.echo(f"skipped {failure.get('file_name')}: {failure.get('kind')}")
    typer.echo(summary.message)
    if not summary.success:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    typer.run(main)


__all__ = ["main"]
