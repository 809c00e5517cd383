"""Queue task bodies and the developer CLIs."""

from __future__ import annotations

from pathlib import Path

import pytest
import typer
import yaml
from typer.testing import CliRunner

from photo_albums import task_queue
from photo_albums.albums import AlbumService
from photo_albums.batch import BatchStepper, ImportTarget, prepare_directory_import
from photo_albums.cache_tags import DatabaseTagInvalidator
from photo_albums.config import Settings
from photo_albums.context import open_gallery
from photo_albums.counters import SubjectType
from photo_albums.dev import import_photos, recount
from photo_albums.scanner import FileDescriptor

from conftest import OWNER_ID

runner = CliRunner()


def _cli(main) -> typer.Typer:
    app = typer.Typer()
    app.command()(main)
    return app


def _write_settings(settings: Settings, path: Path) -> Path:
    payload = {
        "database": {"url": settings.database.url},
        "storage": {"public_root": settings.storage.public_root, "private_root": settings.storage.private_root},
        "batch": {"chunk_size": settings.batch.chunk_size, "progress_root": settings.batch.progress_root},
        "upload": {"allow_archive": settings.upload.allow_archive},
    }
    path.write_text(yaml.safe_dump(payload), encoding="utf-8")
    return path


def _create_album(settings: Settings) -> int:
    with open_gallery(settings) as context:
        return AlbumService(context).create_album(OWNER_ID, "Queued").id


@pytest.fixture
def source_dir(tmp_path: Path, make_image) -> Path:
    root = tmp_path / "incoming"
    for name in ("one.jpg", "two.png", "three.gif"):
        make_image(root / name, fmt={"jpg": "JPEG", "png": "PNG", "gif": "GIF"}[name.rsplit(".", 1)[1]])
    return root


def test_advance_import_steps_then_finishes(settings, source_dir) -> None:
    settings.batch.chunk_size = 2
    album_id = _create_album(settings)
    with open_gallery(settings) as context:
        handle = BatchStepper(context).start(
            prepare_directory_import(context, source_dir), ImportTarget(album_id=album_id, owner_id=OWNER_ID)
        )

    first = task_queue.advance_import(settings, handle.job_id)
    assert first["done"] is False
    assert (first["processed"], first["total"]) == (2, 3)

    second = task_queue.advance_import(settings, handle.job_id)
    assert second == {
        "job_id": handle.job_id,
        "done": True,
        "success": True,
        "images_processed": 3,
        "message": "3 images copied to selected album.",
    }
    with open_gallery(settings) as context:
        assert context.counters.get_count(SubjectType.ALBUM, album_id) == 3


def test_advance_import_finishes_failed_jobs(settings, tmp_path) -> None:
    settings.upload.allow_archive = True
    album_id = _create_album(settings)
    broken = tmp_path / "broken.zip"
    broken.write_bytes(b"nope")
    with open_gallery(settings) as context:
        descriptor = FileDescriptor(name=broken.name, size_bytes=broken.stat().st_size, path=broken)
        handle = BatchStepper(context).start([descriptor], ImportTarget(album_id=album_id, owner_id=OWNER_ID))

    outcome = task_queue.advance_import(settings, handle.job_id)

    assert outcome == {"job_id": handle.job_id, "done": True, "success": False, "message": "Finished with an error."}
    assert not (Path(settings.batch.progress_root) / f"{handle.job_id}.json").exists()


def test_advance_import_leaves_unreadable_progress_alone(settings, source_dir) -> None:
    album_id = _create_album(settings)
    with open_gallery(settings) as context:
        stepper = BatchStepper(context)
        handle = stepper.start(prepare_directory_import(context, source_dir), ImportTarget(album_id, OWNER_ID))
        progress_file = stepper.store.path_for(handle.job_id)
    progress_file.write_text("[]", encoding="utf-8")

    outcome = task_queue.advance_import(settings, handle.job_id)

    assert outcome == {"job_id": handle.job_id, "done": True, "success": False, "message": "Finished with an error."}
    assert progress_file.read_text(encoding="utf-8") == "[]"


def test_run_counter_sweep_honours_interval(settings) -> None:
    _create_album(settings)

    assert task_queue.run_counter_sweep(settings) is True
    assert task_queue.run_counter_sweep(settings) is False
    assert task_queue.run_counter_sweep(settings, force=True) is True


def test_invalidate_cache_tags_task_runs_inline(settings, monkeypatch) -> None:
    monkeypatch.setattr(task_queue, "_load_settings", lambda: settings)

    assert task_queue.invalidate_cache_tags(["album:3", "photos:album:3"]) == 2

    with open_gallery(settings) as context:
        assert DatabaseTagInvalidator(context.session_factory).checksum(["album:3", "photos:album:3"]) == 2


def test_import_cli_runs_job_to_completion(settings, source_dir, tmp_path) -> None:
    settings.batch.chunk_size = 1
    album_id = _create_album(settings)
    settings_file = _write_settings(settings, tmp_path / "settings.yaml")

    result = runner.invoke(
        _cli(import_photos.main),
        [str(source_dir), "--album-id", str(album_id), "--owner-id", str(OWNER_ID), "--settings", str(settings_file)],
    )

    assert result.exit_code == 0, result.output
    assert "1/3 (33%)" in result.output
    assert "3 images copied to selected album." in result.output
    assert (source_dir / "one.jpg").exists()


def test_import_cli_accepts_a_single_archive(settings, make_zip, tmp_path) -> None:
    settings.upload.allow_archive = True
    album_id = _create_album(settings)
    archive = make_zip(tmp_path / "drop" / "bundle.zip", images=2, extras={"notes.txt": b"hi"})
    settings_file = _write_settings(settings, tmp_path / "settings.yaml")

    result = runner.invoke(
        _cli(import_photos.main),
        [
            str(archive),
            "--album-id",
            str(album_id),
            "--owner-id",
            str(OWNER_ID),
            "--move",
            "--settings",
            str(settings_file),
        ],
    )

    assert result.exit_code == 0, result.output
    assert "2 images moved to selected album." in result.output
    assert not archive.exists()


def test_import_cli_rejects_missing_source(settings, tmp_path) -> None:
    album_id = _create_album(settings)
    settings_file = _write_settings(settings, tmp_path / "settings.yaml")

    result = runner.invoke(
        _cli(import_photos.main),
        [str(tmp_path / "absent"), "--album-id", str(album_id), "--owner-id", "1", "--settings", str(settings_file)],
    )

    assert result.exit_code == 1
    assert not Path(settings.batch.progress_root).exists()


def test_import_cli_enqueues_instead_of_running(settings, source_dir, tmp_path, monkeypatch) -> None:
    album_id = _create_album(settings)
    settings_file = _write_settings(settings, tmp_path / "settings.yaml")
    queued: list[str] = []
    monkeypatch.setattr(task_queue.import_step, "delay", lambda job_id: queued.append(job_id))

    result = runner.invoke(
        _cli(import_photos.main),
        [str(source_dir), "--album-id", str(album_id), "--owner-id", "7", "--settings", str(settings_file), "--enqueue"],
    )

    assert result.exit_code == 0, result.output
    assert len(queued) == 1
    assert f"Queued import job {queued[0]}." in result.output
    assert (Path(settings.batch.progress_root) / f"{queued[0]}.json").exists()


def test_recount_cli(settings, tmp_path) -> None:
    _create_album(settings)
    settings_file = _write_settings(settings, tmp_path / "settings.yaml")
    app = _cli(recount.main)

    first = runner.invoke(app, ["--settings", str(settings_file)])
    second = runner.invoke(app, ["--settings", str(settings_file)])
    forced = runner.invoke(app, ["--force", "--settings", str(settings_file)])

    assert first.exit_code == second.exit_code == forced.exit_code == 0
    assert "Counters recomputed." in first.output
    assert "use --force" in second.output
    assert "Counters recomputed." in forced.output
