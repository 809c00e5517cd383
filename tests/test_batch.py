"""Chunked, resumable directory and archive imports."""

from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from photo_albums import ingest as ingest_module
from photo_albums.albums import AlbumService
from photo_albums.batch import (
    BatchStepper,
    ImportTarget,
    JobState,
    completion_message,
    extract_archive,
    prepare_directory_import,
)
from photo_albums.context import open_gallery
from photo_albums.counters import SubjectType
from photo_albums.db import Image
from photo_albums.errors import BatchError, BatchErrorKind
from photo_albums.scanner import FileDescriptor

from conftest import OWNER_ID


def _album_images(gallery, album_id: int) -> list[Image]:
    gallery.session.expire_all()
    return list(
        gallery.session.execute(select(Image).where(Image.album_id == album_id).order_by(Image.id)).scalars()
    )


@pytest.fixture
def source_dir(tmp_path: Path, make_image) -> Path:
    root = tmp_path / "incoming"
    for index in range(5):
        make_image(root / f"shot_{index:02d}.jpg", color=(index * 40, 10, 10))
    return root


def test_chunk_size_does_not_change_the_result(gallery, albums, source_dir) -> None:
    small = albums.create_album(OWNER_ID, "Small chunks")
    large = albums.create_album(OWNER_ID, "One pass")
    files = prepare_directory_import(gallery, source_dir)

    gallery.settings.batch.chunk_size = 2
    chunked = BatchStepper(gallery)
    handle = chunked.start(files, ImportTarget(album_id=small.id, owner_id=OWNER_ID))
    steps = 0
    result = chunked.step(handle)
    steps += 1
    while not result.done:
        result = chunked.step(handle)
        steps += 1
    chunked_summary = chunked.finish(handle)

    gallery.settings.batch.chunk_size = 100
    single = BatchStepper(gallery)
    handle = single.start(files, ImportTarget(album_id=large.id, owner_id=OWNER_ID))
    single.run(handle)
    single_summary = single.finish(handle)

    assert steps == 3
    assert chunked_summary.images_processed == single_summary.images_processed == 5
    left = [(image.title, image.weight) for image in _album_images(gallery, small.id)]
    right = [(image.title, image.weight) for image in _album_images(gallery, large.id)]
    assert left == right
    assert [title for title, _ in left] == [f"shot {index:02d}" for index in range(5)]
    assert [weight for _, weight in left] == [0, 1, 2, 3, 4]


def test_interrupted_job_resumes_from_its_cursor(gallery, album, source_dir) -> None:
    gallery.settings.batch.chunk_size = 2
    files = prepare_directory_import(gallery, source_dir)
    target = ImportTarget(album_id=album.id, owner_id=OWNER_ID)

    first = BatchStepper(gallery)
    handle = first.start(files, target)
    result = first.step(handle)
    assert (result.processed, result.total, result.done) == (2, 5, False)
    assert result.fraction_complete == pytest.approx(0.4)

    # A fresh stepper finds the persisted progress under the same job id.
    second = BatchStepper(gallery)
    resumed = second.start(files, target)
    assert resumed == handle
    progress = second.progress(resumed)
    assert progress.cursor == progress.processed == 2
    assert progress.state is JobState.RUNNING

    second.run(resumed)
    summary = second.finish(resumed)

    assert summary.images_processed == 5
    assert len(_album_images(gallery, album.id)) == 5
    assert not second.store.path_for(handle.job_id).exists()


def test_progress_tracks_every_unit(gallery, album, source_dir) -> None:
    gallery.settings.batch.chunk_size = 1
    stepper = BatchStepper(gallery)
    handle = stepper.start(prepare_directory_import(gallery, source_dir), ImportTarget(album.id, OWNER_ID))

    seen = []
    result = stepper.step(handle)
    seen.append(result.fraction_complete)
    while not result.done:
        progress = stepper.progress(handle)
        assert progress.cursor == progress.processed
        result = stepper.step(handle)
        seen.append(result.fraction_complete)

    assert seen == pytest.approx([0.2, 0.4, 0.6, 0.8, 1.0])
    assert seen == sorted(seen)


def test_bad_file_is_recorded_and_batch_continues(gallery, album, make_image, tmp_path) -> None:
    root = tmp_path / "mixed"
    make_image(root / "a.jpg")
    (root / "b.jpg").write_text("not an image", encoding="utf-8")
    make_image(root / "c.jpg")

    stepper = BatchStepper(gallery)
    handle = stepper.start(prepare_directory_import(gallery, root), ImportTarget(album.id, OWNER_ID))
    stepper.run(handle)
    summary = stepper.finish(handle)

    assert summary.success is True
    assert summary.images_processed == 2
    assert summary.message == "2 images copied to selected album."
    assert [(record["kind"], record["file_name"]) for record in summary.failures] == [("wrong_type", "b.jpg")]
    assert gallery.counters.get_count(SubjectType.ALBUM, album.id) == 2


def test_archive_entries_are_imported_and_sources_removed(gallery, album, make_zip, tmp_path, photos_dir) -> None:
    gallery.settings.upload.allow_archive = True
    gallery.settings.batch.chunk_size = 2
    root = tmp_path / "upload"
    archive = make_zip(root / "bundle.zip", images=5, extras={"readme.txt": b"hello", "notes.doc": b"\x00\x01"})

    stepper = BatchStepper(gallery)
    files = prepare_directory_import(gallery, root)
    assert [descriptor.name for descriptor in files] == ["bundle.zip"]

    handle = stepper.start(files, ImportTarget(album.id, OWNER_ID, copy=False))
    stepper.run(handle)
    summary = stepper.finish(handle)

    assert summary.images_processed == 5
    assert summary.failures == []
    assert summary.message == "5 images moved to selected album."
    assert not archive.exists()
    assert list((photos_dir / "tmp").iterdir()) == []
    stored = sorted(path.name for path in photos_dir.iterdir() if path.is_file())
    assert stored == [f"entry-{index:02d}.jpg" for index in range(5)]


def test_archive_extraction_resumes_mid_archive(gallery, album, make_zip, tmp_path, photos_dir) -> None:
    gallery.settings.upload.allow_archive = True
    gallery.settings.batch.chunk_size = 2
    root = tmp_path / "upload"
    make_zip(root / "bundle.zip", images=5)
    make_zip(root / "second.zip", images=1)
    files = prepare_directory_import(gallery, root)
    target = ImportTarget(album.id, OWNER_ID)

    first = BatchStepper(gallery)
    handle = first.start(files, target)
    first.step(handle)
    progress = first.progress(handle)
    assert progress.cursor == 0
    assert progress.archive_entry_cursor == 2
    assert progress.archive_path is not None
    assert Path(progress.archive_path).parent == photos_dir / "tmp"

    second = BatchStepper(gallery)
    second.run(second.start(files, target))
    summary = second.finish(handle)

    assert summary.images_processed == 6
    titles = [image.title for image in _album_images(gallery, album.id)]
    assert titles == [f"entry {index:02d}" for index in range(5)] + ["entry 00"]
    assert list((photos_dir / "tmp").iterdir()) == []


def test_archive_is_a_failure_when_archives_are_disabled(gallery, album, make_zip, tmp_path) -> None:
    archive = make_zip(tmp_path / "upload" / "bundle.zip", images=2)
    descriptor = FileDescriptor(name="bundle.zip", size_bytes=archive.stat().st_size, path=archive)

    stepper = BatchStepper(gallery)
    handle = stepper.start([descriptor], ImportTarget(album.id, OWNER_ID, copy=False))
    result = stepper.run(handle)
    summary = stepper.finish(handle)

    assert result.done
    assert summary.images_processed == 0
    assert [record["kind"] for record in summary.failures] == ["archive_disabled"]
    assert archive.exists()


def test_corrupt_archive_fails_the_job(gallery, album, tmp_path, photos_dir) -> None:
    gallery.settings.upload.allow_archive = True
    root = tmp_path / "upload"
    root.mkdir()
    (root / "broken.zip").write_bytes(b"this is not a zip archive")

    stepper = BatchStepper(gallery)
    handle = stepper.start(prepare_directory_import(gallery, root), ImportTarget(album.id, OWNER_ID))
    with pytest.raises(BatchError) as excinfo:
        stepper.step(handle)

    assert excinfo.value.kind is BatchErrorKind.ARCHIVE_OPEN_FAILED
    progress = stepper.progress(handle)
    assert progress.state is JobState.FAILED
    assert progress.done

    summary = stepper.finish(handle)
    assert summary.success is False
    assert summary.message == "Finished with an error."
    assert list((photos_dir / "tmp").iterdir()) == []
    assert (root / "broken.zip").exists()


def test_missing_source_fails_before_any_job_exists(gallery, settings, tmp_path) -> None:
    with pytest.raises(BatchError) as excinfo:
        prepare_directory_import(gallery, tmp_path / "does-not-exist")

    assert excinfo.value.kind is BatchErrorKind.SOURCE_NOT_FOUND
    assert not Path(settings.batch.progress_root).exists()


def test_storage_uri_source_is_resolved(gallery, make_image, settings) -> None:
    make_image(Path(settings.storage.public_root) / "drop" / "one.jpg")

    files = prepare_directory_import(gallery, "public://drop")

    assert [descriptor.name for descriptor in files] == ["one.jpg"]


def test_empty_job_completes_immediately(gallery, album) -> None:
    stepper = BatchStepper(gallery)
    handle = stepper.start([], ImportTarget(album.id, OWNER_ID))

    result = stepper.step(handle)
    summary = stepper.finish(handle)

    assert result.done
    assert result.fraction_complete == 1.0
    assert summary.images_processed == 0
    assert summary.message == "0 images copied to selected album."


def test_deferred_counters_wait_for_the_sweep(settings, source_dir) -> None:
    settings.counters.mode = "deferred"
    with open_gallery(settings) as gallery:
        album = AlbumService(gallery).create_album(OWNER_ID, "Deferred")
        stepper = BatchStepper(gallery)
        handle = stepper.start(prepare_directory_import(gallery, source_dir), ImportTarget(album.id, OWNER_ID))
        stepper.run(handle)
        stepper.finish(handle)

        assert gallery.counters.get_count(SubjectType.ALBUM, album.id) == 0
        assert gallery.counters.sweep(force=True) is True
        assert gallery.counters.get_count(SubjectType.ALBUM, album.id) == 5
        assert gallery.counters.get_count(SubjectType.USER_IMAGE, OWNER_ID) == 5
        assert gallery.counters.get_count(SubjectType.USER_ALBUM, OWNER_ID) == 1


def test_completion_message() -> None:
    assert completion_message(1, copy=True, success=True) == "One image copied to selected album."
    assert completion_message(3, copy=False, success=True) == "3 images moved to selected album."
    assert completion_message(3, copy=True, success=False) == "Finished with an error."


def test_extract_archive_imports_entries_and_deletes_upload(gallery, album, make_zip, tmp_path) -> None:
    archive = make_zip(tmp_path / "upload.zip", images=3, extras={"thumbs.db": b"\x00"})

    imported = extract_archive(gallery, archive, ImportTarget(album.id, OWNER_ID))

    assert imported == 3
    assert not archive.exists()
    assert gallery.counters.get_count(SubjectType.ALBUM, album.id) == 3


def test_extract_archive_stops_at_album_limit(gallery, album, make_zip, tmp_path) -> None:
    gallery.settings.upload.album_photo_limit = 2
    archive = make_zip(tmp_path / "upload.zip", images=4)

    imported = extract_archive(gallery, archive, ImportTarget(album.id, OWNER_ID))

    assert imported == 2
    assert not archive.exists()
    assert len(_album_images(gallery, album.id)) == 2


def test_deleting_the_album_mid_job_fails_the_job(gallery, albums, album, source_dir) -> None:
    gallery.settings.batch.chunk_size = 1
    stepper = BatchStepper(gallery)
    handle = stepper.start(prepare_directory_import(gallery, source_dir), ImportTarget(album.id, OWNER_ID))
    stepper.step(handle)

    albums.delete_album(album.id)
    with pytest.raises(BatchError) as excinfo:
        stepper.step(handle)

    assert excinfo.value.kind is BatchErrorKind.ALBUM_NOT_FOUND
    progress = stepper.progress(handle)
    assert progress.state is JobState.FAILED
    assert progress.cursor == 1
    assert progress.failures[-1]["kind"] == "album_not_found"
    assert stepper.step(handle).done

    summary = stepper.finish(handle)
    assert summary.success is False
    assert not stepper.store.path_for(handle.job_id).exists()
    assert len(list(source_dir.iterdir())) == 5


def test_database_error_on_one_file_is_recorded_and_skipped(gallery, album, source_dir, monkeypatch) -> None:
    real_next_weight = ingest_module.next_image_weight
    calls = {"count": 0}

    def _flaky_next_weight(session, album_id: int) -> int:
        calls["count"] += 1
        if calls["count"] == 2:
            raise OperationalError("SELECT max(weight)", {}, Exception("database is locked"))
        return real_next_weight(session, album_id)

    monkeypatch.setattr(ingest_module, "next_image_weight", _flaky_next_weight)
    stepper = BatchStepper(gallery)
    handle = stepper.start(prepare_directory_import(gallery, source_dir), ImportTarget(album.id, OWNER_ID))

    result = stepper.run(handle)
    summary = stepper.finish(handle)

    assert result.done
    assert summary.images_processed == 4
    assert [(failure["kind"], failure["file_name"]) for failure in summary.failures] == [
        ("persist_failed", "shot_01.jpg")
    ]
    assert [image.title for image in _album_images(gallery, album.id)] == [
        "shot 00",
        "shot 02",
        "shot 03",
        "shot 04",
    ]


def test_unreadable_progress_is_never_reset(gallery, album, source_dir) -> None:
    files = prepare_directory_import(gallery, source_dir)
    target = ImportTarget(album.id, OWNER_ID)
    stepper = BatchStepper(gallery)
    handle = stepper.start(files, target)
    progress_file = stepper.store.path_for(handle.job_id)
    progress_file.write_text("{not json", encoding="utf-8")

    with pytest.raises(BatchError) as excinfo:
        BatchStepper(gallery).start(files, target)
    assert excinfo.value.kind is BatchErrorKind.PROGRESS_UNREADABLE

    with pytest.raises(BatchError):
        stepper.step(handle)
    assert progress_file.read_text(encoding="utf-8") == "{not json"
    assert _album_images(gallery, album.id) == []
