"""Celery task wiring for import steps, counter sweeps, and cache invalidation."""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from celery import Celery

from photo_albums.batch import BatchStepper, JobHandle, completion_message
from photo_albums.cache_tags import DatabaseTagInvalidator
from photo_albums.config import Settings, load_settings
from photo_albums.context import open_gallery
from photo_albums.db import session_factory
from photo_albums.errors import BatchError, BatchErrorKind
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "task_queue"})


@lru_cache(maxsize=1)
def _load_settings() -> Settings:
    return load_settings()


def _init_celery() -> Celery:
    settings = _load_settings()
    app = Celery("photo_albums")
    app.conf.update(
        broker_url=settings.queues.broker_url,
        result_backend=settings.queues.result_backend,
        worker_concurrency=settings.queues.default_concurrency,
        worker_prefetch_multiplier=1,
        task_acks_late=True,
        task_default_queue=settings.queues.import_queue,
        task_routes={
            "photo_albums.task_queue.import_step": {"queue": settings.queues.import_queue},
            "photo_albums.task_queue.sweep_counters": {"queue": settings.queues.maintenance_queue},
            "photo_albums.task_queue.invalidate_cache_tags": {"queue": settings.queues.maintenance_queue},
        },
    )
    if settings.counters.mode == "deferred":
        app.conf.beat_schedule = {
            "photo_albums.sweep_counters": {
                "task": "photo_albums.task_queue.sweep_counters",
                "schedule": float(max(60, settings.counters.sweep_interval_seconds)),
            }
        }
    return app


celery_app = _init_celery()


def advance_import(settings: Settings, job_id: str) -> dict[str, Any]:
    """Run one step of an import job and finish it once it is done.

    An archive that cannot be opened or a deleted album finishes the job as
    failed. Unreadable progress is left on disk untouched.
    """

    handle = JobHandle(job_id)
    with open_gallery(settings) as context:
        stepper = BatchStepper(context)
        try:
            result = stepper.step(handle)
        except BatchError as exc:
            LOGGER.error("import_step_aborted", extra={"job_id": job_id, "kind": exc.kind.value, "source": exc.source})
            if exc.kind is BatchErrorKind.PROGRESS_UNREADABLE:
                return {"job_id": job_id, "done": True, "success": False, "message": completion_message(0, True, False)}
            summary = stepper.finish(handle, success=False)
            return {"job_id": job_id, "done": True, "success": False, "message": summary.message}

        if not result.done:
            return {
                "job_id": job_id,
                "done": False,
                "processed": result.processed,
                "total": result.total,
                "fraction_complete": result.fraction_complete,
            }

        summary = stepper.finish(handle, success=True)
        return {
            "job_id": job_id,
            "done": True,
            "success": summary.success,
            "images_processed": summary.images_processed,
            "message": summary.message,
        }


def run_counter_sweep(settings: Settings, *, force: bool = False) -> bool:
    with open_gallery(settings) as context:
        return context.counters.sweep(force=force)


@celery_app.task(name="photo_albums.task_queue.import_step", acks_late=True)
def import_step(job_id: str) -> dict[str, Any]:
    """Advance an import job by one chunk, re-enqueueing itself until done."""

    settings = _load_settings()
    outcome = advance_import(settings, job_id)
    if not outcome["done"]:
        import_step.apply_async((job_id,), queue=settings.queues.import_queue)
    else:
        LOGGER.info("import_job_done", extra={"job_id": job_id, "success": outcome.get("success")})
    return outcome


@celery_app.task(name="photo_albums.task_queue.sweep_counters", acks_late=True)
def sweep_counters(force: bool = False) -> bool:
    return run_counter_sweep(_load_settings(), force=force)


@celery_app.task(name="photo_albums.task_queue.invalidate_cache_tags", acks_late=True)
def invalidate_cache_tags(tags: list[str]) -> int:
    settings = _load_settings()
    DatabaseTagInvalidator(session_factory(settings.database.url)).invalidate_tags(tags)
    return len(tags)


__all__ = [
    "advance_import",
    "celery_app",
    "import_step",
    "invalidate_cache_tags",
    "run_counter_sweep",
    "sweep_counters",
]
