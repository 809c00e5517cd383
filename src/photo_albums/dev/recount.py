"""Recompute every denormalized album, user, and site counter."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from photo_albums.config import load_settings
from photo_albums.task_queue import run_counter_sweep
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "recount"})


def main(
    force: bool = typer.Option(False, "--force", help="Ignore the sweep interval and recount now."),
    settings_path: Optional[Path] = typer.Option(None, "--settings", help="Path to settings.yaml."),
) -> None:
    """Run the counter sweep once."""

    settings = load_settings(settings_path)
    ran = run_counter_sweep(settings, force=force)
    if ran:
        typer.echo("Counters recomputed.")
    else:
        LOGGER.info("recount_skipped", extra={"interval": settings.counters.sweep_interval_seconds})
        typer.echo("Counters were swept recently; use --force to recount anyway.")


if __name__ == "__main__":
    typer.run(main)


__all__ = ["main"]
