"""Create the gallery database schema and the storage and job directories."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Ensure src/ is on sys.path so we can import shared logging and DB helpers.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = PROJECT_ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.append(str(SRC_ROOT))

from photo_albums.config import load_settings  # noqa: E402
from photo_albums.db import open_session  # noqa: E402
from photo_albums.storage import FileStorage  # noqa: E402
from utils.logging import get_logger  # noqa: E402

LOGGER = get_logger(__name__)


def _init_database(target: str) -> None:
    session = open_session(target)
    session.close()
    LOGGER.info("init_database_ok", extra={"target": target})


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Initialize the gallery database and storage directories.")
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="Database URL or path. Defaults to database.url in settings.yaml.",
    )
    parser.add_argument(
        "--settings",
        type=str,
        default=None,
        help="Path to settings.yaml.",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = load_settings(args.settings)
    target = args.db or settings.database.url
    _init_database(target)

    storage = FileStorage(settings.storage)
    schemes = ["public"] + (["private"] if settings.storage.private_root else [])
    directories = [storage.prepare_directory(scheme) for scheme in schemes]

    progress_root = Path(settings.batch.progress_root).expanduser()
    progress_root.mkdir(parents=True, exist_ok=True)
    LOGGER.info(
        "init_gallery_complete",
        extra={"database": target, "storage": [str(path) for path in directories], "progress_root": str(progress_root)},
    )


if __name__ == "__main__":
    main()
