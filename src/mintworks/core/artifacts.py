"""File-backed storage for job artifacts.

Layout::

    uploads_dir/
        {job_id}-{attempt}.png            produced image, one per attempt
        sources/{collection_id}/...       uploaded source images (rarity plans)
    output_dir/
        metadata/{job_id}-{attempt}.json  metadata written on approval
        packages/{name}.zip               collection packages

Jobs store absolute paths to these files.  Because users can delete files
behind the application's back, every reader checks existence and callers
decide what a missing file means (package assembly skips the job and
reports it; regenerate and delete simply carry on).

Writes go to a temporary sibling first and are moved into place, so a
reader never sees a half-written image or metadata file.

Each attempt gets its own file name, so removing a superseded attempt
never touches a file written by a newer one.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
import uuid
from pathlib import Path

from mintworks.core.metadata import serialize_metadata

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9]")


def safe_filename(name: str) -> str:
    """Replace every non-alphanumeric character with an underscore."""
    return _UNSAFE_CHARS.sub("_", name)


def _attempt_name(job_id: str, suffix: str) -> str:
    return f"{job_id}-{uuid.uuid4().hex[:12]}{suffix}"


class ArtifactStore:
    """Reads and writes produced images, metadata files and packages."""

    def __init__(self, uploads_dir: Path, output_dir: Path) -> None:
        self.uploads_dir = Path(uploads_dir)
        self.output_dir = Path(output_dir)
        self.sources_dir = self.uploads_dir / "sources"
        self.metadata_dir = self.output_dir / "metadata"
        self.packages_dir = self.output_dir / "packages"
        for directory in (
            self.uploads_dir,
            self.sources_dir,
            self.metadata_dir,
            self.packages_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)

    # -- Writes -------------------------------------------------------------

    @staticmethod
    def _write_atomic(path: Path, data: bytes) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def save_image(self, job_id: str, image_bytes: bytes) -> str:
        """Store a job's produced PNG and return its path."""
        path = self.uploads_dir / _attempt_name(job_id, ".png")
        self._write_atomic(path, image_bytes)
        logger.info("Image saved: %s", path)
        return str(path)

    def save_metadata(self, job_id: str, metadata: dict) -> str:
        """Store a job's metadata document as pretty-printed JSON."""
        path = self.metadata_dir / _attempt_name(job_id, ".json")
        self._write_atomic(path, serialize_metadata(metadata))
        logger.info("Metadata saved: %s", path)
        return str(path)

    def save_source_image(self, collection_id: str, filename: str, image_bytes: bytes) -> str:
        """Store an uploaded source image for a rarity-plan collection."""
        directory = self.sources_dir / collection_id
        directory.mkdir(parents=True, exist_ok=True)
        original = Path(filename)
        stem = safe_filename(original.stem) or "image"
        suffix = "." + safe_filename(original.suffix.lstrip(".")).lower() if original.suffix else ""
        path = directory / f"{stem}{suffix}"
        counter = 1
        while path.exists():
            path = directory / f"{stem}_{counter}{suffix}"
            counter += 1
        self._write_atomic(path, image_bytes)
        return str(path)

    def package_path(self, name: str) -> Path:
        return self.packages_dir / f"{safe_filename(name)}.zip"

    # -- Reads --------------------------------------------------------------

    @staticmethod
    def exists(path: str | None) -> bool:
        return bool(path) and Path(path).is_file()

    @staticmethod
    def read_bytes(path: str) -> bytes:
        return Path(path).read_bytes()

    # -- Deletes ------------------------------------------------------------

    @staticmethod
    def delete(path: str | None) -> bool:
        """Remove an artifact file if it exists.

        Returns:
            True if a file was removed
        """
        if not path:
            return False
        file_path = Path(path)
        if not file_path.is_file():
            return False
        file_path.unlink()
        logger.info("Deleted artifact: %s", file_path)
        return True

    def delete_sources(self, collection_id: str) -> int:
        """Remove every uploaded source image for a collection."""
        directory = self.sources_dir / collection_id
        if not directory.is_dir():
            return 0
        removed = 0
        for file_path in directory.iterdir():
            if file_path.is_file():
                file_path.unlink()
                removed += 1
        directory.rmdir()
        return removed
