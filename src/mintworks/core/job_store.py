"""SQLite persistence for collections and jobs.

Schema
------
``collections``
    One row per :class:`CollectionConfig` plus its workflow ``status`` and the
    path of its last built package.

``jobs``
    One row per edition.  ``status`` is constrained to the :class:`JobStatus`
    values so an invalid status can never be persisted.  ``(collection_id,
    global_index)`` is unique.  Jobs are removed with their collection.

Both tables are indexed the way the processor queries them: jobs by
``collection_id`` and by ``status``, collections by ``status``.

Atomicity
---------
Every status change is a single ``UPDATE`` that writes the status together
with the artifact fields it implies (``image_path``, ``metadata_path``,
``error_message``, ``retry_count``), optionally guarded by the expected
current status.  Readers therefore never observe a status without its
artifacts, and a guarded update that matches no row tells the caller
another writer got there first.

Errors
------
Every ``sqlite3.Error`` is logged and re-raised as :class:`StorageError`
carrying the job or collection id involved.  Nothing here retries.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

from mintworks.core.errors import CollectionNotFoundError, JobNotFoundError, StorageError
from mintworks.core.lifecycle import JobEvent, next_status
from mintworks.core.models import (
    Collection,
    CollectionConfig,
    CollectionStatus,
    GenerationParams,
    Job,
    JobStatus,
)

logger = logging.getLogger(__name__)

_STATUS_CHECK = ", ".join(f"'{status.value}'" for status in JobStatus)

_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS collections (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    symbol TEXT NOT NULL,
    description TEXT,
    external_url TEXT,
    royalty_basis_points INTEGER NOT NULL DEFAULT 0,
    creator_address TEXT,
    creator_share_percent INTEGER NOT NULL DEFAULT 100,
    collection_number TEXT NOT NULL,
    total_supply INTEGER NOT NULL,
    drop_supply INTEGER NOT NULL,
    drop_number INTEGER NOT NULL DEFAULT 1,
    season TEXT,
    series_slug TEXT,
    ai_prompt TEXT,
    style_preset TEXT,
    negative_prompt TEXT,
    seed INTEGER,
    status TEXT NOT NULL DEFAULT 'pending',
    package_path TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    collection_id TEXT NOT NULL,
    global_index INTEGER NOT NULL,
    edition_number INTEGER NOT NULL,
    edition_total INTEGER NOT NULL DEFAULT 1,
    edition_in_drop INTEGER NOT NULL,
    rarity_tier TEXT,
    art_id TEXT,
    source_image_ref TEXT,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ({_STATUS_CHECK})),
    image_path TEXT,
    metadata_path TEXT,
    ai_prompt TEXT,
    style_preset TEXT,
    negative_prompt TEXT,
    seed INTEGER,
    error_message TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (collection_id, global_index),
    FOREIGN KEY (collection_id) REFERENCES collections (id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_jobs_collection_id ON jobs(collection_id);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_collections_status ON collections(status);
"""

# Columns a status update may write alongside the status itself.
_JOB_UPDATABLE_FIELDS = frozenset({"image_path", "metadata_path", "error_message"})


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobStore:
    """Collection and job persistence backed by a single SQLite file.

    A new connection is opened per operation, so one store instance can be
    shared by the batch worker threads and the API handlers.
    """

    def __init__(self, db_path: Path):
        """Initialize the store and create the schema if needed.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_db()
        logger.info("Initialized job store at %s", self.db_path)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _initialize_db(self) -> None:
        try:
            with self._connect() as conn:
                conn.executescript(_SCHEMA)
        except sqlite3.Error as e:
            logger.error("Error initializing database %s: %s", self.db_path, e)
            raise StorageError(f"Failed to initialize database: {e}") from e

    # -- Row mapping --------------------------------------------------------

    @staticmethod
    def _row_to_collection(row: sqlite3.Row) -> Collection:
        config = CollectionConfig(
            id=row["id"],
            name=row["name"],
            symbol=row["symbol"],
            description=row["description"] or "",
            external_url=row["external_url"] or "",
            royalty_basis_points=row["royalty_basis_points"],
            creator_address=row["creator_address"] or "",
            creator_share_percent=row["creator_share_percent"],
            collection_number=row["collection_number"],
            total_supply=row["total_supply"],
            drop_supply=row["drop_supply"],
            drop_number=row["drop_number"],
            season=row["season"],
            series_slug=row["series_slug"],
            generation=GenerationParams(
                prompt=row["ai_prompt"],
                style_preset=row["style_preset"],
                negative_prompt=row["negative_prompt"],
                seed=row["seed"],
            ),
        )
        return Collection(
            config=config,
            status=CollectionStatus(row["status"]),
            package_path=row["package_path"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        return Job(
            id=row["id"],
            collection_id=row["collection_id"],
            global_index=row["global_index"],
            edition_number=row["edition_number"],
            edition_total=row["edition_total"],
            edition_in_drop=row["edition_in_drop"],
            rarity_tier=row["rarity_tier"],
            art_id=row["art_id"],
            source_image_ref=row["source_image_ref"],
            status=JobStatus(row["status"]),
            generation=GenerationParams(
                prompt=row["ai_prompt"],
                style_preset=row["style_preset"],
                negative_prompt=row["negative_prompt"],
                seed=row["seed"],
            ),
            image_path=row["image_path"],
            metadata_path=row["metadata_path"],
            error_message=row["error_message"],
            retry_count=row["retry_count"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _collection_params(config: CollectionConfig) -> dict:
        return {
            "id": config.id,
            "name": config.name,
            "symbol": config.symbol,
            "description": config.description,
            "external_url": config.external_url,
            "royalty_basis_points": config.royalty_basis_points,
            "creator_address": config.creator_address,
            "creator_share_percent": config.creator_share_percent,
            "collection_number": config.collection_number,
            "total_supply": config.total_supply,
            "drop_supply": config.drop_supply,
            "drop_number": config.drop_number,
            "season": config.season,
            "series_slug": config.series_slug,
            "ai_prompt": config.generation.prompt,
            "style_preset": config.generation.style_preset,
            "negative_prompt": config.generation.negative_prompt,
            "seed": config.generation.seed,
        }

    # -- Collections --------------------------------------------------------

    def create_collection(self, config: CollectionConfig) -> Collection:
        """Persist a new collection in ``pending`` status."""
        params = self._collection_params(config)
        now = _now()
        params.update(status=CollectionStatus.PENDING.value, created_at=now, updated_at=now)
        columns = ", ".join(params)
        placeholders = ", ".join(f":{name}" for name in params)

        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO collections ({columns}) VALUES ({placeholders})",
                    params,
                )
        except sqlite3.Error as e:
            logger.error("Error creating collection %s: %s", config.id, e)
            raise StorageError(
                f"Failed to create collection: {e}", collection_id=config.id
            ) from e

        logger.info("Collection created with ID: %s", config.id)
        return Collection(config=config, created_at=now, updated_at=now)

    def get_collection(self, collection_id: str) -> Collection | None:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM collections WHERE id = ?", (collection_id,)
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(
                f"Failed to load collection: {e}", collection_id=collection_id
            ) from e
        return self._row_to_collection(row) if row else None

    def require_collection(self, collection_id: str) -> Collection:
        collection = self.get_collection(collection_id)
        if collection is None:
            raise CollectionNotFoundError(collection_id)
        return collection

    def list_collections(self, limit: int = 50, offset: int = 0) -> list[Collection]:
        """Return collections, newest first."""
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM collections ORDER BY created_at DESC LIMIT ? OFFSET ?",
                    (limit, offset),
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to list collections: {e}") from e
        return [self._row_to_collection(row) for row in rows]

    def replace_collection_config(self, config: CollectionConfig) -> bool:
        """Overwrite a collection's configuration.

        The processor only allows this while the collection has no jobs.

        Returns:
            True if the collection existed and was updated
        """
        params = self._collection_params(config)
        params["updated_at"] = _now()
        assignments = ", ".join(f"{name} = :{name}" for name in params if name != "id")

        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"UPDATE collections SET {assignments} WHERE id = :id", params
                )
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise StorageError(
                f"Failed to update collection: {e}", collection_id=config.id
            ) from e

    def update_collection_status(
        self,
        collection_id: str,
        status: CollectionStatus,
        *,
        package_path: str | None = None,
    ) -> bool:
        try:
            with self._connect() as conn:
                if package_path is None:
                    cursor = conn.execute(
                        "UPDATE collections SET status = ?, updated_at = ? WHERE id = ?",
                        (status.value, _now(), collection_id),
                    )
                else:
                    cursor = conn.execute(
                        "UPDATE collections SET status = ?, package_path = ?, updated_at = ? "
                        "WHERE id = ?",
                        (status.value, package_path, _now(), collection_id),
                    )
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise StorageError(
                f"Failed to update collection status: {e}", collection_id=collection_id
            ) from e

    def delete_collection(self, collection_id: str) -> bool:
        """Delete a collection and, through the foreign key, all its jobs."""
        try:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM collections WHERE id = ?", (collection_id,))
                deleted = cursor.rowcount > 0
        except sqlite3.Error as e:
            raise StorageError(
                f"Failed to delete collection: {e}", collection_id=collection_id
            ) from e

        if deleted:
            logger.info("Deleted collection %s", collection_id)
        return deleted

    def job_stats(self, collection_id: str | None = None) -> dict[str, int]:
        """Count jobs per status, for one collection or across all of them."""
        sums = ",\n".join(
            f"SUM(CASE WHEN status = '{status.value}' THEN 1 ELSE 0 END) AS {status.value}_jobs"
            for status in JobStatus
        )
        query = f"SELECT COUNT(*) AS total_jobs, {sums} FROM jobs"
        params: tuple = ()
        if collection_id is not None:
            query += " WHERE collection_id = ?"
            params = (collection_id,)
        try:
            with self._connect() as conn:
                row = conn.execute(query, params).fetchone()
        except sqlite3.Error as e:
            raise StorageError(
                f"Failed to load job statistics: {e}", collection_id=collection_id
            ) from e
        return {key: row[key] or 0 for key in row.keys()}

    # -- Jobs ---------------------------------------------------------------

    def create_jobs(self, jobs: Sequence[Job]) -> list[Job]:
        """Insert *jobs* in a single transaction.

        Either every job is persisted or none is.
        """
        now = _now()
        rows = [
            (
                job.id,
                job.collection_id,
                job.global_index,
                job.edition_number,
                job.edition_total,
                job.edition_in_drop,
                job.rarity_tier,
                job.art_id,
                job.source_image_ref,
                job.status.value,
                job.generation.prompt,
                job.generation.style_preset,
                job.generation.negative_prompt,
                job.generation.seed,
                job.retry_count,
                now,
                now,
            )
            for job in jobs
        ]
        collection_id = jobs[0].collection_id if jobs else None

        try:
            with self._connect() as conn:
                conn.executemany(
                    """
                    INSERT INTO jobs (
                        id, collection_id, global_index, edition_number, edition_total,
                        edition_in_drop, rarity_tier, art_id, source_image_ref, status,
                        ai_prompt, style_preset, negative_prompt, seed, retry_count,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
        except sqlite3.Error as e:
            logger.error("Error creating jobs for collection %s: %s", collection_id, e)
            raise StorageError(
                f"Failed to create jobs: {e}", collection_id=collection_id
            ) from e

        logger.info("Created %d jobs for collection %s", len(rows), collection_id)
        return [replace(job, created_at=now, updated_at=now) for job in jobs]

    def get_job(self, job_id: str) -> Job | None:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to load job: {e}", job_id=job_id) from e
        return self._row_to_job(row) if row else None

    def require_job(self, job_id: str) -> Job:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(
        self,
        collection_id: str,
        status: JobStatus | Iterable[JobStatus] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Job]:
        """Return a collection's jobs ordered by ``global_index``.

        Args:
            collection_id: Owning collection
            status: Optional status (or statuses) to filter by
            limit: Maximum number of jobs to return
            offset: Number of matching jobs to skip

        Returns:
            Jobs in ascending ``global_index`` order
        """
        query, params = self._filtered_query("SELECT *", collection_id, status)
        query += " ORDER BY global_index ASC"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        elif offset:
            query += " LIMIT -1 OFFSET ?"
            params.append(offset)

        try:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to list jobs: {e}", collection_id=collection_id) from e
        return [self._row_to_job(row) for row in rows]

    def count_jobs(
        self,
        collection_id: str,
        status: JobStatus | Iterable[JobStatus] | None = None,
    ) -> int:
        query, params = self._filtered_query("SELECT COUNT(*)", collection_id, status)
        try:
            with self._connect() as conn:
                return conn.execute(query, params).fetchone()[0]
        except sqlite3.Error as e:
            raise StorageError(f"Failed to count jobs: {e}", collection_id=collection_id) from e

    @staticmethod
    def _filtered_query(
        select: str,
        collection_id: str,
        status: JobStatus | Iterable[JobStatus] | None,
    ) -> tuple[str, list]:
        query = f"{select} FROM jobs WHERE collection_id = ?"
        params: list = [collection_id]
        if status is not None:
            statuses = [status] if isinstance(status, JobStatus) else list(status)
            query += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(s.value for s in statuses)
        return query, params

    def claim_job(self, job_id: str) -> bool:
        """Move a job from ``pending`` to ``generating``.

        Returns:
            True if this caller claimed the job, False if it was not pending
            (already claimed, or changed by someone else)
        """
        return self.update_job(
            job_id,
            next_status(JobStatus.PENDING, JobEvent.PICK_UP),
            expected_status=JobStatus.PENDING,
        )

    def update_job(
        self,
        job_id: str,
        status: JobStatus,
        *,
        expected_status: JobStatus | Iterable[JobStatus] | None = None,
        increment_retry: bool = False,
        **fields,
    ) -> bool:
        """Write a job's status and its accompanying fields in one statement.

        Args:
            job_id: Job to update
            status: New status
            expected_status: Only update if the job currently has this
                status (or one of these statuses)
            increment_retry: Also add one to ``retry_count``
            **fields: ``image_path``, ``metadata_path`` and/or
                ``error_message`` values to write (``None`` clears)

        Returns:
            True if a row was updated

        Raises:
            ValueError: If an unknown field is passed
            StorageError: If the update fails
        """
        unknown = set(fields) - _JOB_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update job fields: {sorted(unknown)}")

        assignments = ["status = ?", "updated_at = ?"]
        params: list = [status.value, _now()]
        for name, value in fields.items():
            assignments.append(f"{name} = ?")
            params.append(value)
        if increment_retry:
            assignments.append("retry_count = retry_count + 1")

        query = f"UPDATE jobs SET {', '.join(assignments)} WHERE id = ?"
        params.append(job_id)
        if expected_status is not None:
            expected = (
                [expected_status]
                if isinstance(expected_status, JobStatus)
                else list(expected_status)
            )
            query += f" AND status IN ({', '.join('?' for _ in expected)})"
            params.extend(s.value for s in expected)

        try:
            with self._connect() as conn:
                cursor = conn.execute(query, params)
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            logger.error("Error updating job %s to %s: %s", job_id, status.value, e)
            raise StorageError(f"Failed to update job status: {e}", job_id=job_id) from e

    def delete_job(self, job_id: str) -> bool:
        try:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete job: {e}", job_id=job_id) from e

    def reset_stale_generating(self, older_than: datetime) -> list[str]:
        """Return abandoned ``generating`` jobs to ``pending``.

        Args:
            older_than: Jobs whose last update precedes this instant are reset

        Returns:
            Ids of the jobs that were reset
        """
        cutoff = older_than.astimezone(timezone.utc).isoformat()
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT id FROM jobs WHERE status = ? AND updated_at < ?",
                    (JobStatus.GENERATING.value, cutoff),
                ).fetchall()
                job_ids = [row["id"] for row in rows]
                conn.executemany(
                    "UPDATE jobs SET status = ?, error_message = NULL, updated_at = ? "
                    "WHERE id = ? AND status = ?",
                    [
                        (JobStatus.PENDING.value, _now(), job_id, JobStatus.GENERATING.value)
                        for job_id in job_ids
                    ],
                )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to reset stale jobs: {e}") from e
        return job_ids
