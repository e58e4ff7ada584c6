"""Batch orchestration and job lifecycle operations.

:class:`BatchProcessor` is the only component that changes a job's status.
It pulls bounded batches of ``pending`` jobs for a collection, drives each
through image production, and exposes the operator-triggered transitions
(approve, regenerate, delete, singly or in bulk) on top of the
:mod:`~mintworks.core.lifecycle` table.

Single-flight
-------------
One batch at a time, for any collection, per processor.  A second batch
request while one is running fails immediately with
:class:`~mintworks.core.errors.ConcurrentBatchError`; nothing is queued.
The guard is an object owned by the processor, so independent processors
(e.g. one per test) never see each other's state.

Within a batch, jobs run sequentially unless ``batch_concurrency`` is
raised.  Either way:

- a job is only worked on after a conditional ``pending -> generating``
  update succeeds, so no job is ever generated twice at once
- results are reported in fetch order, independent of completion order
- one job's failure never stops the others

Image production
----------------
Jobs with a prompt are sent to the configured
:class:`~mintworks.core.generators.ImageGenerator`.  Jobs created from a
rarity plan carry a source image instead, which is normalised to PNG.

Crash recovery
--------------
A crash mid-batch leaves jobs in ``generating``.  With
``recover_stale_on_startup`` enabled, constructing a processor resets jobs
that have been ``generating`` for longer than ``stale_generating_seconds``
back to ``pending``.  :meth:`BatchProcessor.recover_stale_jobs` does the
same on demand.

Usage
-----
::

    processor = BatchProcessor(store, artifacts, generator, config)
    result = processor.process_initial_batch(collection_id)
    for failure in result.failures:
        print(failure.job_id, failure.message)
    processor.approve_job(result.attempted[0].id)
"""

from __future__ import annotations

import logging
import random
import threading
import uuid
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from mintworks.core.artifacts import ArtifactStore
from mintworks.core.config import MintworksConfig
from mintworks.core.errors import (
    CollectionLockedError,
    ConcurrentBatchError,
    ConstructionError,
    InvalidTransitionError,
    JobGenerationError,
    JobNotFoundError,
    MetadataGenerationError,
    RetryLimitExceededError,
)
from mintworks.core.generators import ImageGenerator
from mintworks.core.imaging import content_hash, extract_palette, to_png
from mintworks.core.job_store import JobStore
from mintworks.core.lifecycle import JobEvent, next_status, require_transition
from mintworks.core.metadata import build_metadata, rarity_label
from mintworks.core.models import (
    BatchResult,
    BulkFailure,
    BulkJobResult,
    Collection,
    CollectionConfig,
    CollectionProgress,
    CollectionStatus,
    Job,
    JobFailure,
    JobStatus,
    MetadataExtras,
    RarityTier,
)
from mintworks.core.rarity import expand_rarity_plan, plan_job_seeds

logger = logging.getLogger(__name__)


class SingleFlightGuard:
    """Non-blocking mutex: the first caller holds it, everyone else fails fast."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @property
    def is_held(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def hold(self) -> Iterator[None]:
        """Hold the guard for the duration of the block.

        Raises:
            ConcurrentBatchError: If the guard is already held
        """
        if not self._lock.acquire(blocking=False):
            raise ConcurrentBatchError()
        try:
            yield
        finally:
            self._lock.release()


class BatchProcessor:
    """Drives collections and their jobs through the generation workflow.

    Args:
        store: Collection and job persistence
        artifacts: Produced image, metadata and package files
        generator: Image generation provider for prompt-driven jobs
        config: Batch sizes, retry ceiling, recovery and metadata settings
        guard: Single-flight guard; a fresh one is created if omitted
    """

    def __init__(
        self,
        store: JobStore,
        artifacts: ArtifactStore,
        generator: ImageGenerator,
        config: MintworksConfig,
        guard: SingleFlightGuard | None = None,
    ):
        self.store = store
        self.artifacts = artifacts
        self.generator = generator
        self.config = config
        self._guard = guard or SingleFlightGuard()

        if config.recover_stale_on_startup:
            self.recover_stale_jobs()

    @property
    def is_processing(self) -> bool:
        return self._guard.is_held

    # -- Collections --------------------------------------------------------

    def create_collection(self, collection_config: CollectionConfig) -> Collection:
        return self.store.create_collection(collection_config)

    def update_collection(self, collection_id: str, **changes) -> Collection:
        """Change a collection's configuration while it has no jobs.

        Raises:
            CollectionNotFoundError: If the collection does not exist
            CollectionLockedError: If jobs have already been created
            ValueError: If the new configuration is invalid
        """
        collection = self.store.require_collection(collection_id)
        if self.store.count_jobs(collection_id):
            raise CollectionLockedError(collection_id, "jobs have already been created")

        changes.pop("id", None)
        updated = replace(collection.config, **changes)
        self.store.replace_collection_config(updated)
        logger.info("Updated collection %s: %s", collection_id, sorted(changes))
        return self.store.require_collection(collection_id)

    def delete_collection(self, collection_id: str) -> bool:
        """Delete a collection, its jobs and every file they produced."""
        collection = self.store.require_collection(collection_id)
        removed = self.cleanup_collection_files(collection_id)
        removed += self.artifacts.delete_sources(collection_id)
        if self.artifacts.delete(collection.package_path):
            removed += 1
        deleted = self.store.delete_collection(collection_id)
        logger.info("Deleted collection %s (%d files removed)", collection_id, removed)
        return deleted

    def cleanup_collection_files(self, collection_id: str) -> int:
        """Remove every job's produced image and metadata file.

        Job rows are left untouched.

        Returns:
            Number of files removed
        """
        removed = 0
        for job in self.store.list_jobs(collection_id):
            removed += self.artifacts.delete(job.image_path)
            removed += self.artifacts.delete(job.metadata_path)
        logger.info("Cleaned up %d files for collection %s", removed, collection_id)
        return removed

    # -- Job creation -------------------------------------------------------

    def _require_no_jobs(self, collection_id: str) -> None:
        if self.store.count_jobs(collection_id):
            raise CollectionLockedError(collection_id, "jobs have already been created")

    def create_jobs_for_collection(self, collection_id: str) -> list[Job]:
        """Create one prompt-driven job per edition of a collection.

        Jobs share the collection's prompt and advanced parameters and are
        numbered ``1 .. total_supply`` in a single transaction.

        Raises:
            CollectionLockedError: If the collection already has jobs
            ConstructionError: If the collection has no prompt
        """
        collection = self.store.require_collection(collection_id)
        self._require_no_jobs(collection_id)
        cfg = collection.config
        if not cfg.generation.prompt or not cfg.generation.prompt.strip():
            raise ConstructionError(f"Collection {collection_id} has no generation prompt")

        jobs = [
            Job(
                id=str(uuid.uuid4()),
                collection_id=collection_id,
                global_index=index,
                edition_number=index + 1,
                edition_total=cfg.total_supply,
                edition_in_drop=index + 1,
                rarity_tier=rarity_label(index + 1, cfg.total_supply),
                art_id=f"{cfg.symbol}-{index + 1}",
                generation=cfg.generation,
            )
            for index in range(cfg.total_supply)
        ]
        created = self.store.create_jobs(jobs)
        logger.info("Created %d jobs for collection %s", len(created), collection_id)
        return created

    def create_jobs_from_plan(
        self,
        collection_id: str,
        tiers: Sequence[RarityTier],
        *,
        randomize: bool = False,
        rng: random.Random | None = None,
    ) -> list[Job]:
        """Create jobs for a collection from a rarity plan.

        ``source_images`` may hold file paths or raw image bytes; bytes are
        stored under the collection's source directory first.  The plan is
        validated before anything is written.

        Raises:
            TierCapacityError: If a tier has too few source images
            SupplyMismatchError: If the plan does not cover ``total_supply``
            CollectionLockedError: If the collection already has jobs
        """
        collection = self.store.require_collection(collection_id)
        self._require_no_jobs(collection_id)
        total_supply = collection.config.total_supply
        expand_rarity_plan(tiers, total_supply)

        stored_tiers = [self._store_tier_sources(collection_id, tier) for tier in tiers]
        seeds = plan_job_seeds(stored_tiers, total_supply, randomize=randomize, rng=rng)
        jobs = [
            Job(
                id=str(uuid.uuid4()),
                collection_id=collection_id,
                global_index=seed.global_index,
                edition_number=seed.edition_number,
                edition_total=seed.edition_total,
                edition_in_drop=seed.global_index + 1,
                rarity_tier=seed.rarity_tier,
                art_id=seed.art_id,
                source_image_ref=seed.source_image_ref,
            )
            for seed in seeds
        ]
        created = self.store.create_jobs(jobs)
        logger.info(
            "Created %d jobs from %d tiers for collection %s (randomized=%s)",
            len(created),
            len(tiers),
            collection_id,
            randomize,
        )
        return created

    def _store_tier_sources(self, collection_id: str, tier: RarityTier) -> RarityTier:
        refs = []
        for index, source in enumerate(tier.source_images[: tier.images_needed]):
            if isinstance(source, (bytes, bytearray)):
                refs.append(
                    self.artifacts.save_source_image(
                        collection_id, f"{tier.art_prefix}-{index + 1}", bytes(source)
                    )
                )
            else:
                refs.append(str(source))
        return replace(tier, source_images=tuple(refs))

    # -- Batches ------------------------------------------------------------

    def process_initial_batch(self, collection_id: str, batch_size: int | None = None) -> BatchResult:
        """Process a small quality-check batch (``initial_batch_size``)."""
        return self.process_batch(
            collection_id,
            batch_size or self.config.initial_batch_size,
            stage=CollectionStatus.GENERATING_INITIAL,
        )

    def process_continuation_batch(
        self, collection_id: str, batch_size: int | None = None
    ) -> BatchResult:
        """Process a bulk batch (``continue_batch_size``)."""
        return self.process_batch(
            collection_id,
            batch_size or self.config.continue_batch_size,
            stage=CollectionStatus.GENERATING_BATCH,
        )

    def process_batch(
        self,
        collection_id: str,
        batch_size: int,
        *,
        stage: CollectionStatus = CollectionStatus.GENERATING_BATCH,
    ) -> BatchResult:
        """Drive up to *batch_size* pending jobs through image production.

        Jobs are taken in ascending ``global_index`` order.  A collection
        without pending jobs yields an empty result rather than an error.

        Raises:
            ConcurrentBatchError: If another batch is in flight
            CollectionNotFoundError: If the collection does not exist
            StorageError: If pending jobs cannot be fetched
        """
        if batch_size < 1:
            raise ValueError(f"Batch size must be >= 1, got {batch_size}")

        with self._guard.hold():
            self.store.require_collection(collection_id)
            pending = self.store.list_jobs(collection_id, JobStatus.PENDING, limit=batch_size)
            result = BatchResult(collection_id=collection_id, batch_size=batch_size)
            if not pending:
                logger.info("No pending jobs for collection %s", collection_id)
                return result

            logger.info(
                "Processing batch of %d jobs for collection %s", len(pending), collection_id
            )
            self.store.update_collection_status(collection_id, stage)

            for job, failure in self._run_jobs(pending):
                result.attempted.append(job)
                if failure is not None:
                    result.failures.append(failure)

            final_status = (
                CollectionStatus.ERROR if result.succeeded == 0 else CollectionStatus.IN_REVIEW
            )
            self.store.update_collection_status(collection_id, final_status)

        logger.info(
            "Batch finished for collection %s: %d succeeded, %d failed",
            collection_id,
            result.succeeded,
            result.failed,
        )
        return result

    def _run_jobs(self, jobs: Sequence[Job]) -> list[tuple[Job, JobFailure | None]]:
        workers = min(self.config.batch_concurrency, len(jobs))
        if workers <= 1:
            return [self._process_job(job) for job in jobs]
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="mintworks-job") as pool:
            # map() yields in submission order.
            return list(pool.map(self._process_job, jobs))

    def _process_job(self, job: Job) -> tuple[Job, JobFailure | None]:
        if not self.store.claim_job(job.id):
            current = self.store.get_job(job.id) or job
            message = f"Job was no longer pending (status: {current.status.value})"
            logger.warning("Skipping job %s: %s", job.id, message)
            return current, JobFailure(job.id, job.global_index, message)

        try:
            image_bytes = self._produce_image(job)
            image_path = self.artifacts.save_image(job.id, image_bytes)
        except Exception as e:
            error = e if isinstance(e, JobGenerationError) else JobGenerationError(job.id, str(e))
            logger.error("Job %s failed: %s", job.id, error.message)
            self.store.update_job(
                job.id,
                next_status(JobStatus.GENERATING, JobEvent.FAIL),
                expected_status=JobStatus.GENERATING,
                increment_retry=True,
                error_message=error.message,
            )
            return (
                self.store.get_job(job.id) or job,
                JobFailure(job.id, job.global_index, error.message),
            )

        if not self.store.update_job(
            job.id,
            next_status(JobStatus.GENERATING, JobEvent.SUCCEED),
            expected_status=JobStatus.GENERATING,
            image_path=image_path,
            error_message=None,
        ):
            # Deleted or recovered while generating; the image belongs to no one.
            self.artifacts.delete(image_path)
            current = self.store.get_job(job.id) or job
            message = "Job changed while its image was being generated"
            logger.warning("Discarding image for job %s: %s", job.id, message)
            return current, JobFailure(job.id, job.global_index, message)

        logger.info("Job %s generated (%s)", job.id, image_path)
        return self.store.require_job(job.id), None

    def _produce_image(self, job: Job) -> bytes:
        if job.generation.prompt:
            return self.generator.generate(job.generation.prompt, job.generation)
        if job.source_image_ref:
            if not self.artifacts.exists(job.source_image_ref):
                raise JobGenerationError(job.id, f"Source image missing: {job.source_image_ref}")
            return to_png(self.artifacts.read_bytes(job.source_image_ref))
        raise JobGenerationError(job.id, "Job has neither a prompt nor a source image")

    # -- Transitions ----------------------------------------------------------

    def approve_job(
        self,
        job_id: str,
        *,
        color_palette: bool = False,
        sha256: bool = False,
    ) -> Job:
        """Generate and store metadata, then mark the job ``approved``.

        Args:
            job_id: Job to approve
            color_palette: Add palette_primary / palette_secondary attributes
            sha256: Add the image's SHA-256 hash

        Raises:
            InvalidTransitionError: If the job is not ``generated``
            MetadataGenerationError: If metadata could not be produced; the
                job stays ``generated``
        """
        job = self.store.require_job(job_id)
        target = require_transition(job, JobEvent.APPROVE)
        collection = self.store.require_collection(job.collection_id)

        try:
            extras = MetadataExtras()
            if color_palette or sha256:
                if not self.artifacts.exists(job.image_path):
                    raise FileNotFoundError(f"Produced image missing: {job.image_path}")
                image_bytes = self.artifacts.read_bytes(job.image_path)
                extras = MetadataExtras(
                    color_palette=extract_palette(image_bytes) if color_palette else None,
                    content_hash=content_hash(image_bytes) if sha256 else None,
                )
            metadata = build_metadata(
                job,
                collection.config,
                extras,
                image_uri_template=self.config.image_uri_template,
                min_width=self.config.min_index_width,
            )
            metadata_path = self.artifacts.save_metadata(job.id, metadata)
        except (ValueError, OSError) as e:
            logger.error("Metadata generation failed for job %s: %s", job.id, e)
            raise MetadataGenerationError(job.id, str(e)) from e

        if not self.store.update_job(
            job.id, target, expected_status=JobStatus.GENERATED, metadata_path=metadata_path
        ):
            self.artifacts.delete(metadata_path)
            current = self.store.require_job(job.id)
            raise InvalidTransitionError(job.id, current.status.value, JobEvent.APPROVE.value)

        logger.info("Job %s approved", job.id)
        return self.store.require_job(job.id)

    def regenerate_job(self, job_id: str) -> Job:
        """Return a ``generated`` or ``error`` job to ``pending``.

        Clears the image, metadata and error fields and deletes the prior
        image.  The job is picked up by the next batch.

        Raises:
            InvalidTransitionError: If the job is in any other status
            RetryLimitExceededError: If a failed job has reached ``max_retries``
        """
        job = self.store.require_job(job_id)
        target = require_transition(job, JobEvent.REGENERATE)

        limit = self.config.max_retries
        if job.status == JobStatus.ERROR and limit and job.retry_count >= limit:
            raise RetryLimitExceededError(job.id, job.retry_count, limit)

        if not self.store.update_job(
            job.id,
            target,
            expected_status=job.status,
            image_path=None,
            metadata_path=None,
            error_message=None,
        ):
            current = self.store.require_job(job.id)
            raise InvalidTransitionError(job.id, current.status.value, JobEvent.REGENERATE.value)

        self.artifacts.delete(job.image_path)
        self.artifacts.delete(job.metadata_path)
        logger.info("Job %s reset to pending for regeneration", job.id)
        return self.store.require_job(job.id)

    def delete_job(self, job_id: str) -> bool:
        """Delete a job and its produced files.

        Raises:
            InvalidTransitionError: If the job is currently ``generating``
        """
        job = self.store.require_job(job_id)
        if job.status == JobStatus.GENERATING:
            raise InvalidTransitionError(job.id, job.status.value, "delete")

        self.artifacts.delete(job.image_path)
        self.artifacts.delete(job.metadata_path)
        deleted = self.store.delete_job(job.id)
        logger.info("Deleted job %s", job.id)
        return deleted

    # -- Bulk transitions -----------------------------------------------------

    def approve_jobs(
        self,
        job_ids: Sequence[str],
        *,
        color_palette: bool = False,
        sha256: bool = False,
    ) -> BulkJobResult:
        """Approve each job in *job_ids*, collecting per-job errors.

        A job that is missing, not ``generated`` or whose metadata cannot be
        produced is reported in :attr:`BulkJobResult.errors`; the remaining
        jobs are still approved.
        """
        return self._apply_each(
            "approve",
            job_ids,
            lambda job_id: self.approve_job(job_id, color_palette=color_palette, sha256=sha256),
        )

    def regenerate_jobs(self, job_ids: Sequence[str]) -> BulkJobResult:
        """Reset each job in *job_ids* to ``pending``, collecting per-job errors."""
        return self._apply_each("regenerate", job_ids, self.regenerate_job)

    def _apply_each(
        self, action: str, job_ids: Sequence[str], operation: Callable[[str], Job]
    ) -> BulkJobResult:
        result = BulkJobResult(action=action)
        for job_id in job_ids:
            try:
                result.jobs.append(operation(job_id))
            except (
                JobNotFoundError,
                InvalidTransitionError,
                RetryLimitExceededError,
                MetadataGenerationError,
            ) as e:
                logger.warning("Cannot %s job %s: %s", action, job_id, e)
                result.errors.append(BulkFailure(job_id, str(e)))
        logger.info(
            "Bulk %s: %d succeeded, %d failed", action, len(result.jobs), len(result.errors)
        )
        return result

    # -- Progress and recovery ----------------------------------------------

    def collection_progress(self, collection_id: str) -> CollectionProgress:
        collection = self.store.require_collection(collection_id)
        stats = self.store.job_stats(collection_id)
        return CollectionProgress(
            collection_id=collection_id,
            collection_name=collection.config.name,
            is_processing=self.is_processing,
            **stats,
        )

    def recover_stale_jobs(self, max_age_seconds: int | None = None) -> list[str]:
        """Reset jobs stuck in ``generating`` back to ``pending``.

        Args:
            max_age_seconds: Minimum age of a stale job; defaults to
                ``stale_generating_seconds``

        Returns:
            Ids of the jobs that were reset
        """
        if max_age_seconds is None:
            max_age_seconds = self.config.stale_generating_seconds
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=max_age_seconds)
        job_ids = self.store.reset_stale_generating(cutoff)
        if job_ids:
            logger.warning(
                "Reset %d jobs left in 'generating' for over %ds back to 'pending'",
                len(job_ids),
                max_age_seconds,
            )
        return job_ids
