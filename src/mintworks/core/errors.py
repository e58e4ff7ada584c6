"""Exception taxonomy for Mintworks.

Construction errors (tier capacity, supply mismatch) are raised before any
job is persisted. Per-job generation failures are recorded on the job and
never abort a batch. Storage failures propagate with the job or collection
id that was being touched.
"""

from __future__ import annotations


class MintworksError(Exception):
    """Base class for every error raised by Mintworks."""


# ---------------------------------------------------------------------------
# Construction errors: fatal, the caller must fix its input.
# ---------------------------------------------------------------------------


class ConstructionError(MintworksError):
    """A rarity plan or collection configuration cannot be expanded."""


class TierCapacityError(ConstructionError):
    """A rarity tier does not have enough source images for its editions."""

    def __init__(self, tier_label: str, needed: int, provided: int) -> None:
        self.tier_label = tier_label
        self.needed = needed
        self.provided = provided
        self.shortfall = needed - provided
        super().__init__(
            f'Tier "{tier_label}" needs {needed} images but only {provided} provided '
            f"(shortfall: {self.shortfall})"
        )


class SupplyMismatchError(ConstructionError):
    """The expanded plan does not cover the declared total supply exactly."""

    def __init__(self, expected: int, produced: int) -> None:
        self.expected = expected
        self.produced = produced
        super().__init__(
            f"Job queue length ({produced}) doesn't match total supply ({expected})"
        )


# ---------------------------------------------------------------------------
# Orchestration errors.
# ---------------------------------------------------------------------------


class ConcurrentBatchError(MintworksError):
    """A batch is already in flight; the caller should retry later."""

    def __init__(self, message: str = "Job processing already in progress") -> None:
        super().__init__(message)


class JobGenerationError(MintworksError):
    """The image generation capability failed for one job."""

    def __init__(self, job_id: str | None, message: str) -> None:
        self.job_id = job_id
        self.message = message
        super().__init__(message)


class InvalidTransitionError(MintworksError):
    """A job lifecycle event is not allowed from the job's current status."""

    def __init__(self, job_id: str, current: str, event: str) -> None:
        self.job_id = job_id
        self.current = current
        self.event = event
        super().__init__(f"Cannot {event} job {job_id} in '{current}' status")


class RetryLimitExceededError(MintworksError):
    """A job has failed more often than the configured retry ceiling."""

    def __init__(self, job_id: str, retry_count: int, limit: int) -> None:
        self.job_id = job_id
        self.retry_count = retry_count
        self.limit = limit
        super().__init__(
            f"Job {job_id} has failed {retry_count} times (limit {limit}); "
            "delete it or raise MINTWORKS_MAX_RETRIES"
        )


class MetadataGenerationError(MintworksError):
    """Metadata could not be produced for an approved job."""

    def __init__(self, job_id: str, reason: str) -> None:
        self.job_id = job_id
        super().__init__(f"Failed to generate metadata for job {job_id}: {reason}")


# ---------------------------------------------------------------------------
# Lookup and storage errors.
# ---------------------------------------------------------------------------


class JobNotFoundError(MintworksError):
    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class CollectionNotFoundError(MintworksError):
    def __init__(self, collection_id: str) -> None:
        self.collection_id = collection_id
        super().__init__(f"Collection not found: {collection_id}")


class StorageError(MintworksError):
    """A persistence operation failed.

    Never retried automatically. Carries the job or collection id being
    touched so the failure can be diagnosed from logs or API responses.
    """

    def __init__(
        self,
        message: str,
        *,
        job_id: str | None = None,
        collection_id: str | None = None,
    ) -> None:
        self.job_id = job_id
        self.collection_id = collection_id
        context = []
        if collection_id:
            context.append(f"collection={collection_id}")
        if job_id:
            context.append(f"job={job_id}")
        suffix = f" ({', '.join(context)})" if context else ""
        super().__init__(f"{message}{suffix}")


# ---------------------------------------------------------------------------
# Packaging errors.
# ---------------------------------------------------------------------------


class ArtifactMissingError(MintworksError):
    """A job's produced image or metadata file is missing at assembly time."""

    def __init__(self, job_id: str, path: str | None) -> None:
        self.job_id = job_id
        self.path = path
        super().__init__(f"Artifact missing for job {job_id}: {path or '<unset>'}")


class NoEligibleJobsError(MintworksError):
    """Package assembly was requested for a collection with no finalized jobs."""

    def __init__(self, collection_id: str | None) -> None:
        self.collection_id = collection_id
        super().__init__(f"No approved jobs found for collection {collection_id}")


class CollectionLockedError(MintworksError):
    """A collection's configuration or job set can no longer be changed."""

    def __init__(self, collection_id: str, reason: str) -> None:
        self.collection_id = collection_id
        super().__init__(f"Collection {collection_id} is locked: {reason}")
