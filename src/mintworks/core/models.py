"""Data models for collections, rarity tiers, and jobs.

Collections and tiers are immutable once built; a ``Job`` is a snapshot of a
row in the job store and is only changed through the store's update calls.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

# Tier labels that denote one-of-one editions.  Editions-per-image is forced
# to 1 for these regardless of what the caller supplied.
UNIQUE_TIER_LABELS = frozenset({"1/1", "1of1", "1-of-1", "one of one", "unique", "legendary 1/1"})


class JobStatus(str, Enum):
    """Closed set of job lifecycle states."""

    PENDING = "pending"
    GENERATING = "generating"
    GENERATED = "generated"
    APPROVED = "approved"
    ERROR = "error"


class CollectionStatus(str, Enum):
    PENDING = "pending"
    GENERATING_INITIAL = "generating_initial"
    GENERATING_BATCH = "generating_batch"
    IN_REVIEW = "in_review"
    PACKAGED = "packaged"
    ERROR = "error"


@dataclass(frozen=True)
class GenerationParams:
    """Prompt and advanced parameters passed to the image generation capability."""

    prompt: str | None = None
    style_preset: str | None = None
    negative_prompt: str | None = None
    seed: int | None = None

    def validate(self) -> None:
        """Validate generation parameters.

        Raises:
            ValueError: If the seed is out of range
        """
        if self.seed is not None and not 0 <= self.seed <= 2**32 - 1:
            raise ValueError(f"Seed must be 0 to {2**32 - 1}, got {self.seed}")


@dataclass(frozen=True)
class CollectionConfig:
    """Immutable description of a collection.

    Jobs hold only ``collection_id`` and look the configuration up when they
    need it, so there is a single copy that cannot drift.

    Attributes:
        id: Stable collection identifier
        name: Project name used in every NFT name
        symbol: Ticker symbol (at most 10 characters)
        description: Collection description copied into each metadata document
        external_url: Project website
        royalty_basis_points: Secondary sale royalty, 0-10000
        creator_address: Creator wallet address
        creator_share_percent: Creator share of royalties, 0-100
        collection_number: Free-form collection number (e.g. "001")
        total_supply: Number of editions in the collection (> 0)
        drop_supply: Editions in the current drop (<= total_supply)
        drop_number: Drop counter, starting at 1
        season: Optional season identifier
        series_slug: Optional series identifier
        generation: Default prompt parameters for AI-generated jobs
    """

    id: str
    name: str
    symbol: str
    total_supply: int
    description: str = ""
    external_url: str = ""
    royalty_basis_points: int = 0
    creator_address: str = ""
    creator_share_percent: int = 100
    collection_number: str = "1"
    drop_supply: int | None = None
    drop_number: int = 1
    season: str | None = None
    series_slug: str | None = None
    generation: GenerationParams = field(default_factory=GenerationParams)

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValueError("Collection name is required")
        if not self.symbol or len(self.symbol) > 10:
            raise ValueError(f"Symbol must be 1-10 characters, got {self.symbol!r}")
        if self.total_supply <= 0:
            raise ValueError(f"Total supply must be positive, got {self.total_supply}")
        if not 0 <= self.royalty_basis_points <= 10000:
            raise ValueError(
                f"Royalty must be 0-10000 basis points, got {self.royalty_basis_points}"
            )
        if not 0 <= self.creator_share_percent <= 100:
            raise ValueError(
                f"Creator share must be 0-100 percent, got {self.creator_share_percent}"
            )
        if self.drop_supply is None:
            object.__setattr__(self, "drop_supply", self.total_supply)
        if not 1 <= self.drop_supply <= self.total_supply:
            raise ValueError(
                f"Drop supply must be 1-{self.total_supply}, got {self.drop_supply}"
            )
        if self.drop_number < 1:
            raise ValueError(f"Drop number must be >= 1, got {self.drop_number}")
        self.generation.validate()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Collection:
    """A persisted collection: its configuration plus mutable bookkeeping."""

    config: CollectionConfig
    status: CollectionStatus = CollectionStatus.PENDING
    package_path: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def id(self) -> str:
        return self.config.id

    def to_dict(self) -> dict[str, Any]:
        data = self.config.to_dict()
        data.update(
            {
                "status": self.status.value,
                "package_path": self.package_path,
                "created_at": self.created_at,
                "updated_at": self.updated_at,
            }
        )
        return data


@dataclass(frozen=True)
class RarityTier:
    """A bucket of editions sharing a supply count and image-to-editions ratio.

    ``source_images`` is an ordered tuple of opaque image references (paths,
    upload handles, or raw bytes, depending on the flow).
    """

    tier_label: str
    nft_count: int
    editions_per_image: int = 1
    art_id_prefix: str | None = None
    source_images: tuple = ()

    def __post_init__(self) -> None:
        if self.nft_count <= 0:
            raise ValueError(f"Tier '{self.tier_label}': nft_count must be positive")
        if self.editions_per_image < 1:
            raise ValueError(f"Tier '{self.tier_label}': editions_per_image must be >= 1")
        if not isinstance(self.source_images, tuple):
            object.__setattr__(self, "source_images", tuple(self.source_images))
        if self.is_unique and self.editions_per_image != 1:
            logger.debug(
                "Tier '%s' is one-of-one; forcing editions_per_image from %d to 1.",
                self.tier_label,
                self.editions_per_image,
            )
            object.__setattr__(self, "editions_per_image", 1)

    @property
    def is_unique(self) -> bool:
        return self.tier_label.strip().lower() in UNIQUE_TIER_LABELS

    @property
    def images_needed(self) -> int:
        return math.ceil(self.nft_count / self.editions_per_image)

    @property
    def art_prefix(self) -> str:
        return self.art_id_prefix or self.tier_label


@dataclass(frozen=True)
class JobSeed:
    """One planned edition produced by the rarity plan expander."""

    global_index: int
    rarity_tier: str
    art_id: str
    edition_number: int
    edition_total: int
    source_image_ref: Any = None


@dataclass(frozen=True)
class Job:
    """Snapshot of one job row.

    Attributes:
        id: Unique, stable job id
        collection_id: Owning collection
        global_index: 0-based collection-wide position, never changed
        edition_number: Edition within its source image (1-based)
        edition_total: Editions allocated to its source image
        edition_in_drop: 1-based position within the drop
        rarity_tier: Tier label
        art_id: Source artwork identifier
        source_image_ref: Source image for direct-image jobs
        status: Lifecycle status
        generation: Prompt parameters for AI-generated jobs
        image_path: Produced image, set once generation succeeds
        metadata_path: Produced metadata, set once approved
        error_message: Last generation failure
        retry_count: Number of failed generation attempts
    """

    id: str
    collection_id: str
    global_index: int
    edition_number: int = 1
    edition_total: int = 1
    edition_in_drop: int = 1
    rarity_tier: str | None = None
    art_id: str | None = None
    source_image_ref: str | None = None
    status: JobStatus = JobStatus.PENDING
    generation: GenerationParams = field(default_factory=GenerationParams)
    image_path: str | None = None
    metadata_path: str | None = None
    error_message: str | None = None
    retry_count: int = 0
    created_at: str | None = None
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass(frozen=True)
class ColorPalette:
    primary: str = "#000000"
    secondary: str = "#000000"


@dataclass(frozen=True)
class MetadataExtras:
    """Optional content-derived fields added to a metadata document."""

    color_palette: ColorPalette | None = None
    content_hash: str | None = None


@dataclass(frozen=True)
class JobFailure:
    job_id: str
    global_index: int
    message: str


@dataclass
class BatchResult:
    """Structured outcome of one batch run.

    ``attempted`` lists every job the batch touched, in processing order,
    as it looked after its attempt.  ``failures`` holds one entry per failed
    job in the same order.
    """

    collection_id: str
    batch_size: int
    attempted: list[Job] = field(default_factory=list)
    failures: list[JobFailure] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return len(self.attempted) - len(self.failures)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def nothing_to_do(self) -> bool:
        return not self.attempted

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection_id": self.collection_id,
            "batch_size": self.batch_size,
            "attempted": len(self.attempted),
            "succeeded": self.succeeded,
            "failed": self.failed,
            "nothing_to_do": self.nothing_to_do,
            "jobs": [job.to_dict() for job in self.attempted],
            "failures": [asdict(failure) for failure in self.failures],
        }


@dataclass(frozen=True)
class BulkFailure:
    job_id: str
    error: str


@dataclass
class BulkJobResult:
    """Outcome of applying one operator action to a list of jobs.

    ``jobs`` holds every job the action succeeded on and ``errors`` every
    id it could not be applied to, both in request order.
    """

    action: str
    jobs: list[Job] = field(default_factory=list)
    errors: list[BulkFailure] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "succeeded": len(self.jobs),
            "failed": len(self.errors),
            "jobs": [job.to_dict() for job in self.jobs],
            "errors": [asdict(failure) for failure in self.errors],
        }


@dataclass(frozen=True)
class SkippedJob:
    job_id: str
    reason: str


@dataclass
class PackageResult:
    """Outcome of a package build: archive path plus per-job accounting."""

    path: str
    included: list[str] = field(default_factory=list)
    skipped: list[SkippedJob] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "included": len(self.included),
            "skipped": [asdict(entry) for entry in self.skipped],
        }


@dataclass(frozen=True)
class CollectionProgress:
    collection_id: str
    collection_name: str
    total_jobs: int = 0
    pending_jobs: int = 0
    generating_jobs: int = 0
    generated_jobs: int = 0
    approved_jobs: int = 0
    error_jobs: int = 0
    is_processing: bool = False

    @property
    def progress_percentage(self) -> int:
        if self.total_jobs == 0:
            return 0
        return round(self.approved_jobs / self.total_jobs * 100)

    @property
    def can_continue(self) -> bool:
        return self.pending_jobs > 0 and not self.is_processing

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["progress_percentage"] = self.progress_percentage
        data["can_continue"] = self.can_continue
        return data
