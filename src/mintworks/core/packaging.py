"""Collection package assembly.

Both flows produce the same archive layout::

    collection.json          collection-level manifest
    README.md                human-readable summary
    images/00000.png         one image per edition, named by zero-padded
    json/00000.json          global index, with matching metadata

:class:`PackageAssembler` builds it from persisted jobs (approved jobs by
default).  :class:`DirectPackageBuilder` builds it in one pass straight from
uploaded images and a rarity plan, without touching the job store.

Entries are written to the archive one at a time, so only a single image
is held in memory.  The archive is written under a temporary name and moved
into place once complete.
"""

from __future__ import annotations

import logging
import os
import random
import uuid
import zipfile
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path

from mintworks.core.artifacts import ArtifactStore
from mintworks.core.config import MintworksConfig
from mintworks.core.errors import ArtifactMissingError, NoEligibleJobsError
from mintworks.core.imaging import content_hash, extract_palette, to_png
from mintworks.core.job_store import JobStore
from mintworks.core.metadata import (
    build_collection_metadata,
    build_metadata,
    format_index,
    generate_readme,
    index_width,
    serialize_metadata,
)
from mintworks.core.models import (
    CollectionConfig,
    CollectionStatus,
    Job,
    JobStatus,
    MetadataExtras,
    PackageResult,
    RarityTier,
    SkippedJob,
)
from mintworks.core.rarity import plan_job_seeds

logger = logging.getLogger(__name__)

MANIFEST_NAME = "collection.json"
README_NAME = "README.md"


@contextmanager
def _open_archive(target: Path) -> Iterator[zipfile.ZipFile]:
    partial = target.with_name(target.name + ".partial")
    try:
        with zipfile.ZipFile(partial, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            yield archive
        os.replace(partial, target)
    except BaseException:
        partial.unlink(missing_ok=True)
        raise


def _write_manifest(archive: zipfile.ZipFile, config: CollectionConfig, uri_template: str) -> None:
    manifest = build_collection_metadata(config, image_uri_template=uri_template)
    archive.writestr(MANIFEST_NAME, serialize_metadata(manifest))


def _write_readme(
    archive: zipfile.ZipFile, config: CollectionConfig, result: PackageResult, min_width: int
) -> None:
    readme = generate_readme(
        config,
        len(result.included),
        skipped=[entry.job_id for entry in result.skipped],
        min_width=min_width,
    )
    archive.writestr(README_NAME, readme)


class PackageAssembler:
    """Bundles finalized jobs of a persisted collection into a ZIP archive."""

    def __init__(self, store: JobStore, artifacts: ArtifactStore, config: MintworksConfig):
        self.store = store
        self.artifacts = artifacts
        self.config = config

    def assemble(
        self,
        collection_id: str,
        statuses: Iterable[JobStatus] = (JobStatus.APPROVED,),
    ) -> PackageResult:
        """Build the package for a collection.

        Jobs whose image or metadata file cannot be found are left out and
        reported in :attr:`PackageResult.skipped`.  ``generated`` jobs (when
        included in *statuses*) have no metadata file yet; their metadata is
        built on the fly.

        Args:
            collection_id: Collection to package
            statuses: Job statuses eligible for inclusion

        Returns:
            Archive path plus included and skipped job ids

        Raises:
            CollectionNotFoundError: If the collection does not exist
            NoEligibleJobsError: If no job has an eligible status
        """
        collection = self.store.require_collection(collection_id)
        cfg = collection.config
        jobs = self.store.list_jobs(collection_id, list(statuses))
        if not jobs:
            raise NoEligibleJobsError(collection_id)

        width = index_width(cfg.total_supply, self.config.min_index_width)
        target = self.artifacts.package_path(
            f"{cfg.name}_{cfg.collection_number}_{collection_id}"
        )
        result = PackageResult(path=str(target))
        logger.info("Creating package for collection %s (%d jobs)", collection_id, len(jobs))

        with _open_archive(target) as archive:
            _write_manifest(archive, cfg, self.config.image_uri_template)
            for job in jobs:
                try:
                    metadata_bytes = self._metadata_bytes(job, cfg)
                    if not self.artifacts.exists(job.image_path):
                        raise ArtifactMissingError(job.id, job.image_path)
                except ArtifactMissingError as e:
                    logger.warning("Skipping job %s: %s", job.id, e)
                    result.skipped.append(SkippedJob(job.id, str(e)))
                    continue

                padded = format_index(job.global_index, width)
                archive.write(job.image_path, f"images/{padded}.png")
                archive.writestr(f"json/{padded}.json", metadata_bytes)
                result.included.append(job.id)
            _write_readme(archive, cfg, result, self.config.min_index_width)

        self.store.update_collection_status(
            collection_id, CollectionStatus.PACKAGED, package_path=str(target)
        )
        logger.info(
            "Collection package created: %s (%d included, %d skipped)",
            target,
            len(result.included),
            len(result.skipped),
        )
        return result

    def _metadata_bytes(self, job: Job, cfg: CollectionConfig) -> bytes:
        if job.metadata_path:
            if not self.artifacts.exists(job.metadata_path):
                raise ArtifactMissingError(job.id, job.metadata_path)
            return self.artifacts.read_bytes(job.metadata_path)
        if job.status == JobStatus.APPROVED:
            raise ArtifactMissingError(job.id, job.metadata_path)
        metadata = build_metadata(
            job,
            cfg,
            image_uri_template=self.config.image_uri_template,
            min_width=self.config.min_index_width,
        )
        return serialize_metadata(metadata)


class DirectPackageBuilder:
    """One-shot package build from uploaded images and a rarity plan.

    Source image references are raw bytes or file paths.  Images that
    Pillow cannot read are packaged unchanged with a warning.
    """

    def __init__(self, artifacts: ArtifactStore, config: MintworksConfig):
        self.artifacts = artifacts
        self.config = config

    def build(
        self,
        collection: CollectionConfig,
        tiers: Sequence[RarityTier],
        *,
        randomize_order: bool = False,
        calculate_color_palette: bool = False,
        calculate_sha256: bool = False,
        rng: random.Random | None = None,
    ) -> PackageResult:
        """Expand the plan, process every edition and write the archive.

        Raises:
            TierCapacityError: If a tier has too few images
            SupplyMismatchError: If the plan does not cover ``total_supply``
        """
        seeds = plan_job_seeds(tiers, collection.total_supply, randomize=randomize_order, rng=rng)
        width = index_width(collection.total_supply, self.config.min_index_width)
        # Unique per build.
        target = self.artifacts.package_path(f"{collection.name}_collection_{uuid.uuid4().hex}")
        result = PackageResult(path=str(target))
        total = len(seeds)
        logger.info(
            "Building direct package for '%s': %d editions from %d tiers",
            collection.name,
            total,
            len(tiers),
        )

        with _open_archive(target) as archive:
            _write_manifest(archive, collection, self.config.image_uri_template)
            for position, seed in enumerate(seeds, start=1):
                padded = format_index(seed.global_index, width)
                image_bytes = self._load_png(seed.source_image_ref, padded)

                extras = MetadataExtras(
                    color_palette=extract_palette(image_bytes) if calculate_color_palette else None,
                    content_hash=content_hash(image_bytes) if calculate_sha256 else None,
                )
                job = Job(
                    id=f"{collection.id}-{padded}",
                    collection_id=collection.id,
                    global_index=seed.global_index,
                    edition_number=seed.edition_number,
                    edition_total=seed.edition_total,
                    edition_in_drop=seed.global_index + 1,
                    rarity_tier=seed.rarity_tier,
                    art_id=seed.art_id,
                    status=JobStatus.APPROVED,
                )
                metadata = build_metadata(
                    job,
                    collection,
                    extras,
                    image_uri_template=self.config.image_uri_template,
                    min_width=self.config.min_index_width,
                )

                archive.writestr(f"images/{padded}.png", image_bytes)
                archive.writestr(f"json/{padded}.json", serialize_metadata(metadata))
                result.included.append(job.id)

                if position % 100 == 0 or position == total:
                    logger.info("Processed %d/%d NFTs", position, total)
            _write_readme(archive, collection, result, self.config.min_index_width)

        logger.info("Direct package created: %s", target)
        return result

    def _load_png(self, source, padded: str) -> bytes:
        raw = bytes(source) if isinstance(source, (bytes, bytearray)) else Path(source).read_bytes()
        try:
            return to_png(raw)
        except ValueError as e:
            logger.warning("Image processing failed for %s: %s", padded, e)
            return raw
